"""
Lichess cloud evaluation client with a per-run cache.

Positions the oracle has never analysed (404) or cannot serve right now
(retries exhausted) are cached as None and count as "no data" for the rest
of the run.
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable

import httpx

from http_retry import FetchError, NotFoundError, fetch_json
from models import CloudEval, EvalLine, PlayerColor

logger = logging.getLogger(__name__)

CLOUD_EVAL_API = "https://lichess.org/api/cloud-eval"
CLOUD_EVAL_TIMEOUT = 12.0
CLOUD_EVAL_CONCURRENCY = int(os.environ.get("CLOUD_EVAL_CONCURRENCY", "4"))
MATE_CP = 100_000
MAX_MATE_DISTANCE = 1000

_MISSING = object()


class EvalCache:
    """
    FEN -> CloudEval | None for one analysis run.

    Each key is written once. Concurrent lookups of a key that is still being
    fetched wait on the same request instead of issuing another.
    """

    def __init__(self):
        self._entries: dict[str, CloudEval | None] = {}
        self._inflight: dict[str, asyncio.Future] = {}

    def __contains__(self, fen: str) -> bool:
        return fen in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, fen: str, default=None):
        return self._entries.get(fen, default)

    def set(self, fen: str, value: CloudEval | None) -> None:
        self._entries.setdefault(fen, value)

    async def get_or_fetch(
        self, fen: str, fetcher: Callable[[str], Awaitable[CloudEval | None]]
    ) -> CloudEval | None:
        cached = self._entries.get(fen, _MISSING)
        if cached is not _MISSING:
            return cached
        pending = self._inflight.get(fen)
        if pending is not None:
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(fetcher(fen))
        self._inflight[fen] = task
        # the task settles its own entry, so a cancelled first caller still fills the cache
        task.add_done_callback(lambda done: self._settle(fen, done))
        value = await asyncio.shield(task)
        return self._entries.get(fen, value)

    def _settle(self, fen: str, task: asyncio.Future) -> None:
        self._inflight.pop(fen, None)
        if task.cancelled() or task.exception() is not None:
            return
        self.set(fen, task.result())


def mate_to_cp(mate: int) -> int:
    """Map mate-in-N onto the centipawn scale, keeping shorter mates larger."""
    sign = 1 if mate > 0 else -1
    return sign * (MATE_CP - min(abs(mate), MAX_MATE_DISTANCE))


def score_to_cp(line: EvalLine | None, side: PlayerColor) -> int:
    """Convert a White-relative cloud score to centipawns from side's perspective."""
    if line is None:
        return 0
    if line.mate is not None:
        cp = mate_to_cp(line.mate)
    else:
        cp = line.cp or 0
    multiplier = 1 if side == "white" else -1
    return cp * multiplier


def parse_cloud_eval(fen: str, data) -> CloudEval | None:
    """Parse a cloud-eval response body. None when it has no usable lines."""
    if not isinstance(data, dict):
        return None
    pvs = data.get("pvs")
    if not isinstance(pvs, list):
        return None
    lines = []
    for pv in pvs:
        if not isinstance(pv, dict):
            continue
        cp = pv.get("cp")
        mate = pv.get("mate")
        moves = pv.get("moves")
        lines.append(
            EvalLine(
                cp=int(cp) if isinstance(cp, (int, float)) else None,
                mate=int(mate) if isinstance(mate, (int, float)) else None,
                moves=moves if isinstance(moves, str) else "",
            )
        )
    if not lines:
        return None
    depth = data.get("depth")
    return CloudEval(fen=fen, lines=tuple(lines), depth=depth if isinstance(depth, int) else None)


class CloudEvalClient:
    """Scores positions through the Lichess cloud-eval endpoint."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: EvalCache | None = None,
        concurrency: int = CLOUD_EVAL_CONCURRENCY,
        max_retries: int = 3,
        timeout: float = CLOUD_EVAL_TIMEOUT,
        multi_pv: int = 1,
    ):
        self.client = client
        self.cache = cache if cache is not None else EvalCache()
        self.semaphore = asyncio.Semaphore(max(1, concurrency))
        self.max_retries = max_retries
        self.timeout = timeout
        self.multi_pv = multi_pv
        self.requests_made = 0

    async def evaluate(self, fen: str) -> CloudEval | None:
        """Cloud evaluation for fen, or None if the oracle has nothing for it."""
        return await self.cache.get_or_fetch(fen, self._fetch)

    async def _fetch(self, fen: str) -> CloudEval | None:
        async with self.semaphore:
            self.requests_made += 1
            try:
                data = await fetch_json(
                    self.client,
                    CLOUD_EVAL_API,
                    params={"fen": fen, "multiPv": self.multi_pv},
                    headers={"Accept": "application/json"},
                    max_retries=self.max_retries,
                    timeout=self.timeout,
                )
            except NotFoundError:
                logger.debug("No cloud eval for %s", fen)
                return None
            except FetchError as e:
                logger.warning("Cloud eval unavailable for %s: %s", fen, e)
                return None
        return parse_cloud_eval(fen, data)
