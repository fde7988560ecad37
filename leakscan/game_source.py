"""
Game history download and payload normalisation.

The Lichess games export answers as NDJSON, but older endpoints and cached
dumps hand back a JSON array or a {"games": [...]} wrapper. Every shape is
accepted; records that cannot be read are dropped one at a time.
"""

import json
import logging
import os
from typing import Callable
from urllib.parse import quote

import httpx

from http_retry import NotFoundError, fetch_text
from models import GameRecord

logger = logging.getLogger(__name__)

LICHESS_GAMES_API = "https://lichess.org/api/games/user"
USER_AGENT = "leakscan-opening-leak-scanner/1.0"
GAMES_TIMEOUT = 15.0


class PlayerNotFoundError(NotFoundError):
    """The game-history source does not know this player."""

    def __init__(self, username: str, url: str = ""):
        super().__init__(f"Lichess user not found: {username}", url, 404)
        self.username = username


def _parse_json_array(payload: str) -> list | None:
    try:
        parsed = json.loads(payload)
    except ValueError:
        return None
    return parsed if isinstance(parsed, list) else None


def _parse_wrapped_object(payload: str) -> list | None:
    try:
        parsed = json.loads(payload)
    except ValueError:
        return None
    if isinstance(parsed, dict) and isinstance(parsed.get("games"), list):
        return parsed["games"]
    return None


def _parse_ndjson(payload: str) -> list | None:
    records = []
    for line in payload.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except ValueError:
            logger.debug("Skipping unparseable NDJSON line: %.60s", line)
    return records


PARSE_STRATEGIES: tuple[Callable[[str], list | None], ...] = (
    _parse_json_array,
    _parse_wrapped_object,
    _parse_ndjson,
)


def _player_name(players: dict, side: str) -> str | None:
    player = players.get(side)
    if not isinstance(player, dict):
        return None
    user = player.get("user")
    if not isinstance(user, dict):
        return None
    name = user.get("name")
    return name if isinstance(name, str) else None


def game_from_json(raw) -> GameRecord | None:
    """Build a GameRecord from one exported game object. None if not an object."""
    if not isinstance(raw, dict):
        return None
    moves = raw.get("moves")
    tokens = tuple(moves.split()) if isinstance(moves, str) else ()
    players = raw.get("players")
    if not isinstance(players, dict):
        players = {}
    game_id = raw.get("id")
    return GameRecord(
        moves=tokens,
        white_name=_player_name(players, "white"),
        black_name=_player_name(players, "black"),
        game_id=game_id if isinstance(game_id, str) else None,
    )


def normalize_games_payload(payload: str) -> list[GameRecord]:
    """Parse a games payload (JSON array, {"games": [...]} or NDJSON) into GameRecords."""
    trimmed = payload.strip()
    if not trimmed:
        return []

    raw_games: list = []
    for strategy in PARSE_STRATEGIES:
        result = strategy(trimmed)
        if result is not None:
            raw_games = result
            break

    games = []
    for raw in raw_games:
        game = game_from_json(raw)
        if game is not None:
            games.append(game)
    return games


async def fetch_recent_games(
    client: httpx.AsyncClient,
    username: str,
    max_games: int = 100,
    token: str | None = None,
) -> list[GameRecord]:
    """Download a player's most recent games. Raises PlayerNotFoundError on 404."""
    token = token or os.environ.get("LICHESS_TOKEN")
    url = f"{LICHESS_GAMES_API}/{quote(username, safe='')}"
    params = {
        "max": max_games,
        "moves": "true",
        "tags": "false",
        "opening": "false",
        "clocks": "false",
        "evals": "false",
        "pgnInJson": "false",
    }
    headers = {"Accept": "application/x-ndjson", "User-Agent": USER_AGENT}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    try:
        payload = await fetch_text(client, url, params=params, headers=headers, timeout=GAMES_TIMEOUT)
    except NotFoundError as e:
        raise PlayerNotFoundError(username, url) from e

    games = normalize_games_payload(payload)
    logger.info("Fetched %d games for %s", len(games), username)
    return games
