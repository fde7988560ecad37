"""
HTTP GET with per-attempt timeout, transient-status retry and backoff.

Shared by the game-history download and the cloud-eval oracle. 404 is
terminal; 408/425/429/5xx and other request failures are retried, honouring
Retry-After when the server sends one. A body that cannot be decoded is
reported as MalformedResponseError.
"""

import asyncio
import json
import logging

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0  # seconds per attempt
DEFAULT_RETRIES = 3  # extra attempts after the first
BACKOFF_BASE = 0.5  # seconds, doubled per attempt
TRANSIENT_STATUSES = {408, 425, 429}


class FetchError(Exception):
    """Request failed for good. status is the last HTTP status seen, if any."""

    def __init__(self, message: str, url: str, status: int | None = None):
        super().__init__(message)
        self.url = url
        self.status = status


class NotFoundError(FetchError):
    pass


class TransientError(FetchError):
    """Rate limiting or server/network failure that outlived every retry."""


class MalformedResponseError(FetchError):
    pass


def is_transient_status(status: int) -> bool:
    return status in TRANSIENT_STATUSES or 500 <= status <= 599


def backoff_delay(attempt: int) -> float:
    return BACKOFF_BASE * (2 ** attempt)


def retry_after_seconds(response: httpx.Response) -> float | None:
    """Retry-After in seconds, or None when absent, zero or not a number."""
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


async def fetch_text(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: dict | None = None,
    headers: dict | None = None,
    max_retries: int = DEFAULT_RETRIES,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    """GET url and return the body text. Raises a FetchError subclass on failure."""
    last_status = None
    last_error = None

    for attempt in range(max_retries + 1):
        try:
            resp = await asyncio.wait_for(
                client.get(url, params=params, headers=headers), timeout=timeout
            )
        except httpx.DecodingError as e:
            # body arrived but its content encoding is corrupt
            raise MalformedResponseError(f"Undecodable response from {url}: {e}", url) from e
        except (httpx.RequestError, asyncio.TimeoutError) as e:
            last_error = e
            if attempt < max_retries:
                delay = backoff_delay(attempt)
                logger.debug("Network error for %s (%r), retrying in %.1fs", url, e, delay)
                await asyncio.sleep(delay)
                continue
            break

        if resp.is_success:
            return resp.text

        last_status = resp.status_code
        if resp.status_code == 404:
            raise NotFoundError(f"Not found: {url}", url, 404)

        if is_transient_status(resp.status_code):
            last_error = None
            if attempt < max_retries:
                delay = retry_after_seconds(resp) or backoff_delay(attempt)
                logger.debug("HTTP %s for %s, retrying in %.1fs", resp.status_code, url, delay)
                await asyncio.sleep(delay)
                continue
            break

        raise FetchError(f"Request failed ({resp.status_code}): {url}", url, resp.status_code)

    if last_error is not None:
        raise TransientError(f"Network error for {url}: {last_error!r}", url, last_status)
    raise TransientError(
        f"Request failed ({last_status}) after {max_retries + 1} attempts: {url}", url, last_status
    )


async def fetch_json(client: httpx.AsyncClient, url: str, **kwargs):
    """fetch_text, decoded as JSON."""
    text = await fetch_text(client, url, **kwargs)
    try:
        return json.loads(text)
    except ValueError as e:
        raise MalformedResponseError(f"Invalid JSON from {url}: {e}", url) from e
