from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

from core.errors import FetchError

USER_AGENT = 'feed-screener/0.1'


@dataclass
class HttpResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b''

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def text(self, encoding: str = 'utf-8') -> str:
        return self.body.decode(encoding, errors='replace')


def _retry_delay(retry_backoff: float, attempts: int) -> float:
    return retry_backoff * (2 ** (attempts - 1)) * (1 + random.uniform(0, 0.25))


async def fetch(
    session: aiohttp.ClientSession,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    request_timeout: int = 30,
    retry_attempts: int = 2,
    retry_backoff: float = 1.0,
    debug_logging: bool = False,
) -> HttpResponse:
    """GET `url` and return status, headers and raw body.

    2xx and 304 are returned. 5xx, 429 and connection errors are retried with
    jittered exponential backoff; anything else, or running out of attempts,
    raises FetchError.
    """
    merged = {'User-Agent': USER_AGENT}
    merged.update(headers or {})
    attempts = 0
    last_error: Optional[str] = None
    while attempts <= retry_attempts:
        try:
            timeout = aiohttp.ClientTimeout(total=request_timeout)
            async with session.get(url, headers=merged, params=params, timeout=timeout) as response:
                if response.status == 304 or 200 <= response.status < 300:
                    body = await response.read() if response.status != 304 else b''
                    if debug_logging:
                        logging.info(f'HTTP GET {url} -> {response.status} ({len(body)} bytes)')
                    return HttpResponse(status=response.status, headers=dict(response.headers), body=body)
                if (500 <= response.status < 600 or response.status == 429) and attempts < retry_attempts:
                    attempts += 1
                    sleep_for = _retry_delay(retry_backoff, attempts)
                    if debug_logging:
                        logging.warning(f'HTTP GET {url} {response.status}; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                    last_error = f'HTTP {response.status}'
                    await asyncio.sleep(sleep_for)
                    continue
                raise FetchError(f'HTTP {response.status} from {url}')
        except (aiohttp.ClientConnectorError, aiohttp.ClientOSError, aiohttp.ServerTimeoutError, asyncio.TimeoutError) as e:
            last_error = str(e) or e.__class__.__name__
            if attempts < retry_attempts:
                attempts += 1
                sleep_for = _retry_delay(retry_backoff, attempts)
                if debug_logging:
                    logging.warning(f'HTTP GET {url} network/timeout; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                continue
            raise FetchError(f'network error fetching {url}: {last_error}') from e
        except aiohttp.ClientError as e:
            raise FetchError(f'request to {url} failed: {e}') from e
    raise FetchError(f'{url} failed after {retry_attempts} retries: {last_error}')


class RequestManager:
    """Per-key pacing and concurrency limits in front of `fetch`."""

    def __init__(self) -> None:
        self._last_request_at: Dict[str, float] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

    async def _pace(self, key: str, min_interval_ms: float) -> None:
        if not min_interval_ms or min_interval_ms <= 0:
            return
        loop = asyncio.get_event_loop()
        last = self._last_request_at.get(key)
        if last is not None:
            wait = (last + (min_interval_ms / 1000.0)) - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
        self._last_request_at[key] = loop.time()

    async def throttled_fetch(
        self,
        session: aiohttp.ClientSession,
        key: str,
        url: str,
        *,
        min_interval_ms: float = 0.0,
        max_concurrent: int = 0,
        **kwargs,
    ) -> HttpResponse:
        await self._pace(key, min_interval_ms)
        if max_concurrent and max_concurrent > 0:
            sem = self._semaphores.get(key)
            if sem is None:
                sem = asyncio.Semaphore(max_concurrent)
                self._semaphores[key] = sem
            async with sem:
                return await fetch(session, url, **kwargs)
        return await fetch(session, url, **kwargs)
