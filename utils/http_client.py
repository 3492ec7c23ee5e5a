"""aiohttp client shared by the market-data fallback and the HTTP execution queue.

Each named source (``dexscreener``, ``execution_queue``) gets its own
concurrency cap, sliding-window call budget and 429 cooldown, configured from
``HTTP_SOURCE_RATE_LIMITS`` / ``HTTP_SOURCE_429_COOLDOWNS``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)

_UNLIMITED = (1_000_000, 1.0)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


@dataclass
class _SourceState:
    semaphore: asyncio.Semaphore
    max_calls: int
    window_seconds: float
    cooldown_seconds: float
    calls: deque = field(default_factory=deque)
    window_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cooldown_until: float = 0.0
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    retries: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0

    def record_latency(self, ms: float) -> None:
        self.latency_total_ms += ms
        self.latency_max_ms = max(self.latency_max_ms, ms)
        self.latency_count += 1

    def as_row(self, now: float) -> dict[str, int | float]:
        total = self.ok + self.fail
        remaining = max(0.0, self.cooldown_until - now)
        return {
            "ok": self.ok,
            "fail": self.fail,
            "rate_limited": self.rate_limited,
            "retries": self.retries,
            "error_percent": round(self.fail * 100.0 / total, 2) if total else 0.0,
            "cooldown_remaining_sec": round(remaining, 2),
            "latency_avg_ms": round(self.latency_total_ms / self.latency_count, 2) if self.latency_count else 0.0,
            "latency_max_ms": round(self.latency_max_ms, 2),
        }

    def reset_counters(self) -> None:
        self.ok = self.fail = self.rate_limited = self.retries = 0
        self.latency_total_ms = self.latency_max_ms = 0.0
        self.latency_count = 0


def backoff_delay(attempt: int, status: int) -> float:
    """Exponential backoff with jitter; 429s add ``HTTP_RATE_LIMIT_DELAY_SECONDS``."""
    base = max(0.05, float(config.HTTP_BACKOFF_BASE_SECONDS))
    cap = max(base, float(config.HTTP_BACKOFF_MAX_SECONDS))
    delay = min(cap, base * (2 ** max(0, attempt - 1)))
    if status == 429:
        delay = min(cap, delay + float(config.HTTP_RATE_LIMIT_DELAY_SECONDS))
    return max(0.01, delay + random.uniform(0.0, float(config.HTTP_JITTER_SECONDS)))


def _retry_after_seconds(response: aiohttp.ClientResponse) -> float:
    raw = (response.headers or {}).get("Retry-After", "")
    try:
        return max(0.0, float(raw)) if raw else 0.0
    except ValueError:
        return 0.0


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = {k.lower(): int(v) for k, v in (source_limits or {}).items()}
        self._session: aiohttp.ClientSession | None = None
        self._sources: dict[str, _SourceState] = {}

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()

    def _session_for_request(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=config.HTTP_CONNECTOR_LIMIT)
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    def _source(self, name: str) -> _SourceState:
        key = str(name or "default").strip().lower() or "default"
        state = self._sources.get(key)
        if state is None:
            max_calls, window_seconds = config.HTTP_SOURCE_RATE_LIMITS.get(key, _UNLIMITED)
            cooldown = config.HTTP_SOURCE_429_COOLDOWNS.get(key, config.HTTP_429_COOLDOWN_SECONDS)
            state = _SourceState(
                semaphore=asyncio.Semaphore(max(1, self._source_limits.get(key, config.HTTP_DEFAULT_CONCURRENCY))),
                max_calls=max_calls,
                window_seconds=window_seconds,
                cooldown_seconds=float(cooldown),
            )
            self._sources[key] = state
        return state

    async def _await_turn(self, name: str, state: _SourceState) -> None:
        """Sleep through an active 429 cooldown, then take a slot in the call window."""
        wait = state.cooldown_until - time.monotonic()
        if wait > 0:
            logger.debug("HTTP_COOLDOWN_WAIT source=%s wait=%.2fs", name, wait)
            await asyncio.sleep(wait)
        if (state.max_calls, state.window_seconds) == _UNLIMITED:
            return
        while True:
            async with state.window_lock:
                now = time.monotonic()
                while state.calls and state.calls[0] <= now - state.window_seconds:
                    state.calls.popleft()
                if len(state.calls) < state.max_calls:
                    state.calls.append(now)
                    return
                wait = max(0.01, state.calls[0] + state.window_seconds - now)
            logger.debug("HTTP_RATE_WAIT source=%s wait=%.2fs max_calls=%s", name, wait, state.max_calls)
            await asyncio.sleep(wait)

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        now = time.monotonic()
        out = {name: state.as_row(now) for name, state in self._sources.items()}
        if reset:
            for state in self._sources.values():
                state.reset_counters()
        return out

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        """Send one request, retrying 429/5xx/transport errors.

        Any 2xx is success; an empty or non-JSON 2xx body yields ``data=None``.
        """
        attempts = max(1, int(max_attempts or config.HTTP_RETRY_ATTEMPTS))
        req_headers = {**self._headers, **(headers or {})}
        state = self._source(source)
        result = HttpResult(ok=False, status=0, data=None, error="http_exhausted")
        for attempt in range(1, attempts + 1):
            await self._await_turn(source, state)
            status = 0
            async with state.semaphore:
                started = time.perf_counter()
                try:
                    async with self._session_for_request().request(
                        method.upper(), url, params=params, json=json_body, headers=req_headers
                    ) as response:
                        status = int(response.status or 0)
                        if 200 <= status <= 299:
                            data = None if status == 204 else await response.json(content_type=None)
                            result = HttpResult(ok=True, status=status, data=data)
                        else:
                            result = HttpResult(ok=False, status=status, data=None, error=f"http_status_{status}")
                            if status == 429:
                                state.rate_limited += 1
                                cooldown = max(state.cooldown_seconds, _retry_after_seconds(response))
                                state.cooldown_until = max(state.cooldown_until, time.monotonic() + cooldown)
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                    result = HttpResult(ok=False, status=status, data=None, error=f"http_error:{exc}")
                finally:
                    state.record_latency((time.perf_counter() - started) * 1000.0)

            retryable = status == 429 or status >= 500 or (status == 0 and not result.ok)
            if result.ok or not retryable or attempt >= attempts:
                break
            state.retries += 1
            delay = backoff_delay(attempt, status)
            logger.debug(
                "HTTP_RETRY source=%s method=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                source,
                method,
                attempt,
                attempts,
                status,
                delay,
                url,
            )
            await asyncio.sleep(delay)

        if result.ok:
            state.ok += 1
        else:
            state.fail += 1
        return result

    async def get_json(self, url: str, **kwargs: Any) -> HttpResult:
        return await self.request_json("GET", url, **kwargs)

    async def post_json(self, url: str, payload: Any, **kwargs: Any) -> HttpResult:
        return await self.request_json("POST", url, json_body=payload, **kwargs)
