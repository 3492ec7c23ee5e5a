"""Outbound execution queue for pre-signal and signal payloads.

Delivery is at-most-once: callers submit through the background dispatcher
and a failed push is reported, never retried by the engine.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import config
from utils.http_client import ResilientHttpClient
from utils.state_file import append_jsonl_locked

logger = logging.getLogger(__name__)

KIND_PRE_SIGNAL = "pre_signal"
KIND_SIGNAL = "signal"


@dataclass(frozen=True)
class ExecutionSignal:
    signal_type: str
    token_mint: str
    market_cap_usd: Optional[float]
    liquidity_usd: Optional[float]
    entry_price_usd: Optional[float]
    stop_loss_percent: float
    take_profit_percent: float
    strength: str
    priority_fee_lamports: int
    wallets: tuple[str, ...] = field(default_factory=tuple)

    def to_payload(self) -> dict[str, Any]:
        return {
            "signalType": self.signal_type,
            "tokenMint": self.token_mint,
            "marketCapUsd": self.market_cap_usd,
            "liquidityUsd": self.liquidity_usd,
            "entryPriceUsd": self.entry_price_usd,
            "stopLossPercent": self.stop_loss_percent,
            "takeProfitPercent": self.take_profit_percent,
            "strength": self.strength,
            "wallets": list(self.wallets),
            "priorityFeeLamports": self.priority_fee_lamports,
        }


class ExecutionQueueError(RuntimeError):
    """Raised when the executor endpoint rejects a payload."""


class HttpExecutionQueue:
    def __init__(self, url: str, http: ResilientHttpClient | None = None) -> None:
        if not url:
            raise ValueError("EXECUTION_QUEUE_URL is required for EXECUTION_QUEUE_MODE=http")
        self.url = url
        self._owns_http = http is None
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(config.EXECUTION_QUEUE_TIMEOUT),
            headers={"Content-Type": "application/json"},
            source_limits={"execution_queue": 4},
        )

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    async def push(self, kind: str, payload: dict[str, Any]) -> None:
        body = {"kind": kind, "payload": payload, "ts": datetime.now(timezone.utc).isoformat()}
        result = await self._http.post_json(self.url, body, source="execution_queue", max_attempts=1)
        if not result.ok:
            raise ExecutionQueueError(f"execution queue push failed kind={kind} status={result.status} {result.error}")
        logger.info("EXEC_QUEUE pushed kind=%s token=%s status=%s", kind, payload.get("tokenMint"), result.status)


class FileExecutionQueue:
    """JSONL queue file; each append happens under the inter-process file lock."""

    def __init__(self, path: str) -> None:
        self.path = path
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    async def close(self) -> None:
        return None

    async def push(self, kind: str, payload: dict[str, Any]) -> None:
        record = {"kind": kind, "payload": payload, "ts": datetime.now(timezone.utc).isoformat()}
        append_jsonl_locked(self.path, record)
        logger.info("EXEC_QUEUE appended kind=%s token=%s path=%s", kind, payload.get("tokenMint"), self.path)


def build_execution_queue():
    if config.EXECUTION_QUEUE_MODE == "http":
        return HttpExecutionQueue(config.EXECUTION_QUEUE_URL)
    return FileExecutionQueue(config.EXECUTION_QUEUE_FILE)
