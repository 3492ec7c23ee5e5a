"""Secondary wallet statistics attached to a signal after it is notified."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from database.db import SignalStore

logger = logging.getLogger(__name__)


def wallet_statistics(wallets: Iterable[Any], quality_max_tier: int = 2) -> dict[str, Any]:
    rows = list(wallets)
    scores = [float(w.score) for w in rows if getattr(w, "score", None) is not None]
    tiered = [w for w in rows if getattr(w, "tier", None) is not None and w.tier <= quality_max_tier]
    return {
        "wallet_count": len(rows),
        "avg_wallet_score": round(sum(scores) / len(scores), 2) if scores else None,
        "max_wallet_score": max(scores) if scores else None,
        "tiered_wallets": len(tiered),
        "tiered_wallet_pct": round(len(tiered) / len(rows) * 100.0, 2) if rows else 0.0,
    }


class SignalEnricher:
    def __init__(self, store: SignalStore, notifier: Any, quality_max_tier: int = 2) -> None:
        self.store = store
        self.notifier = notifier
        self.quality_max_tier = quality_max_tier

    async def enrich(self, signal_id: str, correlation_id: str, notification: Any) -> dict[str, Any] | None:
        """Store wallet stats on the signal and refresh the delivered notification.

        Exceptions propagate to the background dispatcher's error channel.
        """
        signal = self.store.get_signal(signal_id)
        if signal is None:
            logger.info("ENRICH skip signal=%s reason=missing", signal_id)
            return None
        wallet_ids = list((signal.meta or {}).get("walletIds") or [])
        stats = wallet_statistics(self.store.get_wallets(wallet_ids).values(), self.quality_max_tier)
        self.store.update_signal(signal_id, enrichment=stats)
        await self.notifier.update_signal(correlation_id, notification, stats)
        logger.info(
            "ENRICH done signal=%s wallets=%s avg_score=%s tiered_pct=%s",
            signal_id,
            stats["wallet_count"],
            stats["avg_wallet_score"],
            stats["tiered_wallet_pct"],
        )
        return stats
