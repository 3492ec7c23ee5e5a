"""Create or raise the single active consensus signal per token."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy.exc import IntegrityError

from database.db import SignalStore
from database.models import Signal
from trading.signal_config import ScoringBands
from trading.tiers import TierConfig

logger = logging.getLogger(__name__)

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_ALREADY_NOTIFIED = "already_notified"

RISK_LOW = "low"
RISK_MEDIUM = "medium"


def score_for_wallet_count(wallet_count: int, bands: ScoringBands) -> tuple[float, str]:
    if wallet_count >= bands.strong_min_wallets:
        score = bands.strong_score
    elif wallet_count >= bands.medium_min_wallets:
        score = bands.medium_score
    else:
        score = bands.base_score
    risk = RISK_LOW if wallet_count >= bands.low_risk_min_wallets else RISK_MEDIUM
    return float(score), risk


@dataclass
class LifecycleOutcome:
    action: str
    signal: Optional[Signal]
    previous_wallet_count: int = 0

    @property
    def is_new(self) -> bool:
        return self.action == ACTION_CREATED

    @property
    def is_update(self) -> bool:
        return self.action == ACTION_UPDATED

    @property
    def emitted(self) -> bool:
        return self.action in (ACTION_CREATED, ACTION_UPDATED)


class SignalLifecycleManager:
    """Creates or raises the active signal for a token.

    ``apply`` is synchronous: on the event loop nothing can interleave between
    reading the active signal and writing it. Other threads and processes are
    held off by the partial unique index on active signals, and the loser of an
    insert race re-reads the winner's row.
    """

    def __init__(self, store: SignalStore, scoring: ScoringBands, model: str = "consensus") -> None:
        self.store = store
        self.scoring = scoring
        self.model = model

    def apply(
        self,
        *,
        token_id: str,
        trade_id: str,
        wallet_count: int,
        tier: TierConfig,
        wallet_ids: Iterable[str],
        extra_meta: dict[str, Any] | None = None,
    ) -> LifecycleOutcome:
        wallet_count = int(wallet_count)
        wallet_ids = sorted(set(wallet_ids))
        extra_meta = dict(extra_meta or {})
        score, risk = score_for_wallet_count(wallet_count, self.scoring)
        existing = self.store.find_active_signal(token_id, self.model)
        if existing is None:
            meta = {
                **extra_meta,
                "walletCount": wallet_count,
                "lastUpdateTradeId": trade_id,
                "tier": tier.name,
                "timeWindowMinutes": tier.time_window_minutes,
                "walletIds": wallet_ids,
            }
            try:
                created = self.store.create_signal(
                    token_id=token_id,
                    model=self.model,
                    meta=meta,
                    quality_score=score,
                    risk_level=risk,
                )
            except IntegrityError:
                logger.info("SIGNAL create race lost token=%s; re-reading active signal", token_id)
                existing = self.store.find_active_signal(token_id, self.model)
                if existing is None:
                    raise
            else:
                logger.info(
                    "SIGNAL created token=%s id=%s wallets=%s tier=%s score=%.0f risk=%s",
                    token_id,
                    created.id,
                    wallet_count,
                    tier.name,
                    score,
                    risk,
                )
                return LifecycleOutcome(ACTION_CREATED, created, 0)

        previous = existing.wallet_count
        if wallet_count <= previous:
            logger.info(
                "SIGNAL already notified token=%s id=%s wallets=%s stored=%s",
                token_id,
                existing.id,
                wallet_count,
                previous,
            )
            return LifecycleOutcome(ACTION_ALREADY_NOTIFIED, existing, previous)

        meta = dict(existing.meta or {})
        # Creation snapshot (entry price, mcap) is kept; only missing keys are filled.
        for key, value in extra_meta.items():
            meta.setdefault(key, value)
        meta.update(
            {
                "walletCount": wallet_count,
                "lastUpdateTradeId": trade_id,
                "tier": tier.name,
                "timeWindowMinutes": tier.time_window_minutes,
                "walletIds": sorted(set(meta.get("walletIds") or []) | set(wallet_ids)),
            }
        )
        updated = self.store.update_signal(existing.id, meta=meta, quality_score=score, risk_level=risk)
        logger.info(
            "SIGNAL updated token=%s id=%s wallets=%s->%s score=%.0f risk=%s",
            token_id,
            existing.id,
            previous,
            wallet_count,
            score,
            risk,
        )
        return LifecycleOutcome(ACTION_UPDATED, updated, previous)
