"""Pairwise wallet correlation and cluster checks."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from database.db import SignalStore
from database.models import SIDE_BUY, SIDE_SELL
from trading.window_stats import trade_price_usd

logger = logging.getLogger(__name__)

DEFAULT_CLUSTER_THRESHOLD = 70.0
MIN_SHARED_TOKENS = 3
SAME_TRADE_MINUTES = 30
CORRELATION_LOOKBACK = timedelta(days=30)
CORRELATION_MAX_AGE = timedelta(hours=24)


@dataclass(frozen=True)
class ClusterCheck:
    is_correlated: bool
    avg_strength: float
    pair_count: int
    missing_pairs: int = 0


def pair_strength(trades_a: Iterable[Any], trades_b: Iterable[Any]) -> Optional[float]:
    """Correlation strength 0-100 of two wallets' trade histories.

    Shared-token breadth is worth up to 30, same-direction share up to 40 and
    timing proximity up to 30. Fewer than ``MIN_SHARED_TOKENS`` shared tokens
    gives ``None``.
    """
    by_token_a: dict[str, list[Any]] = {}
    for t in trades_a:
        by_token_a.setdefault(t.token_id, []).append(t)
    by_token_b: dict[str, list[Any]] = {}
    for t in trades_b:
        by_token_b.setdefault(t.token_id, []).append(t)
    shared = set(by_token_a) & set(by_token_b)
    if len(shared) < MIN_SHARED_TOKENS:
        return None

    same_direction = 0
    comparisons = 0
    time_diff_total = 0.0
    time_diff_count = 0
    for token_id in shared:
        for t1, t2 in itertools.product(by_token_a[token_id], by_token_b[token_id]):
            comparisons += 1
            if t1.side == t2.side:
                same_direction += 1
            minutes = abs((t1.timestamp - t2.timestamp).total_seconds()) / 60.0
            if minutes <= SAME_TRADE_MINUTES * 2:
                time_diff_total += minutes
                time_diff_count += 1

    score = min(len(shared) / 10.0, 0.3)
    score += (same_direction / comparisons) * 0.4 if comparisons else 0.0
    if time_diff_count:
        avg_minutes = time_diff_total / time_diff_count
        if avg_minutes < 5:
            score += 0.3
        elif avg_minutes < 15:
            score += 0.2
        elif avg_minutes < 30:
            score += 0.1
    return round(min(score, 1.0) * 100.0, 2)


def shared_success_rate(trades_a: Iterable[Any], trades_b: Iterable[Any]) -> Optional[float]:
    """Percent of shared, round-tripped tokens that both wallets closed in profit.

    A token counts when each wallet has at least one priced buy and one priced
    sell on it; it is a joint success when both sold above their average buy.
    No such token gives ``None``.
    """
    outcomes_a = _round_trip_outcomes(trades_a)
    outcomes_b = _round_trip_outcomes(trades_b)
    shared = set(outcomes_a) & set(outcomes_b)
    if not shared:
        return None
    wins = sum(1 for token_id in shared if outcomes_a[token_id] and outcomes_b[token_id])
    return round(wins * 100.0 / len(shared), 2)


def _round_trip_outcomes(trades: Iterable[Any]) -> dict[str, bool]:
    prices: dict[str, dict[str, list[float]]] = {}
    for t in trades:
        price = trade_price_usd(t)
        if price <= 0 or t.side not in (SIDE_BUY, SIDE_SELL):
            continue
        prices.setdefault(t.token_id, {SIDE_BUY: [], SIDE_SELL: []})[t.side].append(price)
    out: dict[str, bool] = {}
    for token_id, sides in prices.items():
        buys, sells = sides[SIDE_BUY], sides[SIDE_SELL]
        if buys and sells:
            out[token_id] = sum(sells) / len(sells) > sum(buys) / len(buys)
    return out


class WalletCorrelationService:
    def __init__(self, store: SignalStore, max_age: timedelta = CORRELATION_MAX_AGE) -> None:
        self.store = store
        self.max_age = max_age

    def _store_pair(self, wallet_a_id: str, wallet_b_id: str, trades_a: list[Any], trades_b: list[Any]) -> Optional[float]:
        strength = pair_strength(trades_a, trades_b)
        if strength is None:
            return None
        success = shared_success_rate(trades_a, trades_b)
        self.store.upsert_correlation(wallet_a_id, wallet_b_id, strength, shared_success_rate=success)
        logger.debug(
            "CORRELATION pair a=%s b=%s strength=%.1f shared_success=%s",
            wallet_a_id,
            wallet_b_id,
            strength,
            success,
        )
        return strength

    def refresh_pair(self, wallet_a_id: str, wallet_b_id: str, now: datetime | None = None) -> Optional[float]:
        since = (now or datetime.utcnow()) - CORRELATION_LOOKBACK
        return self._store_pair(
            wallet_a_id,
            wallet_b_id,
            self.store.find_wallet_trades(wallet_a_id, since),
            self.store.find_wallet_trades(wallet_b_id, since),
        )

    def refresh_cluster(self, wallet_ids: Iterable[str], now: datetime | None = None) -> int:
        """Recompute every pair that has no stored row or one older than ``max_age``.

        Each wallet's history is loaded at most once. Returns the number of
        pairs recomputed.
        """
        ids = sorted(set(wallet_ids))
        now = now or datetime.utcnow()
        fresh = {
            (row.wallet_a_id, row.wallet_b_id)
            for row in self.store.get_correlations(ids)
            if row.updated_at is not None and now - row.updated_at < self.max_age
        }
        since = now - CORRELATION_LOOKBACK
        history: dict[str, list[Any]] = {}
        refreshed = 0
        for a, b in itertools.combinations(ids, 2):
            if (a, b) in fresh:
                continue
            for wallet_id in (a, b):
                if wallet_id not in history:
                    history[wallet_id] = self.store.find_wallet_trades(wallet_id, since)
            self._store_pair(a, b, history[a], history[b])
            refreshed += 1
        if refreshed:
            logger.info("CORRELATION refreshed wallets=%s pairs=%s", len(ids), refreshed)
        return refreshed

    def check_cluster(self, wallet_ids: Iterable[str], threshold: float = DEFAULT_CLUSTER_THRESHOLD) -> ClusterCheck:
        """Correlated only when every pair has a stored strength and the mean clears ``threshold``."""
        ids = sorted(set(wallet_ids))
        expected_pairs = len(ids) * (len(ids) - 1) // 2
        if expected_pairs == 0:
            return ClusterCheck(False, 0.0, 0)
        rows = self.store.get_correlations(ids)
        strengths = [float(r.strength or 0) for r in rows]
        missing = expected_pairs - len(strengths)
        avg = sum(strengths) / len(strengths) if strengths else 0.0
        return ClusterCheck(
            is_correlated=missing == 0 and avg >= threshold,
            avg_strength=round(avg, 2),
            pair_count=len(strengths),
            missing_pairs=missing,
        )

    def cluster_performance(self, wallet_ids: Iterable[str]) -> Optional[float]:
        rates = [
            float(r.shared_success_rate)
            for r in self.store.get_correlations(wallet_ids)
            if r.shared_success_rate is not None
        ]
        if not rates:
            return None
        return round(sum(rates) / len(rates), 2)
