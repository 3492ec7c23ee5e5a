"""Windowed trade aggregates derived from persisted trade history.

Every engine run rebuilds these from scratch; nothing is cached across runs.
A future incremental aggregator only has to produce the same ``WindowStats``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from database.models import SIDE_BUY, SIDE_SELL
from trading.tiers import TierConfig

MAX_LOOKBACK = timedelta(hours=24)
TRAILING_HOUR = timedelta(minutes=60)
PRESSURE_WINDOW = timedelta(minutes=5)
MA_SHORT_WINDOW = timedelta(minutes=1)
LIQUIDITY_OFFSETS = (timedelta(minutes=5), timedelta(minutes=15))


def trade_price_usd(trade: Any) -> float:
    amount = float(getattr(trade, "amount_token", 0) or 0)
    value = float(getattr(trade, "value_usd", 0) or 0)
    if amount > 0 and value > 0:
        return value / amount
    return float(getattr(trade, "price_base_per_token", 0) or 0)


@dataclass
class WindowStats:
    cursor: datetime
    lookback_wallets: set[str] = field(default_factory=set)
    tier_window_wallets: set[str] = field(default_factory=set)
    tier_window_wallet_max_buy_usd: dict[str, float] = field(default_factory=dict)
    activity_buyers: set[str] = field(default_factory=set)
    tier_window_minutes: int = 0
    tier_window_volume_usd: float = 0.0
    hour_volume_usd: float = 0.0
    buy_volume_5m: float = 0.0
    sell_volume_5m: float = 0.0
    buyers_5m: set[str] = field(default_factory=set)
    sellers_5m: set[str] = field(default_factory=set)
    sells_5m: list[Any] = field(default_factory=list)
    price_series_5m: list[tuple[datetime, float]] = field(default_factory=list)
    current_price: Optional[float] = None
    ma_1m: Optional[float] = None
    ma_5m: Optional[float] = None
    liquidity_5m_ago: Optional[float] = None
    liquidity_15m_ago: Optional[float] = None
    diversity_sample_size: int = 0
    diversity_unique_wallets: int = 0
    token_age_minutes: Optional[float] = None
    wallet_tiers: dict[str, Optional[int]] = field(default_factory=dict)

    @property
    def lookback_wallet_count(self) -> int:
        return len(self.lookback_wallets)

    @property
    def tier_wallet_count(self) -> int:
        return len(self.tier_window_wallets)

    @property
    def expected_window_volume_usd(self) -> Optional[float]:
        if self.hour_volume_usd <= 0 or self.tier_window_minutes <= 0:
            return None
        per_minute = self.hour_volume_usd / (TRAILING_HOUR.total_seconds() / 60.0)
        return per_minute * self.tier_window_minutes

    @property
    def volume_spike_ratio(self) -> Optional[float]:
        expected = self.expected_window_volume_usd
        if not expected:
            return None
        return self.tier_window_volume_usd / expected

    @property
    def buy_sell_ratio(self) -> Optional[float]:
        if self.sell_volume_5m <= 0:
            return math.inf if self.buy_volume_5m > 0 else None
        return self.buy_volume_5m / self.sell_volume_5m

    @property
    def buyer_seller_ratio(self) -> Optional[float]:
        if not self.sellers_5m:
            return math.inf if self.buyers_5m else None
        return len(self.buyers_5m) / len(self.sellers_5m)

    @property
    def momentum_5m_pct(self) -> Optional[float]:
        if len(self.price_series_5m) < 2:
            return None
        first = self.price_series_5m[0][1]
        last = self.price_series_5m[-1][1]
        if first <= 0:
            return None
        return (last - first) / first * 100.0

    @property
    def diversity_pct(self) -> float:
        if self.diversity_sample_size <= 0:
            return 100.0
        return self.diversity_unique_wallets / self.diversity_sample_size * 100.0


def _in_window(ts: datetime, cursor: datetime, span: timedelta) -> bool:
    return cursor - span <= ts <= cursor


def _closest_liquidity(trades: list[Any], cursor: datetime, offset: timedelta) -> Optional[float]:
    """Liquidity of the earlier trade nearest to ``cursor - offset``; no sample gives None."""
    target = cursor - offset
    best: tuple[float, float] | None = None
    for trade in trades:
        liq = getattr(trade, "liquidity_usd", None)
        if liq is None or trade.timestamp >= cursor:
            continue
        distance = abs((trade.timestamp - target).total_seconds())
        if best is None or distance < best[0]:
            best = (distance, float(liq))
    return best[1] if best else None


def _mean_price(points: list[tuple[datetime, float]], min_samples: int) -> Optional[float]:
    if len(points) < max(1, min_samples):
        return None
    return sum(p for _, p in points) / len(points)


def compute_window_stats(
    trades: Iterable[Any],
    cursor: datetime,
    tier: Optional[TierConfig],
    *,
    lookback: timedelta,
    current_price: Optional[float] = None,
    diversity_sample_size: int = 30,
    ma_1m_min_samples: int = 2,
    ma_5m_min_samples: int = 3,
    wallet_tiers: Optional[dict[str, Optional[int]]] = None,
) -> WindowStats:
    """Aggregate buy/sell history at ``cursor``; trades after the cursor are ignored."""
    history = sorted(
        (t for t in trades if t.timestamp <= cursor and t.side in (SIDE_BUY, SIDE_SELL)),
        key=lambda t: t.timestamp,
    )
    day = [t for t in history if t.timestamp >= cursor - MAX_LOOKBACK]
    buys = [t for t in day if t.side == SIDE_BUY]

    stats = WindowStats(cursor=cursor, wallet_tiers=dict(wallet_tiers or {}))
    stats.lookback_wallets = {t.wallet_id for t in buys if _in_window(t.timestamp, cursor, lookback)}

    if tier is not None:
        tier_span = timedelta(minutes=tier.time_window_minutes)
        stats.tier_window_minutes = tier.time_window_minutes
        for t in day:
            if not _in_window(t.timestamp, cursor, tier_span):
                continue
            stats.tier_window_volume_usd += float(t.value_usd or 0)
            if t.side == SIDE_BUY:
                stats.tier_window_wallets.add(t.wallet_id)
                prev = stats.tier_window_wallet_max_buy_usd.get(t.wallet_id, 0.0)
                stats.tier_window_wallet_max_buy_usd[t.wallet_id] = max(prev, float(t.value_usd or 0))
        activity_span = timedelta(minutes=tier.activity_window_minutes)
        stats.activity_buyers = {t.wallet_id for t in buys if _in_window(t.timestamp, cursor, activity_span)}

    stats.hour_volume_usd = sum(float(t.value_usd or 0) for t in day if _in_window(t.timestamp, cursor, TRAILING_HOUR))

    for t in day:
        if not _in_window(t.timestamp, cursor, PRESSURE_WINDOW):
            continue
        price = trade_price_usd(t)
        if price > 0:
            stats.price_series_5m.append((t.timestamp, price))
        if t.side == SIDE_BUY:
            stats.buy_volume_5m += float(t.value_usd or 0)
            stats.buyers_5m.add(t.wallet_id)
        else:
            stats.sell_volume_5m += float(t.value_usd or 0)
            stats.sellers_5m.add(t.wallet_id)
            stats.sells_5m.append(t)

    if current_price is None and stats.price_series_5m:
        current_price = stats.price_series_5m[-1][1]
    stats.current_price = current_price
    short_points = [p for p in stats.price_series_5m if _in_window(p[0], cursor, MA_SHORT_WINDOW)]
    stats.ma_1m = _mean_price(short_points, ma_1m_min_samples)
    stats.ma_5m = _mean_price(stats.price_series_5m, ma_5m_min_samples)

    stats.liquidity_5m_ago = _closest_liquidity(day, cursor, LIQUIDITY_OFFSETS[0])
    stats.liquidity_15m_ago = _closest_liquidity(day, cursor, LIQUIDITY_OFFSETS[1])

    sample = sorted(buys, key=lambda t: t.timestamp, reverse=True)[: max(1, int(diversity_sample_size))]
    stats.diversity_sample_size = len(sample)
    stats.diversity_unique_wallets = len({t.wallet_id for t in sample})

    if buys:
        oldest = buys[0].timestamp
        stats.token_age_minutes = (cursor - oldest).total_seconds() / 60.0
    return stats
