"""Ordered consensus filter cascade.

Each gate is a pure predicate over ``(GateInput)`` and returns a ``GateResult``.
The cascade runs them in order and stops at the first rejection. Gates whose
inputs are unknown report ``skipped`` instead of failing.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from trading.signal_config import SignalConfig
from trading.tiers import TierConfig
from trading.window_stats import WindowStats
from utils.log_contracts import reason_code_for_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketContext:
    market_cap: Optional[float]
    liquidity: Optional[float] = None
    total_supply: Optional[float] = None
    current_price: Optional[float] = None

    @property
    def effective_supply(self) -> Optional[float]:
        if self.total_supply and self.total_supply > 0:
            return float(self.total_supply)
        if self.market_cap and self.current_price and self.current_price > 0:
            return float(self.market_cap) / float(self.current_price)
        return None


@dataclass(frozen=True)
class GateInput:
    market: MarketContext
    tier: Optional[TierConfig]
    stats: WindowStats
    config: SignalConfig


@dataclass
class GateResult:
    gate: str
    passed: bool
    reason: str = ""
    skipped: bool = False
    detail: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def reason_code(self) -> str:
        return reason_code_for_event(reason=self.gate, decision_stage="cascade")


GateFn = Callable[[GateInput], GateResult]


def _ok(gate: str, **detail: Any) -> GateResult:
    return GateResult(gate=gate, passed=True, detail=detail)


def _skip(gate: str, reason: str) -> GateResult:
    return GateResult(gate=gate, passed=True, skipped=True, reason=reason)


def _reject(gate: str, reason: str, **detail: Any) -> GateResult:
    return GateResult(gate=gate, passed=False, reason=reason, detail=detail)


def _fmt_ratio(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    if math.isinf(value):
        return "inf"
    return f"{value:.2f}"


def gate_market_cap_range(inp: GateInput) -> GateResult:
    th = inp.config.thresholds
    mcap = inp.market.market_cap
    if mcap is None:
        return _reject("market_cap_range", "market cap unknown")
    if not (th.min_market_cap_usd <= mcap < th.max_market_cap_usd):
        return _reject(
            "market_cap_range",
            f"mcap ${mcap:,.0f} outside [${th.min_market_cap_usd:,.0f}, ${th.max_market_cap_usd:,.0f})",
            market_cap=mcap,
        )
    return _ok("market_cap_range", market_cap=mcap)


def gate_tier(inp: GateInput) -> GateResult:
    if inp.tier is None:
        return _reject("tier", f"no tier for mcap {inp.market.market_cap}")
    return _ok("tier", tier=inp.tier.name)


def gate_liquidity_floor(inp: GateInput) -> GateResult:
    liq = inp.market.liquidity
    if liq is None:
        return _skip("liquidity_floor", "liquidity unknown")
    floor = inp.config.thresholds.min_liquidity_usd
    if liq < floor:
        return _reject("liquidity_floor", f"liquidity ${liq:,.0f} < ${floor:,.0f}", liquidity=liq)
    return _ok("liquidity_floor", liquidity=liq)


def gate_liquidity_ratio(inp: GateInput) -> GateResult:
    liq = inp.market.liquidity
    mcap = inp.market.market_cap
    if liq is None or not mcap:
        return _skip("liquidity_ratio", "liquidity or mcap unknown")
    ratio = liq / mcap
    floor = inp.config.thresholds.min_liquidity_mcap_ratio
    if ratio < floor:
        return _reject("liquidity_ratio", f"liq/mcap {ratio:.1%} < {floor:.1%}", ratio=ratio)
    return _ok("liquidity_ratio", ratio=ratio)


def gate_liquidity_trend(inp: GateInput) -> GateResult:
    current = inp.market.liquidity
    if current is None:
        return _skip("liquidity_trend", "current liquidity unknown")
    th = inp.config.thresholds
    checks = (
        ("5m", inp.stats.liquidity_5m_ago, th.max_liquidity_drop_5m_pct),
        ("15m", inp.stats.liquidity_15m_ago, th.max_liquidity_drop_15m_pct),
    )
    detail: dict[str, Any] = {}
    for label, past, ceiling in checks:
        if past is None or past <= 0:
            continue
        drop_pct = (past - current) / past * 100.0
        detail[f"drop_{label}_pct"] = drop_pct
        if drop_pct > ceiling:
            return _reject(
                "liquidity_trend",
                f"liquidity dropped {drop_pct:.1f}% in {label} (max {ceiling:.0f}%)",
                **detail,
            )
    if not detail:
        return _skip("liquidity_trend", "no historical liquidity samples")
    return _ok("liquidity_trend", **detail)


def gate_tier_wallets(inp: GateInput) -> GateResult:
    tier = inp.tier
    count = inp.stats.tier_wallet_count
    if tier is None or count < tier.min_wallets:
        required = tier.min_wallets if tier else 0
        window = tier.time_window_minutes if tier else 0
        return _reject(
            "tier_wallets",
            f"{count} wallets in {window}m < {required}",
            wallet_count=count,
        )
    return _ok("tier_wallets", wallet_count=count)


def gate_tier_activity(inp: GateInput) -> GateResult:
    tier = inp.tier
    buyers = len(inp.stats.activity_buyers)
    if tier is None or buyers < tier.min_unique_buyers:
        required = tier.min_unique_buyers if tier else 0
        return _reject("tier_activity", f"{buyers} unique buyers < {required}", unique_buyers=buyers)
    return _ok("tier_activity", unique_buyers=buyers)


def gate_tier_quality(inp: GateInput) -> GateResult:
    tier = inp.tier
    if tier is None or tier.quality_requirement is None:
        return _skip("tier_quality", "tier has no quality requirement")
    req = tier.quality_requirement
    max_tier = inp.config.thresholds.quality_wallet_max_tier
    quality = 0
    for wallet_id in inp.stats.tier_window_wallets:
        wallet_tier = inp.stats.wallet_tiers.get(wallet_id)
        if wallet_tier is not None and wallet_tier <= max_tier:
            quality += 1
            continue
        max_buy = inp.stats.tier_window_wallet_max_buy_usd.get(wallet_id, 0.0)
        if req.min_buy_amount_usd is not None and max_buy >= req.min_buy_amount_usd:
            quality += 1
    if quality < req.min_quality_wallets:
        return _reject(
            "tier_quality",
            f"{quality} quality wallets < {req.min_quality_wallets}",
            quality_wallets=quality,
        )
    return _ok("tier_quality", quality_wallets=quality)


def gate_volume_spike(inp: GateInput) -> GateResult:
    ratio = inp.stats.volume_spike_ratio
    if ratio is None:
        return _skip("volume_spike", "no trailing-hour volume")
    floor = inp.config.thresholds.min_volume_spike_ratio
    if ratio < floor:
        return _reject("volume_spike", f"volume spike {ratio:.2f}x < {floor:.2f}x", spike_ratio=ratio)
    return _ok("volume_spike", spike_ratio=ratio)


def gate_buy_sell_pressure(inp: GateInput) -> GateResult:
    th = inp.config.thresholds
    ratio = inp.stats.buy_sell_ratio
    if ratio is None:
        return _skip("buy_sell_pressure", "no 5m volume")
    if ratio < th.buy_sell_block_ratio:
        return _reject(
            "buy_sell_pressure",
            f"buy/sell {_fmt_ratio(ratio)} < {th.buy_sell_block_ratio:.2f}",
            buy_sell_ratio=ratio,
        )
    result = _ok("buy_sell_pressure", buy_sell_ratio=ratio)
    if ratio < th.buy_sell_weak_ratio:
        result.warnings.append(f"weak buy pressure {_fmt_ratio(ratio)}")
    buyer_ratio = inp.stats.buyer_seller_ratio
    if buyer_ratio is not None and buyer_ratio < th.buyer_seller_weak_ratio:
        result.warnings.append(f"more sellers than buyers {_fmt_ratio(buyer_ratio)}")
    result.detail["buyer_seller_ratio"] = buyer_ratio
    return result


def gate_price_momentum(inp: GateInput) -> GateResult:
    th = inp.config.thresholds
    momentum = inp.stats.momentum_5m_pct
    if momentum is None:
        return _skip("price_momentum", "not enough 5m prices")
    if momentum < th.momentum_min_pct:
        return _reject("price_momentum", f"downtrend {momentum:+.1f}%", momentum_pct=momentum)
    if momentum > th.momentum_max_pct:
        return _reject("price_momentum", f"overheated {momentum:+.1f}%", momentum_pct=momentum)
    optimal = th.momentum_optimal_min_pct <= momentum <= th.momentum_optimal_max_pct
    return _ok("price_momentum", momentum_pct=momentum, optimal=optimal)


def gate_moving_average(inp: GateInput) -> GateResult:
    stats = inp.stats
    price = stats.current_price
    if price is None or (stats.ma_1m is None and stats.ma_5m is None):
        return _skip("moving_average", "not enough samples")
    for label, ma in (("1m", stats.ma_1m), ("5m", stats.ma_5m)):
        if ma is not None and price < ma:
            return _reject("moving_average", f"price {price:.10g} below {label} MA {ma:.10g}", window=label)
    return _ok("moving_average", ma_1m=stats.ma_1m, ma_5m=stats.ma_5m)


def gate_whale_dump(inp: GateInput) -> GateResult:
    th = inp.config.thresholds
    supply = inp.market.effective_supply
    mcap = inp.market.market_cap
    usd_rule = mcap is not None and mcap < th.whale_usd_mcap_ceiling
    for sell in inp.stats.sells_5m:
        amount = float(getattr(sell, "amount_token", 0) or 0)
        value = float(getattr(sell, "value_usd", 0) or 0)
        if supply:
            supply_pct = amount * 100.0 / supply
            if supply_pct >= th.whale_supply_pct:
                return _reject(
                    "whale_dump",
                    f"sell of {supply_pct:.2f}% supply",
                    wallet_id=getattr(sell, "wallet_id", None),
                    supply_pct=supply_pct,
                )
        if usd_rule and value >= th.whale_usd:
            return _reject(
                "whale_dump",
                f"sell of ${value:,.0f}",
                wallet_id=getattr(sell, "wallet_id", None),
                value_usd=value,
            )
    return _ok("whale_dump", sells=len(inp.stats.sells_5m))


def gate_diversity(inp: GateInput) -> GateResult:
    pct = inp.stats.diversity_pct
    floor = inp.config.thresholds.min_diversity_pct
    if pct < floor:
        return _reject(
            "diversity",
            f"diversity {pct:.0f}% < {floor:.0f}% over {inp.stats.diversity_sample_size} buys",
            diversity_pct=pct,
        )
    return _ok("diversity", diversity_pct=pct)


def gate_token_age(inp: GateInput) -> GateResult:
    age = inp.stats.token_age_minutes
    if age is None:
        return _skip("token_age", "no buys in 24h")
    floor = inp.config.thresholds.min_token_age_minutes
    if age < floor:
        return _reject("token_age", f"token age {age:.0f}m < {floor:.0f}m", age_minutes=age)
    return _ok("token_age", age_minutes=age)


DEFAULT_GATES: tuple[tuple[str, GateFn], ...] = (
    ("market_cap_range", gate_market_cap_range),
    ("tier", gate_tier),
    ("liquidity_floor", gate_liquidity_floor),
    ("liquidity_ratio", gate_liquidity_ratio),
    ("liquidity_trend", gate_liquidity_trend),
    ("tier_wallets", gate_tier_wallets),
    ("tier_activity", gate_tier_activity),
    ("tier_quality", gate_tier_quality),
    ("volume_spike", gate_volume_spike),
    ("buy_sell_pressure", gate_buy_sell_pressure),
    ("price_momentum", gate_price_momentum),
    ("moving_average", gate_moving_average),
    ("whale_dump", gate_whale_dump),
    ("diversity", gate_diversity),
    ("token_age", gate_token_age),
)

GATE_NAMES = tuple(name for name, _ in DEFAULT_GATES)


def always_pass(name: str) -> GateFn:
    def _gate(inp: GateInput) -> GateResult:
        return _skip(name, "disabled")

    return _gate


@dataclass
class CascadeResult:
    passed: bool
    results: list[GateResult] = field(default_factory=list)
    failed: Optional[GateResult] = None

    @property
    def warnings(self) -> list[str]:
        out: list[str] = []
        for r in self.results:
            out.extend(r.warnings)
        return out

    @property
    def failed_gate(self) -> Optional[str]:
        return self.failed.gate if self.failed else None


class FilterCascade:
    def __init__(self, config: SignalConfig, gates: Iterable[tuple[str, GateFn]] | None = None) -> None:
        self.config = config
        self.gates: list[tuple[str, GateFn]] = list(gates if gates is not None else DEFAULT_GATES)

    def with_overrides(self, **overrides: GateFn | None) -> "FilterCascade":
        """Copy with gates replaced by name; ``None`` disables a gate."""
        unknown = set(overrides) - {name for name, _ in self.gates}
        if unknown:
            raise KeyError(f"unknown gates: {sorted(unknown)}")
        gates = []
        for name, fn in self.gates:
            if name in overrides:
                fn = overrides[name] or always_pass(name)
            gates.append((name, fn))
        return FilterCascade(self.config, gates)

    def evaluate(
        self,
        market: MarketContext,
        tier: Optional[TierConfig],
        stats: WindowStats,
    ) -> CascadeResult:
        inp = GateInput(market=market, tier=tier, stats=stats, config=self.config)
        outcome = CascadeResult(passed=True)
        for name, fn in self.gates:
            result = fn(inp)
            outcome.results.append(result)
            if not result.passed:
                outcome.passed = False
                outcome.failed = result
                logger.info(
                    "CASCADE reject gate=%s code=%s reason=%s",
                    name,
                    result.reason_code,
                    result.reason,
                )
                return outcome
            if result.skipped:
                logger.debug("CASCADE skip gate=%s reason=%s", name, result.reason)
        for warning in outcome.warnings:
            logger.info("CASCADE warn %s", warning)
        return outcome
