"""Versioned signal configuration document: tiers, global thresholds, fee bands."""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, fields
from typing import Any

import config
from trading.tiers import SignalConfigError, TierConfig, TierTable
from utils.state_file import read_json_locked

logger = logging.getLogger(__name__)

DEFAULT_SIGNAL_CONFIG: dict[str, Any] = {
    "version": "2025-06.v1",
    "global": {
        "min_market_cap_usd": 80000,
        "max_market_cap_usd": 500000,
        "min_liquidity_usd": 15000,
        "min_liquidity_mcap_ratio": 0.05,
        "max_liquidity_drop_5m_pct": 10.0,
        "max_liquidity_drop_15m_pct": 20.0,
        "min_volume_spike_ratio": 1.5,
        "buy_sell_block_ratio": 1.0,
        "buy_sell_weak_ratio": 1.5,
        "buyer_seller_weak_ratio": 1.0,
        "momentum_min_pct": -5.0,
        "momentum_max_pct": 50.0,
        "momentum_optimal_min_pct": 5.0,
        "momentum_optimal_max_pct": 30.0,
        "ma_1m_min_samples": 2,
        "ma_5m_min_samples": 3,
        "whale_supply_pct": 2.0,
        "whale_usd": 5000.0,
        "whale_usd_mcap_ceiling": 300000.0,
        "diversity_sample_size": 30,
        "min_diversity_pct": 70.0,
        "min_token_age_minutes": 60.0,
        "quality_wallet_max_tier": 2,
        "stop_loss_percent": 20.0,
        "take_profit_percent": 30.0,
    },
    "tiers": [
        {
            "name": "Tier 1",
            "min_mcap": 80000,
            "max_mcap": 120000,
            "time_window_minutes": 5,
            "min_wallets": 3,
            "activity_window_minutes": 10,
            "min_unique_buyers": 8,
        },
        {
            "name": "Tier 2",
            "min_mcap": 120000,
            "max_mcap": 200000,
            "time_window_minutes": 8,
            "min_wallets": 3,
            "activity_window_minutes": 10,
            "min_unique_buyers": 6,
        },
        {
            "name": "Tier 3",
            "min_mcap": 200000,
            "max_mcap": 350000,
            "time_window_minutes": 12,
            "min_wallets": 4,
            "activity_window_minutes": 15,
            "min_unique_buyers": 5,
            "quality_requirement": {"min_quality_wallets": 2, "min_buy_amount_usd": 100},
        },
        {
            "name": "Tier 4",
            "min_mcap": 350000,
            "max_mcap": 500000,
            "time_window_minutes": 15,
            "min_wallets": 4,
            "activity_window_minutes": 20,
            "min_unique_buyers": 8,
            "quality_requirement": {"min_quality_wallets": 3, "min_buy_amount_usd": 100},
        },
    ],
    "priority_fee": {
        "very_strong_min_ratio": 3.0,
        "very_strong_momentum_min_pct": 10.0,
        "very_strong_momentum_max_pct": 30.0,
        "standard_min_ratio": 1.5,
        "standard_min_momentum_pct": 5.0,
        "very_strong_lamports": 1_000_000,
        "standard_lamports": 500_000,
        "weak_lamports": 100_000,
    },
    "scoring": {
        "strong_min_wallets": 4,
        "medium_min_wallets": 3,
        "strong_score": 90.0,
        "medium_score": 80.0,
        "base_score": 60.0,
        "low_risk_min_wallets": 3,
    },
}


@dataclass(frozen=True)
class GlobalThresholds:
    min_market_cap_usd: float
    max_market_cap_usd: float
    min_liquidity_usd: float
    min_liquidity_mcap_ratio: float
    max_liquidity_drop_5m_pct: float
    max_liquidity_drop_15m_pct: float
    min_volume_spike_ratio: float
    buy_sell_block_ratio: float
    buy_sell_weak_ratio: float
    buyer_seller_weak_ratio: float
    momentum_min_pct: float
    momentum_max_pct: float
    momentum_optimal_min_pct: float
    momentum_optimal_max_pct: float
    ma_1m_min_samples: int
    ma_5m_min_samples: int
    whale_supply_pct: float
    whale_usd: float
    whale_usd_mcap_ceiling: float
    diversity_sample_size: int
    min_diversity_pct: float
    min_token_age_minutes: float
    quality_wallet_max_tier: int
    stop_loss_percent: float
    take_profit_percent: float


@dataclass(frozen=True)
class PriorityFeeBands:
    very_strong_min_ratio: float
    very_strong_momentum_min_pct: float
    very_strong_momentum_max_pct: float
    standard_min_ratio: float
    standard_min_momentum_pct: float
    very_strong_lamports: int
    standard_lamports: int
    weak_lamports: int


@dataclass(frozen=True)
class ScoringBands:
    strong_min_wallets: int
    medium_min_wallets: int
    strong_score: float
    medium_score: float
    base_score: float
    low_risk_min_wallets: int


def _build(cls, raw: dict[str, Any], section: str):
    values: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in raw:
            raise SignalConfigError(f"{section}.{f.name} is missing")
        caster = int if f.type in ("int", int) else float
        try:
            values[f.name] = caster(raw[f.name])
        except (TypeError, ValueError) as exc:
            raise SignalConfigError(f"{section}.{f.name} is not numeric: {raw[f.name]!r}") from exc
    return cls(**values)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


@dataclass(frozen=True)
class SignalConfig:
    version: str
    thresholds: GlobalThresholds
    tiers: TierTable
    priority_fee: PriorityFeeBands
    scoring: ScoringBands

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SignalConfig":
        if not isinstance(raw, dict):
            raise SignalConfigError("signal config document must be an object")
        thresholds = _build(GlobalThresholds, raw.get("global") or {}, "global")
        tiers = TierTable(TierConfig.from_dict(row) for row in (raw.get("tiers") or []))
        if tiers.global_min != thresholds.min_market_cap_usd or tiers.global_max != thresholds.max_market_cap_usd:
            raise SignalConfigError(
                "tiers must cover exactly the global market-cap range "
                f"[{thresholds.min_market_cap_usd}, {thresholds.max_market_cap_usd})"
            )
        if thresholds.buy_sell_weak_ratio < thresholds.buy_sell_block_ratio:
            raise SignalConfigError("buy_sell_weak_ratio must be >= buy_sell_block_ratio")
        if thresholds.momentum_min_pct >= thresholds.momentum_max_pct:
            raise SignalConfigError("momentum_min_pct must be below momentum_max_pct")
        return cls(
            version=str(raw.get("version") or "unversioned"),
            thresholds=thresholds,
            tiers=tiers,
            priority_fee=_build(PriorityFeeBands, raw.get("priority_fee") or {}, "priority_fee"),
            scoring=_build(ScoringBands, raw.get("scoring") or {}, "scoring"),
        )

    @classmethod
    def default(cls) -> "SignalConfig":
        return cls.from_dict(DEFAULT_SIGNAL_CONFIG)


def load_signal_config(path: str | None = None) -> SignalConfig:
    """Load the config document once; file values override built-in defaults key by key.

    Tiers are replaced as a whole list when the file provides them.
    """
    doc_path = config.SIGNAL_CONFIG_FILE if path is None else path
    if not doc_path:
        return SignalConfig.default()
    if not os.path.exists(doc_path):
        raise SignalConfigError(f"SIGNAL_CONFIG_FILE does not exist: {doc_path}")
    try:
        raw = read_json_locked(doc_path)
    except ValueError as exc:
        raise SignalConfigError(f"SIGNAL_CONFIG_FILE is not valid JSON: {doc_path}: {exc}") from exc
    merged = _deep_merge(DEFAULT_SIGNAL_CONFIG, raw)
    cfg = SignalConfig.from_dict(merged)
    logger.info("Signal config loaded version=%s path=%s tiers=%s", cfg.version, doc_path, len(cfg.tiers))
    return cfg


@dataclass(frozen=True)
class EngineFlags:
    presignal_push_enabled: bool = False
    execution_push_enabled: bool = False
    enrichment_enabled: bool = False

    @classmethod
    def from_config(cls) -> "EngineFlags":
        return cls(
            presignal_push_enabled=bool(config.PRESIGNAL_PUSH_ENABLED),
            execution_push_enabled=bool(config.EXECUTION_PUSH_ENABLED),
            enrichment_enabled=bool(config.ENRICHMENT_ENABLED),
        )
