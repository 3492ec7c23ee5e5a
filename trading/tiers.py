"""Market-cap tier table and classifier."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional


class SignalConfigError(ValueError):
    """Raised when a tier table or signal config document is invalid."""


@dataclass(frozen=True)
class QualityRequirement:
    min_quality_wallets: int
    min_buy_amount_usd: Optional[float] = None


@dataclass(frozen=True)
class TierConfig:
    name: str
    min_mcap: float
    max_mcap: float
    time_window_minutes: int
    min_wallets: int
    activity_window_minutes: int
    min_unique_buyers: int
    quality_requirement: Optional[QualityRequirement] = None

    def contains(self, market_cap: float) -> bool:
        # Half-open band: [min, max).
        return self.min_mcap <= market_cap < self.max_mcap

    def label(self) -> str:
        return f"{self.name} (${self.min_mcap / 1000:.0f}K-${self.max_mcap / 1000:.0f}K)"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "TierConfig":
        try:
            quality_raw = raw.get("quality_requirement")
            quality = None
            if quality_raw:
                min_buy = quality_raw.get("min_buy_amount_usd")
                quality = QualityRequirement(
                    min_quality_wallets=int(quality_raw["min_quality_wallets"]),
                    min_buy_amount_usd=float(min_buy) if min_buy is not None else None,
                )
            return cls(
                name=str(raw["name"]),
                min_mcap=float(raw["min_mcap"]),
                max_mcap=float(raw["max_mcap"]),
                time_window_minutes=int(raw["time_window_minutes"]),
                min_wallets=int(raw["min_wallets"]),
                activity_window_minutes=int(raw["activity_window_minutes"]),
                min_unique_buyers=int(raw["min_unique_buyers"]),
                quality_requirement=quality,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SignalConfigError(f"invalid tier definition {raw!r}: {exc}") from exc


class TierTable:
    """Ordered, contiguous, non-overlapping market-cap bands."""

    def __init__(self, tiers: Iterable[TierConfig]) -> None:
        self.tiers: tuple[TierConfig, ...] = tuple(tiers)
        self._validate()

    def _validate(self) -> None:
        if not self.tiers:
            raise SignalConfigError("tier table is empty")
        for tier in self.tiers:
            if tier.min_mcap < 0 or tier.max_mcap <= tier.min_mcap:
                raise SignalConfigError(f"{tier.name}: empty or negative band")
            if tier.min_wallets < 1 or tier.time_window_minutes <= 0 or tier.activity_window_minutes <= 0:
                raise SignalConfigError(f"{tier.name}: windows and min_wallets must be positive")
        for prev, cur in zip(self.tiers, self.tiers[1:]):
            if cur.min_mcap < prev.max_mcap:
                raise SignalConfigError(f"{prev.name} overlaps {cur.name}")
            if cur.min_mcap > prev.max_mcap:
                raise SignalConfigError(f"gap between {prev.name} and {cur.name}")

    @property
    def global_min(self) -> float:
        return self.tiers[0].min_mcap

    @property
    def global_max(self) -> float:
        return self.tiers[-1].max_mcap

    def classify(self, market_cap: float | None) -> Optional[TierConfig]:
        if market_cap is None:
            return None
        for tier in self.tiers:
            if tier.contains(market_cap):
                return tier
        return None

    def __iter__(self):
        return iter(self.tiers)

    def __len__(self) -> int:
        return len(self.tiers)
