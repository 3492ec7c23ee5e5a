"""Execution priority fee from buy pressure and 5m momentum."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from trading.signal_config import PriorityFeeBands

STRENGTH_VERY_STRONG = "very_strong"
STRENGTH_STANDARD = "standard"
STRENGTH_WEAK = "weak"


@dataclass(frozen=True)
class PriorityFee:
    level: str
    lamports: int


def priority_fee_for(
    buy_sell_ratio: Optional[float],
    momentum_pct: Optional[float],
    bands: PriorityFeeBands,
) -> PriorityFee:
    """Unknown ratio or momentum falls through to the weak band."""
    if buy_sell_ratio is not None and momentum_pct is not None:
        if (
            buy_sell_ratio >= bands.very_strong_min_ratio
            and bands.very_strong_momentum_min_pct <= momentum_pct <= bands.very_strong_momentum_max_pct
        ):
            return PriorityFee(STRENGTH_VERY_STRONG, int(bands.very_strong_lamports))
        if buy_sell_ratio >= bands.standard_min_ratio and momentum_pct >= bands.standard_min_momentum_pct:
            return PriorityFee(STRENGTH_STANDARD, int(bands.standard_lamports))
    return PriorityFee(STRENGTH_WEAK, int(bands.weak_lamports))
