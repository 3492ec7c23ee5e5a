"""One-wallet-short speculative pre-signal."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from database.models import SIDE_BUY
from trading.tiers import TierConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreSignalEvent:
    token_mint: str
    token_symbol: str
    market_cap_usd: float
    tier: str
    current_wallets: int
    required_wallets: int
    liquidity_usd: Optional[float] = None
    entry_price_usd: Optional[float] = None
    wallets: tuple[str, ...] = field(default_factory=tuple)

    def to_payload(self) -> dict[str, Any]:
        return {
            "tokenMint": self.token_mint,
            "tokenSymbol": self.token_symbol,
            "marketCapUsd": self.market_cap_usd,
            "liquidityUsd": self.liquidity_usd,
            "entryPriceUsd": self.entry_price_usd,
            "tier": self.tier,
            "currentWallets": self.current_wallets,
            "requiredWallets": self.required_wallets,
            "wallets": list(self.wallets),
        }


def pre_signal_due(lookback_buys: Iterable[Any], trade: Any, tier: TierConfig) -> bool:
    """True only on the buy that brings the lookback wallet count to ``min_wallets - 1``.

    ``lookback_buys`` holds the buys in the lookback window ending at ``trade``.
    Equality rather than ``>=`` keeps later buys from re-firing, and a wallet
    that already bought earlier in the window did not change the count.
    """
    if tier.min_wallets < 2:
        return False
    buys = [t for t in lookback_buys if t.side == SIDE_BUY]
    wallets = {t.wallet_id for t in buys}
    if len(wallets) != tier.min_wallets - 1 or trade.wallet_id not in wallets:
        return False
    for other in buys:
        if other.wallet_id != trade.wallet_id or other.id == trade.id:
            continue
        if (other.timestamp, other.id) < (trade.timestamp, trade.id):
            return False
    return True


def build_pre_signal(
    *,
    token: Any,
    tier: TierConfig,
    wallet_addresses: Iterable[str],
    market_cap: float,
    liquidity: Optional[float],
    entry_price: Optional[float],
) -> PreSignalEvent:
    wallets = tuple(wallet_addresses)
    return PreSignalEvent(
        token_mint=str(getattr(token, "mint_address", "") or ""),
        token_symbol=str(getattr(token, "symbol", "") or "N/A"),
        market_cap_usd=float(market_cap),
        tier=tier.name,
        current_wallets=len(wallets),
        required_wallets=tier.min_wallets,
        liquidity_usd=liquidity,
        entry_price_usd=entry_price,
        wallets=wallets,
    )
