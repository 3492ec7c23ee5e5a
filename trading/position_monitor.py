"""Wallet-exit tracking for active consensus signals."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from database.db import SignalStore
from database.models import SIDE_SELL
from trading.window_stats import trade_price_usd

logger = logging.getLogger(__name__)

ACTION_FULL_EXIT = "full_exit"
ACTION_PARTIAL_EXIT = "partial_exit"
ACTION_HOLD = "hold"

FULL_EXIT_SHARE_PCT = 50.0
PARTIAL_EXIT_SHARE_PCT = 30.0
FULL_EXIT_WALLET_SCORE = 80.0
PARTIAL_EXIT_WALLET_SCORE = 60.0
DEFAULT_WALLET_SCORE = 50.0


@dataclass(frozen=True)
class ExitSignal:
    signal_id: str
    token_id: str
    action: str
    strength: str
    exit_share_pct: float
    exited_wallets: int
    holding_wallets: int
    trigger_wallet_id: str
    trigger_trade_id: str
    price_usd: Optional[float] = None
    pnl_pct: Optional[float] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "signalId": self.signal_id,
            "tokenId": self.token_id,
            "action": self.action,
            "strength": self.strength,
            "exitSharePct": self.exit_share_pct,
            "exitedWallets": self.exited_wallets,
            "holdingWallets": self.holding_wallets,
            "triggerWalletId": self.trigger_wallet_id,
            "triggerTradeId": self.trigger_trade_id,
            "priceUsd": self.price_usd,
            "pnlPct": self.pnl_pct,
        }


def classify_exit(exit_share_pct: float, wallet_score: float) -> tuple[str, str]:
    if exit_share_pct >= FULL_EXIT_SHARE_PCT or wallet_score >= FULL_EXIT_WALLET_SCORE:
        return ACTION_FULL_EXIT, "strong"
    if exit_share_pct >= PARTIAL_EXIT_SHARE_PCT or wallet_score >= PARTIAL_EXIT_WALLET_SCORE:
        return ACTION_PARTIAL_EXIT, "medium"
    return ACTION_HOLD, "weak"


@dataclass(frozen=True)
class ExitOutcome:
    closed: bool
    exit_signal: Optional[ExitSignal] = None


class PositionMonitor:
    """Marks signal wallets as exited when they sell.

    The signal closes once at least half of its wallets have sold. A single
    high-score wallet selling raises the recommendation without closing.
    """

    def __init__(self, store: SignalStore, model: str = "consensus") -> None:
        self.store = store
        self.model = model

    def record_wallet_exit(self, trade: Any) -> ExitOutcome:
        if trade is None or trade.side != SIDE_SELL:
            return ExitOutcome(False)
        signal = self.store.find_active_signal(trade.token_id, self.model)
        if signal is None:
            return ExitOutcome(False)
        meta = dict(signal.meta or {})
        wallet_ids = list(meta.get("walletIds") or [])
        exited = list(meta.get("exitedWalletIds") or [])
        if trade.wallet_id not in wallet_ids or trade.wallet_id in exited:
            return ExitOutcome(False)

        exited.append(trade.wallet_id)
        share = len(exited) / len(wallet_ids) * 100.0
        wallet = self.store.get_wallet(trade.wallet_id)
        score = float(wallet.score) if wallet is not None and wallet.score is not None else DEFAULT_WALLET_SCORE
        action, strength = classify_exit(share, score)

        price = trade_price_usd(trade) or None
        entry = meta.get("entryPriceUsd")
        pnl = None
        if price and entry:
            pnl = (price - float(entry)) / float(entry) * 100.0

        meta["exitedWalletIds"] = exited
        meta["lastExitAction"] = action
        self.store.update_signal(signal.id, meta=meta)
        closed = share >= FULL_EXIT_SHARE_PCT
        if closed:
            self.store.close_signal(signal.id)

        logger.info(
            "EXIT wallet token=%s signal=%s wallet=%s exited=%s/%s share=%.0f%% action=%s closed=%s",
            trade.token_id,
            signal.id,
            trade.wallet_id,
            len(exited),
            len(wallet_ids),
            share,
            action,
            closed,
        )
        if action == ACTION_HOLD:
            return ExitOutcome(closed)
        return ExitOutcome(
            closed,
            ExitSignal(
                signal_id=signal.id,
                token_id=trade.token_id,
                action=action,
                strength=strength,
                exit_share_pct=round(share, 2),
                exited_wallets=len(exited),
                holding_wallets=len(wallet_ids) - len(exited),
                trigger_wallet_id=trade.wallet_id,
                trigger_trade_id=trade.id,
                price_usd=price or None,
                pnl_pct=round(pnl, 2) if pnl is not None else None,
            ),
        )
