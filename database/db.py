"""Database helpers and CRUD operations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import config
from database.models import (
    SIDE_BUY,
    SIDE_SELL,
    SIGNAL_ACTIVE,
    SIGNAL_CLOSED,
    Base,
    Signal,
    SmartWallet,
    Token,
    Trade,
    WalletCorrelation,
)


def as_utc_naive(value: datetime) -> datetime:
    """Storage keeps naive UTC datetimes; aware inputs are converted."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _build_engine(url: str):
    if url.startswith("sqlite") and ":memory:" in url:
        # Single shared connection so every session sees the same in-memory DB.
        return create_engine(
            url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, future=True)


class SignalStore:
    """Trade/wallet/token/signal persistence consumed by the consensus engine."""

    def __init__(self, database_url: str | None = None) -> None:
        self.database_url = database_url or config.DATABASE_URL
        self.engine = _build_engine(self.database_url)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def get_db(self) -> Session:
        return self.SessionLocal()

    # wallets / tokens

    def get_or_create_wallet(
        self,
        address: str,
        label: str | None = None,
        score: float | None = None,
        tier: int | None = None,
    ) -> SmartWallet:
        db = self.get_db()
        try:
            wallet = db.query(SmartWallet).filter(SmartWallet.address == address).first()
            if wallet:
                return wallet
            wallet = SmartWallet(address=address, label=label, score=score, tier=tier)
            db.add(wallet)
            db.commit()
            db.refresh(wallet)
            return wallet
        finally:
            db.close()

    def get_wallet(self, wallet_id: str) -> Optional[SmartWallet]:
        db = self.get_db()
        try:
            return db.query(SmartWallet).filter(SmartWallet.id == wallet_id).first()
        finally:
            db.close()

    def get_wallets(self, wallet_ids: Iterable[str]) -> dict[str, SmartWallet]:
        ids = list(dict.fromkeys(wallet_ids))
        if not ids:
            return {}
        db = self.get_db()
        try:
            rows = db.query(SmartWallet).filter(SmartWallet.id.in_(ids)).all()
            return {row.id: row for row in rows}
        finally:
            db.close()

    def get_or_create_token(
        self,
        mint_address: str,
        symbol: str | None = None,
        total_supply: float | None = None,
    ) -> Token:
        db = self.get_db()
        try:
            token = db.query(Token).filter(Token.mint_address == mint_address).first()
            if token:
                if symbol and token.symbol != symbol:
                    token.symbol = symbol
                    db.commit()
                    db.refresh(token)
                return token
            token = Token(mint_address=mint_address, symbol=symbol, total_supply=total_supply)
            db.add(token)
            db.commit()
            db.refresh(token)
            return token
        finally:
            db.close()

    def get_token(self, token_id: str) -> Optional[Token]:
        db = self.get_db()
        try:
            return db.query(Token).filter(Token.id == token_id).first()
        finally:
            db.close()

    # trades

    def record_trade(
        self,
        *,
        token_id: str,
        wallet_id: str,
        side: str,
        timestamp: datetime,
        amount_token: float = 0.0,
        amount_base: float = 0.0,
        value_usd: float = 0.0,
        price_base_per_token: float = 0.0,
        market_cap_usd: float | None = None,
        liquidity_usd: float | None = None,
        trade_id: str | None = None,
    ) -> Trade:
        db = self.get_db()
        try:
            if trade_id:
                existing = db.query(Trade).filter(Trade.id == trade_id).first()
                if existing:
                    return existing
            trade = Trade(
                token_id=token_id,
                wallet_id=wallet_id,
                side=side,
                timestamp=as_utc_naive(timestamp),
                amount_token=float(amount_token or 0),
                amount_base=float(amount_base or 0),
                value_usd=float(value_usd or 0),
                price_base_per_token=float(price_base_per_token or 0),
                market_cap_usd=market_cap_usd,
                liquidity_usd=liquidity_usd,
            )
            if trade_id:
                trade.id = trade_id
            db.add(trade)
            db.commit()
            db.refresh(trade)
            return trade
        finally:
            db.close()

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        db = self.get_db()
        try:
            return db.query(Trade).filter(Trade.id == trade_id).first()
        finally:
            db.close()

    def find_trades_in_window(
        self,
        token_id: str,
        start: datetime,
        end: datetime,
        sides: tuple[str, ...] = (SIDE_BUY, SIDE_SELL),
    ) -> list[Trade]:
        db = self.get_db()
        try:
            return (
                db.query(Trade)
                .filter(
                    Trade.token_id == token_id,
                    Trade.side.in_(list(sides)),
                    Trade.timestamp >= as_utc_naive(start),
                    Trade.timestamp <= as_utc_naive(end),
                )
                .order_by(Trade.timestamp.asc(), Trade.id.asc())
                .all()
            )
        finally:
            db.close()

    def find_wallet_trades(self, wallet_id: str, since: datetime) -> list[Trade]:
        db = self.get_db()
        try:
            return (
                db.query(Trade)
                .filter(
                    Trade.wallet_id == wallet_id,
                    Trade.side.in_([SIDE_BUY, SIDE_SELL]),
                    Trade.timestamp >= as_utc_naive(since),
                )
                .order_by(Trade.timestamp.asc())
                .all()
            )
        finally:
            db.close()

    # signals

    def find_active_signal(self, token_id: str, model: str) -> Optional[Signal]:
        db = self.get_db()
        try:
            return (
                db.query(Signal)
                .filter(Signal.token_id == token_id, Signal.model == model, Signal.status == SIGNAL_ACTIVE)
                .first()
            )
        finally:
            db.close()

    def create_signal(
        self,
        *,
        token_id: str,
        model: str,
        meta: dict[str, Any],
        quality_score: float,
        risk_level: str,
        reasoning: str | None = None,
    ) -> Signal:
        """Insert an active signal. IntegrityError propagates on a duplicate active row."""
        db = self.get_db()
        try:
            signal = Signal(
                token_id=token_id,
                model=model,
                status=SIGNAL_ACTIVE,
                meta=dict(meta),
                quality_score=quality_score,
                risk_level=risk_level,
                reasoning=reasoning,
            )
            db.add(signal)
            try:
                db.commit()
            except Exception:
                db.rollback()
                raise
            db.refresh(signal)
            return signal
        finally:
            db.close()

    def update_signal(self, signal_id: str, **fields: Any) -> Optional[Signal]:
        db = self.get_db()
        try:
            signal = db.query(Signal).filter(Signal.id == signal_id).first()
            if not signal:
                return None
            for key, value in fields.items():
                if key == "meta":
                    # JSON columns are not mutation-tracked; always assign a copy.
                    value = dict(value or {})
                setattr(signal, key, value)
            db.commit()
            db.refresh(signal)
            return signal
        finally:
            db.close()

    def close_signal(self, signal_id: str) -> Optional[Signal]:
        return self.update_signal(signal_id, status=SIGNAL_CLOSED, closed_at=datetime.utcnow())

    def get_signal(self, signal_id: str) -> Optional[Signal]:
        db = self.get_db()
        try:
            return db.query(Signal).filter(Signal.id == signal_id).first()
        finally:
            db.close()

    def list_signals(self, token_id: str | None = None, model: str | None = None) -> list[Signal]:
        db = self.get_db()
        try:
            query = db.query(Signal)
            if token_id is not None:
                query = query.filter(Signal.token_id == token_id)
            if model is not None:
                query = query.filter(Signal.model == model)
            return query.order_by(Signal.created_at.asc()).all()
        finally:
            db.close()

    # wallet correlations

    def upsert_correlation(
        self,
        wallet_a_id: str,
        wallet_b_id: str,
        strength: float,
        shared_success_rate: float | None = None,
    ) -> WalletCorrelation:
        a, b = sorted((wallet_a_id, wallet_b_id))
        db = self.get_db()
        try:
            row = (
                db.query(WalletCorrelation)
                .filter(WalletCorrelation.wallet_a_id == a, WalletCorrelation.wallet_b_id == b)
                .first()
            )
            if row is None:
                row = WalletCorrelation(wallet_a_id=a, wallet_b_id=b)
                db.add(row)
            row.strength = float(strength)
            row.shared_success_rate = shared_success_rate
            db.commit()
            db.refresh(row)
            return row
        finally:
            db.close()

    def get_correlations(self, wallet_ids: Iterable[str]) -> list[WalletCorrelation]:
        ids = list(dict.fromkeys(wallet_ids))
        if len(ids) < 2:
            return []
        db = self.get_db()
        try:
            return (
                db.query(WalletCorrelation)
                .filter(
                    WalletCorrelation.wallet_a_id.in_(ids),
                    WalletCorrelation.wallet_b_id.in_(ids),
                )
                .all()
            )
        finally:
            db.close()


_default_store: SignalStore | None = None


def get_store() -> SignalStore:
    global _default_store
    if _default_store is None:
        _default_store = SignalStore(config.DATABASE_URL)
    return _default_store


def init_db() -> SignalStore:
    store = get_store()
    store.init_db()
    return store
