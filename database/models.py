"""SQLAlchemy models."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Float, Index, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()

SIDE_BUY = "buy"
SIDE_SELL = "sell"
SIDE_VOID = "void"

SIGNAL_ACTIVE = "active"
SIGNAL_CLOSED = "closed"


def _new_id() -> str:
    return uuid.uuid4().hex


class SmartWallet(Base):
    __tablename__ = "smart_wallets"

    id = Column(String, primary_key=True, default=_new_id)
    address = Column(String, unique=True, nullable=False, index=True)
    label = Column(String, nullable=True)
    score = Column(Float, nullable=True)
    tier = Column(Integer, nullable=True)  # 1=elite, 2=good, 3+=average
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Token(Base):
    __tablename__ = "tokens"

    id = Column(String, primary_key=True, default=_new_id)
    mint_address = Column(String, unique=True, nullable=False, index=True)
    symbol = Column(String, nullable=True)
    total_supply = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Trade(Base):
    __tablename__ = "trades"
    __table_args__ = (Index("ix_trades_token_ts", "token_id", "timestamp"),)

    id = Column(String, primary_key=True, default=_new_id)
    token_id = Column(String, nullable=False)
    wallet_id = Column(String, nullable=False, index=True)
    side = Column(String, nullable=False)  # buy/sell/void
    amount_token = Column(Float, default=0.0, nullable=False)
    amount_base = Column(Float, default=0.0, nullable=False)
    value_usd = Column(Float, default=0.0, nullable=False)
    price_base_per_token = Column(Float, default=0.0, nullable=False)
    market_cap_usd = Column(Float, nullable=True)
    liquidity_usd = Column(Float, nullable=True)
    timestamp = Column(DateTime, nullable=False)


class Signal(Base):
    __tablename__ = "signals"

    id = Column(String, primary_key=True, default=_new_id)
    token_id = Column(String, nullable=False, index=True)
    model = Column(String, nullable=False, default="consensus")
    status = Column(String, nullable=False, default=SIGNAL_ACTIVE)
    meta = Column(JSON, default=dict, nullable=False)
    quality_score = Column(Float, nullable=True)
    risk_level = Column(String, nullable=True)
    reasoning = Column(String, nullable=True)
    notification_id = Column(String, nullable=True)
    enrichment = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)

    @property
    def wallet_count(self) -> int:
        return int((self.meta or {}).get("walletCount", 0) or 0)


# One active signal per (token, model); closed rows are unconstrained.
Index(
    "ux_signals_active_token_model",
    Signal.token_id,
    Signal.model,
    unique=True,
    sqlite_where=Signal.status == SIGNAL_ACTIVE,
    postgresql_where=Signal.status == SIGNAL_ACTIVE,
)


class WalletCorrelation(Base):
    __tablename__ = "wallet_correlations"
    __table_args__ = (UniqueConstraint("wallet_a_id", "wallet_b_id", name="uq_wallet_pair"),)

    id = Column(Integer, primary_key=True)
    wallet_a_id = Column(String, nullable=False, index=True)
    wallet_b_id = Column(String, nullable=False, index=True)
    strength = Column(Float, default=0.0, nullable=False)  # 0..100
    shared_success_rate = Column(Float, nullable=True)  # percent
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
