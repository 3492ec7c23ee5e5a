from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from database.db import SignalStore
from database.models import SIDE_BUY, SIDE_SELL
from trading.background import BackgroundDispatcher
from trading.consensus_engine import ConsensusEngine
from trading.signal_config import EngineFlags, SignalConfig

T0 = datetime(2025, 6, 1, 12, 0, 0)
MINT = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[Any] = []
        self.updated: list[tuple[str, Any, dict[str, Any]]] = []

    async def send_signal(self, notification: Any) -> str:
        self.sent.append(notification)
        return f"msg-{len(self.sent)}"

    async def update_signal(self, correlation_id: str, notification: Any, enrichment: dict[str, Any]) -> None:
        self.updated.append((correlation_id, notification, enrichment))

    async def close(self) -> None:
        return None


class FakeQueue:
    def __init__(self) -> None:
        self.pushed: list[tuple[str, dict[str, Any]]] = []

    async def push(self, kind: str, payload: dict[str, Any]) -> None:
        self.pushed.append((kind, payload))

    async def close(self) -> None:
        return None

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.pushed]


class FakeMarketData:
    def __init__(self, snapshot: Any = None) -> None:
        self.snapshot = snapshot
        self.calls: list[str] = []

    async def get_snapshot(self, mint_address: str) -> Any:
        self.calls.append(mint_address)
        return self.snapshot


class EngineHarness:
    """In-memory store plus an engine wired to fakes."""

    def __init__(
        self,
        *,
        flags: EngineFlags | None = None,
        signal_config: SignalConfig | None = None,
        market_data: Any = None,
        total_supply: float | None = 1_000_000_000,
    ) -> None:
        self.store = SignalStore("sqlite:///:memory:")
        self.store.init_db()
        self.notifier = FakeNotifier()
        self.queue = FakeQueue()
        self.market_data = market_data
        self.background = BackgroundDispatcher(4)
        self.engine = ConsensusEngine(
            self.store,
            signal_config or SignalConfig.default(),
            flags or EngineFlags(presignal_push_enabled=True, execution_push_enabled=True, enrichment_enabled=True),
            market_data=market_data,
            notifier=self.notifier,
            execution_queue=self.queue,
            background=self.background,
            lookback=timedelta(hours=2),
            model="consensus",
        )
        self.token = self.store.get_or_create_token(MINT, symbol="TEST", total_supply=total_supply)
        self._wallets: dict[str, Any] = {}

    def wallet(self, name: str, *, tier: int | None = None, score: float | None = None):
        if name not in self._wallets:
            self._wallets[name] = self.store.get_or_create_wallet(
                f"{name}Wa11et{'1' * (36 - len(name))}",
                label=name,
                score=score,
                tier=tier,
            )
        return self._wallets[name]

    def trade(
        self,
        name: str,
        minutes_before: float,
        *,
        side: str = SIDE_BUY,
        value_usd: float = 150.0,
        price: float = 0.00025,
        market_cap: float | None = 250_000,
        liquidity: float | None = 30_000,
        trade_id: str | None = None,
    ):
        wallet = self.wallet(name)
        return self.store.record_trade(
            trade_id=trade_id,
            token_id=self.token.id,
            wallet_id=wallet.id,
            side=side,
            timestamp=T0 - timedelta(minutes=minutes_before),
            amount_token=value_usd / price if price else 0.0,
            value_usd=value_usd,
            market_cap_usd=market_cap,
            liquidity_usd=liquidity,
        )

    def buy(self, name: str, minutes_before: float, **kwargs: Any):
        return self.trade(name, minutes_before, side=SIDE_BUY, **kwargs)

    def sell(self, name: str, minutes_before: float, **kwargs: Any):
        return self.trade(name, minutes_before, side=SIDE_SELL, **kwargs)

    async def evaluate(self, trade: Any):
        result = await self.engine.evaluate_buy(trade.id, trade.token_id, trade.wallet_id, trade.timestamp)
        await self.background.drain(timeout=5.0)
        return result

    def seed_tier3_consensus(self):
        """Tier 3 market (mcap $250K) where W4's buy completes a passing consensus.

        Twelve-minute window: W1 (tier 1), W2 (tier 2), W3, W4 plus one small sell.
        Volume spike 2.0x, buy/sell 2.5, 5m momentum +10%, diversity 80%, age 90m.
        """
        self.wallet("W1", tier=1, score=85)
        self.wallet("W2", tier=2, score=70)
        self.wallet("W3", tier=3, score=55)
        self.wallet("W4", tier=3, score=50)
        self.buy("H1", 90)
        self.buy("H2", 50)
        self.buy("H3", 40)
        self.buy("H1", 30)
        self.buy("H2", 20)
        self.buy("B5", 13)
        self.buy("W1", 10, value_usd=150)
        self.buy("W2", 7, value_usd=126)
        self.buy("W3", 4, value_usd=80, price=0.00025)
        self.sell("S1", 2, value_usd=64, price=0.00026)
        return self.buy("W4", 0, value_usd=80, price=0.000275)
