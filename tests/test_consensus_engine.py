from __future__ import annotations

import asyncio
import unittest
from unittest.mock import patch

from database.models import SIGNAL_ACTIVE
from monitor.market_data import MarketSnapshot
from monitor.notifier import SIGNAL_TYPE_CONSENSUS, SIGNAL_TYPE_UPDATE
from trading.execution_queue import KIND_SIGNAL
from trading.signal_config import EngineFlags
from tests.engine_fixtures import EngineHarness, FakeMarketData


class ConsensusEngineBuyTests(unittest.IsolatedAsyncioTestCase):
    async def test_tier3_consensus_creates_strong_signal(self) -> None:
        h = EngineHarness()
        trigger = h.seed_tier3_consensus()

        result = await h.evaluate(trigger)

        self.assertTrue(result.consensus_found, msg=result.reason)
        self.assertIsNotNone(result.signal_created)
        created = result.signal_created or {}
        self.assertEqual(created["tier"], "Tier 3")
        self.assertEqual(created["qualityScore"], 90.0)
        self.assertEqual(created["riskLevel"], "low")
        self.assertFalse(created["isUpdate"])
        self.assertEqual(created["walletCount"], 8)
        self.assertTrue(result.execution_pushed)
        self.assertEqual(result.reason_code, "SIGNAL_CREATED")

        signals = h.store.list_signals(h.token.id)
        self.assertEqual(len(signals), 1)
        self.assertEqual(signals[0].status, SIGNAL_ACTIVE)
        self.assertEqual(signals[0].meta["lastUpdateTradeId"], trigger.id)
        self.assertEqual(signals[0].notification_id, "msg-1")

    async def test_tier3_side_effects_run_in_background(self) -> None:
        h = EngineHarness()
        trigger = h.seed_tier3_consensus()

        await h.evaluate(trigger)

        self.assertEqual(h.queue.kinds(), [KIND_SIGNAL])
        payload = h.queue.pushed[0][1]
        self.assertEqual(payload["strength"], "strong")
        # buy/sell 2.5 with +10% momentum sits in the standard fee band.
        self.assertEqual(payload["priorityFeeLamports"], 500_000)
        self.assertEqual(payload["stopLossPercent"], 20.0)
        self.assertEqual(len(h.notifier.sent), 1)
        self.assertEqual(h.notifier.sent[0].signal_type, SIGNAL_TYPE_CONSENSUS)
        self.assertEqual(len(h.notifier.updated), 1)
        correlation_id, _, enrichment = h.notifier.updated[0]
        self.assertEqual(correlation_id, "msg-1")
        self.assertEqual(enrichment["tiered_wallets"], 2)
        self.assertEqual(len(h.background.errors), 0)

    async def test_unknown_market_cap_fails_safe(self) -> None:
        h = EngineHarness()
        h.buy("A", 10, market_cap=None)
        h.buy("B", 5, market_cap=None)
        h.buy("C", 3, market_cap=None)
        trigger = h.buy("D", 0, market_cap=None)

        result = await h.evaluate(trigger)

        self.assertFalse(result.consensus_found)
        self.assertEqual(result.reason, "market_cap_unknown")
        self.assertEqual(result.reason_code, "DATA_MARKET_CAP_UNKNOWN")
        self.assertEqual(h.store.list_signals(h.token.id), [])
        self.assertEqual(h.queue.pushed, [])

    async def test_market_data_fallback_is_consulted_when_trade_lacks_mcap(self) -> None:
        market = FakeMarketData(None)
        h = EngineHarness(market_data=market)
        trigger = h.buy("A", 0, market_cap=None)

        result = await h.evaluate(trigger)

        self.assertFalse(result.consensus_found)
        self.assertEqual(result.reason, "market_cap_unknown")
        self.assertEqual(market.calls, [h.token.mint_address])

    async def test_market_data_snapshot_supplies_market_cap(self) -> None:
        market = FakeMarketData(MarketSnapshot(market_cap=100_000, liquidity=30_000, price_usd=0.0001))
        h = EngineHarness(market_data=market)
        trigger = h.buy("A", 0, market_cap=None, liquidity=None)

        result = await h.evaluate(trigger)

        # One wallet in a Tier 1 market never passes the wallet-count gate.
        self.assertFalse(result.consensus_found)
        self.assertEqual(result.reason, "tier_wallets")
        self.assertEqual(result.reason_code, "FILTER_TIER_WALLETS")

    async def test_market_cap_outside_tiers_is_rejected(self) -> None:
        h = EngineHarness()
        trigger = h.buy("A", 0, market_cap=650_000)

        result = await h.evaluate(trigger)

        self.assertFalse(result.consensus_found)
        self.assertEqual(result.reason, "market_cap_range")

    async def test_untiered_market_never_signals_with_tier_gates_disabled(self) -> None:
        h = EngineHarness()
        h.engine.cascade = h.engine.cascade.with_overrides(
            market_cap_range=None,
            tier=None,
            tier_wallets=None,
            tier_activity=None,
        )
        trigger = h.buy("A", 0, market_cap=650_000)

        result = await h.evaluate(trigger)

        self.assertFalse(result.consensus_found)
        self.assertEqual(result.reason, "tier")
        self.assertEqual(h.store.list_signals(h.token.id), [])

    async def test_missing_trade_is_rejected(self) -> None:
        h = EngineHarness()

        result = await h.engine.evaluate_buy("nope", h.token.id, "w", h.token.created_at)

        self.assertFalse(result.consensus_found)
        self.assertEqual(result.reason, "trade_not_found")

    async def test_collaborator_error_is_reported_not_raised(self) -> None:
        h = EngineHarness()
        trigger = h.buy("A", 0)
        with patch.object(h.store, "find_trades_in_window", side_effect=RuntimeError("db down")):
            result = await h.evaluate(trigger)
        self.assertFalse(result.consensus_found)
        self.assertEqual(result.reason, "error")


class ConsensusEngineLifecycleTests(unittest.IsolatedAsyncioTestCase):
    async def test_wallet_count_only_increases(self) -> None:
        h = EngineHarness()
        trigger = h.seed_tier3_consensus()

        first = await h.evaluate(trigger)
        later = h.buy("W5", -1, value_usd=80, price=0.00028)
        second = await h.evaluate(later)
        replay_first = await h.evaluate(trigger)
        replay_second = await h.evaluate(later)

        self.assertEqual(first.signal_created["walletCount"], 8)
        self.assertIsNotNone(second.signal_created, msg=second.reason)
        self.assertTrue(second.signal_created["isUpdate"])
        self.assertEqual(second.signal_created["walletCount"], 9)
        self.assertEqual(second.signal_created["previousWalletCount"], 8)
        self.assertEqual(second.signal_created["id"], first.signal_created["id"])
        # Updates notify but never push a second execution.
        self.assertIsNone(second.execution_pushed)
        self.assertEqual(h.queue.kinds(), [KIND_SIGNAL])

        for replay in (replay_first, replay_second):
            self.assertTrue(replay.consensus_found)
            self.assertIsNone(replay.signal_created)
            self.assertEqual(replay.reason, "already_notified")

        signals = h.store.list_signals(h.token.id)
        self.assertEqual(len(signals), 1)
        self.assertEqual(signals[0].wallet_count, 9)
        self.assertEqual(signals[0].meta["lastUpdateTradeId"], later.id)
        self.assertEqual(
            [n.signal_type for n in h.notifier.sent],
            [SIGNAL_TYPE_CONSENSUS, SIGNAL_TYPE_UPDATE],
        )

    async def test_concurrent_triggers_create_one_signal(self) -> None:
        h = EngineHarness()
        trigger = h.seed_tier3_consensus()

        results = await asyncio.gather(
            *(h.engine.evaluate_buy(trigger.id, trigger.token_id, trigger.wallet_id, trigger.timestamp) for _ in range(4))
        )
        await h.background.drain(timeout=5.0)

        created = [r for r in results if r.signal_created is not None]
        self.assertEqual(len(created), 1)
        self.assertTrue(all(r.consensus_found for r in results))
        self.assertEqual(len(h.store.list_signals(h.token.id)), 1)
        self.assertEqual(h.queue.kinds(), [KIND_SIGNAL])
        self.assertEqual(len(h.notifier.sent), 1)

    async def test_stale_read_during_evaluation_keeps_one_signal(self) -> None:
        h = EngineHarness()
        trigger = h.seed_tier3_consensus()
        first = await h.evaluate(trigger)

        real_find = h.store.find_active_signal
        reads: list[int] = []

        def stale_then_real(token_id, model):
            reads.append(1)
            return None if len(reads) == 1 else real_find(token_id, model)

        with patch.object(h.store, "find_active_signal", side_effect=stale_then_real):
            replay = await h.evaluate(trigger)

        self.assertEqual(len(reads), 2)
        self.assertTrue(replay.consensus_found)
        self.assertEqual(replay.reason, "already_notified")
        signals = h.store.list_signals(h.token.id)
        self.assertEqual([s.id for s in signals], [first.signal_created["id"]])
        self.assertEqual(h.queue.kinds(), [KIND_SIGNAL])

    async def test_execution_push_respects_flag(self) -> None:
        h = EngineHarness(flags=EngineFlags(execution_push_enabled=False))
        trigger = h.seed_tier3_consensus()

        result = await h.evaluate(trigger)

        self.assertIsNotNone(result.signal_created)
        self.assertFalse(result.execution_pushed)
        self.assertEqual(h.queue.pushed, [])
        # Enrichment is off too, so the notification is never edited.
        self.assertEqual(len(h.notifier.sent), 1)
        self.assertEqual(h.notifier.updated, [])


if __name__ == "__main__":
    unittest.main()
