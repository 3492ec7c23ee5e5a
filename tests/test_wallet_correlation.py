from __future__ import annotations

import unittest
from datetime import datetime, timedelta
from types import SimpleNamespace

from monitor.notifier import SIGNAL_TYPE_CLUSTER
from trading.wallet_correlation import WalletCorrelationService, pair_strength, shared_success_rate
from tests.engine_fixtures import T0, EngineHarness


def _trade(token_id: str, side: str, minutes: float) -> SimpleNamespace:
    return SimpleNamespace(token_id=token_id, side=side, timestamp=T0 + timedelta(minutes=minutes))


class PairStrengthTests(unittest.TestCase):
    def test_tight_same_direction_pair_is_maximal(self) -> None:
        a = [_trade(t, "buy", 0) for t in ("x", "y", "z")]
        b = [_trade(t, "buy", 2) for t in ("x", "y", "z")]
        self.assertEqual(pair_strength(a, b), 100.0)

    def test_too_few_shared_tokens(self) -> None:
        a = [_trade("x", "buy", 0), _trade("y", "buy", 0)]
        b = [_trade("x", "buy", 0), _trade("y", "buy", 0), _trade("q", "buy", 0)]
        self.assertIsNone(pair_strength(a, b))

    def test_opposite_direction_and_loose_timing_score_lower(self) -> None:
        a = [_trade(t, "buy", 0) for t in ("x", "y", "z")]
        b = [_trade(t, "sell", 20) for t in ("x", "y", "z")]
        # 30 for breadth, 0 for direction, 10 for 15-30 minute timing.
        self.assertAlmostEqual(pair_strength(a, b), 40.0, places=2)


class ClusterCheckTests(unittest.TestCase):
    def setUp(self) -> None:
        self.h = EngineHarness()
        self.service = WalletCorrelationService(self.h.store)
        self.ids = [self.h.wallet(name).id for name in ("A", "B", "C")]

    def _link(self, a: int, b: int, strength: float, success: float | None = None) -> None:
        self.h.store.upsert_correlation(self.ids[a], self.ids[b], strength, shared_success_rate=success)

    def test_all_pairs_above_threshold(self) -> None:
        self._link(0, 1, 80, 60.0)
        self._link(0, 2, 75, 40.0)
        self._link(1, 2, 72)
        check = self.service.check_cluster(self.ids)
        self.assertTrue(check.is_correlated)
        self.assertEqual(check.pair_count, 3)
        self.assertAlmostEqual(check.avg_strength, 75.67, places=2)
        self.assertEqual(self.service.cluster_performance(self.ids), 50.0)

    def test_missing_pair_is_not_a_cluster(self) -> None:
        self._link(0, 1, 95)
        self._link(0, 2, 95)
        check = self.service.check_cluster(self.ids)
        self.assertFalse(check.is_correlated)
        self.assertEqual(check.missing_pairs, 1)

    def test_weak_average_is_not_a_cluster(self) -> None:
        self._link(0, 1, 90)
        self._link(0, 2, 60)
        self._link(1, 2, 55)
        self.assertFalse(self.service.check_cluster(self.ids).is_correlated)

    def test_upsert_is_order_independent(self) -> None:
        self._link(1, 0, 50)
        self._link(0, 1, 81)
        rows = self.h.store.get_correlations(self.ids[:2])
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].strength, 81.0)

    def test_refresh_pair_from_trade_history(self) -> None:
        now = datetime(2025, 6, 2)
        for mint in ("MintX", "MintY", "MintZ"):
            token = self.h.store.get_or_create_token(mint)
            for idx, offset in ((0, 0), (1, 1)):
                self.h.store.record_trade(
                    token_id=token.id,
                    wallet_id=self.ids[idx],
                    side="buy",
                    timestamp=now - timedelta(days=1, minutes=offset),
                    value_usd=100.0,
                )
        strength = self.service.refresh_pair(self.ids[0], self.ids[1], now=now)
        self.assertEqual(strength, 100.0)
        self.assertIsNone(self.service.refresh_pair(self.ids[0], self.ids[2], now=now))


class SharedSuccessRateTests(unittest.TestCase):
    @staticmethod
    def _priced(token_id: str, side: str, minutes: float, price: float) -> SimpleNamespace:
        return SimpleNamespace(
            token_id=token_id,
            side=side,
            timestamp=T0 + timedelta(minutes=minutes),
            value_usd=100.0,
            amount_token=100.0 / price,
        )

    def test_only_tokens_both_closed_in_profit_count_as_success(self) -> None:
        a = [
            self._priced("x", "buy", 0, 0.001), self._priced("x", "sell", 60, 0.002),
            self._priced("y", "buy", 0, 0.001), self._priced("y", "sell", 60, 0.002),
        ]
        b = [
            self._priced("x", "buy", 1, 0.001), self._priced("x", "sell", 61, 0.003),
            self._priced("y", "buy", 1, 0.001), self._priced("y", "sell", 61, 0.0005),
        ]
        self.assertEqual(shared_success_rate(a, b), 50.0)

    def test_open_positions_give_no_rate(self) -> None:
        a = [self._priced("x", "buy", 0, 0.001)]
        b = [self._priced("x", "buy", 1, 0.001), self._priced("x", "sell", 60, 0.002)]
        self.assertIsNone(shared_success_rate(a, b))


class ClusterRefreshTests(unittest.TestCase):
    def setUp(self) -> None:
        self.h = EngineHarness()
        self.service = WalletCorrelationService(self.h.store)
        self.ids = sorted(self.h.wallet(name).id for name in ("A", "B"))

    def test_fresh_rows_are_kept(self) -> None:
        self.h.store.upsert_correlation(self.ids[0], self.ids[1], 85)
        self.assertEqual(self.service.refresh_cluster(self.ids, now=datetime.utcnow()), 0)

    def test_stale_rows_are_recomputed(self) -> None:
        self.h.store.upsert_correlation(self.ids[0], self.ids[1], 85)
        later = datetime.utcnow() + timedelta(days=2)
        self.assertEqual(self.service.refresh_cluster(self.ids, now=later), 1)
        # No shared history: the stored strength is left as it was.
        self.assertEqual(self.h.store.get_correlations(self.ids)[0].strength, 85.0)


def _seed_shared_history(h: EngineHarness, wallet_ids: list[str]) -> None:
    """Each wallet buys three tokens within minutes of the others and sells them higher."""
    for mint in ("MintX", "MintY", "MintZ"):
        token = h.store.get_or_create_token(mint)
        for offset, wallet_id in enumerate(wallet_ids):
            h.store.record_trade(
                token_id=token.id,
                wallet_id=wallet_id,
                side="buy",
                timestamp=T0 - timedelta(days=1, minutes=offset),
                amount_token=100_000.0,
                value_usd=100.0,
            )
            h.store.record_trade(
                token_id=token.id,
                wallet_id=wallet_id,
                side="sell",
                timestamp=T0 - timedelta(hours=12, minutes=offset),
                amount_token=100_000.0,
                value_usd=150.0,
            )


class ClusterEngineTests(unittest.IsolatedAsyncioTestCase):
    async def test_cluster_notification_sent(self) -> None:
        h = EngineHarness()
        ids = [h.wallet(name).id for name in ("A", "B", "C")]
        for a, b in ((0, 1), (0, 2), (1, 2)):
            h.store.upsert_correlation(ids[a], ids[b], 85)

        result = await h.engine.evaluate_cluster_correlation(h.token.id, ids, T0)
        await h.background.drain(timeout=5.0)

        self.assertEqual(result.to_dict(), {"clusterFound": True, "signalCreated": {"type": "cluster", "walletCount": 3}})
        self.assertEqual([n.signal_type for n in h.notifier.sent], [SIGNAL_TYPE_CLUSTER])

    async def test_cluster_found_from_empty_correlation_table(self) -> None:
        h = EngineHarness()
        ids = [h.wallet(name).id for name in ("A", "B", "C")]
        _seed_shared_history(h, ids)
        self.assertEqual(h.store.get_correlations(ids), [])

        result = await h.engine.evaluate_cluster_correlation(h.token.id, ids, T0)
        await h.background.drain(timeout=5.0)

        self.assertTrue(result.cluster_found)
        rows = h.store.get_correlations(ids)
        self.assertEqual(len(rows), 3)
        # 30 breadth + 20 direction (buy and sell each) + 30 timing.
        self.assertTrue(all(row.strength == 80.0 for row in rows))
        self.assertTrue(all(row.shared_success_rate == 100.0 for row in rows))
        self.assertEqual(h.notifier.sent[0].extra["cluster_performance"], 100.0)

    async def test_wallets_without_history_are_not_a_cluster(self) -> None:
        h = EngineHarness()
        ids = [h.wallet(name).id for name in ("A", "B", "C")]

        result = await h.engine.evaluate_cluster_correlation(h.token.id, ids, T0)

        self.assertFalse(result.cluster_found)
        self.assertEqual(h.store.get_correlations(ids), [])
        self.assertEqual(h.notifier.sent, [])

    async def test_single_wallet_is_never_a_cluster(self) -> None:
        h = EngineHarness()
        wallet_id = h.wallet("A").id
        result = await h.engine.evaluate_cluster_correlation(h.token.id, [wallet_id, wallet_id], T0)
        self.assertFalse(result.cluster_found)
        self.assertEqual(h.notifier.sent, [])


if __name__ == "__main__":
    unittest.main()
