from __future__ import annotations

import unittest

from monitor.market_data import MarketDataClient
from utils.http_client import HttpResult


class _FakeHttp:
    def __init__(self, result: HttpResult | Exception) -> None:
        self.result = result
        self.urls: list[str] = []

    async def get_json(self, url: str, **kwargs) -> HttpResult:
        self.urls.append(url)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result

    def snapshot_stats(self, reset: bool = False):
        return {"dexscreener": {"ok": len(self.urls)}}


PAIRS = {
    "pairs": [
        {"chainId": "solana", "pairAddress": "shallow", "liquidity": {"usd": 5000}, "marketCap": 90000, "priceUsd": "0.00009"},
        {"chainId": "solana", "pairAddress": "deep", "liquidity": {"usd": 42000}, "fdv": 260000, "priceUsd": "0.00026"},
        {"chainId": "ethereum", "pairAddress": "other", "liquidity": {"usd": 999999}, "marketCap": 1},
    ]
}


class ParseSnapshotTests(unittest.TestCase):
    def test_deepest_pair_on_chain_wins(self) -> None:
        snap = MarketDataClient.parse_snapshot(PAIRS)
        self.assertEqual(snap.pair_address, "deep")
        self.assertEqual(snap.liquidity, 42000)
        # fdv stands in when marketCap is absent.
        self.assertEqual(snap.market_cap, 260000)
        self.assertAlmostEqual(snap.price_usd, 0.00026)

    def test_no_matching_pairs(self) -> None:
        self.assertIsNone(MarketDataClient.parse_snapshot({"pairs": []}))
        self.assertIsNone(MarketDataClient.parse_snapshot({"pairs": None}))
        self.assertIsNone(MarketDataClient.parse_snapshot("garbage"))


class MarketDataClientTests(unittest.IsolatedAsyncioTestCase):
    async def test_snapshot_success(self) -> None:
        http = _FakeHttp(HttpResult(ok=True, status=200, data=PAIRS))
        client = MarketDataClient(http=http)
        snap = await client.get_snapshot("  MintA  ")
        self.assertEqual(snap.pair_address, "deep")
        self.assertTrue(http.urls[0].endswith("/tokens/MintA"))
        self.assertEqual(client.runtime_stats(), {"dexscreener": {"ok": 1}})

    async def test_failures_map_to_none(self) -> None:
        for result in (
            HttpResult(ok=False, status=429, data=None, error="http_status_429"),
            HttpResult(ok=False, status=500, data=None, error="http_status_500"),
            RuntimeError("socket closed"),
        ):
            client = MarketDataClient(http=_FakeHttp(result))
            self.assertIsNone(await client.get_snapshot("MintA"))

    async def test_blank_mint_skips_request(self) -> None:
        http = _FakeHttp(HttpResult(ok=True, status=200, data=PAIRS))
        self.assertIsNone(await MarketDataClient(http=http).get_snapshot("  "))
        self.assertEqual(http.urls, [])


if __name__ == "__main__":
    unittest.main()
