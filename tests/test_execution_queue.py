from __future__ import annotations

import os
import tempfile
import unittest

from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

import config
from trading.execution_queue import (
    KIND_PRE_SIGNAL,
    KIND_SIGNAL,
    ExecutionQueueError,
    ExecutionSignal,
    FileExecutionQueue,
    HttpExecutionQueue,
    build_execution_queue,
)
from utils.http_client import ResilientHttpClient
from utils.state_file import read_jsonl_locked


def _execution() -> ExecutionSignal:
    return ExecutionSignal(
        signal_type="consensus",
        token_mint="MintA",
        market_cap_usd=250_000,
        liquidity_usd=30_000,
        entry_price_usd=0.00025,
        stop_loss_percent=20.0,
        take_profit_percent=30.0,
        strength="strong",
        priority_fee_lamports=500_000,
        wallets=("WalletA", "WalletB"),
    )


class ExecutionPayloadTests(unittest.TestCase):
    def test_payload_is_camel_case(self) -> None:
        payload = _execution().to_payload()
        self.assertEqual(payload["tokenMint"], "MintA")
        self.assertEqual(payload["priorityFeeLamports"], 500_000)
        self.assertEqual(payload["wallets"], ["WalletA", "WalletB"])
        self.assertEqual(payload["takeProfitPercent"], 30.0)


class FileExecutionQueueTests(unittest.IsolatedAsyncioTestCase):
    async def test_pushes_append_jsonl_rows(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "queue", "execution_queue.jsonl")
            queue = FileExecutionQueue(path)
            await queue.push(KIND_PRE_SIGNAL, {"tokenMint": "MintA", "currentWallets": 2})
            await queue.push(KIND_SIGNAL, _execution().to_payload())
            rows = read_jsonl_locked(path)
        self.assertEqual([r["kind"] for r in rows], [KIND_PRE_SIGNAL, KIND_SIGNAL])
        self.assertEqual(rows[1]["payload"]["strength"], "strong")
        self.assertIn("ts", rows[0])

    async def test_http_mode_requires_url(self) -> None:
        old = (config.EXECUTION_QUEUE_MODE, config.EXECUTION_QUEUE_URL)
        config.EXECUTION_QUEUE_MODE, config.EXECUTION_QUEUE_URL = "http", ""
        try:
            with self.assertRaises(ValueError):
                build_execution_queue()
        finally:
            config.EXECUTION_QUEUE_MODE, config.EXECUTION_QUEUE_URL = old


class HttpExecutionQueueTests(AioHTTPTestCase):
    async def get_application(self):
        self.received: list[dict] = []
        self.status = 202

        async def handle(request: web.Request) -> web.Response:
            self.received.append(await request.json())
            return web.json_response({"queued": True}, status=self.status)

        app = web.Application()
        app.router.add_post("/queue", handle)
        return app

    async def _queue(self) -> HttpExecutionQueue:
        http = ResilientHttpClient(timeout_seconds=2.0)
        self.addAsyncCleanup(http.close)
        return HttpExecutionQueue(str(self.server.make_url("/queue")), http=http)

    async def test_push_posts_envelope(self) -> None:
        queue = await self._queue()
        await queue.push(KIND_SIGNAL, _execution().to_payload())
        self.assertEqual(len(self.received), 1)
        self.assertEqual(self.received[0]["kind"], KIND_SIGNAL)
        self.assertEqual(self.received[0]["payload"]["tokenMint"], "MintA")

    async def test_rejected_push_raises(self) -> None:
        self.status = 400
        queue = await self._queue()
        with self.assertRaises(ExecutionQueueError):
            await queue.push(KIND_SIGNAL, _execution().to_payload())
        self.assertEqual(len(self.received), 1)


if __name__ == "__main__":
    unittest.main()
