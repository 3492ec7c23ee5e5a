from __future__ import annotations

import json
import os
import tempfile
import unittest

from trading.decision_log import DecisionLogWriter
from tests.engine_fixtures import EngineHarness


class DecisionLogTests(unittest.IsolatedAsyncioTestCase):
    def test_disabled_writer_is_noop(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "decisions.jsonl")
            self.assertIsNone(DecisionLogWriter(path, enabled=False).write({"reason": "tier"}))
            self.assertFalse(os.path.exists(path))

    async def test_engine_writes_one_row_per_decision(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "logs", "decisions.jsonl")
            h = EngineHarness()
            h.engine.decision_log = DecisionLogWriter(path, enabled=True)
            rejected = h.buy("A", 30)
            trigger = h.seed_tier3_consensus()

            await h.evaluate(rejected)
            await h.evaluate(trigger)
            with open(path, "r", encoding="utf-8") as f:
                rows = [json.loads(line) for line in f if line.strip()]

        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[0]["decision"], "reject")
        self.assertEqual(rows[0]["decision_stage"], "cascade")
        self.assertEqual(rows[0]["reason_category"], "filter")
        self.assertEqual(rows[1]["decision"], "signal")
        self.assertEqual(rows[1]["reason_code"], "SIGNAL_CREATED")
        self.assertEqual(rows[1]["tier"], "Tier 3")


if __name__ == "__main__":
    unittest.main()
