from __future__ import annotations

import json
import multiprocessing
import os
import tempfile
import unittest

from utils.state_file import (
    StateFileLockError,
    append_jsonl_locked,
    read_json_locked,
    read_jsonl_locked,
    state_file_lock,
)


def _hold_lock_worker(path: str, ready: multiprocessing.Event, release: multiprocessing.Event) -> None:
    with state_file_lock(path, timeout_seconds=2.0, poll_seconds=0.01):
        ready.set()
        release.wait(2.0)


class StateFileLockingTests(unittest.TestCase):
    def test_jsonl_append_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            queue_path = os.path.join(tmp_dir, "execution_queue.jsonl")
            rows = [
                {"kind": "pre_signal", "payload": {"tokenMint": "MintA", "currentWallets": 2}},
                {"kind": "signal", "payload": {"tokenMint": "MintA", "strength": "strong"}},
            ]
            for row in rows:
                append_jsonl_locked(queue_path, row, timeout_seconds=0.5, poll_seconds=0.01)
            self.assertEqual(read_jsonl_locked(queue_path), rows)

    def test_missing_jsonl_reads_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            self.assertEqual(read_jsonl_locked(os.path.join(tmp_dir, "absent.jsonl")), [])

    def test_json_reader_tolerates_bom(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "signal_config.json")
            with open(path, "w", encoding="utf-8-sig") as f:
                json.dump({"version": "bom.v1"}, f)
            self.assertEqual(read_json_locked(path), {"version": "bom.v1"})

    def test_state_lock_is_exclusive(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "execution_queue.jsonl")
            ctx = multiprocessing.get_context("spawn")
            ready = ctx.Event()
            release = ctx.Event()
            proc = ctx.Process(target=_hold_lock_worker, args=(state_path, ready, release))
            proc.start()
            try:
                self.assertTrue(ready.wait(2.0), "worker did not acquire state lock in time")
                with self.assertRaises(StateFileLockError):
                    with state_file_lock(state_path, timeout_seconds=0.08, poll_seconds=0.01):
                        pass
            finally:
                release.set()
                proc.join(2.0)
                if proc.is_alive():
                    proc.terminate()
                    proc.join(1.0)
            self.assertEqual(proc.exitcode, 0)


if __name__ == "__main__":
    unittest.main()
