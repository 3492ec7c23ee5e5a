from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


class ConfigEnvLoadingTests(unittest.TestCase):
    def _run(self, env_file: str, code: str) -> subprocess.CompletedProcess[str]:
        root = Path(__file__).resolve().parents[1]
        env = os.environ.copy()
        env["ENGINE_ENV_FILE"] = env_file
        return subprocess.run(
            [sys.executable, "-c", code],
            cwd=str(root),
            env=env,
            capture_output=True,
            text=True,
        )

    def test_missing_engine_env_file_fails_fast(self) -> None:
        result = self._run("data/__definitely_missing_env_for_test__.env", "import config; print('ok')")
        self.assertNotEqual(result.returncode, 0)
        details = (result.stdout + "\n" + result.stderr).lower()
        self.assertIn("engine_env_file", details)
        self.assertIn("does not exist", details)

    def test_existing_engine_env_file_is_applied(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "engine.env"
            env_path.write_text("UNITTEST_ENGINE_ENV_FLAG=loaded\n", encoding="utf-8")
            result = self._run(str(env_path), "import os, config; print(os.getenv('UNITTEST_ENGINE_ENV_FLAG', ''))")
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "loaded")

    def test_engine_keys_are_loaded_from_env(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "engine.env"
            env_path.write_text(
                "\n".join(
                    [
                        "CONSENSUS_LOOKBACK_HOURS=3",
                        "EXECUTION_PUSH_ENABLED=yes",
                        "PRESIGNAL_PUSH_ENABLED=0",
                        "HTTP_SOURCE_RATE_LIMITS=dexscreener:100/30,bogus",
                    ]
                )
                + "\n",
                encoding="utf-8-sig",
            )
            result = self._run(
                str(env_path),
                (
                    "import config; "
                    "print(f\"{config.CONSENSUS_LOOKBACK_HOURS}|"
                    "{config.EXECUTION_PUSH_ENABLED}|"
                    "{config.PRESIGNAL_PUSH_ENABLED}|"
                    "{config.HTTP_SOURCE_RATE_LIMITS['dexscreener']}\")"
                ),
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "3.0|True|False|(100, 30.0)")


if __name__ == "__main__":
    unittest.main()
