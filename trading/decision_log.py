"""JSONL writer for engine decisions (one row per evaluated buy)."""

from __future__ import annotations

import json
import logging
import os
from typing import Any

import config
from utils.log_contracts import signal_decision_event

logger = logging.getLogger(__name__)


class DecisionLogWriter:
    def __init__(self, path: str | None = None, enabled: bool | None = None) -> None:
        self.enabled = bool(config.DECISIONS_LOG_ENABLED if enabled is None else enabled)
        self.path = str(path or config.DECISIONS_LOG_FILE or os.path.join("logs", "decisions.jsonl"))

    def write(self, event: dict[str, Any]) -> dict[str, Any] | None:
        if not self.enabled:
            return None
        try:
            row = signal_decision_event(dict(event), run_tag=config.RUN_TAG)
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=False, default=str) + "\n")
            return row
        except Exception:
            logger.exception("DECISION_LOG write failed")
            return None
