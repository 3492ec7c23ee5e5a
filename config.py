"""Application configuration."""

import os
from pathlib import Path
from typing import Dict, Tuple

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_ENGINE_ENV_FILE = os.getenv("ENGINE_ENV_FILE", "").strip()
if _ENGINE_ENV_FILE:
    _engine_env_path = Path(_ENGINE_ENV_FILE).expanduser()
    if not _engine_env_path.is_absolute():
        _engine_env_path = (Path.cwd() / _engine_env_path).resolve()
    if not _engine_env_path.exists():
        raise FileNotFoundError(f"ENGINE_ENV_FILE does not exist: {_engine_env_path}")
    if not _engine_env_path.is_file():
        raise IsADirectoryError(f"ENGINE_ENV_FILE is not a file: {_engine_env_path}")
    try:
        _load_dotenv_safe(str(_engine_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load ENGINE_ENV_FILE '{_engine_env_path}': {exc}") from exc


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y", "on")


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except Exception:
            continue
        out[source] = (count, window_seconds)
    return out


def _parse_source_float_map(raw: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except Exception:
            continue
    return out


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///signals.db")
ENGINE_INSTANCE_ID = os.getenv("ENGINE_INSTANCE_ID", "").strip()
RUN_TAG = os.getenv("RUN_TAG", ENGINE_INSTANCE_ID).strip()

# Tiers + global thresholds document. Empty path means built-in defaults.
SIGNAL_CONFIG_FILE = os.getenv("SIGNAL_CONFIG_FILE", "").strip()

# Consensus lookback used for wallet counting and pre-signals.
CONSENSUS_LOOKBACK_HOURS = max(1.0, float(os.getenv("CONSENSUS_LOOKBACK_HOURS", "2")))
SIGNAL_MODEL = os.getenv("SIGNAL_MODEL", "consensus").strip() or "consensus"

# Outbound side effects. Read once at startup and passed into the engine.
PRESIGNAL_PUSH_ENABLED = _env_bool("PRESIGNAL_PUSH_ENABLED", "false")
EXECUTION_PUSH_ENABLED = _env_bool("EXECUTION_PUSH_ENABLED", "false")
ENRICHMENT_ENABLED = _env_bool("ENRICHMENT_ENABLED", "true")
BACKGROUND_MAX_CONCURRENCY = max(1, int(os.getenv("BACKGROUND_MAX_CONCURRENCY", "8")))

# Notification sink: telegram or local (JSONL file).
NOTIFY_MODE = os.getenv("NOTIFY_MODE", "local").strip().lower()
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "").strip()
DEXSCREENER_TOKEN_URL_TEMPLATE = os.getenv(
    "DEXSCREENER_TOKEN_URL_TEMPLATE",
    "https://dexscreener.com/solana/{token_address}",
)
EXPLORER_TOKEN_URL_TEMPLATE = os.getenv(
    "EXPLORER_TOKEN_URL_TEMPLATE",
    "https://solscan.io/token/{token_address}",
)

# Execution queue: http (POST to executor) or file (JSONL under lock).
EXECUTION_QUEUE_MODE = os.getenv("EXECUTION_QUEUE_MODE", "file").strip().lower()
EXECUTION_QUEUE_URL = os.getenv("EXECUTION_QUEUE_URL", "").strip()
EXECUTION_QUEUE_TIMEOUT = max(1, int(os.getenv("EXECUTION_QUEUE_TIMEOUT", "5")))

# Market data fallback (DexScreener tokens endpoint).
MARKET_DATA_API = os.getenv("MARKET_DATA_API", "https://api.dexscreener.com/latest/dex")
MARKET_DATA_CHAIN_ID = os.getenv("MARKET_DATA_CHAIN_ID", "solana").strip().lower()
MARKET_DATA_TIMEOUT = int(os.getenv("MARKET_DATA_TIMEOUT", "5"))
MARKET_DATA_RETRIES = max(1, int(os.getenv("MARKET_DATA_RETRIES", "1")))

HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.50")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_RATE_LIMIT_DELAY_SECONDS = max(0.0, float(os.getenv("HTTP_RATE_LIMIT_DELAY_SECONDS", "2.00")))
HTTP_429_COOLDOWN_SECONDS = max(1.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "90")))
HTTP_SOURCE_RATE_LIMITS = _parse_source_rate_limits(
    os.getenv("HTTP_SOURCE_RATE_LIMITS", "dexscreener:240/60,execution_queue:600/60")
)
HTTP_SOURCE_429_COOLDOWNS = _parse_source_float_map(
    os.getenv("HTTP_SOURCE_429_COOLDOWNS", "dexscreener:20,execution_queue:5")
)

# Webhook server.
WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")
WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", "8080"))
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
LOCAL_ALERTS_FILE = os.getenv("LOCAL_ALERTS_FILE", os.path.join(LOG_DIR, "signals.jsonl"))
EXECUTION_QUEUE_FILE = os.getenv("EXECUTION_QUEUE_FILE", os.path.join("data", "execution_queue.jsonl"))
DECISIONS_LOG_ENABLED = _env_bool("DECISIONS_LOG_ENABLED", "true")
DECISIONS_LOG_FILE = os.getenv("DECISIONS_LOG_FILE", os.path.join(LOG_DIR, "decisions.jsonl"))
