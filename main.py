"""Entry point for the smart-wallet consensus signal engine."""

import asyncio
import logging
import os
import signal
from logging.handlers import RotatingFileHandler

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from api.webhook_server import WebhookServer
from database.db import init_db
from monitor.market_data import MarketDataClient
from monitor.notifier import build_notifier
from trading.background import BackgroundDispatcher
from trading.consensus_engine import ConsensusEngine
from trading.decision_log import DecisionLogWriter
from trading.execution_queue import build_execution_queue
from trading.signal_config import EngineFlags, load_signal_config


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Avoid leaking bot token in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def build_engine() -> ConsensusEngine:
    """Load config once and wire the engine with its collaborators."""
    store = init_db()
    signal_config = load_signal_config()
    flags = EngineFlags.from_config()
    background = BackgroundDispatcher(config.BACKGROUND_MAX_CONCURRENCY)
    background.add_error_listener(
        lambda err: logger.error("Background side effect failed task=%s error=%s", err.name, err.error)
    )
    return ConsensusEngine(
        store,
        signal_config,
        flags,
        market_data=MarketDataClient(),
        notifier=build_notifier(),
        execution_queue=build_execution_queue(),
        background=background,
        decision_log=DecisionLogWriter(),
    )


async def run() -> None:
    engine = build_engine()
    server = WebhookServer(engine)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C raises KeyboardInterrupt instead.
            pass
    logger.info(
        "Consensus engine starting config_version=%s tiers=%s presignal_push=%s execution_push=%s enrichment=%s notify=%s",
        engine.config.version,
        len(engine.config.tiers),
        engine.flags.presignal_push_enabled,
        engine.flags.execution_push_enabled,
        engine.flags.enrichment_enabled,
        config.NOTIFY_MODE,
    )
    await server.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await server.stop()
        await engine.close()


def main() -> None:
    configure_logging()
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
