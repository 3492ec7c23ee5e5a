"""Webhook HTTP server feeding confirmed trades into the consensus engine."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from aiohttp import web

import config
from database.models import SIDE_BUY, SIDE_SELL
from trading.consensus_engine import ConsensusEngine
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", ConsensusEngine)
SECRET_KEY = web.AppKey("secret", str)


class BadRequest(ValueError):
    pass


def parse_timestamp(value: Any) -> datetime:
    if value is None or value == "":
        return datetime.now(timezone.utc)
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > 1e12:
            seconds /= 1000.0
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise BadRequest(f"invalid timestamp: {value!r}") from exc
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _optional_float(payload: dict[str, Any], key: str) -> float | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise BadRequest(f"{key} must be numeric") from exc


def ingest_trade(engine: ConsensusEngine, payload: dict[str, Any], side: str):
    """Persist a raw trade delivered by the ingestion webhook (idempotent on ``tradeId``)."""
    mint = normalize_address(payload.get("tokenMint"))
    wallet_address = normalize_address(payload.get("walletAddress"))
    if not mint or not wallet_address:
        raise BadRequest("tokenMint and walletAddress are required")
    store = engine.store
    token = store.get_or_create_token(
        mint,
        symbol=payload.get("tokenSymbol"),
        total_supply=_optional_float(payload, "totalSupply"),
    )
    wallet = store.get_or_create_wallet(wallet_address)
    return store.record_trade(
        trade_id=str(payload.get("tradeId") or "") or None,
        token_id=token.id,
        wallet_id=wallet.id,
        side=side,
        timestamp=parse_timestamp(payload.get("timestamp")),
        amount_token=_optional_float(payload, "amountToken") or 0.0,
        amount_base=_optional_float(payload, "amountBase") or 0.0,
        value_usd=_optional_float(payload, "valueUsd") or 0.0,
        price_base_per_token=_optional_float(payload, "priceBasePerToken") or 0.0,
        market_cap_usd=_optional_float(payload, "marketCapUsd"),
        liquidity_usd=_optional_float(payload, "liquidityUsd"),
    )


def _authorized(request: web.Request) -> bool:
    secret = request.app[SECRET_KEY]
    if not secret:
        return True
    header_secret = request.headers.get("X-Webhook-Secret", "")
    query_secret = request.query.get("secret", "")
    return header_secret == secret or query_secret == secret


async def _read_payload(request: web.Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception as exc:
        raise BadRequest("invalid_json") from exc
    if not isinstance(payload, dict):
        raise BadRequest("invalid_json")
    return payload


def _error(status: int, error: str) -> web.Response:
    return web.json_response({"ok": False, "error": error}, status=status)


async def handle_buy(request: web.Request) -> web.Response:
    if not _authorized(request):
        return _error(401, "unauthorized")
    engine = request.app[ENGINE_KEY]
    try:
        payload = await _read_payload(request)
        if payload.get("tokenMint"):
            trade = ingest_trade(engine, payload, SIDE_BUY)
            trade_id, token_id, wallet_id, ts = trade.id, trade.token_id, trade.wallet_id, trade.timestamp
        else:
            missing = [k for k in ("tradeId", "tokenId", "walletId") if not payload.get(k)]
            if missing:
                raise BadRequest(f"missing fields: {', '.join(missing)}")
            trade_id = str(payload["tradeId"])
            token_id = str(payload["tokenId"])
            wallet_id = str(payload["walletId"])
            ts = parse_timestamp(payload.get("timestamp"))
    except BadRequest as exc:
        return _error(400, str(exc))
    result = await engine.evaluate_buy(trade_id, token_id, wallet_id, ts)
    return web.json_response({"ok": True, **result.to_dict()})


async def handle_sell(request: web.Request) -> web.Response:
    if not _authorized(request):
        return _error(401, "unauthorized")
    engine = request.app[ENGINE_KEY]
    try:
        payload = await _read_payload(request)
        if payload.get("tokenMint"):
            trade_id = ingest_trade(engine, payload, SIDE_SELL).id
        elif payload.get("tradeId"):
            trade_id = str(payload["tradeId"])
        else:
            raise BadRequest("missing fields: tradeId")
    except BadRequest as exc:
        return _error(400, str(exc))
    result = await engine.evaluate_sell(trade_id)
    return web.json_response({"ok": True, **result.to_dict()})


async def handle_cluster(request: web.Request) -> web.Response:
    if not _authorized(request):
        return _error(401, "unauthorized")
    engine = request.app[ENGINE_KEY]
    try:
        payload = await _read_payload(request)
        wallet_ids = payload.get("walletIds")
        if not payload.get("tokenId") or not isinstance(wallet_ids, list):
            raise BadRequest("missing fields: tokenId, walletIds")
        ts = parse_timestamp(payload.get("timestamp"))
    except BadRequest as exc:
        return _error(400, str(exc))
    result = await engine.evaluate_cluster_correlation(str(payload["tokenId"]), [str(w) for w in wallet_ids], ts)
    return web.json_response({"ok": True, **result.to_dict()})


async def handle_health(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    background = engine.background
    recent = [
        {"name": e.name, "error_type": e.error_type, "error": e.error, "ts": e.ts.isoformat()}
        for e in list(background.errors)[-10:]
    ]
    body: dict[str, Any] = {
        "ok": True,
        "config_version": engine.config.version,
        "background": {"pending": background.pending, "completed": background.completed, "recent_errors": recent},
    }
    if engine.market_data is not None and hasattr(engine.market_data, "runtime_stats"):
        body["http"] = engine.market_data.runtime_stats()
    return web.json_response(body)


def create_app(engine: ConsensusEngine, secret: str | None = None) -> web.Application:
    app = web.Application()
    app[ENGINE_KEY] = engine
    app[SECRET_KEY] = config.WEBHOOK_SECRET if secret is None else secret
    app.router.add_post("/webhook/buy", handle_buy)
    app.router.add_post("/webhook/sell", handle_sell)
    app.router.add_post("/webhook/cluster", handle_cluster)
    app.router.add_get("/health", handle_health)
    return app


class WebhookServer:
    def __init__(self, engine: ConsensusEngine) -> None:
        self.engine = engine
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

    async def start(self) -> None:
        if not config.WEBHOOK_SECRET:
            logger.warning("WEBHOOK_SECRET is empty; webhook endpoints accept unauthenticated requests")
        self.runner = web.AppRunner(create_app(self.engine))
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, config.WEBHOOK_HOST, config.WEBHOOK_PORT)
        await self.site.start()
        logger.info("Webhook server listening on %s:%s", config.WEBHOOK_HOST, config.WEBHOOK_PORT)

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()
