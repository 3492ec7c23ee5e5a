"""Stable log contracts shared across decision and notification writers."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

LOG_SCHEMA_VERSION = "2025-06-01.v1"

SCHEMA_SIGNAL_DECISION = "signal_decision.v1"
SCHEMA_NOTIFICATION = "notification.v1"

_STAGE_PREFIX: dict[str, str] = {
    "market_data": "DATA",
    "cascade": "FILTER",
    "pre_signal": "PRE",
    "lifecycle": "SIGNAL",
    "notify": "NOTIFY",
    "execution": "EXEC",
    "exit": "EXIT",
    "cluster": "CLUSTER",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "market_cap_unknown": "DATA_MARKET_CAP_UNKNOWN",
    "trade_not_found": "DATA_TRADE_NOT_FOUND",
    "no_buys": "DATA_NO_BUYS",
    "market_cap_range": "FILTER_MARKET_CAP_RANGE",
    "tier": "FILTER_TIER_NONE",
    "liquidity_floor": "FILTER_LIQUIDITY_FLOOR",
    "liquidity_ratio": "FILTER_LIQUIDITY_RATIO",
    "liquidity_trend": "FILTER_LIQUIDITY_TREND",
    "tier_wallets": "FILTER_TIER_WALLETS",
    "tier_activity": "FILTER_TIER_ACTIVITY",
    "tier_quality": "FILTER_TIER_QUALITY",
    "volume_spike": "FILTER_VOLUME_SPIKE",
    "buy_sell_pressure": "FILTER_BUY_SELL_PRESSURE",
    "price_momentum": "FILTER_PRICE_MOMENTUM",
    "moving_average": "FILTER_MOVING_AVERAGE",
    "whale_dump": "FILTER_WHALE_DUMP",
    "diversity": "FILTER_DIVERSITY",
    "token_age": "FILTER_TOKEN_AGE",
    "created": "SIGNAL_CREATED",
    "updated": "SIGNAL_UPDATED",
    "already_notified": "SIGNAL_ALREADY_NOTIFIED",
    "pre_signal_sent": "PRE_SIGNAL_SENT",
    "full_exit": "EXIT_FULL",
    "partial_exit": "EXIT_PARTIAL",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "DATA_MARKET_CAP_UNKNOWN": {"severity": "WARN", "category": "data", "title": "Market cap unavailable, fail safe"},
    "DATA_TRADE_NOT_FOUND": {"severity": "WARN", "category": "data", "title": "Triggering trade not found"},
    "FILTER_MARKET_CAP_RANGE": {"severity": "INFO", "category": "filter", "title": "Market cap outside global range"},
    "FILTER_TIER_NONE": {"severity": "INFO", "category": "filter", "title": "Market cap matches no tier"},
    "FILTER_LIQUIDITY_FLOOR": {"severity": "INFO", "category": "filter", "title": "Liquidity below floor"},
    "FILTER_LIQUIDITY_RATIO": {"severity": "INFO", "category": "filter", "title": "Liquidity/market cap ratio too low"},
    "FILTER_LIQUIDITY_TREND": {"severity": "WARN", "category": "filter", "title": "Liquidity draining"},
    "FILTER_TIER_WALLETS": {"severity": "INFO", "category": "filter", "title": "Not enough wallets in tier window"},
    "FILTER_TIER_ACTIVITY": {"severity": "INFO", "category": "filter", "title": "Not enough unique buyers"},
    "FILTER_TIER_QUALITY": {"severity": "INFO", "category": "filter", "title": "Not enough quality wallets"},
    "FILTER_VOLUME_SPIKE": {"severity": "INFO", "category": "filter", "title": "No volume spike"},
    "FILTER_BUY_SELL_PRESSURE": {"severity": "INFO", "category": "filter", "title": "Sell pressure too high"},
    "FILTER_PRICE_MOMENTUM": {"severity": "INFO", "category": "filter", "title": "Momentum outside bounds"},
    "FILTER_MOVING_AVERAGE": {"severity": "INFO", "category": "filter", "title": "Price below moving average"},
    "FILTER_WHALE_DUMP": {"severity": "WARN", "category": "filter", "title": "Whale dump detected"},
    "FILTER_DIVERSITY": {"severity": "WARN", "category": "filter", "title": "Low buyer diversity"},
    "FILTER_TOKEN_AGE": {"severity": "INFO", "category": "filter", "title": "Token too young"},
    "SIGNAL_CREATED": {"severity": "INFO", "category": "signal", "title": "Signal created"},
    "SIGNAL_UPDATED": {"severity": "INFO", "category": "signal", "title": "Signal wallet count raised"},
    "SIGNAL_ALREADY_NOTIFIED": {"severity": "INFO", "category": "signal", "title": "Duplicate or regressive update"},
    "PRE_SIGNAL_SENT": {"severity": "INFO", "category": "pre_signal", "title": "Pre-signal dispatched"},
    "EXIT_FULL": {"severity": "WARN", "category": "exit", "title": "Full exit recommended"},
    "EXIT_PARTIAL": {"severity": "INFO", "category": "exit", "title": "Partial exit recommended"},
}


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except Exception:
        return float(default)


def _as_ts(value: Any) -> float:
    if value is None or value == "":
        return datetime.now(timezone.utc).timestamp()
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except Exception:
        return datetime.now(timezone.utc).timestamp()


def _iso_from_ts(ts: float) -> str:
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()
    except Exception:
        return datetime.now(timezone.utc).isoformat()


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return ""
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def _stage_prefix(value: Any) -> str:
    stage = _normalize_reason_text(value) or "unknown"
    return _STAGE_PREFIX.get(stage, "UNKNOWN")


def reason_code_for_event(*, reason: Any, decision_stage: Any = "") -> str:
    normalized_reason = _normalize_reason_text(reason)
    if not normalized_reason:
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized_reason)
    if override:
        return override
    return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_reason)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {
        "severity": "INFO",
        "category": "unknown",
        "title": key.replace("_", " ").title(),
    }


def _digest_seed(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()


def stamp_event(event: dict[str, Any], *, schema_name: str, run_tag: str = "") -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    payload["ts"] = float(ts)
    payload["timestamp"] = _iso_from_ts(ts)
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    if run_tag:
        payload.setdefault("run_tag", str(run_tag))
    trace = str(payload.get("trace_id", "") or "").strip()
    if not trace:
        trace = f"tr_{_digest_seed(payload.get('token_id', ''), payload.get('trade_id', ''), f'{ts:.6f}')[:20]}"
    payload["trace_id"] = trace
    return payload


def _apply_reason(payload: dict[str, Any]) -> dict[str, Any]:
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["reason_code"] = str(
        payload.get("reason_code", "")
        or reason_code_for_event(reason=payload["reason"], decision_stage=payload.get("decision_stage", ""))
    ).strip().upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = str(payload.get("reason_severity", meta.get("severity", "INFO")) or "INFO")
    payload["reason_category"] = str(payload.get("reason_category", meta.get("category", "unknown")) or "unknown")
    return payload


def signal_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    """Normalize one engine decision (reject/pass/create/update) into a log row."""
    payload = stamp_event(event, schema_name=SCHEMA_SIGNAL_DECISION, run_tag=run_tag)
    payload.setdefault("decision_stage", "unknown")
    payload.setdefault("decision", "unknown")
    payload["token_id"] = str(payload.get("token_id", "") or "")
    payload["trade_id"] = str(payload.get("trade_id", "") or "")
    payload["tier"] = str(payload.get("tier", "") or "")
    payload["wallet_count"] = int(_safe_float(payload.get("wallet_count", 0), 0))
    return _apply_reason(payload)


def notification_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(event, schema_name=SCHEMA_NOTIFICATION, run_tag=run_tag)
    payload["signal_type"] = str(payload.get("signal_type", "unknown") or "unknown")
    payload["symbol"] = str(payload.get("symbol", "N/A") or "N/A")
    payload["token_mint"] = str(payload.get("token_mint", "") or "")
    payload["wallet_count"] = int(_safe_float(payload.get("wallet_count", 0), 0))
    payload.setdefault("decision_stage", "notify")
    payload.setdefault("reason", _normalize_reason_text(payload["signal_type"]) or "unknown")
    return _apply_reason(payload)
