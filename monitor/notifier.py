"""Signal notification sinks: Telegram chat or local JSONL file."""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from html import escape
from typing import Any, Optional

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup

import config
from utils.log_contracts import notification_event
from utils.state_file import append_jsonl_locked

logger = logging.getLogger(__name__)

SIGNAL_TYPE_CONSENSUS = "consensus"
SIGNAL_TYPE_UPDATE = "consensus_update"
SIGNAL_TYPE_CLUSTER = "cluster"
SIGNAL_TYPE_EXIT = "exit"


@dataclass
class SignalNotification:
    signal_type: str
    token_mint: str
    symbol: str = "N/A"
    signal_id: str = ""
    wallet_count: int = 0
    tier: str = ""
    market_cap: Optional[float] = None
    liquidity: Optional[float] = None
    entry_price: Optional[float] = None
    quality_score: Optional[float] = None
    risk_level: str = ""
    wallets: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return asdict(self)


def _usd(value: Optional[float]) -> str:
    return f"${value:,.0f}" if value is not None else "n/a"


def _wallet_line(wallet: dict[str, Any]) -> str:
    label = escape(str(wallet.get("label") or wallet.get("address", "")[:6] or "?"))
    tier = wallet.get("tier")
    score = wallet.get("score")
    parts = [label]
    if tier is not None:
        parts.append(f"T{tier}")
    if score is not None:
        parts.append(f"{float(score):.0f}")
    return " | ".join(parts)


def format_signal_message(n: SignalNotification, enrichment: dict[str, Any] | None = None) -> str:
    headline = {
        SIGNAL_TYPE_CONSENSUS: "\U0001F6A8 CONSENSUS SIGNAL",
        SIGNAL_TYPE_UPDATE: "\U0001F501 CONSENSUS UPDATE",
        SIGNAL_TYPE_CLUSTER: "\U0001F465 CLUSTER SIGNAL",
        SIGNAL_TYPE_EXIT: "\U0001F6AA EXIT SIGNAL",
    }.get(n.signal_type, "\U0001F4E2 SIGNAL")
    lines = [
        f"{headline}\n",
        f"Token: {escape(n.symbol)}",
        f"Mint: <code>{escape(n.token_mint)}</code>\n",
        f"\U0001F45B Wallets: {n.wallet_count}",
    ]
    if n.tier:
        lines.append(f"\U0001F3F7 Tier: {escape(n.tier)}")
    lines.append(f"\U0001F4B0 MCap: {_usd(n.market_cap)} | Liq: {_usd(n.liquidity)}")
    if n.quality_score is not None:
        lines.append(f"\u2B50 Score: {n.quality_score:.0f}/100 | Risk: {escape(n.risk_level or 'n/a')}")
    if n.wallets:
        lines.append("")
        lines.extend(f"- {_wallet_line(w)}" for w in n.wallets[:10])
    if n.warnings:
        lines.append("")
        lines.extend(f"\u26A0\uFE0F {escape(w)}" for w in n.warnings)
    if n.signal_type == SIGNAL_TYPE_EXIT and n.extra:
        lines.append("")
        lines.append(
            f"Exit: {escape(str(n.extra.get('action', '')))} "
            f"({float(n.extra.get('exit_share_pct', 0) or 0):.0f}% of wallets out)"
        )
    if enrichment:
        lines.append("")
        lines.append(
            f"\U0001F9EE Avg wallet score: {float(enrichment.get('avg_wallet_score') or 0):.1f} | "
            f"Tiered share: {float(enrichment.get('tiered_wallet_pct') or 0):.0f}%"
        )
    return "\n".join(lines)


class TelegramNotifier:
    def __init__(self, bot: Any, chat_id: str | int) -> None:
        self.bot = bot
        self.chat_id = chat_id

    @classmethod
    def from_config(cls) -> "TelegramNotifier":
        if not config.TELEGRAM_BOT_TOKEN or not config.TELEGRAM_CHAT_ID:
            raise ValueError("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID are required for NOTIFY_MODE=telegram")
        return cls(Bot(token=config.TELEGRAM_BOT_TOKEN), config.TELEGRAM_CHAT_ID)

    async def close(self) -> None:
        return None

    @staticmethod
    def _build_keyboard(n: SignalNotification) -> InlineKeyboardMarkup:
        chart_url = config.DEXSCREENER_TOKEN_URL_TEMPLATE.format(token_address=n.token_mint)
        details_url = config.EXPLORER_TOKEN_URL_TEMPLATE.format(token_address=n.token_mint)
        return InlineKeyboardMarkup(
            [
                [
                    InlineKeyboardButton("\U0001F4CA Chart", url=chart_url),
                    InlineKeyboardButton("\U0001F50D Details", url=details_url),
                ]
            ]
        )

    async def send_signal(self, n: SignalNotification) -> str:
        message = await self.bot.send_message(
            chat_id=self.chat_id,
            text=format_signal_message(n),
            parse_mode="HTML",
            reply_markup=self._build_keyboard(n),
            disable_web_page_preview=True,
        )
        message_id = str(getattr(message, "message_id", "") or "")
        logger.info(
            "Telegram signal type=%s token=%s wallets=%s message_id=%s",
            n.signal_type,
            n.symbol,
            n.wallet_count,
            message_id,
        )
        return message_id

    async def update_signal(self, correlation_id: str, n: SignalNotification, enrichment: dict[str, Any]) -> None:
        await self.bot.edit_message_text(
            chat_id=self.chat_id,
            message_id=int(correlation_id),
            text=format_signal_message(n, enrichment),
            parse_mode="HTML",
            reply_markup=self._build_keyboard(n),
            disable_web_page_preview=True,
        )


class LocalNotifier:
    def __init__(self, alerts_file: str) -> None:
        self.alerts_file = alerts_file
        os.makedirs(os.path.dirname(self.alerts_file) or ".", exist_ok=True)

    async def close(self) -> None:
        return None

    def _write(self, record: dict[str, Any]) -> dict[str, Any]:
        payload = notification_event(record, run_tag=config.RUN_TAG)
        append_jsonl_locked(self.alerts_file, payload)
        return payload

    async def send_signal(self, n: SignalNotification) -> str:
        correlation_id = uuid.uuid4().hex
        record = n.to_record()
        record.update(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "correlation_id": correlation_id,
            }
        )
        self._write(record)
        logger.info(
            "Local signal type=%s token=%s wallets=%s tier=%s score=%s risk=%s",
            n.signal_type,
            n.symbol,
            n.wallet_count,
            n.tier,
            n.quality_score,
            n.risk_level,
        )
        return correlation_id

    async def update_signal(self, correlation_id: str, n: SignalNotification, enrichment: dict[str, Any]) -> None:
        record = n.to_record()
        record.update(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "correlation_id": correlation_id,
                "enrichment": dict(enrichment or {}),
                "reason": "enrichment",
            }
        )
        self._write(record)


def build_notifier():
    if config.NOTIFY_MODE == "telegram":
        return TelegramNotifier.from_config()
    return LocalNotifier(config.LOCAL_ALERTS_FILE)
