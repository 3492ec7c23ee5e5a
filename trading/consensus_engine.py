"""Smart-wallet consensus engine: the three webhook entry points.

One confirmed buy runs ``evaluate_buy`` once. Every run re-reads trade history
from the store, so nothing about earlier decisions lives in memory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

import config
from database.db import SignalStore, as_utc_naive
from database.models import SIDE_BUY, SmartWallet, Token, Trade
from monitor.notifier import (
    SIGNAL_TYPE_CLUSTER,
    SIGNAL_TYPE_CONSENSUS,
    SIGNAL_TYPE_EXIT,
    SIGNAL_TYPE_UPDATE,
    SignalNotification,
)
from trading.background import BackgroundDispatcher
from trading.decision_log import DecisionLogWriter
from trading.enrichment import SignalEnricher
from trading.execution_queue import KIND_PRE_SIGNAL, KIND_SIGNAL, ExecutionSignal
from trading.filter_cascade import CascadeResult, FilterCascade, MarketContext
from trading.position_monitor import PositionMonitor
from trading.pre_signal import build_pre_signal, pre_signal_due
from trading.priority_fee import priority_fee_for
from trading.signal_config import EngineFlags, SignalConfig
from trading.signal_lifecycle import LifecycleOutcome, SignalLifecycleManager
from trading.tiers import TierConfig
from trading.wallet_correlation import DEFAULT_CLUSTER_THRESHOLD, WalletCorrelationService
from trading.window_stats import MAX_LOOKBACK, WindowStats, compute_window_stats, trade_price_usd
from utils.log_contracts import reason_code_for_event

logger = logging.getLogger(__name__)


@dataclass
class BuyEvaluation:
    consensus_found: bool
    signal_created: Optional[dict[str, Any]] = None
    execution_pushed: Optional[bool] = None
    pre_signal_sent: bool = False
    reason: str = ""
    reason_code: str = ""
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"consensusFound": self.consensus_found}
        if self.signal_created is not None:
            out["signalCreated"] = self.signal_created
        if self.execution_pushed is not None:
            out["executionPushed"] = self.execution_pushed
        if self.pre_signal_sent:
            out["preSignalSent"] = True
        if self.reason:
            out["reason"] = self.reason
            out["reasonCode"] = self.reason_code
        return out


@dataclass
class ClusterEvaluation:
    cluster_found: bool
    signal_created: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"clusterFound": self.cluster_found}
        if self.signal_created is not None:
            out["signalCreated"] = self.signal_created
        return out


@dataclass
class SellEvaluation:
    closed: bool
    exit_signal: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"closed": self.closed}
        if self.exit_signal is not None:
            out["exitSignal"] = self.exit_signal
        return out


def signal_strength(wallet_count: int, config_: SignalConfig) -> str:
    bands = config_.scoring
    if wallet_count >= bands.strong_min_wallets:
        return "strong"
    if wallet_count >= bands.medium_min_wallets:
        return "medium"
    return "weak"


class ConsensusEngine:
    def __init__(
        self,
        store: SignalStore,
        signal_config: SignalConfig,
        flags: EngineFlags,
        *,
        market_data: Any = None,
        notifier: Any = None,
        execution_queue: Any = None,
        background: BackgroundDispatcher | None = None,
        correlation: WalletCorrelationService | None = None,
        position_monitor: PositionMonitor | None = None,
        decision_log: DecisionLogWriter | None = None,
        cascade: FilterCascade | None = None,
        lookback: timedelta | None = None,
        model: str | None = None,
        cluster_threshold: float = DEFAULT_CLUSTER_THRESHOLD,
    ) -> None:
        self.store = store
        self.config = signal_config
        self.flags = flags
        self.model = model or config.SIGNAL_MODEL
        self.lookback = lookback or timedelta(hours=config.CONSENSUS_LOOKBACK_HOURS)
        self.market_data = market_data
        self.notifier = notifier
        self.execution_queue = execution_queue
        self.background = background or BackgroundDispatcher(config.BACKGROUND_MAX_CONCURRENCY)
        self.correlation = correlation or WalletCorrelationService(store)
        self.position_monitor = position_monitor or PositionMonitor(store, self.model)
        self.decision_log = decision_log
        self.cascade = cascade or FilterCascade(signal_config)
        self.lifecycle = SignalLifecycleManager(store, signal_config.scoring, self.model)
        self.enricher = (
            SignalEnricher(store, notifier, signal_config.thresholds.quality_wallet_max_tier)
            if notifier is not None
            else None
        )
        self.cluster_threshold = float(cluster_threshold)

    async def close(self) -> None:
        await self.background.drain(timeout=10.0)
        await self.background.close()
        for resource in (self.market_data, self.notifier, self.execution_queue):
            if resource is not None and hasattr(resource, "close"):
                await resource.close()

    # buy path

    async def evaluate_buy(
        self,
        trade_id: str,
        token_id: str,
        wallet_id: str,
        timestamp: datetime,
    ) -> BuyEvaluation:
        try:
            return await self._evaluate_buy(trade_id, token_id, wallet_id, timestamp)
        except Exception:
            logger.exception("CONSENSUS evaluate_buy failed trade=%s token=%s wallet=%s", trade_id, token_id, wallet_id)
            return BuyEvaluation(consensus_found=False, reason="error", reason_code="UNKNOWN_ERROR")

    def _decide(
        self,
        result: BuyEvaluation,
        *,
        stage: str,
        trade_id: str,
        token_id: str,
        tier: Optional[TierConfig] = None,
        wallet_count: int = 0,
        detail: str = "",
    ) -> BuyEvaluation:
        if not result.reason_code and result.reason:
            result.reason_code = reason_code_for_event(reason=result.reason, decision_stage=stage)
        logger.info(
            "CONSENSUS decision token=%s trade=%s found=%s stage=%s code=%s tier=%s wallets=%s %s",
            token_id,
            trade_id,
            result.consensus_found,
            stage,
            result.reason_code or "-",
            tier.name if tier else "-",
            wallet_count,
            detail,
        )
        if self.decision_log is not None:
            self.decision_log.write(
                {
                    "token_id": token_id,
                    "trade_id": trade_id,
                    "decision_stage": stage,
                    "decision": "signal" if result.signal_created else ("pass" if result.consensus_found else "reject"),
                    "reason": result.reason,
                    "reason_code": result.reason_code,
                    "tier": tier.name if tier else "",
                    "wallet_count": wallet_count,
                    "detail": detail,
                    "warnings": list(result.warnings),
                }
            )
        return result

    async def _evaluate_buy(
        self,
        trade_id: str,
        token_id: str,
        wallet_id: str,
        timestamp: datetime,
    ) -> BuyEvaluation:
        cursor = as_utc_naive(timestamp)
        history = self.store.find_trades_in_window(token_id, cursor - max(MAX_LOOKBACK, self.lookback), cursor)
        trade = next((t for t in history if t.id == trade_id), None) or self.store.get_trade(trade_id)
        if trade is None:
            return self._decide(
                BuyEvaluation(False, reason="trade_not_found"),
                stage="market_data",
                trade_id=trade_id,
                token_id=token_id,
            )

        lookback_buys = [t for t in history if t.side == SIDE_BUY and t.timestamp >= cursor - self.lookback]
        if not lookback_buys:
            return self._decide(
                BuyEvaluation(False, reason="no_buys"),
                stage="market_data",
                trade_id=trade_id,
                token_id=token_id,
            )

        token = self.store.get_token(token_id)
        market = await self._resolve_market(token, lookback_buys, trade)
        if market is None:
            return self._decide(
                BuyEvaluation(False, reason="market_cap_unknown"),
                stage="market_data",
                trade_id=trade_id,
                token_id=token_id,
                wallet_count=len({t.wallet_id for t in lookback_buys}),
            )

        tier = self.config.tiers.classify(market.market_cap)
        wallets = self._lookup_wallets({t.wallet_id for t in history if t.side == SIDE_BUY})
        th = self.config.thresholds
        stats = compute_window_stats(
            history,
            cursor,
            tier,
            lookback=self.lookback,
            current_price=market.current_price,
            diversity_sample_size=th.diversity_sample_size,
            ma_1m_min_samples=th.ma_1m_min_samples,
            ma_5m_min_samples=th.ma_5m_min_samples,
            wallet_tiers={wid: w.tier for wid, w in wallets.items()},
        )

        pre_signal_sent = False
        if tier is not None and pre_signal_due(lookback_buys, trade, tier):
            pre_signal_sent = self._dispatch_pre_signal(token, tier, market, stats, wallets)

        cascade = self.cascade.evaluate(market, tier, stats)
        if not cascade.passed or tier is None:
            failed = cascade.failed
            result = BuyEvaluation(
                False,
                pre_signal_sent=pre_signal_sent,
                reason=failed.gate if failed else "tier",
                reason_code=failed.reason_code if failed else "",
                warnings=cascade.warnings,
            )
            return self._decide(
                result,
                stage="cascade",
                trade_id=trade_id,
                token_id=token_id,
                tier=tier,
                wallet_count=stats.lookback_wallet_count,
                detail=failed.reason if failed else "",
            )

        outcome = self.lifecycle.apply(
            token_id=token_id,
            trade_id=trade.id,
            wallet_count=stats.lookback_wallet_count,
            tier=tier,
            wallet_ids=stats.lookback_wallets,
            extra_meta={
                "entryPriceUsd": market.current_price,
                "marketCapUsd": market.market_cap,
                "liquidityUsd": market.liquidity,
                "configVersion": self.config.version,
            },
        )
        signal = outcome.signal
        if not outcome.emitted or signal is None:
            return self._decide(
                BuyEvaluation(True, pre_signal_sent=pre_signal_sent, reason=outcome.action, warnings=cascade.warnings),
                stage="lifecycle",
                trade_id=trade_id,
                token_id=token_id,
                tier=tier,
                wallet_count=stats.lookback_wallet_count,
            )

        self._dispatch_notification(outcome, token, tier, market, wallets, cascade)
        execution_pushed = None
        if outcome.is_new:
            execution_pushed = self._dispatch_execution(token, market, stats, wallets)

        result = BuyEvaluation(
            True,
            signal_created={
                "id": signal.id,
                "type": SIGNAL_TYPE_UPDATE if outcome.is_update else SIGNAL_TYPE_CONSENSUS,
                "walletCount": signal.wallet_count,
                "previousWalletCount": outcome.previous_wallet_count,
                "tier": tier.name,
                "qualityScore": signal.quality_score,
                "riskLevel": signal.risk_level,
                "isUpdate": outcome.is_update,
            },
            execution_pushed=execution_pushed,
            pre_signal_sent=pre_signal_sent,
            reason=outcome.action,
            warnings=cascade.warnings,
        )
        return self._decide(
            result,
            stage="lifecycle",
            trade_id=trade_id,
            token_id=token_id,
            tier=tier,
            wallet_count=stats.lookback_wallet_count,
        )

    async def _resolve_market(
        self,
        token: Optional[Token],
        lookback_buys: list[Trade],
        trade: Trade,
    ) -> Optional[MarketContext]:
        """Market cap and liquidity from the latest buy, market data only as fallback."""
        latest = lookback_buys[-1]
        market_cap = latest.market_cap_usd
        liquidity = latest.liquidity_usd
        price = trade_price_usd(trade) or None
        if market_cap is None and token is not None and self.market_data is not None:
            snapshot = None
            try:
                snapshot = await self.market_data.get_snapshot(token.mint_address)
            except Exception:
                logger.warning("CONSENSUS market data lookup failed token=%s", token.mint_address, exc_info=True)
            if snapshot is not None:
                market_cap = snapshot.market_cap
                if liquidity is None:
                    liquidity = snapshot.liquidity
                price = price or snapshot.price_usd
        if market_cap is None:
            return None
        return MarketContext(
            market_cap=float(market_cap),
            liquidity=float(liquidity) if liquidity is not None else None,
            total_supply=token.total_supply if token is not None else None,
            current_price=price,
        )

    def _lookup_wallets(self, wallet_ids: Iterable[str]) -> dict[str, SmartWallet]:
        try:
            return self.store.get_wallets(wallet_ids)
        except Exception:
            logger.warning("CONSENSUS wallet lookup failed; wallet tiers unknown", exc_info=True)
            return {}

    @staticmethod
    def _wallet_addresses(wallet_ids: Iterable[str], wallets: dict[str, SmartWallet]) -> tuple[str, ...]:
        return tuple(wallets[w].address if w in wallets else w for w in sorted(wallet_ids))

    def _dispatch_pre_signal(
        self,
        token: Optional[Token],
        tier: TierConfig,
        market: MarketContext,
        stats: WindowStats,
        wallets: dict[str, SmartWallet],
    ) -> bool:
        event = build_pre_signal(
            token=token,
            tier=tier,
            wallet_addresses=self._wallet_addresses(stats.lookback_wallets, wallets),
            market_cap=float(market.market_cap or 0),
            liquidity=market.liquidity,
            entry_price=market.current_price,
        )
        logger.info(
            "PRE_SIGNAL token=%s tier=%s wallets=%s/%s push=%s",
            event.token_symbol,
            tier.name,
            event.current_wallets,
            event.required_wallets,
            self.flags.presignal_push_enabled,
        )
        if not self.flags.presignal_push_enabled or self.execution_queue is None:
            return False
        payload = event.to_payload()
        queue = self.execution_queue
        self.background.submit(f"pre_signal:{event.token_mint}", lambda: queue.push(KIND_PRE_SIGNAL, payload))
        return True

    def _dispatch_notification(
        self,
        outcome: LifecycleOutcome,
        token: Optional[Token],
        tier: TierConfig,
        market: MarketContext,
        wallets: dict[str, SmartWallet],
        cascade: CascadeResult,
    ) -> None:
        if self.notifier is None or outcome.signal is None:
            return
        signal = outcome.signal
        wallet_ids = list((signal.meta or {}).get("walletIds") or [])
        notification = SignalNotification(
            signal_type=SIGNAL_TYPE_UPDATE if outcome.is_update else SIGNAL_TYPE_CONSENSUS,
            token_mint=token.mint_address if token is not None else "",
            symbol=(token.symbol if token is not None else None) or "N/A",
            signal_id=signal.id,
            wallet_count=signal.wallet_count,
            tier=tier.label(),
            market_cap=market.market_cap,
            liquidity=market.liquidity,
            entry_price=market.current_price,
            quality_score=signal.quality_score,
            risk_level=signal.risk_level or "",
            wallets=[
                {"address": w.address, "label": w.label, "score": w.score, "tier": w.tier}
                for w in (wallets[wid] for wid in wallet_ids if wid in wallets)
            ],
            warnings=cascade.warnings,
        )
        self.background.submit(f"notify:{signal.id}", lambda: self._notify(signal.id, notification))

    async def _notify(self, signal_id: str, notification: SignalNotification) -> None:
        correlation_id = await self.notifier.send_signal(notification)
        if not correlation_id:
            return
        self.store.update_signal(signal_id, notification_id=correlation_id)
        if self.flags.enrichment_enabled and self.enricher is not None:
            enricher = self.enricher
            self.background.submit(
                f"enrich:{signal_id}",
                lambda: enricher.enrich(signal_id, correlation_id, notification),
            )

    def _dispatch_execution(
        self,
        token: Optional[Token],
        market: MarketContext,
        stats: WindowStats,
        wallets: dict[str, SmartWallet],
    ) -> bool:
        if not self.flags.execution_push_enabled or self.execution_queue is None:
            return False
        th = self.config.thresholds
        fee = priority_fee_for(stats.buy_sell_ratio, stats.momentum_5m_pct, self.config.priority_fee)
        execution = ExecutionSignal(
            signal_type=SIGNAL_TYPE_CONSENSUS,
            token_mint=token.mint_address if token is not None else "",
            market_cap_usd=market.market_cap,
            liquidity_usd=market.liquidity,
            entry_price_usd=market.current_price,
            stop_loss_percent=th.stop_loss_percent,
            take_profit_percent=th.take_profit_percent,
            strength=signal_strength(stats.lookback_wallet_count, self.config),
            priority_fee_lamports=fee.lamports,
            wallets=self._wallet_addresses(stats.lookback_wallets, wallets),
        )
        logger.info(
            "EXECUTION queued token=%s strength=%s fee_level=%s lamports=%s",
            execution.token_mint,
            execution.strength,
            fee.level,
            fee.lamports,
        )
        payload = execution.to_payload()
        queue = self.execution_queue
        self.background.submit(f"execution:{execution.token_mint}", lambda: queue.push(KIND_SIGNAL, payload))
        return True

    # cluster path

    async def evaluate_cluster_correlation(
        self,
        token_id: str,
        wallet_ids: Iterable[str],
        timestamp: datetime,
    ) -> ClusterEvaluation:
        ids = list(dict.fromkeys(wallet_ids))
        if len(ids) < 2:
            return ClusterEvaluation(False)
        try:
            self.correlation.refresh_cluster(ids, now=as_utc_naive(timestamp))
            check = self.correlation.check_cluster(ids, self.cluster_threshold)
            if not check.is_correlated:
                logger.info(
                    "CLUSTER none token=%s wallets=%s avg_strength=%.1f missing_pairs=%s",
                    token_id,
                    len(ids),
                    check.avg_strength,
                    check.missing_pairs,
                )
                return ClusterEvaluation(False)
            performance = self.correlation.cluster_performance(ids)
            logger.info(
                "CLUSTER found token=%s wallets=%s avg_strength=%.1f performance=%s at=%s",
                token_id,
                len(ids),
                check.avg_strength,
                performance,
                as_utc_naive(timestamp).isoformat(),
            )
            token = self.store.get_token(token_id)
            if token is None:
                logger.warning("CLUSTER token not found token=%s", token_id)
                return ClusterEvaluation(True)
            if self.notifier is not None:
                wallets = self._lookup_wallets(ids)
                notification = SignalNotification(
                    signal_type=SIGNAL_TYPE_CLUSTER,
                    token_mint=token.mint_address,
                    symbol=token.symbol or "N/A",
                    wallet_count=len(ids),
                    wallets=[
                        {"address": w.address, "label": w.label, "score": w.score, "tier": w.tier}
                        for w in wallets.values()
                    ],
                    extra={"cluster_strength": check.avg_strength, "cluster_performance": performance},
                )
                notifier = self.notifier
                self.background.submit(f"cluster:{token_id}", lambda: notifier.send_signal(notification))
            return ClusterEvaluation(True, {"type": SIGNAL_TYPE_CLUSTER, "walletCount": len(ids)})
        except Exception:
            logger.exception("CLUSTER check failed token=%s", token_id)
            return ClusterEvaluation(False)

    # sell path

    async def evaluate_sell(self, trade_id: str) -> SellEvaluation:
        try:
            trade = self.store.get_trade(trade_id)
            if trade is None:
                logger.info("SELL trade not found trade=%s", trade_id)
                return SellEvaluation(False)
            outcome = self.position_monitor.record_wallet_exit(trade)
            exit_signal = outcome.exit_signal
            if exit_signal is not None and self.notifier is not None:
                token = self.store.get_token(trade.token_id)
                signal = self.store.get_signal(exit_signal.signal_id)
                notification = SignalNotification(
                    signal_type=SIGNAL_TYPE_EXIT,
                    token_mint=token.mint_address if token is not None else "",
                    symbol=(token.symbol if token is not None else None) or "N/A",
                    signal_id=exit_signal.signal_id,
                    wallet_count=signal.wallet_count if signal is not None else 0,
                    entry_price=exit_signal.price_usd,
                    extra=exit_signal.to_payload() | {"exit_share_pct": exit_signal.exit_share_pct},
                )
                notifier = self.notifier
                self.background.submit(f"exit:{trade.token_id}", lambda: notifier.send_signal(notification))
            return SellEvaluation(outcome.closed, exit_signal.to_payload() if exit_signal is not None else None)
        except Exception:
            logger.exception("SELL evaluation failed trade=%s", trade_id)
            return SellEvaluation(False)
