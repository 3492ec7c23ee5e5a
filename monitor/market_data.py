"""Market-data fallback: market cap and liquidity from DexScreener."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import config
from utils.addressing import normalize_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketSnapshot:
    market_cap: Optional[float]
    liquidity: Optional[float]
    price_usd: Optional[float] = None
    pair_address: str = ""


def _positive(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


class MarketDataClient:
    """Looks up the deepest pair for a mint. Every failure maps to ``None``."""

    def __init__(self, http: ResilientHttpClient | None = None) -> None:
        self._headers = {
            "User-Agent": "consensus-signal-engine/1.0",
            "Accept": "application/json, text/plain, */*",
        }
        self._owns_http = http is None
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(config.MARKET_DATA_TIMEOUT),
            headers=self._headers,
            source_limits={"dexscreener": 8},
        )

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    def runtime_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        return self._http.snapshot_stats(reset=reset)

    async def get_snapshot(self, mint_address: str) -> MarketSnapshot | None:
        mint = normalize_address(mint_address)
        if not mint:
            return None
        url = f"{config.MARKET_DATA_API}/tokens/{mint}"
        try:
            result = await self._http.get_json(url, source="dexscreener", max_attempts=config.MARKET_DATA_RETRIES)
        except Exception:
            logger.warning("MARKET_DATA fetch failed mint=%s", mint, exc_info=True)
            return None
        if not result.ok:
            if result.status == 429:
                logger.warning("RATE_LIMIT source=dexscreener status=429 url=%s", url)
            else:
                logger.info("MARKET_DATA miss mint=%s status=%s error=%s", mint, result.status, result.error)
            return None
        return self.parse_snapshot(result.data, chain_id=config.MARKET_DATA_CHAIN_ID)

    @staticmethod
    def parse_snapshot(data: Any, chain_id: str = "solana") -> MarketSnapshot | None:
        if not isinstance(data, dict):
            return None
        best_pair: dict[str, Any] | None = None
        best_liq = -1.0
        for pair in data.get("pairs", []) or []:
            if not isinstance(pair, dict):
                continue
            if str(pair.get("chainId", "")).lower() != chain_id.lower():
                continue
            liq = float((pair.get("liquidity") or {}).get("usd") or 0)
            if liq > best_liq:
                best_liq = liq
                best_pair = pair
        if best_pair is None:
            return None
        market_cap = _positive(best_pair.get("marketCap")) or _positive(best_pair.get("fdv"))
        return MarketSnapshot(
            market_cap=market_cap,
            liquidity=_positive((best_pair.get("liquidity") or {}).get("usd")),
            price_usd=_positive(best_pair.get("priceUsd")),
            pair_address=str(best_pair.get("pairAddress") or ""),
        )
