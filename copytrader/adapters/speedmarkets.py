"""
Thales Speed Markets adapter (Optimism)

UP/DOWN markets on BTC and ETH over fixed time frames, paying a flat 1.95x.
Market ids encode asset, time frame and opening minute ("BTC-900-1735732800"),
so resolution needs nothing but Pyth prices at the open and at maturity.
"""

from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import aiohttp

from ..config import ContractAddresses, PlatformEndpoints, ScoringConstants
from ..normalizer import Market, MarketStatus, PriceFormat, normalize_market
from .base import ResolutionStatus, SourceAdapter


UP, DOWN = "up", "down"
PAYOUT_ODDS = 1.95
TIME_FRAMES = (900, 1800, 3600, 14400, 86400)
PRICE_FEEDS = {
    "BTC": ContractAddresses.PYTH_BTC_USD,
    "ETH": ContractAddresses.PYTH_ETH_USD,
}


def opening_minute(when: datetime) -> datetime:
    return datetime.fromtimestamp(int(when.timestamp()) // 60 * 60, tz=timezone.utc)


def market_id_for(asset: str, seconds: int, opened_at: datetime) -> str:
    return f"{asset}-{seconds}-{int(opening_minute(opened_at).timestamp())}"


def parse_market_id(market_id: str) -> Tuple[str, int, datetime]:
    """Split a market id into (asset, time frame seconds, opening time)"""
    asset, seconds, opened = market_id.split("-")
    if asset not in PRICE_FEEDS:
        raise ValueError(f"unknown speed market asset {asset}")
    return asset, int(seconds), datetime.fromtimestamp(int(opened), tz=timezone.utc)


def _pyth_price(feed: Dict) -> Optional[float]:
    price = (feed or {}).get("price") or {}
    if price.get("price") in (None, ""):
        return None
    return float(price["price"]) * 10 ** int(price.get("expo", 0))


class SpeedMarketsAdapter(SourceAdapter):
    """Speed markets priced from the Pyth Hermes API"""

    platform = "speedmarkets"

    def __init__(self, settings=None, clock=None):
        super().__init__(settings, clock)
        self.host = self.settings.pyth_hermes_host
        self._strikes: "OrderedDict[str, float]" = OrderedDict()

    # ==================== Prices ====================

    async def latest_price(self, asset: str) -> Optional[float]:
        data = await self._request(
            "GET", f"{self.host}{PlatformEndpoints.PYTH_LATEST}", params={"ids[]": PRICE_FEEDS[asset]}
        )
        return _pyth_price(data[0]) if data else None

    async def price_at(self, asset: str, when: datetime) -> Optional[float]:
        """Pyth price published at a past moment; None when Hermes has none"""
        try:
            data = await self._request(
                "GET",
                f"{self.host}{PlatformEndpoints.PYTH_AT}",
                params={"id": PRICE_FEEDS[asset], "publish_time": int(when.timestamp())},
            )
        except aiohttp.ClientResponseError as e:
            if e.status == 404:
                return None
            raise
        return _pyth_price(data)

    # ==================== Market Data ====================

    async def _fetch_markets(self) -> List[Market]:
        opened_at = opening_minute(self.clock.now())
        markets = []
        for asset in PRICE_FEEDS:
            strike = await self.latest_price(asset)
            if strike is None:
                continue
            for seconds in TIME_FRAMES:
                market_id = market_id_for(asset, seconds, opened_at)
                if market_id not in self._strikes:
                    self._remember(self._strikes, market_id, strike)
                opening = self._strikes[market_id]
                markets.append(normalize_market(
                    platform=self.platform,
                    market_id=market_id,
                    title=f"{asset} UP or DOWN in {seconds // 60} min from ${opening:,.2f}",
                    prices=[(UP, f"{asset} UP", PAYOUT_ODDS), (DOWN, f"{asset} DOWN", PAYOUT_ODDS)],
                    fmt=PriceFormat.DECIMAL,
                    status=MarketStatus.OPEN,
                    resolves_at=opened_at + timedelta(seconds=seconds),
                    liquidity=50000.0,
                ))
        return markets

    # ==================== Resolution ====================

    async def _check_resolution(self, market_id: str) -> ResolutionStatus:
        asset, seconds, opened_at = parse_market_id(market_id)
        maturity = opened_at + timedelta(seconds=seconds)
        now = self.clock.now()
        if now < maturity:
            return ResolutionStatus.pending()

        strike = self._strikes.get(market_id)
        if strike is None:
            strike = await self.price_at(asset, opened_at)
        final = await self.price_at(asset, maturity)
        if strike is None or final is None:
            if now - maturity > timedelta(hours=ScoringConstants.STALE_REFUND_HOURS):
                self._strikes.pop(market_id, None)
                return ResolutionStatus.void(now)
            return ResolutionStatus.pending()

        self._strikes.pop(market_id, None)
        return ResolutionStatus.winner(UP if final > strike else DOWN, maturity)
