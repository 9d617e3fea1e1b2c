"""
Limitless Exchange adapter (Base chain)

Short-dated Yes/No markets addressed by slug. Prices arrive either as fractions or
as percentages.
"""

from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import aiohttp

from ..config import PlatformEndpoints, ScoringConstants
from ..normalizer import Market, MarketStatus, PriceFormat, normalize_market, parse_timestamp
from .base import ResolutionStatus, SourceAdapter


OUTCOMES = ("Yes", "No")


def _fraction(price) -> float:
    price = float(price)
    return price / 100 if price > 1 else price


class LimitlessAdapter(SourceAdapter):
    """Limitless REST API"""

    platform = "limitless"

    def __init__(self, settings=None, clock=None):
        super().__init__(settings, clock)
        self.host = self.settings.limitless_host
        self._expiries: "OrderedDict[str, datetime]" = OrderedDict()

    # ==================== Market Data ====================

    async def _fetch_markets(self) -> List[Market]:
        data = await self._request("GET", f"{self.host}{PlatformEndpoints.LIMITLESS_ACTIVE}")
        items = data.get("data", []) if isinstance(data, dict) else data
        return self._normalize_each(items, self._normalize)

    def _prices(self, data: Dict) -> List[float]:
        prices = data.get("prices")
        if not prices and data.get("outcomeTokens"):
            prices = [t.get("price", 0) for t in data["outcomeTokens"]]
        return [_fraction(p) for p in prices or []]

    def _normalize(self, data: Dict) -> Optional[Market]:
        prices = self._prices(data)
        if len(prices) != 2:
            return None

        slug = data.get("slug") or str(data["id"])
        expires_at = parse_timestamp(data.get("expirationTimestamp") or data.get("expirationDate"))
        if expires_at:
            self._remember(self._expiries, slug, expires_at)

        resolution = self._resolution_from_market(data)
        if resolution.resolved:
            status = MarketStatus.RESOLVED
        elif data.get("expired") or (expires_at and expires_at <= self.clock.now()):
            status = MarketStatus.LOCKED
        else:
            status = MarketStatus.OPEN

        volume = data.get("volumeFormatted", data.get("volume", 0))
        return normalize_market(
            platform=self.platform,
            market_id=slug,
            title=data.get("title", ""),
            prices=[(name, name, price) for name, price in zip(OUTCOMES, prices)],
            fmt=PriceFormat.PROBABILITY,
            status=status,
            resolves_at=expires_at,
            volume=float(volume or 0),
            liquidity=float(data.get("liquidity", 0) or 0),
            resolved_outcome=resolution.winning_outcome_id,
        )

    # ==================== Resolution ====================

    async def _check_resolution(self, market_id: str) -> ResolutionStatus:
        url = f"{self.host}{PlatformEndpoints.LIMITLESS_MARKET.format(slug=market_id)}"
        try:
            data = await self._request("GET", url)
        except aiohttp.ClientResponseError as e:
            if e.status != 404:
                raise
            expires_at = self._expiries.get(market_id)
            stale_after = timedelta(hours=ScoringConstants.STALE_REFUND_HOURS)
            if expires_at and self.clock.now() - expires_at > stale_after:
                self._expiries.pop(market_id, None)
                return ResolutionStatus.void(self.clock.now())
            return ResolutionStatus.pending()
        resolution = self._resolution_from_market(data)
        if resolution.resolved:
            self._expiries.pop(market_id, None)
        return resolution

    def _resolution_from_market(self, data: Dict) -> ResolutionStatus:
        """winningIndex first (0 = Yes, 1 = No), then a near-1 price once resolved or expired"""
        winning_index = data.get("winningIndex")
        if winning_index in (0, 1):
            return ResolutionStatus.winner(OUTCOMES[winning_index], self.clock.now())

        prices = self._prices(data)
        if not (str(data.get("status", "")).lower() == "resolved" or data.get("expired")):
            return ResolutionStatus.pending()

        for name, price in zip(OUTCOMES, prices):
            if price > ScoringConstants.WINNING_PRICE:
                return ResolutionStatus.winner(name, self.clock.now())
        return ResolutionStatus.pending()
