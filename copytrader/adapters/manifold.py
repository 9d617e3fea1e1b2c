"""
Manifold Markets adapter

Binary play-money markets priced by probability. Resolutions CANCEL and MKT (resolved
to a probability rather than an outcome) both refund.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..config import PlatformEndpoints
from ..normalizer import Market, MarketStatus, PriceFormat, normalize_market, parse_timestamp
from .base import BetEvent, ResolutionStatus, SourceAdapter


VOID_RESOLUTIONS = ("CANCEL", "MKT")


class ManifoldAdapter(SourceAdapter):
    """Manifold public API"""

    platform = "manifold"
    supports_feed = True

    def __init__(self, settings=None, clock=None):
        super().__init__(settings, clock)
        self.host = self.settings.manifold_host

    # ==================== Market Data ====================

    async def _fetch_markets(self) -> List[Market]:
        data = await self._request("GET", f"{self.host}{PlatformEndpoints.MANIFOLD_MARKETS}", params={"limit": 100})
        items = [m for m in data or [] if m.get("outcomeType", "BINARY") == "BINARY"]
        return self._normalize_each(items, self._normalize)

    def _normalize(self, data: Dict) -> Optional[Market]:
        probability = float(data.get("probability", 0.5))
        resolution = self._resolution_from_market(data)
        if resolution.voided:
            status = MarketStatus.CANCELLED
        elif resolution.resolved:
            status = MarketStatus.RESOLVED
        else:
            close_time = parse_timestamp(data.get("closeTime"))
            status = MarketStatus.LOCKED if close_time and close_time <= self.clock.now() else MarketStatus.OPEN

        return normalize_market(
            platform=self.platform,
            market_id=data["id"],
            title=data.get("question", ""),
            prices=[("YES", "Yes", probability), ("NO", "No", 1 - probability)],
            fmt=PriceFormat.PROBABILITY,
            status=status,
            resolves_at=parse_timestamp(data.get("closeTime")),
            volume=float(data.get("volume", 0) or 0),
            liquidity=float(data.get("totalLiquidity", 0) or 0),
            resolved_outcome=resolution.winning_outcome_id,
        )

    # ==================== Resolution ====================

    async def _check_resolution(self, market_id: str) -> ResolutionStatus:
        url = f"{self.host}{PlatformEndpoints.MANIFOLD_MARKET.format(id=market_id)}"
        return self._resolution_from_market(await self._request("GET", url))

    def _resolution_from_market(self, data: Dict) -> ResolutionStatus:
        if not data.get("isResolved"):
            return ResolutionStatus.pending()

        resolved_at = parse_timestamp(data.get("resolutionTime"))
        resolution = str(data.get("resolution", "")).upper()
        if resolution in VOID_RESOLUTIONS:
            return ResolutionStatus.void(resolved_at)
        if resolution in ("YES", "NO"):
            return ResolutionStatus.winner(resolution, resolved_at)
        return ResolutionStatus.pending()

    # ==================== Bet Feed ====================

    async def fetch_recent_bets(self) -> List[BetEvent]:
        data = await self._request("GET", f"{self.host}{PlatformEndpoints.MANIFOLD_BETS}", params={"limit": 100})
        events = []
        for bet in data or []:
            if bet.get("isRedemption") or bet.get("isCancelled") or float(bet.get("amount", 0)) <= 0:
                continue
            outcome = str(bet.get("outcome", "")).upper()
            if outcome not in ("YES", "NO"):
                continue
            prob_yes = float(bet.get("probBefore", 0.5))
            price = prob_yes if outcome == "YES" else 1 - prob_yes
            if not 0 < price < 1:
                continue
            events.append(BetEvent(
                id=str(bet["id"]),
                platform=self.platform,
                trader=str(bet.get("userId", "")),
                market_id=str(bet.get("contractId", "")),
                outcome_id=outcome,
                stake=float(bet["amount"]),
                odds=1 / price,
                placed_at=parse_timestamp(bet.get("createdTime")) or datetime.now(timezone.utc),
                raw=bet,
            ))
        return events
