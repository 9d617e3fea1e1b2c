"""
SX Bet adapter (SX Network)

Peer-to-peer sports exchange. Each market has two outcomes, "1" and "2", quoted in
American odds; settlement reports outcome 1, 2, or 3 for a void.
"""

from typing import Any, Dict, List, Optional

from ..config import PlatformEndpoints
from ..normalizer import Market, MarketStatus, PriceFormat, normalize_market, parse_timestamp
from .base import ResolutionStatus, SourceAdapter


ONE, TWO = "1", "2"
VOID_OUTCOME = 3
DEFAULT_LINE = -110.0


def _markets(payload: Any) -> List[Dict]:
    data = payload.get("data", payload) if isinstance(payload, dict) else payload
    if isinstance(data, dict):
        data = data.get("markets", [])
    return data if isinstance(data, list) else []


class SXBetAdapter(SourceAdapter):
    """SX Bet public API"""

    platform = "sxbet"

    def __init__(self, settings=None, clock=None):
        super().__init__(settings, clock)
        self.host = self.settings.sxbet_host

    # ==================== Market Data ====================

    async def _fetch_markets(self) -> List[Market]:
        data = await self._request("GET", f"{self.host}{PlatformEndpoints.SXBET_ACTIVE}", params={"pageSize": 100})
        items = [m for m in _markets(data) if m.get("outcomeOneName") and m.get("marketHash")]
        return self._normalize_each(items, self._normalize)

    def _normalize(self, data: Dict) -> Optional[Market]:
        one, two = data["outcomeOneName"], data.get("outcomeTwoName", "")
        resolution = self._resolution_from_market(data)
        if resolution.voided:
            status = MarketStatus.CANCELLED
        elif resolution.resolved:
            status = MarketStatus.RESOLVED
        elif data.get("status", "ACTIVE") == "ACTIVE":
            status = MarketStatus.OPEN
        else:
            status = MarketStatus.LOCKED

        return normalize_market(
            platform=self.platform,
            market_id=data["marketHash"],
            title=f"{one} vs {two}",
            prices=[
                (ONE, one, float(data.get("outcomeOneLine") or DEFAULT_LINE)),
                (TWO, two, float(data.get("outcomeTwoLine") or DEFAULT_LINE)),
            ],
            fmt=PriceFormat.AMERICAN,
            status=status,
            resolves_at=parse_timestamp(data.get("gameTime")),
            resolved_outcome=resolution.winning_outcome_id,
        )

    # ==================== Resolution ====================

    async def _check_resolution(self, market_id: str) -> ResolutionStatus:
        data = await self._request(
            "GET", f"{self.host}{PlatformEndpoints.SXBET_FIND}", params={"marketHashes": market_id}
        )
        for market in _markets(data):
            if market.get("marketHash") == market_id:
                return self._resolution_from_market(market)
        return ResolutionStatus.pending()

    def _resolution_from_market(self, data: Dict) -> ResolutionStatus:
        status = str(data.get("status", "")).upper()
        reported = data.get("reportedOutcome", data.get("outcome"))
        if reported is not None:
            reported = int(reported)
        now = self.clock.now()
        if status == "VOIDED" or (status == "SETTLED" and reported == VOID_OUTCOME):
            return ResolutionStatus.void(now)
        if status == "SETTLED" and reported in (1, 2):
            return ResolutionStatus.winner(reported, now)
        return ResolutionStatus.pending()
