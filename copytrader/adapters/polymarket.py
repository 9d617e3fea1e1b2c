"""
Polymarket adapter

Markets and resolution come from the Gamma API, live bets from the public data-api
trade feed. Gamma returns `outcomes` and `outcomePrices` either as lists or as
JSON-encoded strings.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..config import PlatformEndpoints, ScoringConstants
from ..normalizer import Market, MarketStatus, PriceFormat, normalize_market, parse_timestamp
from .base import BetEvent, ResolutionStatus, SourceAdapter


def _json_list(value: Any) -> List[Any]:
    """Gamma encodes nested arrays as strings: '["Yes", "No"]'"""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        decoded = json.loads(value)
        return decoded if isinstance(decoded, list) else []
    return list(value)


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class PolymarketAdapter(SourceAdapter):
    """Polymarket Gamma API + data-api trade feed"""

    platform = "polymarket"
    supports_feed = True

    def __init__(self, settings=None, clock=None):
        super().__init__(settings, clock)
        self.gamma_host = self.settings.polymarket_gamma_host
        self.data_host = self.settings.polymarket_data_host

    # ==================== Market Data ====================

    async def _fetch_markets(self) -> List[Market]:
        data = await self._request(
            "GET",
            f"{self.gamma_host}{PlatformEndpoints.GAMMA_MARKETS}",
            params={"active": "true", "closed": "false", "limit": 100},
        )
        items = data if isinstance(data, list) else data.get("data", [])
        return self._normalize_each(items, self._normalize)

    def _normalize(self, data: Dict) -> Optional[Market]:
        names = [str(o) for o in _json_list(data.get("outcomes"))]
        prices = [_as_float(p) for p in _json_list(data.get("outcomePrices"))]
        if not names or len(names) != len(prices):
            return None

        if data.get("closed"):
            resolution = self._resolution_from_market(data)
            status = MarketStatus.CANCELLED if resolution.voided else (
                MarketStatus.RESOLVED if resolution.resolved else MarketStatus.LOCKED
            )
            resolved_outcome = resolution.winning_outcome_id
        else:
            status = MarketStatus.OPEN if data.get("active", True) else MarketStatus.LOCKED
            resolved_outcome = None

        return normalize_market(
            platform=self.platform,
            market_id=data.get("conditionId") or data.get("condition_id") or data["id"],
            title=data.get("question", ""),
            prices=list(zip(names, names, prices)),
            fmt=PriceFormat.PROBABILITY,
            status=status,
            resolves_at=parse_timestamp(data.get("endDate") or data.get("end_date_iso")),
            volume=_as_float(data.get("volumeNum", data.get("volume"))),
            liquidity=_as_float(data.get("liquidityNum", data.get("liquidity"))),
            resolved_outcome=resolved_outcome,
        )

    # ==================== Resolution ====================

    async def _check_resolution(self, market_id: str) -> ResolutionStatus:
        if market_id.startswith("0x"):
            data = await self._request(
                "GET",
                f"{self.gamma_host}{PlatformEndpoints.GAMMA_MARKETS}",
                params={"condition_ids": market_id},
            )
        else:
            data = await self._request("GET", f"{self.gamma_host}{PlatformEndpoints.GAMMA_MARKETS}/{market_id}")

        if isinstance(data, list):
            if not data:
                return ResolutionStatus.pending()
            data = data[0]
        return self._resolution_from_market(data)

    def _resolution_from_market(self, data: Dict) -> ResolutionStatus:
        """
        Map a Gamma market onto a resolution status

        Order: closed/resolvedAt gate, outcome price above WINNING_PRICE, best bid/ask on
        fully zeroed prices, legacy token winner flags, and finally the voided flag.
        """
        if not (data.get("closed") or data.get("resolvedAt")):
            return ResolutionStatus.pending()

        resolved_at = parse_timestamp(data.get("resolvedAt") or data.get("closedTime"))
        outcomes = _json_list(data.get("outcomes"))
        names = [str(o) for o in outcomes if not isinstance(o, dict)]
        prices = [_as_float(p) for p in _json_list(data.get("outcomePrices"))]

        for name, price in zip(names, prices):
            if price > ScoringConstants.WINNING_PRICE:
                return ResolutionStatus.winner(name, resolved_at)

        if len(names) == 2 and prices and all(p == 0 for p in prices):
            best_ask = _as_float(data.get("bestAsk"), -1)
            best_bid = _as_float(data.get("bestBid"), -1)
            if best_ask == 1 and best_bid == 0:
                return ResolutionStatus.winner(names[1], resolved_at)
            if best_ask == 0 and best_bid == 1:
                return ResolutionStatus.winner(names[0], resolved_at)

        tokens = data.get("tokens") or [o for o in outcomes if isinstance(o, dict)]
        for token in tokens:
            if token.get("winner") is True:
                return ResolutionStatus.winner(token.get("outcome") or token.get("value"), resolved_at)

        if data.get("voided"):
            return ResolutionStatus.void(resolved_at)

        return ResolutionStatus.pending()

    # ==================== Bet Feed ====================

    async def fetch_recent_bets(self) -> List[BetEvent]:
        data = await self._request(
            "GET",
            f"{self.data_host}{PlatformEndpoints.DATA_TRADES}",
            params={"limit": 100, "takerOnly": "true"},
        )
        events = []
        for trade in data if isinstance(data, list) else []:
            event = self._bet_from_trade(trade)
            if event is not None:
                events.append(event)
        return events

    def _bet_from_trade(self, trade: Dict) -> Optional[BetEvent]:
        if str(trade.get("side", "")).upper() != "BUY":
            return None
        price = _as_float(trade.get("price"))
        size = _as_float(trade.get("size"))
        if not 0 < price < 1 or size <= 0:
            return None

        tx_hash = trade.get("transactionHash", "")
        return BetEvent(
            id=f"{tx_hash}:{trade.get('asset', trade.get('outcome', ''))}",
            platform=self.platform,
            trader=str(trade.get("proxyWallet", "")).lower(),
            market_id=trade.get("conditionId", ""),
            outcome_id=str(trade.get("outcome", "")),
            stake=size * price,
            odds=1 / price,
            placed_at=parse_timestamp(trade.get("timestamp")) or datetime.now(timezone.utc),
            raw=trade,
        )
