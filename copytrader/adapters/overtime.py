"""
Overtime Markets adapter

Sports moneyline markets quoted in American odds. Outcome ids are Overtime positions:
"0" home, "1" draw, "2" away. Resolution compares the final score; a game that has
produced no result a day after maturity is voided.
"""

from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..config import PlatformEndpoints, ScoringConstants
from ..normalizer import Market, MarketStatus, PriceFormat, normalize_market, parse_timestamp
from .base import ResolutionStatus, SourceAdapter


HOME, DRAW, AWAY = "0", "1", "2"


def _iter_games(payload: Any) -> Iterator[Dict]:
    """The markets endpoint nests games under sport and league keys"""
    if isinstance(payload, dict):
        if "gameId" in payload:
            yield payload
            return
        for value in payload.values():
            yield from _iter_games(value)
    elif isinstance(payload, list):
        for item in payload:
            yield from _iter_games(item)


def _price(quote: Any) -> Tuple[float, PriceFormat]:
    if isinstance(quote, dict):
        if quote.get("american") not in (None, 0):
            return float(quote["american"]), PriceFormat.AMERICAN
        return float(quote["decimal"]), PriceFormat.DECIMAL
    value = float(quote)
    return value, PriceFormat.AMERICAN if abs(value) >= 100 else PriceFormat.DECIMAL


class OvertimeAdapter(SourceAdapter):
    """Overtime V2 markets API"""

    platform = "overtime"

    def __init__(self, settings=None, clock=None):
        super().__init__(settings, clock)
        self.host = self.settings.overtime_host
        self.network = self.settings.overtime_network
        self._maturities: "OrderedDict[str, datetime]" = OrderedDict()

    def _headers(self) -> Dict[str, str]:
        return {"x-api-key": self.settings.overtime_api_key} if self.settings.overtime_api_key else {}

    # ==================== Market Data ====================

    async def _fetch_markets(self) -> List[Market]:
        url = f"{self.host}{PlatformEndpoints.OVERTIME_MARKETS.format(network=self.network)}"
        data = await self._request("GET", url, params={"ungroup": "true", "onlyMainMarkets": "true"},
                                   headers=self._headers())
        games = [g for g in _iter_games(data) if int(g.get("typeId", 0)) == 0]
        return self._normalize_each(games, self._normalize)

    def _normalize(self, game: Dict) -> Optional[Market]:
        quotes = game.get("odds") or []
        if len(quotes) not in (2, 3):
            return None

        home, away = game.get("homeTeam", "Home"), game.get("awayTeam", "Away")
        if len(quotes) == 3:
            labels = [(HOME, home), (DRAW, "Draw"), (AWAY, away)]
        else:
            labels = [(HOME, home), (AWAY, away)]

        prices, fmt = [], None
        for (outcome_id, name), quote in zip(labels, quotes):
            value, quote_fmt = _price(quote)
            if fmt is not None and quote_fmt is not fmt:
                raise ValueError("mixed odds formats in one market")
            fmt = quote_fmt
            prices.append((outcome_id, name, value))

        game_id = str(game["gameId"])
        maturity = parse_timestamp(game.get("maturity") or game.get("maturityDate"))
        if maturity:
            self._remember(self._maturities, game_id, maturity)

        status_code = int(game.get("status", 0))
        if status_code == 2 or game.get("isCancelled"):
            status = MarketStatus.CANCELLED
        elif status_code == 1:
            status = MarketStatus.RESOLVED
        elif game.get("isLive") or game.get("isPaused") or (maturity and maturity <= self.clock.now()):
            status = MarketStatus.LOCKED
        else:
            status = MarketStatus.OPEN

        return normalize_market(
            platform=self.platform,
            market_id=game_id,
            title=f"{home} vs {away}",
            prices=prices,
            fmt=fmt,
            status=status,
            resolves_at=maturity,
            liquidity=float(game.get("liquidity", 0) or 0),
        )

    # ==================== Resolution ====================

    async def _check_resolution(self, market_id: str) -> ResolutionStatus:
        url = f"{self.host}{PlatformEndpoints.OVERTIME_GAME.format(network=self.network, game_id=market_id)}"
        game = await self._request("GET", url, headers=self._headers())
        resolution = self._resolution_from_game(market_id, game or {})
        if resolution.resolved:
            self._maturities.pop(market_id, None)
        return resolution

    def _resolution_from_game(self, market_id: str, game: Dict) -> ResolutionStatus:
        now = self.clock.now()
        if game.get("isCancelled") or game.get("isCanceled") or int(game.get("status", 0)) == 2:
            return ResolutionStatus.void(now)

        finished = game.get("isGameFinished") or game.get("completed") or int(game.get("status", 0)) == 1
        home_score, away_score = game.get("homeScore"), game.get("awayScore")
        if finished and home_score is not None and away_score is not None:
            home_points, away_points = int(home_score), int(away_score)
            if home_points > away_points:
                return ResolutionStatus.winner(HOME, now)
            if away_points > home_points:
                return ResolutionStatus.winner(AWAY, now)
            return ResolutionStatus.winner(DRAW, now)

        maturity = parse_timestamp(game.get("maturity")) or self._maturities.get(market_id)
        if maturity and now - maturity > timedelta(hours=ScoringConstants.STALE_REFUND_HOURS):
            return ResolutionStatus.void(now)
        return ResolutionStatus.pending()
