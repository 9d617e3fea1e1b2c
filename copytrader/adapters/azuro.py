"""
Azuro adapter

Reads conditions (one condition = one market) from the Azuro subgraph over GraphQL.
Outcomes are quoted in decimal odds.
"""

from typing import Any, Dict, List, Optional

from loguru import logger

from ..normalizer import Market, MarketStatus, PriceFormat, normalize_market, parse_timestamp
from .base import ResolutionStatus, SourceAdapter


ACTIVE_CONDITIONS_QUERY = """
query ActiveConditions($first: Int!) {
  conditions(
    first: $first
    where: { status: Created }
    orderBy: createdBlockTimestamp
    orderDirection: desc
  ) {
    id
    conditionId
    status
    outcomes { outcomeId currentOdds }
    game {
      gameId
      title
      startsAt
      sport { name }
      league { name }
      participants { name }
    }
  }
}
"""

CONDITION_STATUS_QUERY = """
query ConditionStatus($ids: [String!]) {
  conditions(where: { id_in: $ids }) {
    id
    conditionId
    status
    wonOutcomes { outcomeId }
  }
}
"""


class AzuroAdapter(SourceAdapter):
    """Azuro protocol subgraph"""

    platform = "azuro"

    def __init__(self, settings=None, clock=None):
        super().__init__(settings, clock)
        self.subgraph_url = self.settings.azuro_subgraph_url

    async def _query(self, query: str, variables: Dict[str, Any]) -> Dict:
        data = await self._request("POST", self.subgraph_url, json_data={"query": query, "variables": variables})
        if data.get("errors"):
            raise ValueError(f"GraphQL errors: {data['errors']}")
        return data.get("data") or {}

    # ==================== Market Data ====================

    async def _fetch_markets(self) -> List[Market]:
        data = await self._query(ACTIVE_CONDITIONS_QUERY, {"first": 50})
        return self._normalize_each(data.get("conditions", []), self._normalize)

    def _normalize(self, condition: Dict) -> Optional[Market]:
        outcomes = condition.get("outcomes") or []
        if not outcomes:
            return None

        game = condition.get("game") or {}
        participants = [p.get("name", "") for p in game.get("participants") or []]
        names = self._outcome_names(len(outcomes), participants)
        starts_at = parse_timestamp(game.get("startsAt"))

        status = MarketStatus.OPEN
        if starts_at and starts_at <= self.clock.now():
            status = MarketStatus.LOCKED

        title = game.get("title") or " vs ".join(participants) or condition.get("conditionId", "")
        league = (game.get("league") or {}).get("name")
        if league:
            title = f"{title} ({league})"

        return normalize_market(
            platform=self.platform,
            market_id=condition["id"],
            title=title,
            prices=[
                (o["outcomeId"], names[i] if names else f"Outcome {o['outcomeId']}", float(o["currentOdds"]))
                for i, o in enumerate(outcomes)
            ],
            fmt=PriceFormat.DECIMAL,
            status=status,
            resolves_at=starts_at,
        )

    @staticmethod
    def _outcome_names(count: int, participants: List[str]) -> List[str]:
        if len(participants) != 2:
            return []
        if count == 2:
            return participants
        if count == 3:
            return [participants[0], "Draw", participants[1]]
        return []

    # ==================== Resolution ====================

    async def _check_resolution(self, market_id: str) -> ResolutionStatus:
        data = await self._query(CONDITION_STATUS_QUERY, {"ids": [market_id]})
        conditions = data.get("conditions") or []
        if not conditions:
            logger.debug(f"[azuro] Condition {market_id} not found in subgraph")
            return ResolutionStatus.pending()

        condition = conditions[0]
        status = condition.get("status")
        if status == "Canceled":
            return ResolutionStatus.void(self.clock.now())
        if status == "Resolved":
            won = [w.get("outcomeId") for w in condition.get("wonOutcomes") or []]
            if won:
                return ResolutionStatus.winner(won[0], self.clock.now())
        return ResolutionStatus.pending()
