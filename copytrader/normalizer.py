"""
Market Normalizer

Flattens platform prices into one Market/Outcome model. Every Outcome carries decimal
odds (stake x odds = total payout) and the implied probability 1/odds.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Sequence, Tuple


class MarketStatus(enum.Enum):
    """Market lifecycle status"""
    OPEN = "open"
    LOCKED = "locked"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class PriceFormat(enum.Enum):
    """How a platform quotes an outcome"""
    PROBABILITY = "probability"  # 0..1
    DECIMAL = "decimal"          # payout multiplier
    AMERICAN = "american"        # +150 / -200


@dataclass
class Outcome:
    """One selectable outcome of a market"""
    id: str
    name: str
    odds: float
    implied_probability: float

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "odds": self.odds,
            "implied_probability": self.implied_probability,
        }


@dataclass
class Market:
    """Normalized market"""
    id: str
    platform: str
    title: str
    outcomes: List[Outcome] = field(default_factory=list)
    status: MarketStatus = MarketStatus.OPEN
    resolves_at: Optional[datetime] = None
    volume: float = 0.0
    liquidity: float = 0.0
    resolved_outcome: Optional[str] = None

    @property
    def overround(self) -> float:
        """Sum of implied probabilities (1.0 for a fair market)"""
        return sum(o.implied_probability for o in self.outcomes)

    def outcome(self, outcome_id: str) -> Optional[Outcome]:
        for o in self.outcomes:
            if o.id == outcome_id:
                return o
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "platform": self.platform,
            "title": self.title,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "status": self.status.value,
            "resolves_at": self.resolves_at.isoformat() if self.resolves_at else None,
            "volume": self.volume,
            "liquidity": self.liquidity,
            "resolved_outcome": self.resolved_outcome,
        }


# ==================== Price Conversions ====================

def american_to_decimal(american: float) -> float:
    """Convert American odds to decimal odds"""
    american = float(american)
    if american > 0:
        return american / 100 + 1
    if american < 0:
        return 100 / abs(american) + 1
    raise ValueError("American odds of 0 are undefined")


def probability_to_decimal(probability: float) -> float:
    probability = float(probability)
    if not 0 < probability <= 1:
        raise ValueError(f"Probability out of range: {probability}")
    return 1 / probability


def implied_probability(odds: float) -> float:
    """Implied probability of decimal odds; 0 for an unpriced outcome"""
    return 1 / odds if odds > 0 else 0.0


def to_decimal_odds(price: float, fmt: PriceFormat) -> float:
    """Convert a platform price to decimal odds"""
    if fmt is PriceFormat.PROBABILITY:
        return probability_to_decimal(price)
    if fmt is PriceFormat.AMERICAN:
        return american_to_decimal(price)
    odds = float(price)
    if odds < 1:
        raise ValueError(f"Decimal odds below 1: {odds}")
    return odds


def make_outcome(outcome_id: Any, name: str, price: float, fmt: PriceFormat) -> Outcome:
    """
    Build an Outcome from a platform price

    Probability prices keep the quoted probability exactly. A probability of 0 yields an
    unpriced outcome (odds 0) rather than an error.
    """
    if fmt is PriceFormat.PROBABILITY:
        probability = float(price)
        if probability < 0 or probability > 1:
            raise ValueError(f"Probability out of range: {probability}")
        odds = 1 / probability if probability > 0 else 0.0
        return Outcome(id=str(outcome_id), name=name, odds=odds, implied_probability=probability)

    odds = to_decimal_odds(price, fmt)
    return Outcome(id=str(outcome_id), name=name, odds=odds, implied_probability=implied_probability(odds))


def normalize_market(
    platform: str,
    market_id: Any,
    title: str,
    prices: Sequence[Tuple[Any, str, float]],
    fmt: PriceFormat,
    status: MarketStatus = MarketStatus.OPEN,
    resolves_at: Optional[datetime] = None,
    volume: float = 0.0,
    liquidity: float = 0.0,
    resolved_outcome: Optional[str] = None,
) -> Market:
    """
    Build a Market from (outcome id, name, price) triples

    Args:
        platform: Source platform name
        market_id: Platform market identifier
        title: Market question or title
        prices: Outcome triples in platform order
        fmt: Price format the platform quotes in

    Returns:
        Normalized Market

    Raises:
        ValueError: On any invalid price
    """
    outcomes = [make_outcome(oid, name, price, fmt) for oid, name, price in prices]
    return Market(
        id=str(market_id),
        platform=platform,
        title=title,
        outcomes=outcomes,
        status=status,
        resolves_at=resolves_at,
        volume=float(volume or 0),
        liquidity=float(liquidity or 0),
        resolved_outcome=resolved_outcome,
    )


def remove_overround(outcomes: Iterable[Outcome]) -> List[float]:
    """Fair probabilities: implied probabilities scaled to sum to 1"""
    probabilities = [o.implied_probability for o in outcomes]
    total = sum(probabilities)
    if total <= 0:
        return probabilities
    return [p / total for p in probabilities]


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings, unix seconds or unix milliseconds into an aware datetime"""
    if value in (None, "", 0):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        ts = float(value)
        if ts > 1e12:
            ts /= 1000
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
