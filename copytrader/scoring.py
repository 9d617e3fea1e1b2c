"""
Trust Scoring Engine

Turns a trader's raw history into a confidence-discounted skill score.

Binary markets (fixed even-money payout) are scored on the Wilson lower bound of the
win rate; odds markets (variable payout) on a conservative ROI that shrinks with the
number of trades. Both feed the same edge -> points -> confidence pipeline.
"""

import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from .config import ScoringConstants


BINARY = "binary"
ODDS = "odds"

SCORE_TIERS = (
    (1100, "LEGENDARY"),
    (900, "DIAMOND"),
    (650, "PLATINUM"),
    (400, "GOLD"),
    (200, "SILVER"),
    (0, "BRONZE"),
)


@dataclass
class TraderHistory:
    """Aggregated track record of one trader on one platform"""
    address: str
    platform: str
    wins: int = 0
    total_bets: int = 0
    total_volume: float = 0.0
    total_pnl: float = 0.0
    last_trade_time: Optional[datetime] = None

    @property
    def win_rate(self) -> float:
        return self.wins / self.total_bets if self.total_bets else 0.0


@dataclass
class TrustScoreResult:
    """Outcome of scoring one trader"""
    score: int
    eligible: bool
    edge: float
    confidence: float
    market_type: str
    sample_size: int
    reason: Optional[str] = None
    edge_points: int = 0
    raw_rate: float = 0.0
    recency_bonus: int = 0
    days_since_last_trade: Optional[int] = None

    @property
    def total_score(self) -> int:
        return min(ScoringConstants.MAX_TOTAL_SCORE, self.score + self.recency_bonus)

    @property
    def tier(self) -> str:
        return score_tier(self.total_score)

    def to_dict(self) -> Dict:
        return {
            "score": self.score,
            "total_score": self.total_score,
            "tier": self.tier,
            "eligible": self.eligible,
            "edge": self.edge,
            "confidence": self.confidence,
            "market_type": self.market_type,
            "sample_size": self.sample_size,
            "reason": self.reason,
            "recency_bonus": self.recency_bonus,
        }


def _round(value: float) -> int:
    # half-up, so 0.5 always rounds away from zero for positive values
    return int(math.floor(value + 0.5))


# ==================== Statistics ====================

def wilson_score_lower(wins: int, total: int, z: float = ScoringConstants.Z_SCORE) -> float:
    """
    Wilson score interval lower bound

    wilson_score_lower(3, 3) is about 0.438, not 1.0: three straight wins prove little.

    Args:
        wins: Number of wins
        total: Number of decided bets
        z: Normal quantile (1.96 for 95%)

    Returns:
        Lower bound of the true win rate, 0 for degenerate input
    """
    if total <= 0 or wins < 0 or wins > total:
        return 0.0

    p = wins / total
    z2 = z * z
    denominator = 1 + z2 / total
    center = p + z2 / (2 * total)
    spread = z * math.sqrt((p * (1 - p) + z2 / (4 * total)) / total)
    return max(0.0, (center - spread) / denominator)


def wilson_score_upper(wins: int, total: int, z: float = ScoringConstants.Z_SCORE) -> float:
    """Upper bound of the Wilson interval, 1 for degenerate input"""
    if total <= 0 or wins < 0 or wins > total:
        return 1.0

    p = wins / total
    z2 = z * z
    denominator = 1 + z2 / total
    center = p + z2 / (2 * total)
    spread = z * math.sqrt((p * (1 - p) + z2 / (4 * total)) / total)
    return min(1.0, (center + spread) / denominator)


def calculate_confidence(sample_size: int) -> float:
    """Confidence multiplier in [0.5, 1) that grows with sample size"""
    if sample_size <= 0:
        return 0.5
    return 0.5 + 0.5 * (1 - math.exp(-sample_size / ScoringConstants.CONFIDENCE_SCALE))


def calculate_conservative_roi(
    pnl: float,
    volume: float,
    trades: int,
    variance: float = ScoringConstants.ROI_VARIANCE_ESTIMATE,
) -> float:
    """ROI minus a standard-error penalty that shrinks with the number of trades"""
    if volume <= 0 or trades <= 0:
        return 0.0
    roi = pnl / volume
    return roi - ScoringConstants.ROI_Z * math.sqrt(variance / trades)


def calculate_recency_bonus(
    last_trade_time: Optional[datetime], now: Optional[datetime] = None
) -> Tuple[int, Optional[int]]:
    """
    Bonus points for recent activity

    Full bonus within RECENCY_FULL_DAYS, decaying linearly to 0 at RECENCY_DECAY_DAYS.

    Returns:
        (bonus, whole days since last trade or None)
    """
    if last_trade_time is None:
        return 0, None

    now = now or datetime.now(timezone.utc)
    if last_trade_time.tzinfo is None:
        last_trade_time = last_trade_time.replace(tzinfo=timezone.utc)
    days = max(0, math.floor((now - last_trade_time).total_seconds() / 86400))

    full = ScoringConstants.RECENCY_FULL_DAYS
    decay = ScoringConstants.RECENCY_DECAY_DAYS
    if days <= full:
        return ScoringConstants.MAX_RECENCY_BONUS, days
    if days >= decay:
        return 0, days

    progress = (days - full) / (decay - full)
    return _round(ScoringConstants.MAX_RECENCY_BONUS * (1 - progress)), days


def _score_from_edge(edge: float, sample_size: int) -> Tuple[int, float, int]:
    edge_points = min(ScoringConstants.MAX_EDGE_POINTS, _round(edge * ScoringConstants.EDGE_MULTIPLIER))
    confidence = calculate_confidence(sample_size)
    score = min(ScoringConstants.MAX_SCORE, _round(edge_points * confidence * 2))
    return max(0, score), confidence, edge_points


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


# ==================== Scoring ====================

def score_binary_trader(
    wins: int,
    total: int,
    last_trade_time: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> TrustScoreResult:
    """
    Score a trader on fixed-odds (even-money) markets

    Args:
        wins: Winning bets
        total: Decided bets
        last_trade_time: Most recent bet, for the recency bonus

    Returns:
        TrustScoreResult; ineligible with score 0 below MIN_BETS_BINARY
    """
    minimum = ScoringConstants.MIN_BETS_BINARY
    raw_rate = wins / total if total > 0 and 0 <= wins <= total else 0.0

    if total < minimum:
        return TrustScoreResult(
            score=0,
            eligible=False,
            edge=0.0,
            confidence=0.0,
            market_type=BINARY,
            sample_size=max(0, total),
            raw_rate=raw_rate,
            reason=f"Need {_plural(minimum - max(0, total), 'more bet')} "
                   f"(have {max(0, total)}, minimum {minimum})",
        )

    bonus, days = calculate_recency_bonus(last_trade_time, now)
    proven = wilson_score_lower(wins, total)
    edge = max(0.0, proven - 0.5)
    score, confidence, edge_points = _score_from_edge(edge, total)

    return TrustScoreResult(
        score=score,
        eligible=True,
        edge=edge,
        confidence=confidence,
        market_type=BINARY,
        sample_size=total,
        edge_points=edge_points,
        raw_rate=raw_rate,
        recency_bonus=bonus,
        days_since_last_trade=days,
    )


def score_odds_trader(
    pnl: float,
    volume: float,
    trades: int,
    last_trade_time: Optional[datetime] = None,
    now: Optional[datetime] = None,
    variance: float = ScoringConstants.ROI_VARIANCE_ESTIMATE,
) -> TrustScoreResult:
    """
    Score a trader on variable-payout markets by conservative ROI

    A negative conservative ROI is a zero-skill result (eligible, score 0), not a rejection.
    """
    min_trades = ScoringConstants.MIN_TRADES_ODDS
    min_volume = ScoringConstants.MIN_VOLUME_ODDS
    raw_rate = pnl / volume if volume > 0 else 0.0

    reason = None
    if trades < min_trades:
        reason = f"Need {_plural(min_trades - max(0, trades), 'more trade')} " \
                 f"(have {max(0, trades)}, minimum {min_trades})"
    elif volume < min_volume:
        reason = f"Need ${min_volume - max(0.0, volume):,.0f} more volume " \
                 f"(have ${max(0.0, volume):,.0f}, minimum ${min_volume:,.0f})"

    if reason:
        return TrustScoreResult(
            score=0,
            eligible=False,
            edge=0.0,
            confidence=0.0,
            market_type=ODDS,
            sample_size=max(0, trades),
            raw_rate=raw_rate,
            reason=reason,
        )

    bonus, days = calculate_recency_bonus(last_trade_time, now)
    edge = max(0.0, calculate_conservative_roi(pnl, volume, trades, variance))
    score, confidence, edge_points = _score_from_edge(edge, trades)

    return TrustScoreResult(
        score=score,
        eligible=True,
        edge=edge,
        confidence=confidence,
        market_type=ODDS,
        sample_size=trades,
        edge_points=edge_points,
        raw_rate=raw_rate,
        recency_bonus=bonus,
        days_since_last_trade=days,
    )


def get_market_type(platform: str) -> str:
    """Classify a platform as binary (fixed even-money) or odds; unknown -> odds"""
    normalized = re.sub(r"[^a-z]", "", (platform or "").lower())
    if not normalized:
        return ODDS
    for name in ScoringConstants.BINARY_PLATFORMS:
        if name in normalized:
            return BINARY
    return ODDS


def calculate_trust_score(
    history: TraderHistory,
    now: Optional[datetime] = None,
    variance: float = ScoringConstants.ROI_VARIANCE_ESTIMATE,
) -> TrustScoreResult:
    """Score a trader history with the method its platform calls for"""
    if get_market_type(history.platform) == BINARY:
        return score_binary_trader(history.wins, history.total_bets, history.last_trade_time, now)
    return score_odds_trader(
        history.total_pnl,
        history.total_volume,
        history.total_bets,
        history.last_trade_time,
        now,
        variance,
    )


# ==================== Presentation ====================

def score_tier(total_score: int) -> str:
    for threshold, name in SCORE_TIERS:
        if total_score >= threshold:
            return name
    return "BRONZE"


def trust_percent(result: TrustScoreResult) -> float:
    """Map a score onto the 0-100 trust scale used by follow configs"""
    return round(min(100.0, result.score / ScoringConstants.MAX_SCORE * 100), 1)


def score_breakdown(result: TrustScoreResult) -> Dict[str, str]:
    """Human-readable skill / confidence / recency summary"""
    if not result.eligible:
        return {
            "skill": "Not eligible",
            "confidence": "N/A",
            "recency": "N/A",
            "explanation": result.reason or "Insufficient data",
        }

    edge_pct = round(result.edge * 100, 1)
    confidence_pct = round(result.confidence * 100)
    edge_text = f"{edge_pct}% above coin flip" if result.market_type == BINARY else f"{edge_pct}% ROI"

    if edge_pct >= 10:
        skill = "Elite"
    elif edge_pct >= 7:
        skill = "Excellent"
    elif edge_pct >= 5:
        skill = "Strong"
    elif edge_pct >= 3:
        skill = "Good"
    elif edge_pct >= 1:
        skill = "Slight edge"
    else:
        skill = "No proven edge"

    if confidence_pct >= 95:
        confidence = "Very high"
    elif confidence_pct >= 85:
        confidence = "High"
    elif confidence_pct >= 70:
        confidence = "Moderate"
    elif confidence_pct >= 55:
        confidence = "Low"
    else:
        confidence = "Very low"

    if result.recency_bonus >= 250:
        recency = "Very active"
    elif result.recency_bonus >= 150:
        recency = "Active"
    elif result.recency_bonus >= 50:
        recency = "Moderate"
    elif result.recency_bonus > 0:
        recency = "Low activity"
    else:
        recency = "Inactive"

    unit = "bets" if result.market_type == BINARY else "trades"
    days = f"{result.days_since_last_trade} days ago" if result.days_since_last_trade is not None else "unknown"

    return {
        "skill": f"{skill} ({edge_text})",
        "confidence": f"{confidence} ({confidence_pct}%, {result.sample_size} {unit})",
        "recency": f"{recency} (+{result.recency_bonus} pts, last trade {days})",
        "explanation": f"{skill} performer with {confidence.lower()} confidence. "
                       f"{recency} trader with +{result.recency_bonus} recency bonus.",
    }
