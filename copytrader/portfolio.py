"""
Portfolio Ledger

Per-owner balances, open and closed simulated positions, and aggregate performance.
Only the copy decision engine (placement) and the settlement engine (resolution) write
to the ledger; everyone else reads snapshots.
"""

import copy
import enum
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from loguru import logger

from .errors import LedgerInvariantViolation


class PositionStatus(enum.Enum):
    """Simulated position status"""
    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not PositionStatus.PENDING

    @property
    def returns_stake(self) -> bool:
        return self in (PositionStatus.CANCELLED, PositionStatus.REFUNDED)


@dataclass
class Position:
    """A simulated bet"""
    id: str
    owner: str
    platform: str
    market_id: str
    outcome_id: str
    stake: float
    odds: float
    placed_at: datetime
    status: PositionStatus = PositionStatus.PENDING
    resolved_at: Optional[datetime] = None
    payout: Optional[float] = None
    real_outcome: Optional[str] = None
    copied_from: Optional[str] = None
    source_event_id: Optional[str] = None

    @property
    def potential_payout(self) -> float:
        return self.stake * self.odds

    @property
    def pnl(self) -> float:
        if self.payout is None:
            return 0.0
        return self.payout - self.stake

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "owner": self.owner,
            "platform": self.platform,
            "market_id": self.market_id,
            "outcome_id": self.outcome_id,
            "stake": self.stake,
            "odds": self.odds,
            "potential_payout": self.potential_payout,
            "status": self.status.value,
            "placed_at": self.placed_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "payout": self.payout,
            "real_outcome": self.real_outcome,
            "copied_from": self.copied_from,
        }


@dataclass
class PortfolioStats:
    """Aggregate performance; refunds and cancellations are excluded from wins/losses"""
    wins: int = 0
    losses: int = 0
    refunds: int = 0
    total_wagered: float = 0.0
    total_won: float = 0.0
    pnl: float = 0.0
    roi: float = 0.0
    win_rate: float = 0.0

    def recompute(self):
        decided = self.wins + self.losses
        self.pnl = self.total_won - self.total_wagered
        self.win_rate = self.wins / decided if decided else 0.0
        self.roi = self.pnl / self.total_wagered if self.total_wagered else 0.0


@dataclass
class Portfolio:
    """One owner's account"""
    owner: str
    balance: float = 0.0
    total_deposited: float = 0.0
    closed_payouts: float = 0.0
    closed_stakes: float = 0.0
    open_positions: Dict[str, Position] = field(default_factory=dict)
    history: List[Position] = field(default_factory=list)
    stats: PortfolioStats = field(default_factory=PortfolioStats)

    @property
    def open_stake(self) -> float:
        return sum(p.stake for p in self.open_positions.values())

    def to_dict(self) -> Dict:
        return {
            "owner": self.owner,
            "balance": self.balance,
            "total_deposited": self.total_deposited,
            "open_positions": len(self.open_positions),
            "closed_positions": len(self.history),
            "wins": self.stats.wins,
            "losses": self.stats.losses,
            "refunds": self.stats.refunds,
            "total_wagered": self.stats.total_wagered,
            "total_won": self.stats.total_won,
            "pnl": self.stats.pnl,
            "roi": self.stats.roi,
            "win_rate": self.stats.win_rate,
        }


class PortfolioLedger:
    """
    In-memory ledger of all portfolios

    Invariant, per owner, at every instant:
        balance = total_deposited + sum(closed payouts) - sum(all stakes)
    Any mutation that would break it raises LedgerInvariantViolation and changes nothing.
    """

    def __init__(self, starting_balance: float = 0.0):
        self._starting_balance = starting_balance
        self._portfolios: Dict[str, Portfolio] = {}
        self._open_index: Dict[str, Position] = {}

    def _portfolio(self, owner: str) -> Portfolio:
        portfolio = self._portfolios.get(owner)
        if portfolio is None:
            portfolio = Portfolio(
                owner=owner,
                balance=self._starting_balance,
                total_deposited=self._starting_balance,
            )
            self._portfolios[owner] = portfolio
        return portfolio

    # ==================== Reads ====================

    def owners(self) -> List[str]:
        return list(self._portfolios)

    def balance(self, owner: str) -> float:
        portfolio = self._portfolios.get(owner)
        return portfolio.balance if portfolio else self._starting_balance

    def get_position(self, position_id: str) -> Optional[Position]:
        position = self._open_index.get(position_id)
        if position is not None:
            return position
        for portfolio in self._portfolios.values():
            for closed in portfolio.history:
                if closed.id == position_id:
                    return closed
        return None

    def open_positions(self, platform: Optional[str] = None) -> List[Position]:
        """Pending positions across all owners, oldest first"""
        positions = [p for p in self._open_index.values() if platform is None or p.platform == platform]
        return sorted(positions, key=lambda p: p.placed_at)

    def snapshot(self, owner: str) -> Portfolio:
        """Detached copy of one portfolio"""
        return copy.deepcopy(self._portfolio(owner))

    def snapshots(self) -> List[Portfolio]:
        return [copy.deepcopy(p) for p in self._portfolios.values()]

    def verify(self, owner: str):
        """Raise LedgerInvariantViolation if the balance equation does not hold"""
        portfolio = self._portfolio(owner)
        expected = _expected_balance(portfolio)
        if not math.isclose(portfolio.balance, expected, rel_tol=1e-9, abs_tol=1e-6):
            raise LedgerInvariantViolation(
                owner, f"balance {portfolio.balance:.6f} != expected {expected:.6f}"
            )
        if portfolio.balance < -1e-9:
            raise LedgerInvariantViolation(owner, f"negative balance {portfolio.balance:.6f}")

    # ==================== Mutations ====================

    def deposit(self, owner: str, amount: float) -> Portfolio:
        if amount <= 0:
            raise LedgerInvariantViolation(owner, f"deposit must be positive, got {amount}")
        portfolio = self._portfolio(owner)
        portfolio.balance += amount
        portfolio.total_deposited += amount
        logger.info(f"Deposited {amount:.2f} to {owner} (balance {portfolio.balance:.2f})")
        return portfolio

    def open_position(
        self,
        owner: str,
        platform: str,
        market_id: str,
        outcome_id: str,
        stake: float,
        odds: float,
        placed_at: Optional[datetime] = None,
        copied_from: Optional[str] = None,
        source_event_id: Optional[str] = None,
        position_id: Optional[str] = None,
    ) -> Position:
        """
        Deduct the stake and open a pending position

        Raises:
            LedgerInvariantViolation: stake not positive, odds below 1, or stake above balance
        """
        portfolio = self._portfolio(owner)
        if stake <= 0:
            raise LedgerInvariantViolation(owner, f"stake must be positive, got {stake}")
        if odds < 1:
            raise LedgerInvariantViolation(owner, f"decimal odds below 1: {odds}")
        if stake > portfolio.balance + 1e-9:
            raise LedgerInvariantViolation(
                owner, f"stake {stake:.2f} exceeds balance {portfolio.balance:.2f}"
            )

        position = Position(
            id=position_id or uuid.uuid4().hex,
            owner=owner,
            platform=platform,
            market_id=str(market_id),
            outcome_id=str(outcome_id),
            stake=stake,
            odds=odds,
            placed_at=placed_at or datetime.now(timezone.utc),
            copied_from=copied_from,
            source_event_id=source_event_id,
        )
        portfolio.balance -= stake
        portfolio.open_positions[position.id] = position
        self._open_index[position.id] = position
        return position

    def settle(
        self,
        position_id: str,
        status: PositionStatus,
        real_outcome: Optional[str] = None,
        resolved_at: Optional[datetime] = None,
    ) -> Optional[Position]:
        """
        Move a pending position to a terminal status

        Re-settling a terminal (or unknown) position is a no-op returning None.

        Returns:
            The settled position, or None when nothing changed
        """
        if not status.is_terminal:
            raise ValueError("Cannot settle a position to PENDING")

        position = self._open_index.get(position_id)
        if position is None:
            logger.debug(f"Position {position_id} is not pending, skipping settlement")
            return None

        portfolio = self._portfolio(position.owner)
        if status is PositionStatus.WON:
            payout = position.stake * position.odds
        elif status.returns_stake:
            payout = position.stake
        else:
            payout = 0.0

        new_balance = portfolio.balance + payout
        if payout < 0 or new_balance < -1e-9:
            raise LedgerInvariantViolation(
                position.owner,
                f"settling {position_id} as {status.value} would leave balance {new_balance:.2f}",
            )

        portfolio.balance = new_balance
        portfolio.closed_payouts += payout
        portfolio.closed_stakes += position.stake
        position.status = status
        position.payout = payout
        position.real_outcome = real_outcome
        position.resolved_at = resolved_at or datetime.now(timezone.utc)

        stats = portfolio.stats
        if status is PositionStatus.WON:
            stats.wins += 1
            stats.total_wagered += position.stake
            stats.total_won += payout
        elif status is PositionStatus.LOST:
            stats.losses += 1
            stats.total_wagered += position.stake
        else:
            stats.refunds += 1
        stats.recompute()

        del portfolio.open_positions[position_id]
        del self._open_index[position_id]
        portfolio.history.append(position)
        return position

    def cancel(self, position_id: str, resolved_at: Optional[datetime] = None) -> Optional[Position]:
        """Operator cancellation before resolution; the stake is returned"""
        return self.settle(position_id, PositionStatus.CANCELLED, resolved_at=resolved_at)

    def restore(self, portfolio: Portfolio):
        """Load a persisted portfolio (with its pending positions) into the ledger"""
        for position_id in [pid for pid, p in self._open_index.items() if p.owner == portfolio.owner]:
            del self._open_index[position_id]
        self._portfolios[portfolio.owner] = portfolio
        for position in portfolio.open_positions.values():
            self._open_index[position.id] = position


def _expected_balance(portfolio: Portfolio) -> float:
    return portfolio.total_deposited + portfolio.closed_payouts - portfolio.closed_stakes - portfolio.open_stake
