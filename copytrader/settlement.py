"""
Settlement Engine

Polls each platform's adapter for the outcome of every pending position and drives the
position to won, lost or refunded. Platforms are polled concurrently; within a platform
positions settle one at a time, so nothing is ever settled twice.
"""

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .adapters.base import ResolutionStatus, SourceAdapter
from .config import Settings, get_settings
from .copy_strategy import ExposureTracker
from .errors import AdapterResolutionError, LedgerInvariantViolation
from .portfolio import PortfolioLedger, Position, PositionStatus
from .scheduling import Clock, PeriodicTask


@dataclass
class SettlementReport:
    """Outcome of one platform's polling tick"""
    platform: str
    checked_markets: int = 0
    won: int = 0
    lost: int = 0
    refunded: int = 0
    still_pending: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def settled(self) -> int:
        return self.won + self.lost + self.refunded

    def to_dict(self) -> Dict:
        return {
            "platform": self.platform,
            "checked_markets": self.checked_markets,
            "won": self.won,
            "lost": self.lost,
            "refunded": self.refunded,
            "still_pending": self.still_pending,
            "errors": list(self.errors),
        }


class SettlementEngine:
    """Resolution polling loop over the pending positions in the ledger"""

    def __init__(
        self,
        ledger: PortfolioLedger,
        exposure: ExposureTracker,
        adapters: Dict[str, SourceAdapter],
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self.ledger = ledger
        self.exposure = exposure
        self.adapters = adapters
        self.clock = clock or Clock()

        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._stopped = False
        self._task = PeriodicTask("settlement-poll", self.settings.poll_interval, self.poll_once, self.clock)
        self._settled_callbacks: List[Callable[[Position], Any]] = []
        self.violations: List[LedgerInvariantViolation] = []

    def add_settled_callback(self, callback: Callable[[Position], Any]):
        self._settled_callbacks.append(callback)

    @property
    def running(self) -> bool:
        return self._task.running

    def start(self, poll: bool = True):
        """Accept resolutions again; poll=False leaves ticks to explicit poll_once() calls"""
        self._stopped = False
        if poll:
            self._task.start()

    async def stop(self):
        self._stopped = True
        await self._task.stop()

    # ==================== Polling ====================

    async def poll_once(self) -> Dict[str, SettlementReport]:
        """
        Run one resolution tick over every platform with pending positions

        Returns:
            One report per platform
        """
        by_platform: Dict[str, List[Position]] = defaultdict(list)
        for position in self.ledger.open_positions():
            by_platform[position.platform].append(position)

        if not by_platform:
            return {}

        platforms = list(by_platform)
        results = await asyncio.gather(
            *(self._settle_platform(p, by_platform[p]) for p in platforms),
            return_exceptions=True,
        )

        reports = {}
        for platform, result in zip(platforms, results):
            if isinstance(result, BaseException):
                logger.error(f"[{platform}] Settlement tick failed: {result}")
                result = SettlementReport(platform=platform, errors=[str(result)])
            reports[platform] = result

        settled = sum(r.settled for r in reports.values())
        if settled:
            logger.info(f"Settlement tick: {settled} positions settled across {len(reports)} platforms")
        return reports

    async def _settle_platform(self, platform: str, positions: List[Position]) -> SettlementReport:
        report = SettlementReport(platform=platform)
        adapter = self.adapters.get(platform)
        if adapter is None:
            report.still_pending = len(positions)
            report.errors.append("no adapter")
            logger.warning(f"[{platform}] No adapter configured, {len(positions)} positions stay pending")
            return report

        by_market: Dict[str, List[Position]] = defaultdict(list)
        for position in positions:
            by_market[position.market_id].append(position)

        async with self._locks[platform]:
            for market_id, market_positions in by_market.items():
                try:
                    status = await adapter.check_resolution(market_id)
                except AdapterResolutionError as e:
                    logger.error(f"Resolution check failed: {e}")
                    report.errors.append(str(e))
                    report.still_pending += len(market_positions)
                    continue

                if self._stopped:
                    logger.debug(f"[{platform}] Stopped, discarding resolution for {market_id}")
                    return report

                report.checked_markets += 1
                if not status.resolved:
                    report.still_pending += len(market_positions)
                    continue

                for position in market_positions:
                    settled = self.apply_resolution(position, status)
                    if settled is None:
                        continue
                    if settled.status is PositionStatus.WON:
                        report.won += 1
                    elif settled.status is PositionStatus.LOST:
                        report.lost += 1
                    else:
                        report.refunded += 1
                    await self._notify(settled)

        return report

    # ==================== Settlement ====================

    def apply_resolution(self, position: Position, status: ResolutionStatus) -> Optional[Position]:
        """
        Settle one position against a resolved status

        Returns:
            The settled position, or None if it was already terminal or the ledger refused
        """
        if position.status.is_terminal:
            return None

        if status.voided:
            new_status = PositionStatus.REFUNDED
        elif str(status.winning_outcome_id) == str(position.outcome_id):
            new_status = PositionStatus.WON
        else:
            new_status = PositionStatus.LOST

        try:
            settled = self.ledger.settle(
                position.id,
                new_status,
                real_outcome=status.winning_outcome_id,
                resolved_at=status.resolved_at or self.clock.now(),
            )
        except LedgerInvariantViolation as e:
            logger.error(f"Settlement of {position.id} aborted for review: {e}")
            self.violations.append(e)
            return None

        if settled is None:
            return None

        self.exposure.release(settled)
        logger.success(
            f"Settled {settled.platform}/{settled.market_id} for {settled.owner}: "
            f"{settled.status.value.upper()} (stake ${settled.stake:.2f}, payout ${settled.payout:.2f})"
        )
        return settled

    async def _notify(self, position: Position):
        for callback in self._settled_callbacks:
            try:
                result = callback(position)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Settlement callback error: {e}")
