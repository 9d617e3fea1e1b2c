"""
Engine context

Owns the ledger, exposure accumulators, adapters, copy decision engine and
settlement engine for one process. Adapter subscriptions feed a single dispatch
queue, so each trader's bets are evaluated in the order their adapter delivered them.
"""

import asyncio
from typing import Dict, List, Optional

from loguru import logger

from .adapters import build_adapters
from .adapters.base import BetEvent, SourceAdapter, Subscription
from .config import Settings, get_settings
from .copy_strategy import CopyDecisionEngine, ExposureTracker, TraderFollowConfig
from .normalizer import Market
from .portfolio import Portfolio, PortfolioLedger, Position
from .repository import InMemoryRepository, PositionRepository
from .scheduling import Clock
from .scoring import TraderHistory, TrustScoreResult, calculate_trust_score
from .settlement import SettlementEngine, SettlementReport


class EngineContext:
    """
    Settlement & copy-trading engine for one process

    Lifecycle: start() restores state and begins consuming bets and polling
    resolutions; stop() unsubscribes, cancels pending copies, stops polling and
    closes adapters. Outside readers get snapshots only.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        adapters: Optional[Dict[str, SourceAdapter]] = None,
        repository: Optional[PositionRepository] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or Clock()
        self.adapters = adapters if adapters is not None else build_adapters(self.settings, self.clock)
        self.repository = repository or InMemoryRepository()

        self.ledger = PortfolioLedger(starting_balance=self.settings.starting_balance)
        self.exposure = ExposureTracker()
        self.decisions = CopyDecisionEngine(self.ledger, self.exposure, self.settings, self.clock)
        self.settlement = SettlementEngine(self.ledger, self.exposure, self.adapters, self.settings, self.clock)
        self.decisions.add_position_callback(self._persist)
        self.settlement.add_settled_callback(self._persist)

        self._queue: "asyncio.Queue[BetEvent]" = asyncio.Queue()
        self._subscriptions: List[Subscription] = []
        self._dispatcher: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ==================== Lifecycle ====================

    async def start(self, subscribe: bool = True, poll: bool = True):
        """
        Restore persisted state and start the engine

        Args:
            subscribe: Subscribe to every adapter's live bet feed
            poll: Start the periodic settlement task
        """
        if self._running:
            return
        logger.info("Starting settlement & copy-trading engine...")
        await self._restore()

        self._running = True
        self.decisions.start()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="bet-dispatcher")
        if subscribe:
            for adapter in self.adapters.values():
                self._subscriptions.append(adapter.subscribe(self.submit))
        self.settlement.start(poll=poll)

        logger.success(
            f"Engine started: {len(self.adapters)} adapters, {len(self.decisions.follows())} follows, "
            f"{len(self.ledger.open_positions())} pending positions"
        )

    async def stop(self):
        if not self._running:
            return
        logger.info("Stopping engine...")
        self._running = False

        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

        await self.decisions.stop()
        await self.settlement.stop()

        for adapter in self.adapters.values():
            await adapter.close()
        await self.repository.close()
        logger.info("Engine stopped")

    async def _restore(self):
        for config in await self.repository.load_followed_traders():
            self.decisions.follow(config)

        portfolios = {p.owner: p for p in await self.repository.load_portfolios()}
        for position in await self.repository.list_pending_positions():
            portfolio = portfolios.setdefault(position.owner, Portfolio(owner=position.owner))
            portfolio.open_positions[position.id] = position
            if position.platform not in self.adapters:
                logger.warning(f"Position {position.id} stays pending: no {position.platform} adapter enabled")

        for portfolio in portfolios.values():
            self.ledger.restore(portfolio)
        self.exposure.rebuild(self.ledger.open_positions())

    async def _persist(self, position: Position):
        await self.repository.save_position(position)
        await self.repository.upsert_portfolio(self.ledger.snapshot(position.owner))

    # ==================== Bet Dispatch ====================

    def submit(self, event: BetEvent):
        """Queue a bet event for evaluation"""
        self._queue.put_nowait(event)

    async def _dispatch_loop(self):
        while True:
            event = await self._queue.get()
            try:
                await self.decisions.process_event(event)
            except Exception as e:
                logger.error(f"Error processing bet {event.id}: {e}")
            finally:
                self._queue.task_done()

    async def wait_idle(self):
        """Wait until every queued bet is evaluated and every scheduled copy committed"""
        await self._queue.join()
        await self.decisions.drain()

    # ==================== Operations ====================

    async def follow(self, config: TraderFollowConfig) -> bool:
        if not self.decisions.follow(config):
            return False
        await self.repository.save_follow(config)
        return True

    async def unfollow(self, address: str, follower: Optional[str] = None) -> int:
        removed = self.decisions.unfollow(address, follower)
        await self.repository.remove_follow(address, follower)
        return removed

    async def deposit(self, owner: str, amount: float) -> Portfolio:
        self.ledger.deposit(owner, amount)
        snapshot = self.ledger.snapshot(owner)
        await self.repository.upsert_portfolio(snapshot)
        return snapshot

    async def place_position(
        self,
        owner: str,
        platform: str,
        market_id: str,
        outcome_id: str,
        stake: float,
        odds: float,
    ) -> Optional[Position]:
        """Manual position; counts against global and platform exposure"""
        platform = platform.lower()
        if self.exposure.total + stake > self.settings.max_total_exposure:
            logger.warning("Manual position refused: global exposure ceiling")
            return None
        if self.exposure.platform_total(platform) + stake > self.settings.platform_ceiling(platform):
            logger.warning(f"Manual position refused: {platform} exposure ceiling")
            return None

        position = self.ledger.open_position(
            owner=owner,
            platform=platform,
            market_id=market_id,
            outcome_id=outcome_id,
            stake=stake,
            odds=odds,
            placed_at=self.clock.now(),
        )
        self.exposure.add(position)
        await self._persist(position)
        return position

    async def cancel_position(self, position_id: str) -> Optional[Position]:
        """Cancel a pending position; the stake goes back to its owner"""
        position = self.ledger.cancel(position_id, resolved_at=self.clock.now())
        if position is None:
            logger.warning(f"No pending position {position_id} to cancel")
            return None
        self.exposure.release(position)
        await self._persist(position)
        logger.info(f"Cancelled position {position_id}: ${position.stake:.2f} returned to {position.owner}")
        return position

    async def settle_now(self) -> Dict[str, SettlementReport]:
        """Run one resolution tick immediately"""
        return await self.settlement.poll_once()

    async def fetch_markets(self) -> Dict[str, List[Market]]:
        """Markets from every adapter; a failing platform yields an empty list"""
        names = list(self.adapters)
        results = await asyncio.gather(*(self.adapters[n].fetch_markets() for n in names))
        return dict(zip(names, results))

    def score_trader(self, history: TraderHistory) -> TrustScoreResult:
        return calculate_trust_score(history, now=self.clock.now(), variance=self.settings.roi_variance_estimate)

    # ==================== Snapshots ====================

    def snapshot(self, owner: str) -> Portfolio:
        return self.ledger.snapshot(owner)

    def snapshots(self) -> List[Portfolio]:
        return self.ledger.snapshots()

    def exposure_snapshot(self) -> Dict:
        return self.exposure.snapshot()
