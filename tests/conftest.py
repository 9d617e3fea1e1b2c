"""Shared test fixtures for pytest.

Provides a manually driven clock, an in-memory fake platform adapter and
bet event factories used across the test modules.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

import pytest

from copytrader.adapters.base import BetEvent, ResolutionStatus, SourceAdapter
from copytrader.config import Settings
from copytrader.normalizer import Market
from copytrader.scheduling import Clock


T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


async def flush(rounds: int = 20):
    """Let every ready task run a few steps."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualClock(Clock):
    """Clock whose time only moves on advance(); sleepers wake when their deadline passes."""

    def __init__(self, start: datetime = T0):
        self.current = start
        self._sleepers: List[tuple] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float):
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.current + timedelta(seconds=seconds), future))
        await future

    async def advance(self, seconds: float):
        await flush()
        self.current += timedelta(seconds=seconds)
        waiting = []
        for deadline, future in self._sleepers:
            if future.done():
                continue
            if deadline <= self.current:
                future.set_result(None)
            else:
                waiting.append((deadline, future))
        self._sleepers = waiting
        await flush()


class FakeAdapter(SourceAdapter):
    """Adapter serving canned markets, resolutions and bet batches."""

    supports_feed = False

    def __init__(
        self,
        name: str,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        markets: Optional[List[Market]] = None,
    ):
        super().__init__(settings, clock)
        self.platform = name
        self.markets = markets or []
        self.resolutions: Dict[str, ResolutionStatus] = {}
        self.failures: Dict[str, Exception] = {}
        self.bet_batches: List[List[BetEvent]] = []
        self.checked: List[str] = []
        self.on_check: Optional[Callable[[str], Awaitable[None]]] = None

    async def _fetch_markets(self) -> List[Market]:
        return list(self.markets)

    async def _check_resolution(self, market_id: str) -> ResolutionStatus:
        self.checked.append(market_id)
        if self.on_check is not None:
            await self.on_check(market_id)
        if market_id in self.failures:
            raise self.failures[market_id]
        return self.resolutions.get(market_id, ResolutionStatus.pending())

    async def fetch_recent_bets(self) -> List[BetEvent]:
        if not self.bet_batches:
            return []
        if len(self.bet_batches) == 1:
            return list(self.bet_batches[0])
        return list(self.bet_batches.pop(0))


def make_event(
    event_id: str = "ev-1",
    trader: str = "0xTrader",
    platform: str = "polymarket",
    market_id: str = "m1",
    outcome_id: str = "Yes",
    stake: float = 100.0,
    odds: float = 1.667,
    placed_at: datetime = T0,
) -> BetEvent:
    return BetEvent(
        id=event_id,
        platform=platform,
        trader=trader.lower(),
        market_id=market_id,
        outcome_id=outcome_id,
        stake=stake,
        odds=odds,
        placed_at=placed_at,
    )


@pytest.fixture
def settings() -> Settings:
    """Settings with immediate copies, no retry backoff and generous ceilings."""
    return Settings(
        copy_delay_seconds=0.0,
        max_total_exposure=10000.0,
        max_platform_exposure=5000.0,
        max_trader_exposure=2000.0,
        max_copy_size=500.0,
        min_trust_score=60.0,
        anti_gaming_threshold=70.0,
        retry_backoff=0.0,
        request_retries=2,
        rate_limit_calls=1000,
        starting_balance=0.0,
        poll_interval=15.0,
        bet_poll_interval=10.0,
        log_file="",
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()
