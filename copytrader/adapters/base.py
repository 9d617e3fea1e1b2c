"""
Source adapter base

Every platform adapter hides its payload shapes behind the same three calls:
fetch_markets(), subscribe(callback) and check_resolution(market_id).
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Type

import aiohttp
from loguru import logger
from ratelimit import limits, RateLimitException

from ..config import Settings, get_settings
from ..errors import AdapterFetchError, AdapterResolutionError
from ..normalizer import Market
from ..scheduling import Clock


RETRIABLE_ERRORS: Tuple[Type[BaseException], ...] = (aiohttp.ClientError, asyncio.TimeoutError)


@dataclass
class BetEvent:
    """A bet observed on an external platform"""
    id: str
    platform: str
    trader: str
    market_id: str
    outcome_id: str
    stake: float
    odds: float
    placed_at: datetime
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "platform": self.platform,
            "trader": self.trader,
            "market_id": self.market_id,
            "outcome_id": self.outcome_id,
            "stake": self.stake,
            "odds": self.odds,
            "placed_at": self.placed_at.isoformat(),
        }


@dataclass
class ResolutionStatus:
    """Resolution answer: pending, resolved with a winner, or voided"""
    resolved: bool = False
    winning_outcome_id: Optional[str] = None
    voided: bool = False
    resolved_at: Optional[datetime] = None

    @classmethod
    def pending(cls) -> "ResolutionStatus":
        return cls()

    @classmethod
    def winner(cls, outcome_id: Any, resolved_at: Optional[datetime] = None) -> "ResolutionStatus":
        return cls(resolved=True, winning_outcome_id=str(outcome_id), resolved_at=resolved_at)

    @classmethod
    def void(cls, resolved_at: Optional[datetime] = None) -> "ResolutionStatus":
        return cls(resolved=True, voided=True, resolved_at=resolved_at)


BetCallback = Callable[[BetEvent], Any]


class Subscription:
    """Handle returned by SourceAdapter.subscribe"""

    def __init__(self, adapter: "SourceAdapter", callback: BetCallback):
        self.adapter = adapter
        self.callback = callback
        self.active = True

    def unsubscribe(self):
        if self.active:
            self.active = False
            self.adapter._remove_subscriber(self)


class SourceAdapter(ABC):
    """
    Base class for platform adapters

    Outbound calls go through _request / _with_retry, which apply the timeout, the
    rate limit and a bounded retry with linear backoff. Bet events flow through a
    typed queue drained by one dispatch task; each event id is delivered at most once.
    """

    platform: str = ""
    supports_feed: bool = False
    max_seen_events = 10000
    max_cached_markets = 5000

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.settings = settings or get_settings()
        self.clock = clock or Clock()
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout)
        self._throttle = limits(
            calls=self.settings.rate_limit_calls,
            period=self.settings.rate_limit_period,
        )(lambda: None)

        self._events: "asyncio.Queue[BetEvent]" = asyncio.Queue()
        self._seen_events: "OrderedDict[str, None]" = OrderedDict()
        self._subscribers: List[Subscription] = []
        self._dispatch_task: Optional[asyncio.Task] = None
        self._feed_task: Optional[asyncio.Task] = None
        self._feed_primed = False

    # ==================== HTTP ====================

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Content-Type": "application/json"}
            )
        return self._session

    async def _acquire(self):
        while True:
            try:
                self._throttle()
                return
            except RateLimitException as e:
                await asyncio.sleep(e.period_remaining)

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict] = None,
        json_data: Optional[Dict] = None,
        headers: Optional[Dict] = None,
    ) -> Any:
        """Single HTTP attempt"""
        await self._acquire()
        session = await self._get_session()
        async with session.request(
            method, url, params=params, json=json_data, headers=headers, timeout=self._timeout
        ) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    async def _with_retry(
        self,
        label: str,
        call: Callable[[], Awaitable[Any]],
        retry_on: Tuple[Type[BaseException], ...] = RETRIABLE_ERRORS,
    ) -> Any:
        attempts = max(1, self.settings.request_retries)
        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except retry_on as e:
                if isinstance(e, aiohttp.ClientResponseError) and 400 <= e.status < 500 and e.status != 429:
                    raise
                if attempt == attempts:
                    raise
                delay = self.settings.retry_backoff * attempt
                logger.warning(f"[{self.platform}] {label} failed ({e}), retry {attempt}/{attempts - 1} in {delay}s")
                await asyncio.sleep(delay)

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict] = None,
        json_data: Optional[Dict] = None,
        headers: Optional[Dict] = None,
    ) -> Any:
        """HTTP request with timeout, rate limit and retry"""
        try:
            return await self._with_retry(
                f"{method} {url}",
                lambda: self._send(method, url, params=params, json_data=json_data, headers=headers),
            )
        except Exception as e:
            logger.error(f"[{self.platform}] API request failed: {e}")
            raise

    async def close(self):
        """Stop feed tasks and close the HTTP session"""
        for subscription in list(self._subscribers):
            subscription.unsubscribe()
        await self._cancel_tasks()
        if self._session and not self._session.closed:
            await self._session.close()

    # ==================== Markets ====================

    async def fetch_markets(self) -> List[Market]:
        """
        Fetch and normalize the platform's open markets

        Returns:
            Markets, or an empty list when the platform could not be reached
        """
        try:
            return await self._fetch_markets()
        except Exception as e:
            error = e if isinstance(e, AdapterFetchError) else AdapterFetchError(self.platform, str(e), e)
            logger.error(f"Error fetching markets: {error}")
            return []

    def _remember(self, cache: "OrderedDict[str, Any]", key: str, value: Any):
        """Store per-market metadata needed later by resolution, keeping the newest entries"""
        cache[key] = value
        cache.move_to_end(key)
        while len(cache) > self.max_cached_markets:
            cache.popitem(last=False)

    def _normalize_each(self, items: Iterable[Any], normalize: Callable[[Any], Optional[Market]]) -> List[Market]:
        """Normalize raw items one by one, skipping the ones that fail"""
        markets = []
        for item in items:
            try:
                market = normalize(item)
            except (KeyError, TypeError, ValueError, IndexError) as e:
                logger.warning(f"[{self.platform}] Skipping malformed market: {e}")
                continue
            if market is not None:
                markets.append(market)
        return markets

    @abstractmethod
    async def _fetch_markets(self) -> List[Market]:
        ...

    # ==================== Resolution ====================

    async def check_resolution(self, market_id: str) -> ResolutionStatus:
        """
        Ask the platform whether a market has resolved

        Raises:
            AdapterResolutionError: The platform could not answer
        """
        try:
            return await self._check_resolution(str(market_id))
        except AdapterResolutionError:
            raise
        except Exception as e:
            raise AdapterResolutionError(self.platform, str(market_id), e) from e

    @abstractmethod
    async def _check_resolution(self, market_id: str) -> ResolutionStatus:
        ...

    # ==================== Bet Feed ====================

    async def fetch_recent_bets(self) -> List[BetEvent]:
        """Recent bets from the platform's public feed"""
        return []

    def subscribe(self, callback: BetCallback) -> Subscription:
        """
        Deliver bet events to callback until unsubscribed

        A callback that raises is logged; the subscription stays active.
        """
        subscription = Subscription(self, callback)
        self._subscribers.append(subscription)
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        if self.supports_feed and (self._feed_task is None or self._feed_task.done()):
            self._feed_task = asyncio.create_task(self._feed_loop())
        logger.debug(f"[{self.platform}] subscriber added ({len(self._subscribers)} active)")
        return subscription

    def publish(self, event: BetEvent) -> bool:
        """Queue an event for delivery; returns False for an event already seen"""
        if event.id in self._seen_events:
            return False
        self._mark_seen(event.id)
        self._events.put_nowait(event)
        return True

    def _mark_seen(self, event_id: str):
        self._seen_events[event_id] = None
        while len(self._seen_events) > self.max_seen_events:
            self._seen_events.popitem(last=False)

    def _remove_subscriber(self, subscription: Subscription):
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        if not self._subscribers:
            for task in (self._dispatch_task, self._feed_task):
                if task is not None and not task.done():
                    task.cancel()

    async def _cancel_tasks(self):
        tasks = [t for t in (self._dispatch_task, self._feed_task) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._dispatch_task = None
        self._feed_task = None

    async def _dispatch_loop(self):
        while True:
            event = await self._events.get()
            for subscription in list(self._subscribers):
                if not subscription.active:
                    continue
                try:
                    result = subscription.callback(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"[{self.platform}] Bet callback error: {e}")

    async def _feed_loop(self):
        while self._subscribers:
            try:
                events = await self.fetch_recent_bets()
            except Exception as e:
                logger.error(f"[{self.platform}] Error polling bets: {e}")
                await self.clock.sleep(self.settings.bet_poll_interval)
                continue

            if not self._feed_primed:
                # history that predates the subscription is marked seen, not delivered
                for event in events:
                    self._mark_seen(event.id)
                self._feed_primed = True
            else:
                for event in sorted(events, key=lambda ev: ev.placed_at):
                    self.publish(event)

            await self.clock.sleep(self.settings.bet_poll_interval)
