"""
Copy Decision Engine

Decides whether to mirror an observed bet and at what size, under global,
per-platform and per-trader exposure ceilings and a trust threshold:

- Follow checks (followed, enabled, platform tracked)
- Exposure ceilings (global -> platform -> trader)
- Anti-gaming trust threshold
- Position sizing (tier multiplier, clamped to every remaining budget)
- Delayed, cancellable commit
"""

import asyncio
import enum
import inspect
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from loguru import logger

from .adapters.base import BetEvent
from .config import Settings, get_settings
from .errors import LedgerInvariantViolation
from .portfolio import PortfolioLedger, Position
from .scheduling import Clock


EPSILON = 1e-9


class Tier(enum.Enum):
    """Reputation tier of a followed trader"""
    DIAMOND = "DIAMOND"
    PLATINUM = "PLATINUM"
    GOLD = "GOLD"
    SILVER = "SILVER"
    BRONZE = "BRONZE"

    @classmethod
    def from_label(cls, label: str) -> "Tier":
        """Map a score tier label onto a copy tier (LEGENDARY copies as DIAMOND)"""
        label = (label or "").upper()
        if label == "LEGENDARY":
            return cls.DIAMOND
        return cls(label) if label in cls.__members__ else cls.BRONZE


class CopyAction(enum.Enum):
    COPY = "COPY"
    SKIP = "SKIP"


class RiskLevel(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_trust(cls, trust_score: float) -> "RiskLevel":
        if trust_score >= 80:
            return cls.LOW
        if trust_score >= 60:
            return cls.MEDIUM
        return cls.HIGH


class RejectionReason(enum.Enum):
    """Why an event was not copied"""
    NOT_FOLLOWED = "trader not followed"
    TRADER_DISABLED = "trader disabled"
    PLATFORM_NOT_TRACKED = "platform not tracked for trader"
    GLOBAL_EXPOSURE = "global exposure ceiling reached"
    PLATFORM_EXPOSURE = "platform exposure ceiling reached"
    TRADER_EXPOSURE = "trader exposure ceiling reached"
    TRUST_BELOW_THRESHOLD = "trust score below threshold"
    NON_POSITIVE_SIZE = "no budget left for a copy"

    @property
    def category(self) -> str:
        if self in (RejectionReason.GLOBAL_EXPOSURE, RejectionReason.PLATFORM_EXPOSURE,
                    RejectionReason.TRADER_EXPOSURE, RejectionReason.NON_POSITIVE_SIZE):
            return "ExposureExceeded"
        if self is RejectionReason.TRUST_BELOW_THRESHOLD:
            return "ThresholdNotMet"
        return "NotFollowed"


@dataclass
class TraderFollowConfig:
    """One follower mirroring one trader"""
    address: str
    follower: str
    platforms: List[str] = field(default_factory=list)
    max_copy_size: float = 500.0
    copy_multiplier: Optional[float] = None
    trust_score: float = 0.0
    enabled: bool = True
    tier: Tier = Tier.GOLD
    max_exposure: Optional[float] = None

    def __post_init__(self):
        self.address = self.address.lower()
        self.platforms = [p.lower() for p in self.platforms]

    def multiplier(self, settings: Settings) -> float:
        if self.copy_multiplier is not None:
            return self.copy_multiplier
        return settings.tier_multiplier(self.tier.value)

    def exposure_limit(self, settings: Settings) -> float:
        return self.max_exposure if self.max_exposure is not None else settings.max_trader_exposure

    def to_dict(self) -> Dict:
        return {
            "address": self.address,
            "follower": self.follower,
            "platforms": self.platforms,
            "max_copy_size": self.max_copy_size,
            "copy_multiplier": self.copy_multiplier,
            "trust_score": self.trust_score,
            "enabled": self.enabled,
            "tier": self.tier.value,
            "max_exposure": self.max_exposure,
        }


@dataclass
class CopyDecision:
    """Decision on whether to copy one observed bet for one follower"""
    action: CopyAction
    event: BetEvent
    follow: Optional[TraderFollowConfig] = None
    size: float = 0.0
    reason: Optional[RejectionReason] = None
    detail: str = ""
    risk: Optional[RiskLevel] = None

    @property
    def accepted(self) -> bool:
        return self.action is CopyAction.COPY


class ExposureTracker:
    """Running open-stake totals: global, per platform, per (follower, trader)"""

    def __init__(self):
        self.total = 0.0
        self.per_platform: Dict[str, float] = defaultdict(float)
        self.per_trader: Dict[Tuple[str, str], float] = defaultdict(float)

    def platform_total(self, platform: str) -> float:
        return self.per_platform.get(platform, 0.0)

    def trader_total(self, follower: str, trader: str) -> float:
        return self.per_trader.get((follower, trader.lower()), 0.0)

    def add(self, position: Position):
        """Count a newly opened position against all three accumulators"""
        self.total += position.stake
        self.per_platform[position.platform] += position.stake
        if position.copied_from:
            self.per_trader[(position.owner, position.copied_from.lower())] += position.stake

    def release(self, position: Position):
        """Stop counting a settled position"""
        self.total = _floor(self.total - position.stake)
        self.per_platform[position.platform] = _floor(self.per_platform[position.platform] - position.stake)
        if position.copied_from:
            key = (position.owner, position.copied_from.lower())
            self.per_trader[key] = _floor(self.per_trader[key] - position.stake)

    def rebuild(self, positions: List[Position]):
        self.__init__()
        for position in positions:
            self.add(position)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "per_platform": dict(self.per_platform),
            "per_trader": {f"{f}->{t}": v for (f, t), v in self.per_trader.items()},
        }


def _floor(value: float) -> float:
    return 0.0 if value < EPSILON else value


class CopyDecisionEngine:
    """
    Exposure-limited copy decision engine

    evaluate() is pure with respect to engine state; commit() is the only place a copy
    mutates the ledger and exposure, and it does so synchronously.
    """

    max_copied_events = 10000

    def __init__(
        self,
        ledger: PortfolioLedger,
        exposure: ExposureTracker,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self.ledger = ledger
        self.exposure = exposure
        self.clock = clock or Clock()

        self._follows: Dict[str, Dict[str, TraderFollowConfig]] = defaultdict(dict)
        self._pending: Set[asyncio.Task] = set()
        self._chains: Dict[Tuple[str, str], asyncio.Task] = {}
        self._copied: "OrderedDict[Tuple[str, str], None]" = OrderedDict()
        self._running = True
        self._position_callbacks: List[Callable[[Position], Any]] = []

    def add_position_callback(self, callback: Callable[[Position], Any]):
        """Register callback invoked with every committed position"""
        self._position_callbacks.append(callback)

    # ==================== Follows ====================

    def follow(self, config: TraderFollowConfig) -> bool:
        """Start mirroring a trader; refused below the minimum trust score"""
        if config.trust_score < self.settings.min_trust_score:
            logger.warning(
                f"Not following {config.address[:10]}...: trust {config.trust_score:.0f} "
                f"< minimum {self.settings.min_trust_score:.0f}"
            )
            return False
        self._follows[config.address][config.follower] = config
        logger.info(
            f"{config.follower} now follows {config.address[:10]}... on {', '.join(config.platforms)} "
            f"(x{config.multiplier(self.settings):.2f}, max ${config.max_copy_size:.2f})"
        )
        return True

    def unfollow(self, address: str, follower: Optional[str] = None) -> int:
        configs = self._follows.get(address.lower(), {})
        if follower is None:
            removed = len(configs)
            configs.clear()
        else:
            removed = 1 if configs.pop(follower, None) else 0
        return removed

    def get_follow(self, address: str, follower: str) -> Optional[TraderFollowConfig]:
        return self._follows.get(address.lower(), {}).get(follower)

    def followers_of(self, address: str) -> List[TraderFollowConfig]:
        return list(self._follows.get(address.lower(), {}).values())

    def follows(self) -> List[TraderFollowConfig]:
        return [c for configs in self._follows.values() for c in configs.values()]

    # ==================== Evaluation ====================

    def evaluate(self, event: BetEvent, follow: Optional[TraderFollowConfig]) -> CopyDecision:
        """
        Evaluate one event for one follower against current exposure

        Checks run in order and stop at the first failure.

        Args:
            event: Observed bet
            follow: Follow config of the follower, or None if the trader is not followed

        Returns:
            CopyDecision with the sized amount, or the typed rejection reason
        """
        def skip(reason: RejectionReason, detail: str = "") -> CopyDecision:
            return CopyDecision(CopyAction.SKIP, event, follow, reason=reason, detail=detail)

        settings = self.settings
        platform = event.platform.lower()

        # Step 1: Follow checks
        if follow is None:
            return skip(RejectionReason.NOT_FOLLOWED)
        if not follow.enabled:
            return skip(RejectionReason.TRADER_DISABLED)
        if platform not in follow.platforms:
            return skip(RejectionReason.PLATFORM_NOT_TRACKED, platform)

        # Step 2-4: Exposure ceilings
        global_left = settings.max_total_exposure - self.exposure.total
        if global_left <= EPSILON:
            return skip(RejectionReason.GLOBAL_EXPOSURE, f"${self.exposure.total:.2f} open")

        platform_left = settings.platform_ceiling(platform) - self.exposure.platform_total(platform)
        if platform_left <= EPSILON:
            return skip(RejectionReason.PLATFORM_EXPOSURE, f"{platform} at ${self.exposure.platform_total(platform):.2f}")

        trader_open = self.exposure.trader_total(follow.follower, follow.address)
        trader_left = follow.exposure_limit(settings) - trader_open
        if trader_left <= EPSILON:
            return skip(RejectionReason.TRADER_EXPOSURE, f"${trader_open:.2f} open")

        # Step 5: Anti-gaming
        if settings.enable_anti_gaming and follow.trust_score < settings.anti_gaming_threshold:
            return skip(
                RejectionReason.TRUST_BELOW_THRESHOLD,
                f"{follow.trust_score:.0f} < {settings.anti_gaming_threshold:.0f}",
            )

        # Step 6: Sizing
        proposed = event.stake * follow.multiplier(settings)
        size = min(
            proposed,
            global_left,
            platform_left,
            trader_left,
            follow.max_copy_size,
            self.ledger.balance(follow.follower),
        )
        if size <= EPSILON:
            return skip(RejectionReason.NON_POSITIVE_SIZE, f"proposed ${proposed:.2f}")

        # Step 7: Accept
        return CopyDecision(
            CopyAction.COPY,
            event,
            follow,
            size=size,
            detail=f"${size:.2f} of proposed ${proposed:.2f}",
            risk=RiskLevel.from_trust(follow.trust_score),
        )

    async def process_event(self, event: BetEvent) -> List[CopyDecision]:
        """
        Evaluate an observed bet for every follower of its trader

        Accepted decisions are committed after the copy delay.
        """
        follows = self.followers_of(event.trader)
        if not follows:
            decision = self.evaluate(event, None)
            logger.debug(f"Ignoring {event.platform} bet by {event.trader[:10]}...: {decision.reason.value}")
            return [decision]

        logger.info(
            f"Processing bet: {event.trader[:10]}... {event.platform} {event.market_id} "
            f"{event.outcome_id} ${event.stake:.2f}@{event.odds:.3f}"
        )

        decisions = []
        for follow in follows:
            decision = self.evaluate(event, follow)
            decisions.append(decision)

            if not decision.accepted:
                logger.warning(
                    f"Skipping copy for {follow.follower}: {decision.reason.value}"
                    + (f" ({decision.detail})" if decision.detail else "")
                )
                continue

            logger.info(
                f"Decision: COPY for {follow.follower} - ${decision.size:.2f} ({decision.risk.value} risk)"
            )
            if self.settings.copy_delay_seconds > 0:
                self._schedule(decision)
            else:
                await self._commit_and_notify(decision)

        return decisions

    # ==================== Commit ====================

    def _schedule(self, decision: CopyDecision):
        key = (decision.follow.follower, decision.follow.address)
        previous = self._chains.get(key)
        task = asyncio.create_task(self._commit_after_delay(decision, previous))
        self._chains[key] = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        task.add_done_callback(lambda done: self._forget_chain(key, done))

    def _forget_chain(self, key: Tuple[str, str], task: asyncio.Task):
        if self._chains.get(key) is task:
            del self._chains[key]

    async def _commit_after_delay(self, decision: CopyDecision, previous: Optional[asyncio.Task]):
        await self.clock.sleep(self.settings.copy_delay_seconds)
        if previous is not None and not previous.done():
            # keep commits for one (follower, trader) in delivery order
            await asyncio.wait({previous})
        await self._commit_and_notify(decision)

    async def _commit_and_notify(self, decision: CopyDecision):
        try:
            position = self.commit(decision)
        except LedgerInvariantViolation as e:
            logger.error(f"Copy aborted: {e}")
            return
        if position is None:
            return

        for callback in self._position_callbacks:
            try:
                result = callback(position)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Position callback error: {e}")

    def commit(self, decision: CopyDecision) -> Optional[Position]:
        """
        Open the copied position

        The decision is re-evaluated against current exposure first, since other copies
        may have landed during the delay. Ledger and exposure change together or not at all.
        """
        if not self._running:
            logger.debug(f"Engine stopped, discarding copy of {decision.event.id}")
            return None

        follow = decision.follow
        key = (decision.event.id, follow.follower)
        if key in self._copied:
            return None

        current = self.evaluate(decision.event, self.get_follow(follow.address, follow.follower))
        if not current.accepted:
            logger.warning(f"Copy dropped after delay for {follow.follower}: {current.reason.value}")
            return None

        event = decision.event
        position = self.ledger.open_position(
            owner=follow.follower,
            platform=event.platform.lower(),
            market_id=event.market_id,
            outcome_id=event.outcome_id,
            stake=current.size,
            odds=event.odds,
            placed_at=self.clock.now(),
            copied_from=follow.address,
            source_event_id=event.id,
        )
        self.exposure.add(position)
        self._copied[key] = None
        while len(self._copied) > self.max_copied_events:
            self._copied.popitem(last=False)

        logger.success(
            f"Copied {follow.address[:10]}... for {follow.follower}: ${position.stake:.2f} on "
            f"{position.platform}/{position.market_id} '{position.outcome_id}' @ {position.odds:.3f}"
        )
        return position

    async def drain(self):
        """Wait for every scheduled commit"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def start(self):
        """Accept commits again after stop()"""
        self._running = True

    async def stop(self):
        """Cancel scheduled commits; nothing is mutated afterwards"""
        self._running = False
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._chains.clear()
        if tasks:
            logger.info(f"Cancelled {len(tasks)} pending copies")
