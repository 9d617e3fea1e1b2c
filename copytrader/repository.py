"""
Persistence boundary

The engine only needs a narrow interface: load followed traders, save a position,
list pending positions by platform, upsert a portfolio. Loading portfolios and
saving follows serve restart recovery and the CLI.
"""

import copy
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from .copy_strategy import Tier, TraderFollowConfig
from .models import FollowedTrader, PortfolioRecord, PositionRecord, get_async_session, init_db
from .portfolio import Portfolio, PortfolioStats, Position, PositionStatus


class PositionRepository(ABC):
    """Store for follows, positions and portfolios"""

    @abstractmethod
    async def load_followed_traders(self) -> List[TraderFollowConfig]:
        ...

    @abstractmethod
    async def save_follow(self, config: TraderFollowConfig):
        ...

    @abstractmethod
    async def remove_follow(self, address: str, follower: Optional[str] = None) -> int:
        ...

    @abstractmethod
    async def save_position(self, position: Position):
        ...

    @abstractmethod
    async def list_pending_positions(self, platform: Optional[str] = None) -> List[Position]:
        """Pending positions on one platform, or on every platform when platform is None"""
        ...

    @abstractmethod
    async def upsert_portfolio(self, portfolio: Portfolio):
        ...

    @abstractmethod
    async def load_portfolios(self) -> List[Portfolio]:
        """Portfolios with balances and stats; open positions are attached by the caller"""
        ...

    async def close(self):
        pass


class InMemoryRepository(PositionRepository):
    """Dictionary-backed store, for tests and dry runs"""

    def __init__(self):
        self.follows: Dict[tuple, TraderFollowConfig] = {}
        self.positions: Dict[str, Position] = {}
        self.portfolios: Dict[str, Portfolio] = {}

    async def load_followed_traders(self) -> List[TraderFollowConfig]:
        return [copy.deepcopy(c) for c in self.follows.values()]

    async def save_follow(self, config: TraderFollowConfig):
        self.follows[(config.follower, config.address)] = copy.deepcopy(config)

    async def remove_follow(self, address: str, follower: Optional[str] = None) -> int:
        keys = [k for k in self.follows if k[1] == address.lower() and (follower is None or k[0] == follower)]
        for key in keys:
            del self.follows[key]
        return len(keys)

    async def save_position(self, position: Position):
        self.positions[position.id] = copy.deepcopy(position)

    async def list_pending_positions(self, platform: Optional[str] = None) -> List[Position]:
        return [
            copy.deepcopy(p) for p in self.positions.values()
            if (platform is None or p.platform == platform) and p.status is PositionStatus.PENDING
        ]

    async def upsert_portfolio(self, portfolio: Portfolio):
        stored = copy.deepcopy(portfolio)
        stored.open_positions = {}
        stored.history = []
        self.portfolios[portfolio.owner] = stored

    async def load_portfolios(self) -> List[Portfolio]:
        return [copy.deepcopy(p) for p in self.portfolios.values()]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlRepository(PositionRepository):
    """SQLAlchemy async store"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url
        self._engine: Optional[AsyncEngine] = None

    async def _get_engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = await init_db(self.database_url)
        return self._engine

    async def close(self):
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    # ==================== Follows ====================

    async def load_followed_traders(self) -> List[TraderFollowConfig]:
        engine = await self._get_engine()
        async with get_async_session(engine) as session:
            result = await session.execute(select(FollowedTrader))
            rows = result.scalars().all()

        configs = []
        for row in rows:
            configs.append(TraderFollowConfig(
                address=row.address,
                follower=row.follower,
                platforms=json.loads(row.platforms or "[]"),
                max_copy_size=row.max_copy_size,
                copy_multiplier=row.copy_multiplier,
                trust_score=row.trust_score or 0.0,
                enabled=bool(row.enabled),
                tier=Tier.from_label(row.tier),
                max_exposure=row.max_exposure,
            ))
        logger.info(f"Loaded {len(configs)} followed traders from database")
        return configs

    async def save_follow(self, config: TraderFollowConfig):
        engine = await self._get_engine()
        async with get_async_session(engine) as session:
            result = await session.execute(
                select(FollowedTrader).where(
                    FollowedTrader.follower == config.follower,
                    FollowedTrader.address == config.address,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = FollowedTrader(address=config.address, follower=config.follower)
                session.add(row)
            row.platforms = json.dumps(config.platforms)
            row.max_copy_size = config.max_copy_size
            row.copy_multiplier = config.copy_multiplier
            row.max_exposure = config.max_exposure
            row.tier = config.tier.value
            row.trust_score = config.trust_score
            row.enabled = config.enabled

    async def remove_follow(self, address: str, follower: Optional[str] = None) -> int:
        engine = await self._get_engine()
        async with get_async_session(engine) as session:
            query = select(FollowedTrader).where(FollowedTrader.address == address.lower())
            if follower is not None:
                query = query.where(FollowedTrader.follower == follower)
            result = await session.execute(query)
            rows = result.scalars().all()
            for row in rows:
                await session.delete(row)
            return len(rows)

    # ==================== Positions ====================

    async def save_position(self, position: Position):
        engine = await self._get_engine()
        async with get_async_session(engine) as session:
            await session.merge(PositionRecord(
                id=position.id,
                owner=position.owner,
                platform=position.platform,
                market_id=position.market_id,
                outcome_id=position.outcome_id,
                stake=position.stake,
                odds=position.odds,
                status=position.status,
                payout=position.payout,
                real_outcome=position.real_outcome,
                copied_from=position.copied_from,
                source_event_id=position.source_event_id,
                placed_at=position.placed_at,
                resolved_at=position.resolved_at,
            ))

    async def list_pending_positions(self, platform: Optional[str] = None) -> List[Position]:
        engine = await self._get_engine()
        query = select(PositionRecord).where(PositionRecord.status == PositionStatus.PENDING)
        if platform is not None:
            query = query.where(PositionRecord.platform == platform)
        async with get_async_session(engine) as session:
            result = await session.execute(query.order_by(PositionRecord.placed_at))
            rows = result.scalars().all()

        return [
            Position(
                id=row.id,
                owner=row.owner,
                platform=row.platform,
                market_id=row.market_id,
                outcome_id=row.outcome_id,
                stake=row.stake,
                odds=row.odds,
                placed_at=_aware(row.placed_at),
                status=row.status,
                resolved_at=_aware(row.resolved_at),
                payout=row.payout,
                real_outcome=row.real_outcome,
                copied_from=row.copied_from,
                source_event_id=row.source_event_id,
            )
            for row in rows
        ]

    # ==================== Portfolios ====================

    async def upsert_portfolio(self, portfolio: Portfolio):
        engine = await self._get_engine()
        stats = portfolio.stats
        async with get_async_session(engine) as session:
            await session.merge(PortfolioRecord(
                owner=portfolio.owner,
                balance=portfolio.balance,
                total_deposited=portfolio.total_deposited,
                closed_payouts=portfolio.closed_payouts,
                closed_stakes=portfolio.closed_stakes,
                wins=stats.wins,
                losses=stats.losses,
                refunds=stats.refunds,
                total_wagered=stats.total_wagered,
                total_won=stats.total_won,
            ))

    async def load_portfolios(self) -> List[Portfolio]:
        engine = await self._get_engine()
        async with get_async_session(engine) as session:
            result = await session.execute(select(PortfolioRecord))
            rows = result.scalars().all()

        portfolios = []
        for row in rows:
            stats = PortfolioStats(
                wins=row.wins or 0,
                losses=row.losses or 0,
                refunds=row.refunds or 0,
                total_wagered=row.total_wagered or 0.0,
                total_won=row.total_won or 0.0,
            )
            stats.recompute()
            portfolios.append(Portfolio(
                owner=row.owner,
                balance=row.balance or 0.0,
                total_deposited=row.total_deposited or 0.0,
                closed_payouts=row.closed_payouts or 0.0,
                closed_stakes=row.closed_stakes or 0.0,
                stats=stats,
            ))
        return portfolios
