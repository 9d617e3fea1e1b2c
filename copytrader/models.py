"""
Database Models for the Settlement & Copy-Trading Engine

Uses SQLAlchemy for ORM with async support
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .config import get_settings
from .portfolio import PositionStatus

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FollowedTrader(Base):
    """
    Followed trader - one row per (follower, trader) pair
    """
    __tablename__ = "followed_traders"
    __table_args__ = (UniqueConstraint("follower", "address", name="uq_follower_trader"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(128), nullable=False, index=True)
    follower = Column(String(128), nullable=False, index=True)

    # Copy settings
    platforms = Column(Text, nullable=False, default="[]")  # JSON array
    max_copy_size = Column(Float, nullable=False)
    copy_multiplier = Column(Float, nullable=True)  # None -> tier multiplier
    max_exposure = Column(Float, nullable=True)
    tier = Column(String(16), default="GOLD")

    # Reputation
    trust_score = Column(Float, default=0.0)
    enabled = Column(Boolean, default=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<FollowedTrader(follower={self.follower}, address={self.address}, trust={self.trust_score})>"


class PositionRecord(Base):
    """
    Simulated position
    """
    __tablename__ = "positions"

    id = Column(String(64), primary_key=True)
    owner = Column(String(128), nullable=False, index=True)
    platform = Column(String(32), nullable=False, index=True)
    market_id = Column(String(256), nullable=False)
    outcome_id = Column(String(128), nullable=False)

    stake = Column(Float, nullable=False)
    odds = Column(Float, nullable=False)
    status = Column(SQLEnum(PositionStatus), default=PositionStatus.PENDING, index=True)
    payout = Column(Float, nullable=True)
    real_outcome = Column(String(128), nullable=True)

    copied_from = Column(String(128), nullable=True)
    source_event_id = Column(String(256), nullable=True)

    placed_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<PositionRecord(id={self.id}, {self.platform}/{self.market_id}, status={self.status})>"


class PortfolioRecord(Base):
    """
    Portfolio balances and aggregate stats
    """
    __tablename__ = "portfolios"

    owner = Column(String(128), primary_key=True)
    balance = Column(Float, default=0.0)
    total_deposited = Column(Float, default=0.0)
    closed_payouts = Column(Float, default=0.0)
    closed_stakes = Column(Float, default=0.0)

    # Stats
    wins = Column(Integer, default=0)
    losses = Column(Integer, default=0)
    refunds = Column(Integer, default=0)
    total_wagered = Column(Float, default=0.0)
    total_won = Column(Float, default=0.0)

    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<PortfolioRecord(owner={self.owner}, balance={self.balance})>"


# Database initialization
async def init_db(database_url: Optional[str] = None) -> AsyncEngine:
    """Initialize database and create tables"""
    url = database_url or get_settings().database_url

    engine = create_async_engine(url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return engine


@asynccontextmanager
async def get_async_session(engine: AsyncEngine):
    """Get async database session as context manager"""
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    session = async_session()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
