"""Persistence tests for the in-memory and SQLite repositories."""

import pytest

from copytrader.copy_strategy import Tier, TraderFollowConfig
from copytrader.portfolio import PortfolioLedger, PositionStatus
from copytrader.repository import InMemoryRepository, SqlRepository

from conftest import T0


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        return InMemoryRepository()
    return SqlRepository(f"sqlite+aiosqlite:///{tmp_path / 'copytrader.db'}")


def follow(follower="alice", address="0xABC", **kwargs):
    return TraderFollowConfig(address=address, follower=follower, platforms=["polymarket", "azuro"],
                              trust_score=88, tier=Tier.PLATINUM, **kwargs)


@pytest.mark.asyncio
async def test_follows_round_trip(repository):
    await repository.save_follow(follow(copy_multiplier=0.8, max_exposure=750))
    await repository.save_follow(follow(follower="bob"))

    loaded = {c.follower: c for c in await repository.load_followed_traders()}

    assert set(loaded) == {"alice", "bob"}
    alice = loaded["alice"]
    assert alice.address == "0xabc"
    assert alice.platforms == ["polymarket", "azuro"]
    assert alice.copy_multiplier == 0.8
    assert alice.max_exposure == 750
    assert alice.tier is Tier.PLATINUM
    assert loaded["bob"].copy_multiplier is None
    await repository.close()


@pytest.mark.asyncio
async def test_save_follow_updates_existing(repository):
    await repository.save_follow(follow())
    await repository.save_follow(follow(enabled=False))

    loaded = await repository.load_followed_traders()
    assert len(loaded) == 1
    assert loaded[0].enabled is False
    await repository.close()


@pytest.mark.asyncio
async def test_remove_follow(repository):
    await repository.save_follow(follow())
    await repository.save_follow(follow(follower="bob"))

    assert await repository.remove_follow("0xABC", "bob") == 1
    assert [c.follower for c in await repository.load_followed_traders()] == ["alice"]
    await repository.close()


@pytest.mark.asyncio
async def test_pending_positions_by_platform(repository):
    ledger = PortfolioLedger()
    ledger.deposit("alice", 1000)
    first = ledger.open_position("alice", "polymarket", "m1", "Yes", 100, 1.667, placed_at=T0, copied_from="0xabc")
    other = ledger.open_position("alice", "azuro", "c1", "1", 50, 2.1, placed_at=T0)
    settled = ledger.open_position("alice", "polymarket", "m2", "No", 25, 3.0, placed_at=T0)
    ledger.settle(settled.id, PositionStatus.LOST, resolved_at=T0)
    for position in (first, other, settled):
        await repository.save_position(position)

    pending = await repository.list_pending_positions("polymarket")

    assert [p.id for p in pending] == [first.id]
    restored = pending[0]
    assert restored.stake == 100
    assert restored.odds == 1.667
    assert restored.copied_from == "0xabc"
    assert restored.placed_at == T0
    assert restored.status is PositionStatus.PENDING
    await repository.close()


@pytest.mark.asyncio
async def test_settled_position_overwrites_pending(repository):
    ledger = PortfolioLedger()
    ledger.deposit("alice", 1000)
    position = ledger.open_position("alice", "polymarket", "m1", "Yes", 100, 2.0, placed_at=T0)
    await repository.save_position(position)
    ledger.settle(position.id, PositionStatus.WON, real_outcome="Yes", resolved_at=T0)
    await repository.save_position(position)

    assert await repository.list_pending_positions("polymarket") == []
    await repository.close()


@pytest.mark.asyncio
async def test_portfolio_round_trip(repository):
    ledger = PortfolioLedger()
    ledger.deposit("alice", 1000)
    won = ledger.open_position("alice", "polymarket", "m1", "Yes", 100, 2.0, placed_at=T0)
    ledger.settle(won.id, PositionStatus.WON, resolved_at=T0)
    ledger.open_position("alice", "polymarket", "m2", "Yes", 300, 2.0, placed_at=T0)
    await repository.upsert_portfolio(ledger.snapshot("alice"))

    (portfolio,) = await repository.load_portfolios()

    assert portfolio.owner == "alice"
    assert portfolio.balance == pytest.approx(800)
    assert portfolio.total_deposited == 1000
    assert portfolio.closed_payouts == pytest.approx(200)
    assert portfolio.closed_stakes == pytest.approx(100)
    assert portfolio.stats.wins == 1
    assert portfolio.stats.pnl == pytest.approx(100)
    assert portfolio.open_positions == {}
    await repository.close()
