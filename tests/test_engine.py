"""End-to-end tests for the engine context: bet feed -> copy -> settle -> persist."""

import pytest

from copytrader.adapters.base import ResolutionStatus
from copytrader.copy_strategy import TraderFollowConfig
from copytrader.engine import EngineContext
from copytrader.normalizer import PriceFormat, normalize_market
from copytrader.portfolio import PositionStatus
from copytrader.repository import InMemoryRepository, SqlRepository
from copytrader.scoring import TraderHistory

from conftest import FakeAdapter, flush, make_event


TRADER = "0xtrader"
FOLLOWERS = {"f1": 1.0, "f2": 0.8, "f3": 1.5}


def build_engine(settings, clock, repository=None, platforms=("polymarket", "azuro")):
    adapters = {name: FakeAdapter(name, settings, clock) for name in platforms}
    return EngineContext(settings=settings, adapters=adapters, repository=repository or InMemoryRepository(),
                         clock=clock)


async def follow_all(engine):
    for follower, multiplier in FOLLOWERS.items():
        await engine.deposit(follower, 1000)
        await engine.follow(TraderFollowConfig(
            address=TRADER,
            follower=follower,
            platforms=["polymarket"],
            trust_score=90,
            copy_multiplier=multiplier,
        ))


@pytest.mark.asyncio
async def test_copy_and_settle_three_followers(settings, clock):
    engine = build_engine(settings, clock)
    await engine.start(poll=False)
    await follow_all(engine)
    adapter = engine.adapters["polymarket"]

    adapter.publish(make_event("bet-1", trader=TRADER, stake=100, odds=1.667, outcome_id="Yes"))
    await flush()
    await engine.wait_idle()

    stakes = {p.owner: p.stake for p in engine.ledger.open_positions()}
    assert stakes == {"f1": pytest.approx(100), "f2": pytest.approx(80), "f3": pytest.approx(150)}

    adapter.resolutions["m1"] = ResolutionStatus.winner("Yes")
    reports = await engine.settle_now()

    assert reports["polymarket"].won == 3
    payouts = {s.owner: s.history[0].payout for s in engine.snapshots()}
    assert payouts == {"f1": pytest.approx(166.70), "f2": pytest.approx(133.36), "f3": pytest.approx(250.05)}
    for owner in FOLLOWERS:
        engine.ledger.verify(owner)
    assert engine.exposure_snapshot()["total"] == 0
    await engine.stop()


@pytest.mark.asyncio
async def test_unfollowed_trader_ignored(settings, clock):
    engine = build_engine(settings, clock)
    await engine.start(subscribe=False, poll=False)
    await follow_all(engine)

    engine.submit(make_event("bet-x", trader="0xsomeoneelse"))
    await engine.wait_idle()

    assert engine.ledger.open_positions() == []
    await engine.stop()


@pytest.mark.asyncio
async def test_stop_discards_pending_copies(settings, clock):
    settings.copy_delay_seconds = 5.0
    engine = build_engine(settings, clock)
    await engine.start(subscribe=False, poll=False)
    await follow_all(engine)

    engine.submit(make_event("bet-1", trader=TRADER))
    await flush()
    await engine.stop()
    await clock.advance(10)

    assert engine.ledger.open_positions() == []
    assert all(s.balance == 1000 for s in engine.snapshots())


@pytest.mark.asyncio
async def test_positions_and_follows_persisted(settings, clock):
    repository = InMemoryRepository()
    engine = build_engine(settings, clock, repository)
    await engine.start(subscribe=False, poll=False)
    await follow_all(engine)

    engine.submit(make_event("bet-1", trader=TRADER))
    await engine.wait_idle()

    assert len(repository.follows) == 3
    assert len(await repository.list_pending_positions("polymarket")) == 3
    assert repository.portfolios["f3"].balance == pytest.approx(850)
    await engine.stop()


@pytest.mark.asyncio
async def test_restart_restores_state(settings, clock, tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}"
    engine = build_engine(settings, clock, SqlRepository(url))
    await engine.start(subscribe=False, poll=False)
    await follow_all(engine)
    engine.submit(make_event("bet-1", trader=TRADER))
    await engine.wait_idle()
    await engine.stop()

    restarted = build_engine(settings, clock, SqlRepository(url))
    await restarted.start(subscribe=False, poll=False)

    assert len(restarted.decisions.follows()) == 3
    assert len(restarted.ledger.open_positions()) == 3
    assert restarted.exposure.total == pytest.approx(330)
    for owner in FOLLOWERS:
        restarted.ledger.verify(owner)

    restarted.adapters["polymarket"].resolutions["m1"] = ResolutionStatus.winner("No")
    await restarted.settle_now()
    assert restarted.snapshot("f3").balance == pytest.approx(850)
    assert restarted.snapshot("f3").stats.losses == 1
    await restarted.stop()


@pytest.mark.asyncio
async def test_manual_position_respects_ceilings(settings, clock):
    settings.platform_exposure_limits = {"azuro": 100}
    engine = build_engine(settings, clock)
    await engine.start(subscribe=False, poll=False)
    await engine.deposit("me", 500)

    assert await engine.place_position("me", "azuro", "c1", "1", 150, 2.0) is None
    position = await engine.place_position("me", "azuro", "c1", "1", 80, 2.0)

    assert position.status is PositionStatus.PENDING
    assert engine.exposure.platform_total("azuro") == pytest.approx(80)
    await engine.stop()


@pytest.mark.asyncio
async def test_fetch_markets_per_platform(settings, clock):
    engine = build_engine(settings, clock)
    engine.adapters["azuro"].markets = [
        normalize_market("azuro", "c1", "A vs B", [("1", "A", 1.9), ("2", "B", 1.9)], PriceFormat.DECIMAL)
    ]

    markets = await engine.fetch_markets()

    assert [m.id for m in markets["azuro"]] == ["c1"]
    assert markets["polymarket"] == []


def test_score_trader_uses_engine_clock(settings, clock):
    engine = build_engine(settings, clock)
    result = engine.score_trader(TraderHistory(address=TRADER, platform="pancakeswap", wins=70, total_bets=100,
                                               last_trade_time=clock.now()))
    assert result.eligible
    assert result.recency_bonus == 300


@pytest.mark.asyncio
async def test_restarted_engine_keeps_copying(settings, clock):
    engine = build_engine(settings, clock)
    await engine.start(poll=False)
    await follow_all(engine)
    await engine.stop()

    await engine.start(poll=False)
    engine.adapters["polymarket"].publish(make_event("bet-after-restart", trader=TRADER))
    await flush()
    await engine.wait_idle()

    assert len(engine.ledger.open_positions()) == 3

    engine.adapters["polymarket"].resolutions["m1"] = ResolutionStatus.winner("Yes")
    reports = await engine.settle_now()
    assert reports["polymarket"].won == 3
    await engine.stop()


@pytest.mark.asyncio
async def test_cancel_position_releases_exposure(settings, clock):
    repository = InMemoryRepository()
    engine = build_engine(settings, clock, repository)
    await engine.start(subscribe=False, poll=False)
    await follow_all(engine)
    engine.submit(make_event("bet-1", trader=TRADER))
    await engine.wait_idle()
    (copied,) = [p for p in engine.ledger.open_positions() if p.owner == "f3"]

    cancelled = await engine.cancel_position(copied.id)

    assert cancelled.status is PositionStatus.CANCELLED
    assert engine.snapshot("f3").balance == pytest.approx(1000)
    assert engine.exposure.total == pytest.approx(180)
    assert engine.exposure.trader_total("f3", TRADER) == 0
    assert len(await repository.list_pending_positions("polymarket")) == 2
    assert repository.portfolios["f3"].balance == pytest.approx(1000)
    assert await engine.cancel_position(copied.id) is None
    engine.ledger.verify("f3")
    await engine.stop()


@pytest.mark.asyncio
async def test_restore_keeps_positions_on_disabled_platforms(settings, clock):
    repository = InMemoryRepository()
    engine = build_engine(settings, clock, repository)
    await engine.start(subscribe=False, poll=False)
    await engine.deposit("me", 500)
    await engine.place_position("me", "azuro", "c1", "1", 80, 2.0)
    await engine.stop()

    restarted = build_engine(settings, clock, repository, platforms=("polymarket",))
    await restarted.start(subscribe=False, poll=False)

    snapshot = restarted.snapshot("me")
    assert snapshot.balance == pytest.approx(420)
    assert [p.platform for p in snapshot.open_positions.values()] == ["azuro"]
    assert restarted.exposure.platform_total("azuro") == pytest.approx(80)
    restarted.ledger.verify("me")

    await restarted.settle_now()
    assert len(restarted.ledger.open_positions()) == 1
    await restarted.stop()
