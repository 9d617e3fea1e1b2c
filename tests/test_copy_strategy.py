"""Unit tests for the copy decision engine and exposure accounting."""

import random

import pytest

from copytrader.copy_strategy import (
    CopyAction,
    CopyDecisionEngine,
    ExposureTracker,
    RejectionReason,
    RiskLevel,
    Tier,
    TraderFollowConfig,
)
from copytrader.portfolio import PortfolioLedger, PositionStatus

from conftest import flush, make_event


TRADER = "0xtrader"


@pytest.fixture
def ledger():
    ledger = PortfolioLedger()
    ledger.deposit("alice", 10000)
    return ledger


@pytest.fixture
def exposure():
    return ExposureTracker()


@pytest.fixture
def engine(ledger, exposure, settings, clock):
    return CopyDecisionEngine(ledger, exposure, settings, clock)


def follow_config(follower="alice", trust=90.0, platforms=("polymarket",), **kwargs) -> TraderFollowConfig:
    return TraderFollowConfig(address=TRADER, follower=follower, platforms=list(platforms), trust_score=trust, **kwargs)


def open_copy(ledger, exposure, stake, platform="polymarket", owner="alice", trader=TRADER):
    position = ledger.open_position(owner, platform, "m0", "Yes", stake, 2.0, copied_from=trader)
    exposure.add(position)
    return position


# ---------------------------------------------------------------------------
# Follow configs
# ---------------------------------------------------------------------------


def test_follow_normalizes_addresses_and_platforms():
    config = TraderFollowConfig(address="0xABC", follower="bob", platforms=["PolyMarket"])
    assert config.address == "0xabc"
    assert config.platforms == ["polymarket"]


def test_follow_refused_below_minimum_trust(engine):
    assert engine.follow(follow_config(trust=55)) is False
    assert engine.followers_of(TRADER) == []
    assert engine.follow(follow_config(trust=60)) is True


def test_unfollow(engine):
    engine.follow(follow_config(follower="alice"))
    engine.follow(follow_config(follower="bob"))

    assert engine.unfollow(TRADER, "bob") == 1
    assert [c.follower for c in engine.followers_of(TRADER)] == ["alice"]
    assert engine.unfollow(TRADER.upper()) == 1
    assert engine.follows() == []


def test_multiplier_defaults_to_tier(settings):
    assert follow_config(tier=Tier.DIAMOND).multiplier(settings) == 1.5
    assert follow_config(tier=Tier.SILVER).multiplier(settings) == 0.8
    assert follow_config(tier=Tier.BRONZE, copy_multiplier=2.0).multiplier(settings) == 2.0


def test_tier_from_score_label():
    assert Tier.from_label("LEGENDARY") is Tier.DIAMOND
    assert Tier.from_label("gold") is Tier.GOLD
    assert Tier.from_label("") is Tier.BRONZE


@pytest.mark.parametrize("trust,risk", [(95, RiskLevel.LOW), (80, RiskLevel.LOW), (79, RiskLevel.MEDIUM),
                                        (60, RiskLevel.MEDIUM), (59, RiskLevel.HIGH)])
def test_risk_level(trust, risk):
    assert RiskLevel.from_trust(trust) is risk


# ---------------------------------------------------------------------------
# Evaluation order
# ---------------------------------------------------------------------------


def test_not_followed(engine):
    decision = engine.evaluate(make_event(), None)
    assert decision.action is CopyAction.SKIP
    assert decision.reason is RejectionReason.NOT_FOLLOWED
    assert decision.reason.category == "NotFollowed"


def test_disabled_trader(engine):
    decision = engine.evaluate(make_event(), follow_config(enabled=False))
    assert decision.reason is RejectionReason.TRADER_DISABLED


def test_platform_not_tracked(engine):
    decision = engine.evaluate(make_event(platform="azuro"), follow_config())
    assert decision.reason is RejectionReason.PLATFORM_NOT_TRACKED


def test_global_ceiling_checked_before_trust(engine, ledger, exposure, settings):
    settings.max_total_exposure = 300
    open_copy(ledger, exposure, 300, platform="azuro", trader="0xother")

    decision = engine.evaluate(make_event(), follow_config(trust=10))
    assert decision.reason is RejectionReason.GLOBAL_EXPOSURE
    assert decision.reason.category == "ExposureExceeded"


def test_platform_ceiling(engine, ledger, exposure, settings):
    settings.platform_exposure_limits = {"polymarket": 200}
    open_copy(ledger, exposure, 200, trader="0xother")

    decision = engine.evaluate(make_event(), follow_config())
    assert decision.reason is RejectionReason.PLATFORM_EXPOSURE

    # other platforms keep the default ceiling
    other = engine.evaluate(make_event(platform="azuro"), follow_config(platforms=("azuro",)))
    assert other.accepted


def test_trader_ceiling(engine, ledger, exposure):
    open_copy(ledger, exposure, 400)

    decision = engine.evaluate(make_event(), follow_config(max_exposure=400))
    assert decision.reason is RejectionReason.TRADER_EXPOSURE


def test_trader_ceiling_is_per_follower(engine, ledger, exposure):
    ledger.deposit("bob", 1000)
    open_copy(ledger, exposure, 400, owner="bob")

    decision = engine.evaluate(make_event(), follow_config(follower="alice", max_exposure=400))
    assert decision.accepted


def test_trust_threshold(engine):
    decision = engine.evaluate(make_event(), follow_config(trust=65))
    assert decision.reason is RejectionReason.TRUST_BELOW_THRESHOLD
    assert decision.reason.category == "ThresholdNotMet"


def test_trust_threshold_disabled(engine, settings):
    settings.enable_anti_gaming = False
    assert engine.evaluate(make_event(), follow_config(trust=65)).accepted


# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------


def test_size_applies_multiplier(engine):
    decision = engine.evaluate(make_event(stake=100), follow_config(copy_multiplier=0.8))
    assert decision.accepted
    assert decision.size == pytest.approx(80)
    assert decision.risk is RiskLevel.LOW


def test_size_clamped_to_max_copy_size(engine):
    decision = engine.evaluate(make_event(stake=1000), follow_config(tier=Tier.DIAMOND, max_copy_size=500))
    assert decision.size == 500


def test_size_clamped_to_remaining_budgets(engine, ledger, exposure, settings):
    settings.platform_exposure_limits = {"polymarket": 250}
    open_copy(ledger, exposure, 200, trader="0xother")

    decision = engine.evaluate(make_event(stake=100), follow_config())
    assert decision.size == pytest.approx(50)


def test_size_clamped_to_balance(engine, ledger):
    ledger.deposit("carol", 30)
    decision = engine.evaluate(make_event(stake=100), follow_config(follower="carol"))
    assert decision.size == pytest.approx(30)


def test_empty_balance_rejects(engine):
    decision = engine.evaluate(make_event(stake=100), follow_config(follower="nobody"))
    assert decision.reason is RejectionReason.NON_POSITIVE_SIZE


# ---------------------------------------------------------------------------
# Processing and commit
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_process_event_commits_for_every_follower(engine, ledger, exposure):
    ledger.deposit("bob", 1000)
    engine.follow(follow_config(follower="alice", copy_multiplier=1.0))
    engine.follow(follow_config(follower="bob", copy_multiplier=1.5))
    committed = []
    engine.add_position_callback(committed.append)

    decisions = await engine.process_event(make_event(stake=100))

    assert all(d.accepted for d in decisions)
    assert sorted(p.stake for p in committed) == [100, 150]
    assert exposure.total == pytest.approx(250)
    assert exposure.trader_total("bob", TRADER) == pytest.approx(150)
    assert ledger.balance("bob") == pytest.approx(850)


@pytest.mark.asyncio
async def test_same_event_copied_once(engine, ledger):
    engine.follow(follow_config())
    event = make_event()

    await engine.process_event(event)
    await engine.process_event(event)

    assert len(ledger.open_positions()) == 1


@pytest.mark.asyncio
async def test_delayed_copy_commits_after_delay(engine, ledger, settings, clock):
    settings.copy_delay_seconds = 2.0
    engine.follow(follow_config())

    await engine.process_event(make_event())
    await flush()
    assert ledger.open_positions() == []

    await clock.advance(2.0)
    await engine.drain()
    assert len(ledger.open_positions()) == 1


@pytest.mark.asyncio
async def test_delayed_copy_rechecks_exposure(engine, ledger, exposure, settings, clock):
    settings.copy_delay_seconds = 2.0
    settings.max_trader_exposure = 150
    engine.follow(follow_config())

    await engine.process_event(make_event("e1", stake=100))
    await engine.process_event(make_event("e2", stake=100))
    await clock.advance(2.0)
    await engine.drain()

    stakes = [p.stake for p in ledger.open_positions()]
    assert stakes == [pytest.approx(100), pytest.approx(50)]
    assert exposure.trader_total("alice", TRADER) == pytest.approx(150)


@pytest.mark.asyncio
async def test_stop_cancels_pending_copies(engine, ledger, exposure, settings, clock):
    settings.copy_delay_seconds = 2.0
    engine.follow(follow_config())
    before = ledger.snapshot("alice")

    await engine.process_event(make_event())
    await flush()
    await engine.stop()
    await clock.advance(5.0)

    after = ledger.snapshot("alice")
    assert after.balance == before.balance
    assert after.open_positions == {}
    assert exposure.total == 0


@pytest.mark.asyncio
async def test_commit_after_stop_is_discarded(engine, ledger):
    engine.follow(follow_config())
    decision = engine.evaluate(make_event(), engine.get_follow(TRADER, "alice"))
    await engine.stop()

    assert engine.commit(decision) is None
    assert ledger.open_positions() == []


@pytest.mark.asyncio
async def test_finished_chains_and_old_copy_ids_are_dropped(engine, ledger, settings, clock):
    settings.copy_delay_seconds = 1.0
    engine.max_copied_events = 2
    engine.follow(follow_config())

    for i in range(3):
        await engine.process_event(make_event(f"e{i}", stake=10))
    await clock.advance(1.0)
    await engine.drain()

    assert len(ledger.open_positions()) == 3
    assert engine._chains == {}
    assert list(engine._copied) == [("e1", "alice"), ("e2", "alice")]


@pytest.mark.asyncio
async def test_start_after_stop_accepts_commits(engine, ledger):
    engine.follow(follow_config())
    decision = engine.evaluate(make_event(), engine.get_follow(TRADER, "alice"))

    await engine.stop()
    engine.start()

    assert engine.commit(decision) is not None
    assert len(ledger.open_positions()) == 1


# ---------------------------------------------------------------------------
# Exposure ceilings under random load
# ---------------------------------------------------------------------------


def assert_within_ceilings(settings, ledger, exposure, platforms, followers, traders):
    assert exposure.total <= settings.max_total_exposure + 1e-6
    for platform in platforms:
        assert exposure.platform_total(platform) <= settings.platform_ceiling(platform) + 1e-6
    for follower in followers:
        ledger.verify(follower)
        for trader in traders:
            assert exposure.trader_total(follower, trader) <= settings.max_trader_exposure + 1e-6


@pytest.mark.asyncio
@pytest.mark.parametrize("delay,seed", [(0.0, 1234), (0.0, 99), (2.0, 1234), (2.0, 7)])
async def test_random_load_never_breaches_ceilings(settings, clock, delay, seed):
    settings.copy_delay_seconds = delay
    settings.max_total_exposure = 3000
    settings.max_platform_exposure = 1500
    settings.platform_exposure_limits = {"azuro": 800}
    settings.max_trader_exposure = 700
    settings.max_copy_size = 400

    rng = random.Random(seed)
    ledger = PortfolioLedger()
    exposure = ExposureTracker()
    engine = CopyDecisionEngine(ledger, exposure, settings, clock)

    platforms = ["polymarket", "azuro", "manifold"]
    traders = [f"0xtrader{i}" for i in range(4)]
    followers = ["alice", "bob", "carol"]
    for follower in followers:
        ledger.deposit(follower, 2500)
        for trader in traders:
            engine.follow(TraderFollowConfig(
                address=trader,
                follower=follower,
                platforms=platforms,
                trust_score=rng.uniform(70, 100),
                copy_multiplier=rng.choice([0.5, 1.0, 1.5]),
                max_copy_size=400,
            ))

    for i in range(300):
        event = make_event(
            f"ev-{i}",
            trader=rng.choice(traders),
            platform=rng.choice(platforms),
            market_id=f"m{rng.randint(0, 9)}",
            stake=rng.uniform(1, 600),
        )
        await engine.process_event(event)

        if delay and rng.random() < 0.2:
            await clock.advance(rng.choice([0.5, 1.0, 2.0, 3.0]))

        if rng.random() < 0.3 and ledger.open_positions():
            position = rng.choice(ledger.open_positions())
            settled = ledger.settle(position.id, rng.choice([PositionStatus.WON, PositionStatus.LOST,
                                                             PositionStatus.REFUNDED]))
            exposure.release(settled)

        assert_within_ceilings(settings, ledger, exposure, platforms, followers, traders)

    await clock.advance(delay + 1)
    await engine.drain()
    assert_within_ceilings(settings, ledger, exposure, platforms, followers, traders)

    open_stake = sum(p.stake for p in ledger.open_positions())
    assert exposure.total == pytest.approx(open_stake)
    assert ledger.open_positions()
