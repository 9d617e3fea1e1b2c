"""Unit tests for the settlement engine."""

import pytest

from copytrader.adapters.base import ResolutionStatus
from copytrader.copy_strategy import ExposureTracker
from copytrader.errors import AdapterResolutionError
from copytrader.portfolio import PortfolioLedger, PositionStatus
from copytrader.settlement import SettlementEngine

from conftest import FakeAdapter, flush


@pytest.fixture
def ledger():
    ledger = PortfolioLedger()
    ledger.deposit("alice", 1000)
    return ledger


@pytest.fixture
def exposure():
    return ExposureTracker()


@pytest.fixture
def adapters(settings, clock):
    return {name: FakeAdapter(name, settings, clock) for name in ("polymarket", "azuro")}


@pytest.fixture
def settlement(ledger, exposure, adapters, settings, clock):
    return SettlementEngine(ledger, exposure, adapters, settings, clock)


def place(ledger, exposure, platform="polymarket", market_id="m1", outcome_id="Yes", stake=100.0, odds=2.0):
    position = ledger.open_position("alice", platform, market_id, outcome_id, stake, odds, copied_from="0xtrader")
    exposure.add(position)
    return position


@pytest.mark.asyncio
async def test_winner_and_loser_settle(settlement, ledger, exposure, adapters):
    won = place(ledger, exposure, outcome_id="Yes", odds=1.667)
    lost = place(ledger, exposure, outcome_id="No", odds=2.5)
    adapters["polymarket"].resolutions["m1"] = ResolutionStatus.winner("Yes")

    reports = await settlement.poll_once()

    report = reports["polymarket"]
    assert (report.won, report.lost, report.refunded) == (1, 1, 0)
    assert report.checked_markets == 1
    assert adapters["polymarket"].checked == ["m1"]
    assert ledger.get_position(won.id).payout == pytest.approx(166.7)
    assert ledger.get_position(lost.id).payout == 0
    assert ledger.balance("alice") == pytest.approx(966.7)
    assert exposure.total == 0
    ledger.verify("alice")


@pytest.mark.asyncio
async def test_void_refunds(settlement, ledger, exposure, adapters):
    position = place(ledger, exposure)
    adapters["polymarket"].resolutions["m1"] = ResolutionStatus.void()

    reports = await settlement.poll_once()

    assert reports["polymarket"].refunded == 1
    settled = ledger.get_position(position.id)
    assert settled.status is PositionStatus.REFUNDED
    assert settled.payout == 100
    assert ledger.balance("alice") == pytest.approx(1000)


@pytest.mark.asyncio
async def test_unresolved_stays_pending(settlement, ledger, exposure):
    place(ledger, exposure)

    reports = await settlement.poll_once()

    assert reports["polymarket"].still_pending == 1
    assert len(ledger.open_positions()) == 1
    assert exposure.total == pytest.approx(100)


@pytest.mark.asyncio
async def test_failing_platform_does_not_block_others(settlement, ledger, exposure, adapters):
    stuck = place(ledger, exposure, platform="polymarket", market_id="m1")
    done = place(ledger, exposure, platform="azuro", market_id="c1", outcome_id="1")
    adapters["polymarket"].failures["m1"] = RuntimeError("gateway timeout")
    adapters["azuro"].resolutions["c1"] = ResolutionStatus.winner("1")

    reports = await settlement.poll_once()

    assert reports["polymarket"].errors
    assert reports["polymarket"].still_pending == 1
    assert reports["azuro"].won == 1
    assert ledger.get_position(stuck.id).status is PositionStatus.PENDING
    assert ledger.get_position(done.id).status is PositionStatus.WON


@pytest.mark.asyncio
async def test_missing_adapter_keeps_positions_pending(settlement, ledger, exposure):
    place(ledger, exposure, platform="overtime", market_id="g1", outcome_id="0")

    reports = await settlement.poll_once()

    assert reports["overtime"].still_pending == 1
    assert reports["overtime"].errors == ["no adapter"]


@pytest.mark.asyncio
async def test_each_market_checked_once_per_tick(settlement, ledger, exposure, adapters):
    for _ in range(3):
        place(ledger, exposure, market_id="m1", stake=10)
    place(ledger, exposure, market_id="m2", stake=10)

    await settlement.poll_once()

    assert sorted(adapters["polymarket"].checked) == ["m1", "m2"]


@pytest.mark.asyncio
async def test_positions_settle_once(settlement, ledger, exposure, adapters):
    place(ledger, exposure)
    adapters["polymarket"].resolutions["m1"] = ResolutionStatus.winner("Yes")

    await settlement.poll_once()
    balance = ledger.balance("alice")
    reports = await settlement.poll_once()

    assert reports == {}
    assert ledger.balance("alice") == balance


@pytest.mark.asyncio
async def test_apply_resolution_ignores_terminal(settlement, ledger, exposure):
    position = place(ledger, exposure)
    ledger.settle(position.id, PositionStatus.LOST)

    assert settlement.apply_resolution(position, ResolutionStatus.winner("Yes")) is None


@pytest.mark.asyncio
async def test_results_after_stop_are_discarded(settlement, ledger, exposure, adapters):
    position = place(ledger, exposure)
    adapters["polymarket"].resolutions["m1"] = ResolutionStatus.winner("Yes")

    async def stop_midway(market_id):
        await settlement.stop()

    adapters["polymarket"].on_check = stop_midway
    await settlement.poll_once()

    assert ledger.get_position(position.id).status is PositionStatus.PENDING
    assert ledger.balance("alice") == pytest.approx(900)


@pytest.mark.asyncio
async def test_settled_callbacks(settlement, ledger, exposure, adapters):
    place(ledger, exposure)
    adapters["polymarket"].resolutions["m1"] = ResolutionStatus.winner("No")
    seen = []

    async def record(position):
        seen.append(position.status)

    def broken(position):
        raise RuntimeError("sink down")

    settlement.add_settled_callback(broken)
    settlement.add_settled_callback(record)
    await settlement.poll_once()

    assert seen == [PositionStatus.LOST]


@pytest.mark.asyncio
async def test_periodic_polling(settlement, ledger, exposure, adapters, settings, clock):
    place(ledger, exposure)
    settlement.start()
    await flush()
    assert adapters["polymarket"].checked == ["m1"]

    adapters["polymarket"].resolutions["m1"] = ResolutionStatus.winner("Yes")
    await clock.advance(settings.poll_interval)
    assert ledger.open_positions() == []

    await settlement.stop()
    assert not settlement.running


@pytest.mark.asyncio
async def test_resolution_error_type(adapters):
    adapters["azuro"].failures["c9"] = ValueError("bad payload")
    with pytest.raises(AdapterResolutionError):
        await adapters["azuro"].check_resolution("c9")
