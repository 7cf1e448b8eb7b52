"""Unit tests for the yield display ticker."""
import pytest
from conftest import ACCOUNT, DAY, START, TOKEN

from vmf_staking.core.accrual import accrue
from vmf_staking.core.ticker import YieldTicker


@pytest.mark.asyncio
async def test_ticks_use_cached_snapshots_only(ledger, registry):
    stake_id = ledger.seed_stake(ACCOUNT, 1000 * TOKEN, 30 * DAY, START)
    await registry.rate_schedule()
    await registry.get(ACCOUNT, stake_id)
    reads = len(ledger.calls)

    now = [START]
    seen = []
    ticker = YieldTicker(registry, ACCOUNT, [stake_id, 99], seen.append,
                         refresh_interval=0, wall_clock=lambda: now[0])
    ticker.tick()
    now[0] = START + DAY
    ticker.tick()

    assert seen[0] == {stake_id: 0, 99: None}
    assert seen[1][stake_id] == accrue(1000 * TOKEN, ledger.rate, DAY)
    assert len(ledger.calls) == reads


@pytest.mark.asyncio
async def test_run_stops_after_requested_ticks(registry):
    seen = []
    ticker = YieldTicker(registry, ACCOUNT, [0], seen.append, refresh_interval=0)
    await ticker.run(ticks=3)
    # nothing cached yet
    assert seen == [{0: None}] * 3


@pytest.mark.asyncio
async def test_start_and_stop(registry):
    seen = []
    ticker = YieldTicker(registry, ACCOUNT, [0], seen.append, refresh_interval=0)
    task = ticker.start()
    assert ticker.start() is task
    await ticker.stop()
    assert task.cancelled()
