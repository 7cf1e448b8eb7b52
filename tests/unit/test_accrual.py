"""Unit tests for yield accrual math."""
import pytest

from vmf_staking.core.accrual import (
    RateSchedule,
    accrual_start,
    accrue,
    accrue_scheduled,
    apr_to_rate_per_second,
    display_apr,
    display_yield,
    total_yield,
    yield_for_stake,
)
from vmf_staking.core.stake import Stake, StakeStatus

TOKEN = 10 ** 18
RATE = 4_756_468_798


def make_stake(principal=1000 * TOKEN, start=1_000_000, last_claim=None, status=StakeStatus.ACTIVE):
    return Stake(
        account="0x" + "a" * 40,
        stake_id=0,
        principal=principal,
        start_time=start,
        staking_period=30 * 86_400,
        last_yield_claim_at=start if last_claim is None else last_claim,
        status=status,
    )


def test_fifteen_percent_rate_constant():
    assert apr_to_rate_per_second("0.15") == RATE


def test_one_day_on_thousand_tokens():
    assert accrue(1000 * TOKEN, RATE, 86_400) == 410_958_904_147_200_000


def test_one_year_is_within_rounding_of_apr():
    # the rate is rounded once, so a full year is off by a tiny fraction of a token
    year = accrue(1000 * TOKEN, RATE, 31_536_000)
    assert 149_999 * TOKEN // 1000 < year < 150 * TOKEN + TOKEN // 1000


def test_no_accrual_without_elapsed_time():
    assert accrue(1000 * TOKEN, RATE, 0) == 0
    assert accrue(1000 * TOKEN, RATE, -10) == 0
    assert accrue(0, RATE, 100) == 0


def test_accrual_is_monotonic_and_floors():
    previous = 0
    for elapsed in range(0, 500, 7):
        value = accrue(1, RATE, elapsed)
        assert value >= previous
        previous = value
    # one base unit never accrues within a normal lifetime
    assert accrue(1, RATE, 10 ** 6) == 0


def test_yield_counts_from_later_of_start_and_last_claim():
    stake = make_stake(start=1_000_000, last_claim=1_000_000 + 3600)
    assert accrual_start(stake) == 1_000_000 + 3600
    expected = accrue(stake.principal, RATE, 86_400 - 3600)
    assert yield_for_stake(stake, RateSchedule.constant(RATE), 1_000_000 + 86_400) == expected


def test_yield_before_start_is_zero():
    stake = make_stake(start=1_000_000)
    assert yield_for_stake(stake, RateSchedule.constant(RATE), 999_000) == 0


def test_withdrawn_stake_accrues_nothing():
    stake = make_stake(principal=0, status=StakeStatus.WITHDRAWN)
    assert yield_for_stake(stake, RateSchedule.constant(RATE), 2_000_000) == 0


def test_total_yield_sums_stakes():
    schedule = RateSchedule.constant(RATE)
    stakes = [make_stake(), make_stake(principal=500 * TOKEN)]
    now = 1_000_000 + 86_400
    assert total_yield(stakes, schedule, now) == sum(yield_for_stake(s, schedule, now) for s in stakes)


class TestRateSchedule:
    def test_validation(self):
        with pytest.raises(ValueError):
            RateSchedule([])
        with pytest.raises(ValueError):
            RateSchedule([(10, RATE)])
        with pytest.raises(ValueError):
            RateSchedule([(0, RATE), (0, RATE)])
        with pytest.raises(ValueError):
            RateSchedule([(0, -1)])

    def test_rate_at_steps(self):
        schedule = RateSchedule([(0, 10), (100, 20)], epoch=1000)
        assert schedule.rate_at(500) == 10
        assert schedule.rate_at(1099) == 10
        assert schedule.rate_at(1100) == 20

    def test_integrate_across_a_change(self):
        schedule = RateSchedule([(0, 10), (100, 20)], epoch=1000)
        assert schedule.integrate(1050, 1150) == 50 * 10 + 50 * 20
        assert schedule.integrate(900, 1000) == 100 * 10
        assert schedule.integrate(1200, 1100) == 0

    def test_scheduled_accrual_floors_once(self):
        schedule = RateSchedule([(0, RATE), (43_200, RATE * 2)], epoch=0)
        principal = 1000 * TOKEN
        expected = principal * (RATE * 43_200 + RATE * 2 * 43_200) // 10 ** 18
        assert accrue_scheduled(principal, schedule, 0, 86_400) == expected

    def test_constant_schedule_matches_fast_path(self):
        schedule = RateSchedule([(0, RATE)], epoch=0)
        assert accrue_scheduled(1000 * TOKEN, schedule, 5, 86_405) == accrue(1000 * TOKEN, RATE, 86_400)

    def test_equality(self):
        assert RateSchedule.from_apr("0.15") == RateSchedule.constant(RATE)
        assert RateSchedule.constant(1) != RateSchedule.constant(2)


def test_display_helpers():
    assert display_yield(410_958_904_147_200_000) == "0.410959"
    assert display_apr(RateSchedule.constant(RATE)) == pytest.approx(15.0, abs=1e-6)
