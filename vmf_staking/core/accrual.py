"""Yield accrual math.

Mirrors the staking contract's integer formula bit for bit:

    yield = principal * rate_per_second * elapsed // RATE_SCALE

where ``rate_per_second`` is the APR divided by a 365-day year, scaled by
``10**18`` and rounded half-up once at deployment time (15 % APR is stored
as ``4_756_468_798``). Nothing in the authoritative path touches floats;
``display_yield`` and ``display_apr`` are for rendering only.

Time-varying rates are piecewise constant per second: each whole second
``[s, s + 1)`` is charged the rate of the segment in effect at ``s`` and the
scaled sum is floored once, at the end.
"""
from bisect import bisect_right
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence, Tuple, Union

from .stake import Stake, StakeStatus
from .units import TOKEN_DECIMALS

RATE_SCALE = 10 ** 18
SECONDS_PER_YEAR = 365 * 24 * 60 * 60


def apr_to_rate_per_second(apr: Union[str, Decimal, int]) -> int:
    """Convert a fractional APR (``"0.15"`` for 15 %) to the scaled per-second rate."""
    apr = Decimal(str(apr))
    if apr < 0:
        raise ValueError(f"APR must be >= 0, got {apr}")
    scaled = apr * RATE_SCALE / SECONDS_PER_YEAR
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class RateSchedule:
    """Per-second accrual rate as a step function of time.

    Segments are ``(start_offset, rate)`` pairs, offsets in seconds from
    ``epoch``. The first segment must start at offset 0; it also covers any
    time before the epoch.
    """

    def __init__(self, segments: Iterable[Tuple[int, int]], epoch: int = 0):
        segments = [(int(offset), int(rate)) for offset, rate in segments]
        if not segments:
            raise ValueError("Rate schedule needs at least one segment")
        if segments[0][0] != 0:
            raise ValueError("First rate segment must start at offset 0")
        for (prev, _), (cur, _) in zip(segments, segments[1:]):
            if cur <= prev:
                raise ValueError("Rate segment offsets must be strictly increasing")
        for _, rate in segments:
            if rate < 0:
                raise ValueError(f"Rate must be >= 0, got {rate}")

        self.epoch = int(epoch)
        self.segments: Tuple[Tuple[int, int], ...] = tuple(segments)
        self._starts = [self.epoch + offset for offset, _ in self.segments]

    @classmethod
    def constant(cls, rate_per_second: int) -> "RateSchedule":
        return cls([(0, rate_per_second)])

    @classmethod
    def from_apr(cls, apr: Union[str, Decimal, int]) -> "RateSchedule":
        return cls.constant(apr_to_rate_per_second(apr))

    @property
    def is_constant(self) -> bool:
        return len(self.segments) == 1

    def rate_at(self, t: int) -> int:
        """Rate in effect during second ``t``."""
        index = max(0, bisect_right(self._starts, int(t)) - 1)
        return self.segments[index][1]

    def integrate(self, start: int, end: int) -> int:
        """Sum of the scaled rate over the whole seconds in ``[start, end)``."""
        start, end = int(start), int(end)
        if end <= start:
            return 0

        total = 0
        bounds = self._starts[1:] + [None]
        for i, ((_, rate), seg_end) in enumerate(zip(self.segments, bounds)):
            lo = start if i == 0 else max(start, self._starts[i])
            hi = end if seg_end is None else min(end, seg_end)
            if hi > lo:
                total += rate * (hi - lo)
        return total

    def __eq__(self, other):
        if not isinstance(other, RateSchedule):
            return NotImplemented
        return self.epoch == other.epoch and self.segments == other.segments

    def __repr__(self):
        return f"RateSchedule(segments={list(self.segments)}, epoch={self.epoch})"


def accrue(principal: int, rate: int, elapsed_seconds: int) -> int:
    """Yield owed on ``principal`` at a constant scaled ``rate`` after ``elapsed_seconds``."""
    if elapsed_seconds <= 0 or principal <= 0 or rate <= 0:
        return 0
    return principal * rate * int(elapsed_seconds) // RATE_SCALE


def accrue_scheduled(principal: int, schedule: RateSchedule, claim_from: int, now: int) -> int:
    """Yield owed between ``claim_from`` and ``now`` under a time-varying schedule."""
    if now <= claim_from or principal <= 0:
        return 0
    return principal * schedule.integrate(claim_from, now) // RATE_SCALE


def accrual_start(stake: Stake) -> int:
    return max(stake.last_yield_claim_at, stake.start_time)


def yield_for_stake(stake: Stake, schedule: RateSchedule, now: int) -> int:
    """Current accrued yield for a stake snapshot, in base units."""
    if stake.status != StakeStatus.ACTIVE:
        return 0
    start = accrual_start(stake)
    if schedule.is_constant:
        return accrue(stake.principal, schedule.segments[0][1], int(now) - start)
    return accrue_scheduled(stake.principal, schedule, start, int(now))


def total_yield(stakes: Sequence[Stake], schedule: RateSchedule, now: int) -> int:
    return sum(yield_for_stake(stake, schedule, now) for stake in stakes)


# -- display only ---------------------------------------------------------

def display_yield(amount: int, places: int = 6) -> str:
    """Float rendering of a base-unit amount. Never feed this back into validation."""
    return f"{amount / 10 ** TOKEN_DECIMALS:.{places}f}"


def display_apr(schedule: RateSchedule, t: Optional[int] = None) -> float:
    """APR in percent implied by the rate at ``t`` (the first segment if omitted)."""
    rate = schedule.segments[0][1] if t is None else schedule.rate_at(t)
    return rate * SECONDS_PER_YEAR / RATE_SCALE * 100
