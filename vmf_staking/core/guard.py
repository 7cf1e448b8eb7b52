"""Pre-flight checks for staking intents.

Every function is pure: it looks only at the values passed in and returns
a ``Verdict``. Nothing here talks to the ledger.
"""
from dataclasses import dataclass
from typing import Collection, Optional, Sequence

from .errors import RejectReason
from .stake import Stake, StakeCapPolicy, StakeStatus
from .units import days_to_seconds

DEFAULT_PERIOD_DAYS = (30, 60, 90)
DEFAULT_PERIODS = frozenset(days_to_seconds(d) for d in DEFAULT_PERIOD_DAYS)


@dataclass(frozen=True)
class Verdict:
    ok: bool
    reason: Optional[RejectReason] = None
    detail: str = ""

    @classmethod
    def reject(cls, reason: RejectReason, detail: str = "") -> "Verdict":
        return cls(ok=False, reason=reason, detail=detail)

    def __bool__(self):
        return self.ok


Verdict.OK = Verdict(ok=True)


def validate_stake_intent(
    amount: int,
    period: int,
    cap_policy: StakeCapPolicy,
    account_balance: int,
    allowed_periods: Collection[int] = DEFAULT_PERIODS,
) -> Verdict:
    """Check a new stake of ``amount`` base units locked for ``period`` seconds."""
    if amount <= 0:
        return Verdict.reject(RejectReason.NON_POSITIVE_AMOUNT, f"amount {amount}")
    if period not in allowed_periods:
        return Verdict.reject(RejectReason.INVALID_PERIOD, f"period {period}s not offered")
    if amount > cap_policy.maximum_stake:
        return Verdict.reject(RejectReason.ABOVE_MAXIMUM, f"maximum is {cap_policy.maximum_stake}")
    if amount < cap_policy.minimum_stake:
        return Verdict.reject(RejectReason.BELOW_MINIMUM, f"minimum is {cap_policy.minimum_stake}")
    if account_balance < amount:
        return Verdict.reject(RejectReason.INSUFFICIENT_BALANCE, f"balance {account_balance}")
    return Verdict.OK


def validate_stake_batch(
    amounts: Sequence[int],
    periods: Sequence[int],
    cap_policy: StakeCapPolicy,
    account_balance: int,
    allowed_periods: Collection[int] = DEFAULT_PERIODS,
) -> Verdict:
    """Check a batch as one unit; the first failing entry rejects the batch."""
    if not amounts or len(amounts) != len(periods):
        return Verdict.reject(
            RejectReason.BATCH_MISMATCH, f"{len(amounts)} amounts vs {len(periods)} periods"
        )
    for index, (amount, period) in enumerate(zip(amounts, periods)):
        # balance is checked once for the total below
        verdict = validate_stake_intent(amount, period, cap_policy, amount, allowed_periods)
        if not verdict:
            return Verdict.reject(verdict.reason, f"entry {index}: {verdict.detail}")
    total = sum(amounts)
    if account_balance < total:
        return Verdict.reject(RejectReason.INSUFFICIENT_BALANCE, f"balance {account_balance} < total {total}")
    return Verdict.OK


def validate_withdraw_yield(stake: Stake, accrued: int) -> Verdict:
    if stake.status != StakeStatus.ACTIVE:
        return Verdict.reject(RejectReason.NOT_ACTIVE)
    if accrued <= 0:
        return Verdict.reject(RejectReason.NO_YIELD)
    return Verdict.OK


def validate_withdraw_stake(stake: Stake, now: int) -> Verdict:
    if stake.status != StakeStatus.ACTIVE:
        return Verdict.reject(RejectReason.NOT_ACTIVE)
    if now < stake.unlock_time:
        return Verdict.reject(RejectReason.LOCK_NOT_EXPIRED, f"unlocks at {stake.unlock_time}")
    return Verdict.OK


def validate_withdraw(stake: Stake, amount: int, now: int) -> Verdict:
    """Partial principal withdrawal."""
    verdict = validate_withdraw_stake(stake, now)
    if not verdict:
        return verdict
    if amount <= 0:
        return Verdict.reject(RejectReason.NON_POSITIVE_AMOUNT, f"amount {amount}")
    if amount > stake.principal:
        return Verdict.reject(RejectReason.EXCEEDS_PRINCIPAL, f"principal is {stake.principal}")
    return Verdict.OK
