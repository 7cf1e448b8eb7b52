"""Errors raised by the staking client.

Local rejections (validation, single-flight) never reach the ledger.
Ledger-originated failures are normalized into ``RejectReason`` before they
are raised, so callers never parse raw revert text.
"""
import re
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

from .stake import OperationKind, StakeCapPolicy


class RejectReason(str, Enum):
    # pre-flight
    NON_POSITIVE_AMOUNT = "non_positive_amount"
    INVALID_PERIOD = "invalid_period"
    BATCH_MISMATCH = "batch_mismatch"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    NOT_ACTIVE = "not_active"
    NO_YIELD = "no_yield"
    EXCEEDS_PRINCIPAL = "exceeds_principal"
    # shared with the ledger
    BELOW_MINIMUM = "below_minimum"
    ABOVE_MAXIMUM = "above_maximum"
    LOCK_NOT_EXPIRED = "lock_not_expired"
    UNAUTHORIZED = "unauthorized"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    # transport
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UNKNOWN = "unknown"


class StakingError(Exception):
    """Base class for every error raised by this package."""


class LedgerError(StakingError):
    """Transport-level failure talking to the ledger."""


class IndexerError(StakingError):
    """Transport-level failure talking to the indexer."""


class UpstreamUnavailable(StakingError):
    """No fresh data and nothing cached to fall back on."""


class ValidationRejected(StakingError):
    def __init__(self, reason: RejectReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class AllowanceInsufficient(StakingError):
    """Spend authorization below the amount; resolved by an approval step."""

    def __init__(self, allowance: int, required: int):
        self.allowance = allowance
        self.required = required
        super().__init__(f"allowance {allowance} < required {required}")


class OperationInProgress(StakingError):
    def __init__(self, account: str, stake_id: Optional[int], kind: OperationKind):
        self.account = account
        self.stake_id = stake_id
        self.kind = kind
        target = "new stake" if stake_id is None else f"stake {stake_id}"
        super().__init__(f"{kind.value} already in flight for {target} of {account}")


class OperationFailed(StakingError):
    """A ledger step failed. ``retryable`` failures may be passed to ``retry``."""
    retryable = False

    def __init__(self, reason: RejectReason = RejectReason.UNKNOWN, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class SimulationReverted(OperationFailed):
    pass


class ApprovalFailed(OperationFailed):
    pass


class TransactionReverted(OperationFailed):
    pass


class SubmissionFailed(OperationFailed):
    retryable = True


class ConfirmationTimedOut(OperationFailed):
    retryable = True

    def __init__(self, handle: str, detail: str = ""):
        self.handle = handle
        super().__init__(RejectReason.UNKNOWN, detail or f"no finality for {handle}")


class RetryLimitExceeded(StakingError):
    pass


class NothingToRetry(StakingError):
    pass


_REVERT_RE = re.compile(r"revert(?:ed)?:?\s+(.+?)(?:\n|$)", re.IGNORECASE)

# Ordered; first match wins.
_REASON_PATTERNS: Tuple[Tuple[re.Pattern, RejectReason], ...] = (
    (re.compile(r"below\s*min|BelowMinimum|StakeTooSmall", re.I), RejectReason.BELOW_MINIMUM),
    (re.compile(r"above\s*max|exceeds\s*max|AboveMaximum|StakeTooLarge", re.I), RejectReason.ABOVE_MAXIMUM),
    (re.compile(r"LockNotExpired|StakingPeriodNotOver|lock\s*period|not\s*(yet\s*)?matured|too\s*early", re.I),
     RejectReason.LOCK_NOT_EXPIRED),
    (re.compile(r"Unauthorized|OwnableUnauthorizedAccount|caller is not|not\s*owner|NotStakeOwner", re.I),
     RejectReason.UNAUTHORIZED),
    (re.compile(r"InsufficientAllowance|insufficient allowance|exceeds allowance", re.I),
     RejectReason.INSUFFICIENT_ALLOWANCE),
    (re.compile(r"InsufficientBalance|exceeds balance|insufficient balance", re.I),
     RejectReason.INSUFFICIENT_BALANCE),
)


def extract_revert_reason(text: str) -> str:
    """Pull the ``revert <reason>`` fragment out of a ledger error message."""
    if not text:
        return ""
    match = _REVERT_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def normalize_ledger_reason(
    text: Optional[str],
    amount: Union[int, Sequence[int], None] = None,
    cap_policy: Optional[StakeCapPolicy] = None,
) -> RejectReason:
    """Reduce raw ledger error text to a ``RejectReason``.

    The contract reports both cap violations as ``InvalidStakeAmount``. When
    the attempted ``amount`` (a single amount or a batch) and ``cap_policy``
    are known, the first entry outside the caps decides which one it was;
    otherwise the amount is assumed to be too small.
    """
    if not text:
        return RejectReason.UNKNOWN

    if "InvalidStakeAmount" in text:
        amounts = [amount] if isinstance(amount, int) else list(amount or ())
        if cap_policy is not None:
            for value in amounts:
                if value > cap_policy.maximum_stake:
                    return RejectReason.ABOVE_MAXIMUM
                if value < cap_policy.minimum_stake:
                    return RejectReason.BELOW_MINIMUM
        return RejectReason.BELOW_MINIMUM

    for pattern, reason in _REASON_PATTERNS:
        if pattern.search(text):
            return reason
    return RejectReason.UNKNOWN
