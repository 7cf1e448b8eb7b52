"""Staking data model."""
import time
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StakeStatus(str, Enum):
    ACTIVE = "active"
    WITHDRAWN = "withdrawn"


class OperationKind(str, Enum):
    APPROVE = "approve"
    STAKE = "stake"
    STAKE_BATCH = "stake_batch"
    WITHDRAW_YIELD = "withdraw_yield"
    WITHDRAW_STAKE = "withdraw_stake"
    WITHDRAW = "withdraw"  # partial principal


class OperationState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    ALLOWANCE_CHECK = "allowance_check"
    APPROVING = "approving"
    SIMULATING = "simulating"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    SETTLED = "settled"
    FAILED = "failed"


class Stake(BaseModel):
    """A single locked position, as last known from the ledger.

    ``principal`` is in base units (18 decimals); times are unix seconds.
    """
    model_config = ConfigDict(frozen=True)

    account: str
    stake_id: int
    principal: int = Field(ge=0)
    start_time: int = Field(ge=0)
    staking_period: int = Field(ge=0)
    last_yield_claim_at: int = Field(ge=0)
    status: StakeStatus = StakeStatus.ACTIVE

    @model_validator(mode="after")
    def _check_invariants(self) -> "Stake":
        if self.last_yield_claim_at < self.start_time:
            raise ValueError("last_yield_claim_at must not precede start_time")
        if self.status == StakeStatus.ACTIVE and self.principal <= 0:
            raise ValueError("active stake must have a positive principal")
        return self

    @property
    def key(self) -> Tuple[str, int]:
        return (self.account, self.stake_id)

    @property
    def unlock_time(self) -> int:
        return self.start_time + self.staking_period

    def is_unlocked(self, now: int) -> bool:
        return now >= self.unlock_time

    def time_remaining(self, now: int) -> int:
        return max(0, self.unlock_time - now)

    def lock_progress(self, now: int) -> float:
        """Percent of the lock period served (display only)."""
        if self.staking_period <= 0:
            return 100.0
        return min(100.0, max(0.0, (now - self.start_time) / self.staking_period * 100))


class StakeCapPolicy(BaseModel):
    """Minimum and maximum stake size enforced by the contract."""
    model_config = ConfigDict(frozen=True)

    minimum_stake: int = Field(ge=0)
    maximum_stake: int = Field(ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "StakeCapPolicy":
        if self.minimum_stake > self.maximum_stake:
            raise ValueError("minimum_stake must not exceed maximum_stake")
        return self


class PendingOperation(BaseModel):
    """An intent currently in flight for ``(account, stake_id)``.

    New-stake intents have no stake id yet and use ``stake_id=None``.
    """
    account: str
    stake_id: Optional[int] = None
    kind: OperationKind
    state: OperationState = OperationState.IDLE
    started_at: float = Field(default_factory=time.time)
    confirmation_id: Optional[str] = None


class IndexedStake(BaseModel):
    """Creation facts for a stake as reported by the indexer."""
    stake_id: int
    principal: int
    start_time: int
    staking_period: int
    creation_ref: Optional[str] = None


class YieldWithdrawal(BaseModel):
    """A historical yield claim reported by the indexer."""
    stake_id: int
    principal: int
    amount: int
    staking_period: int
    start_time: int
    end_time: int


class OperationResult(BaseModel):
    """Outcome of a settled operation."""
    kind: OperationKind
    account: str
    stake_id: Optional[int] = None
    confirmation_id: str
    confirmed_at: Optional[int] = None
    created_stake_ids: List[int] = Field(default_factory=list)
