"""Interfaces to the external ledger and indexer.

The staking contract on the ledger is the source of truth; these classes
only describe what the client needs from it. Implementations wrap every
transport failure in ``LedgerError`` / ``IndexerError``.
"""
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .stake import IndexedStake, OperationKind, StakeCapPolicy, StakeStatus, YieldWithdrawal


class LedgerStakeInfo(BaseModel):
    """Live fields of a stake read directly from the contract."""
    principal: int
    last_yield_claim_at: int
    status: StakeStatus
    start_time: Optional[int] = None
    staking_period: Optional[int] = None


class LedgerOperation(BaseModel):
    """A mutating contract call, described independently of the transport."""
    kind: OperationKind
    account: str
    args: Dict[str, Any] = Field(default_factory=dict)

    @property
    def stake_id(self) -> Optional[int]:
        return self.args.get("stake_id")


class SimulationResult(BaseModel):
    ok: bool
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "SimulationResult":
        return cls(ok=True)

    @classmethod
    def rejected(cls, reason: str) -> "SimulationResult":
        return cls(ok=False, reason=reason)


class ConfirmationStatus(str, Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"


class Confirmation(BaseModel):
    status: ConfirmationStatus
    handle: str
    reason: Optional[str] = None
    confirmed_at: Optional[int] = None
    created_stake_ids: List[int] = Field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return self.status == ConfirmationStatus.CONFIRMED


class LedgerReader(ABC):
    """Read side of the ledger."""

    @abstractmethod
    async def read_stake_info(self, account: str, stake_id: int) -> LedgerStakeInfo:
        ...

    @abstractmethod
    async def read_allowance(self, account: str, spender: str) -> int:
        ...

    @abstractmethod
    async def read_cap_policy(self) -> StakeCapPolicy:
        ...

    @abstractmethod
    async def read_token_balance(self, account: str) -> int:
        ...

    @abstractmethod
    async def read_rate_per_second(self) -> int:
        """Scaled per-second accrual rate the contract was deployed with."""

    @property
    @abstractmethod
    def spender(self) -> str:
        """Address that must be authorized to move tokens for staking."""


class LedgerWriter(ABC):
    """Write side of the ledger."""

    @abstractmethod
    async def simulate(self, operation: LedgerOperation) -> SimulationResult:
        ...

    @abstractmethod
    async def submit(self, operation: LedgerOperation) -> str:
        """Dispatch the operation and return a handle (transaction hash)."""

    @abstractmethod
    async def await_confirmation(self, handle: str, timeout: float) -> Confirmation:
        ...


class Indexer(ABC):
    """Eventually consistent history of stake creation and yield claims."""

    @abstractmethod
    async def list_stakes_for_account(self, account: str) -> List[IndexedStake]:
        ...

    async def list_yield_withdrawals(self, account: str) -> List[YieldWithdrawal]:
        return []
