"""Test configuration and fixtures for VMF staking."""
import asyncio
import os
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

import pytest

from vmf_staking.core.accrual import accrue
from vmf_staking.core.errors import LedgerError, IndexerError
from vmf_staking.core.ledger import (
    Confirmation,
    ConfirmationStatus,
    Indexer,
    LedgerOperation,
    LedgerReader,
    LedgerStakeInfo,
    LedgerWriter,
    SimulationResult,
)
from vmf_staking.core.notifications import EventType, NotificationSink, OperationEvent
from vmf_staking.core.orchestrator import TransactionOrchestrator
from vmf_staking.core.registry import StakeRegistry
from vmf_staking.core.stake import (
    IndexedStake,
    OperationKind,
    StakeCapPolicy,
    StakeStatus,
    YieldWithdrawal,
)

ACCOUNT = "0x" + "a" * 40
OTHER_ACCOUNT = "0x" + "b" * 40
SPENDER = "0x" + "5" * 40

TOKEN = 10 ** 18
RATE_15_APR = 4_756_468_798
START = 1_700_000_000
DAY = 86_400


class FakeLedger(LedgerReader, LedgerWriter):
    """In-memory staking contract using the same integer math as the real one."""

    def __init__(self, now: int = START, rate: int = RATE_15_APR,
                 minimum_stake: int = 0, maximum_stake: int = 5000 * TOKEN):
        self.now = now
        self.rate = rate
        self.caps = StakeCapPolicy(minimum_stake=minimum_stake, maximum_stake=maximum_stake)
        self.balances: Dict[str, int] = defaultdict(int)
        self.allowances: Dict[Tuple[str, str], int] = defaultdict(int)
        self.stakes: Dict[Tuple[str, int], dict] = {}
        self.withdrawals: List[YieldWithdrawal] = []
        self._next_id: Dict[str, int] = defaultdict(int)
        self._tx_counter = 0
        self._submitted: Dict[str, LedgerOperation] = {}
        self._settled: Dict[str, Confirmation] = {}

        # ordered log of (method, kind or handle)
        self.calls: List[Tuple[str, object]] = []

        # failure injection
        self.report_creation_facts = True
        self.fail_reads = False
        self.simulate_reason: Optional[str] = None
        self.submit_errors: List[Exception] = []
        self.confirm_outcomes: List[ConfirmationStatus] = []
        self.confirm_gate: Optional[asyncio.Event] = None

    # -- setup helpers ---------------------------------------------------------

    def fund(self, account: str, amount: int) -> None:
        self.balances[account] += amount

    def seed_stake(self, account: str, principal: int, period: int, start: int,
                   last_claim: int = 0) -> int:
        stake_id = self._next_id[account]
        self._next_id[account] += 1
        self.stakes[(account, stake_id)] = {
            "principal": principal,
            "initial": principal,
            "start": start,
            "period": period,
            "last_claim": last_claim,
        }
        return stake_id

    def accrued(self, account: str, stake_id: int) -> int:
        stake = self.stakes[(account, stake_id)]
        since = max(stake["last_claim"], stake["start"])
        return accrue(stake["principal"], self.rate, self.now - since)

    def submitted(self, kind: OperationKind) -> List[str]:
        return [h for h, op in self._submitted.items() if op.kind == kind]

    # -- reader ----------------------------------------------------------------

    @property
    def spender(self) -> str:
        return SPENDER

    def _check_reads(self, what: str) -> None:
        self.calls.append(("read", what))
        if self.fail_reads:
            raise LedgerError(f"{what}: connection refused")

    async def read_stake_info(self, account: str, stake_id: int) -> LedgerStakeInfo:
        self._check_reads("stake_info")
        stake = self.stakes.get((account, stake_id))
        if stake is None:
            return LedgerStakeInfo(principal=0, last_yield_claim_at=0, status=StakeStatus.WITHDRAWN)
        return LedgerStakeInfo(
            principal=stake["principal"],
            last_yield_claim_at=stake["last_claim"],
            status=StakeStatus.ACTIVE if stake["principal"] > 0 else StakeStatus.WITHDRAWN,
            start_time=stake["start"] if self.report_creation_facts else None,
            staking_period=stake["period"] if self.report_creation_facts else None,
        )

    async def read_allowance(self, account: str, spender: str) -> int:
        self._check_reads("allowance")
        return self.allowances[(account, spender)]

    async def read_cap_policy(self) -> StakeCapPolicy:
        self._check_reads("caps")
        return self.caps

    async def read_token_balance(self, account: str) -> int:
        self._check_reads("balance")
        return self.balances[account]

    async def read_rate_per_second(self) -> int:
        self._check_reads("rate")
        return self.rate

    # -- writer ----------------------------------------------------------------

    def _revert_reason(self, op: LedgerOperation) -> Optional[str]:
        args = op.args
        if op.kind == OperationKind.APPROVE:
            return None
        if op.kind in (OperationKind.STAKE, OperationKind.STAKE_BATCH):
            amounts = args["amounts"] if op.kind == OperationKind.STAKE_BATCH else [args["amount"]]
            for amount in amounts:
                if amount < self.caps.minimum_stake or amount > self.caps.maximum_stake:
                    return "execution reverted: InvalidStakeAmount"
            total = sum(amounts)
            if self.allowances[(op.account, SPENDER)] < total:
                return "execution reverted: ERC20InsufficientAllowance"
            if self.balances[op.account] < total:
                return "execution reverted: ERC20InsufficientBalance"
            return None

        stake = self.stakes.get((op.account, args["stake_id"]))
        if stake is None or stake["principal"] == 0:
            return "execution reverted: NotStakeOwner"
        if op.kind == OperationKind.WITHDRAW_YIELD:
            return None if self.accrued(op.account, args["stake_id"]) > 0 else "execution reverted: NoYield"
        if self.now < stake["start"] + stake["period"]:
            return "execution reverted: StakingPeriodNotOver"
        if op.kind == OperationKind.WITHDRAW and args["amount"] > stake["principal"]:
            return "execution reverted: ERC20InsufficientBalance"
        return None

    async def simulate(self, operation: LedgerOperation) -> SimulationResult:
        self.calls.append(("simulate", operation.kind))
        await asyncio.sleep(0)
        if self.simulate_reason:
            return SimulationResult.rejected(self.simulate_reason)
        reason = self._revert_reason(operation)
        return SimulationResult.rejected(reason) if reason else SimulationResult.success()

    async def submit(self, operation: LedgerOperation) -> str:
        self.calls.append(("submit", operation.kind))
        await asyncio.sleep(0)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self._tx_counter += 1
        handle = f"0x{self._tx_counter:064x}"
        self._submitted[handle] = operation
        return handle

    async def await_confirmation(self, handle: str, timeout: float) -> Confirmation:
        self.calls.append(("confirm", handle))
        if self.confirm_gate is not None:
            await self.confirm_gate.wait()
        await asyncio.sleep(0)
        if handle in self._settled:
            return self._settled[handle]
        if self.confirm_outcomes:
            outcome = self.confirm_outcomes.pop(0)
            if outcome == ConfirmationStatus.TIMED_OUT:
                return Confirmation(status=outcome, handle=handle)
            if outcome == ConfirmationStatus.REVERTED:
                confirmation = Confirmation(status=outcome, handle=handle,
                                            reason="execution reverted: StakingPeriodNotOver")
                self._settled[handle] = confirmation
                return confirmation

        operation = self._submitted[handle]
        reason = self._revert_reason(operation)
        if reason:
            confirmation = Confirmation(status=ConfirmationStatus.REVERTED, handle=handle, reason=reason)
        else:
            created = self._apply(operation)
            confirmation = Confirmation(status=ConfirmationStatus.CONFIRMED, handle=handle,
                                        confirmed_at=self.now, created_stake_ids=created)
        self._settled[handle] = confirmation
        return confirmation

    def _apply(self, op: LedgerOperation) -> List[int]:
        args = op.args
        if op.kind == OperationKind.APPROVE:
            self.allowances[(op.account, args["spender"])] = args["amount"]
            return []
        if op.kind in (OperationKind.STAKE, OperationKind.STAKE_BATCH):
            if op.kind == OperationKind.STAKE:
                entries = [(args["amount"], args["period"])]
            else:
                entries = list(zip(args["amounts"], args["periods"]))
            created = []
            for amount, period in entries:
                self.balances[op.account] -= amount
                self.allowances[(op.account, SPENDER)] -= amount
                created.append(self.seed_stake(op.account, amount, period, self.now))
            return created

        stake = self.stakes[(op.account, args["stake_id"])]
        if op.kind == OperationKind.WITHDRAW_YIELD:
            amount = self.accrued(op.account, args["stake_id"])
            self.withdrawals.append(YieldWithdrawal(
                stake_id=args["stake_id"], principal=stake["principal"], amount=amount,
                staking_period=stake["period"], start_time=stake["start"], end_time=self.now,
            ))
            self.balances[op.account] += amount
            stake["last_claim"] = self.now
        elif op.kind == OperationKind.WITHDRAW_STAKE:
            self.balances[op.account] += stake["principal"]
            stake["principal"] = 0
        elif op.kind == OperationKind.WITHDRAW:
            self.balances[op.account] += args["amount"]
            stake["principal"] -= args["amount"]
        return []


class FakeIndexer(Indexer):
    """Indexer view over a ``FakeLedger``."""

    def __init__(self, ledger: FakeLedger):
        self.ledger = ledger
        self.fail = False
        self.queries = 0

    async def list_stakes_for_account(self, account: str) -> List[IndexedStake]:
        self.queries += 1
        if self.fail:
            raise IndexerError("subgraph returned 503")
        return [
            IndexedStake(stake_id=stake_id, principal=s["initial"], start_time=s["start"],
                         staking_period=s["period"])
            for (owner, stake_id), s in sorted(self.ledger.stakes.items())
            if owner == account
        ]

    async def list_yield_withdrawals(self, account: str) -> List[YieldWithdrawal]:
        if self.fail:
            raise IndexerError("subgraph returned 503")
        return list(self.ledger.withdrawals)


class RecordingSink(NotificationSink):
    def __init__(self):
        self.events: List[OperationEvent] = []

    def emit(self, event: OperationEvent) -> None:
        self.events.append(event)

    def types(self) -> List[EventType]:
        return [e.type for e in self.events]

    def of_type(self, event_type: EventType) -> List[OperationEvent]:
        return [e for e in self.events if e.type == event_type]


class ManualClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def ledger():
    """Create a funded in-memory ledger."""
    fake = FakeLedger()
    fake.fund(ACCOUNT, 10_000 * TOKEN)
    return fake


@pytest.fixture
def indexer(ledger):
    return FakeIndexer(ledger)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def registry(ledger, indexer, clock):
    return StakeRegistry(ledger, indexer, clock=clock, wall_clock=lambda: ledger.now)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def orchestrator(ledger, registry, sink):
    return TransactionOrchestrator(ledger, ledger, registry, notifier=sink,
                                   confirmation_timeout=5, clock=lambda: ledger.now)


@pytest.fixture
def env_setup():
    """Set up environment variables for testing."""
    os.environ["VMF_STAKING_NETWORK"] = "base-sepolia"
    os.environ["VMF_STAKING_LOG_LEVEL"] = "DEBUG"
    yield
    del os.environ["VMF_STAKING_NETWORK"]
    del os.environ["VMF_STAKING_LOG_LEVEL"]
