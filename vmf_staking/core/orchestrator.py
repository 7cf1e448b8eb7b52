"""Drives staking operations against the ledger.

Every intent runs through the same state machine::

    IDLE -> VALIDATING -> [ALLOWANCE_CHECK -> [APPROVING]] -> SIMULATING
         -> SUBMITTING -> CONFIRMING -> SETTLED | FAILED

Only one operation may be in flight per ``(account, stake_id)``, whatever
its kind; new-stake intents share the per-account slot ``stake_id=None``.
A second intent for a busy slot is rejected with ``OperationInProgress``.

Until an operation is submitted the caller may cancel it, which releases
the slot and stops talking to the ledger. Once submitted, confirmation runs
in a shielded task and always completes (settling or failing) even if the
caller goes away.

Nothing is retried automatically. ``retry`` replays the last retryable
failure for a key, up to ``max_attempts`` in total; a submission whose
confirmation timed out is re-awaited by handle rather than sent again.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from . import guard
from .accrual import yield_for_stake
from .errors import (
    AllowanceInsufficient,
    ApprovalFailed,
    ConfirmationTimedOut,
    LedgerError,
    NothingToRetry,
    OperationFailed,
    OperationInProgress,
    RejectReason,
    RetryLimitExceeded,
    SimulationReverted,
    SubmissionFailed,
    TransactionReverted,
    UpstreamUnavailable,
    ValidationRejected,
    extract_revert_reason,
    normalize_ledger_reason,
)
from .ledger import Confirmation, ConfirmationStatus, LedgerOperation, LedgerReader, LedgerWriter
from .notifications import EventType, NotificationSink, OperationEvent
from .registry import StakeRegistry
from .stake import OperationKind, OperationResult, OperationState, PendingOperation, StakeCapPolicy

DEFAULT_CONFIRMATION_TIMEOUT = 120.0
DEFAULT_MAX_ATTEMPTS = 3

SlotKey = Tuple[str, Optional[int]]
IntentKey = Tuple[str, Optional[int], OperationKind]


@dataclass
class _Intent:
    account: str
    stake_id: Optional[int]
    kind: OperationKind
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def slot(self) -> SlotKey:
        return (self.account, self.stake_id)

    @property
    def key(self) -> IntentKey:
        return (self.account, self.stake_id, self.kind)


@dataclass
class _FailedIntent:
    intent: _Intent
    attempts: int
    handle: Optional[str] = None
    operation: Optional[LedgerOperation] = None


@dataclass
class _Context:
    """What the normalizer needs to tell ledger rejections apart."""
    amounts: Sequence[int] = ()
    cap_policy: Optional[StakeCapPolicy] = None


class TransactionOrchestrator:
    """Runs stake and withdrawal intents with single-flight per stake."""

    def __init__(
        self,
        reader: LedgerReader,
        writer: LedgerWriter,
        registry: StakeRegistry,
        notifier: Optional[NotificationSink] = None,
        allowed_periods=guard.DEFAULT_PERIODS,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ):
        self.reader = reader
        self.writer = writer
        self.registry = registry
        self.notifier = notifier or NotificationSink()
        self.allowed_periods = frozenset(allowed_periods)
        self.confirmation_timeout = confirmation_timeout
        self.max_attempts = max_attempts
        self._clock = clock

        self._pending: Dict[SlotKey, PendingOperation] = {}
        self._failures: Dict[IntentKey, _FailedIntent] = {}

    # -- public intents --------------------------------------------------

    async def stake(self, account: str, amount: int, period: int) -> OperationResult:
        """Lock ``amount`` base units for ``period`` seconds, approving first if needed."""
        intent = _Intent(account, None, OperationKind.STAKE, {"amount": amount, "period": period})
        return await self._run(intent, self._stake_flow)

    async def stake_batch(self, account: str, amounts: Sequence[int], periods: Sequence[int]) -> OperationResult:
        """Create several stakes in one atomic ledger operation."""
        intent = _Intent(
            account, None, OperationKind.STAKE_BATCH,
            {"amounts": list(amounts), "periods": list(periods)},
        )
        return await self._run(intent, self._stake_batch_flow)

    async def withdraw_yield(self, account: str, stake_id: int) -> OperationResult:
        intent = _Intent(account, stake_id, OperationKind.WITHDRAW_YIELD)
        return await self._run(intent, self._withdraw_yield_flow)

    async def withdraw_stake(self, account: str, stake_id: int) -> OperationResult:
        """Withdraw the whole principal once the lock has expired."""
        intent = _Intent(account, stake_id, OperationKind.WITHDRAW_STAKE)
        return await self._run(intent, self._withdraw_stake_flow)

    async def withdraw(self, account: str, stake_id: int, amount: int) -> OperationResult:
        """Withdraw part of the principal once the lock has expired."""
        intent = _Intent(account, stake_id, OperationKind.WITHDRAW, {"amount": amount})
        return await self._run(intent, self._withdraw_flow)

    async def retry(self, account: str, stake_id: Optional[int], kind: OperationKind) -> OperationResult:
        """Replay the last retryable failure recorded for ``(account, stake_id, kind)``.

        Raises:
            NothingToRetry: No retryable failure is recorded for the key
            RetryLimitExceeded: The intent already failed ``max_attempts`` times
        """
        record = self._failures.get((account, stake_id, kind))
        if record is None:
            raise NothingToRetry(f"no retryable {kind.value} for {account}/{stake_id}")
        if record.attempts >= self.max_attempts:
            raise RetryLimitExceeded(f"{kind.value} for {account}/{stake_id} failed {record.attempts} times")

        logger.info(f"Retrying {kind.value} for {account}/{stake_id} (attempt {record.attempts + 1})")
        if record.handle is not None:
            return await self._run(record.intent, self._reconfirm_flow)
        flows = {
            OperationKind.STAKE: self._stake_flow,
            OperationKind.STAKE_BATCH: self._stake_batch_flow,
            OperationKind.WITHDRAW_YIELD: self._withdraw_yield_flow,
            OperationKind.WITHDRAW_STAKE: self._withdraw_stake_flow,
            OperationKind.WITHDRAW: self._withdraw_flow,
        }
        return await self._run(record.intent, flows[kind])

    def pending(self) -> List[PendingOperation]:
        return list(self._pending.values())

    def is_busy(self, account: str, stake_id: Optional[int]) -> bool:
        return (account, stake_id) in self._pending

    def failure_attempts(self, account: str, stake_id: Optional[int], kind: OperationKind) -> int:
        record = self._failures.get((account, stake_id, kind))
        return record.attempts if record else 0

    # -- slot handling -----------------------------------------------------

    def _acquire(self, intent: _Intent) -> PendingOperation:
        existing = self._pending.get(intent.slot)
        if existing is not None:
            raise OperationInProgress(intent.account, intent.stake_id, existing.kind)
        op = PendingOperation(account=intent.account, stake_id=intent.stake_id, kind=intent.kind)
        self._pending[intent.slot] = op
        return op

    def _release(self, op: PendingOperation) -> None:
        key = (op.account, op.stake_id)
        if self._pending.get(key) is op:
            del self._pending[key]

    def _emit(self, event_type: EventType, op: PendingOperation, **fields) -> None:
        self.notifier.emit(OperationEvent(
            type=event_type, kind=op.kind, account=op.account, stake_id=op.stake_id,
            state=op.state, **fields,
        ))

    @staticmethod
    def _announced(op: PendingOperation) -> bool:
        return op.state not in (OperationState.IDLE, OperationState.VALIDATING, OperationState.FAILED)

    def _transition(self, op: PendingOperation, state: OperationState, message: str = "") -> None:
        """Move ``op`` to ``state``.

        Validation is silent. Leaving it emits ``STARTED``, after which every
        operation ends with ``SETTLED`` or ``FAILED``.
        """
        logger.debug(f"{op.kind.value} {op.account}/{op.stake_id}: {op.state.value} -> {state.value}")
        announce = not self._announced(op)
        op.state = state
        if state == OperationState.VALIDATING:
            return
        if announce:
            self._emit(EventType.STARTED, op)
        self._emit(EventType.PROGRESS, op, message=message)

    async def _run(self, intent: _Intent, flow: Callable[[PendingOperation, _Intent], Awaitable[OperationResult]]):
        op = self._acquire(intent)
        try:
            return await flow(op, intent)
        except ValidationRejected as e:
            op.state = OperationState.FAILED
            logger.info(f"{intent.kind.value} rejected before dispatch: {e}")
            raise
        except OperationFailed as e:
            # failures after submission are recorded by _finish
            if op.confirmation_id is None:
                self._fail(op, intent, e)
            raise
        except UpstreamUnavailable as e:
            announced = self._announced(op)
            op.state = OperationState.FAILED
            if announced:
                logger.warning(f"{intent.kind.value} for {intent.account}/{intent.stake_id} stopped: {e}")
                self._emit(EventType.FAILED, op, reason=RejectReason.UPSTREAM_UNAVAILABLE, message=str(e))
            raise
        except asyncio.CancelledError:
            if op.confirmation_id is None:
                logger.info(f"{intent.kind.value} for {intent.account}/{intent.stake_id} abandoned before submission")
                if self._announced(op):
                    op.state = OperationState.FAILED
                    self._emit(EventType.FAILED, op, message="cancelled before submission")
            raise
        finally:
            if op.confirmation_id is None:
                self._release(op)

    # -- flows ---------------------------------------------------------------

    async def _stake_flow(self, op: PendingOperation, intent: _Intent) -> OperationResult:
        amount, period = intent.params["amount"], intent.params["period"]

        self._transition(op, OperationState.VALIDATING)
        caps = await self.registry.cap_policy()
        balance = await self._read(self.reader.read_token_balance(intent.account), "token balance")
        self._check(guard.validate_stake_intent(amount, period, caps, balance, self.allowed_periods))

        await self._ensure_allowance(op, intent, amount)
        operation = LedgerOperation(kind=OperationKind.STAKE, account=intent.account,
                                    args={"amount": amount, "period": period})
        return await self._dispatch(op, intent, operation, _Context([amount], caps))

    async def _stake_batch_flow(self, op: PendingOperation, intent: _Intent) -> OperationResult:
        amounts, periods = intent.params["amounts"], intent.params["periods"]

        self._transition(op, OperationState.VALIDATING)
        caps = await self.registry.cap_policy()
        balance = await self._read(self.reader.read_token_balance(intent.account), "token balance")
        self._check(guard.validate_stake_batch(amounts, periods, caps, balance, self.allowed_periods))

        await self._ensure_allowance(op, intent, sum(amounts))
        operation = LedgerOperation(kind=OperationKind.STAKE_BATCH, account=intent.account,
                                    args={"amounts": amounts, "periods": periods})
        return await self._dispatch(op, intent, operation, _Context(amounts, caps))

    async def _withdraw_yield_flow(self, op: PendingOperation, intent: _Intent) -> OperationResult:
        self._transition(op, OperationState.VALIDATING)
        stake = await self.registry.get(intent.account, intent.stake_id)
        schedule = await self.registry.rate_schedule()
        accrued = yield_for_stake(stake, schedule, int(self._clock()))
        self._check(guard.validate_withdraw_yield(stake, accrued))

        operation = LedgerOperation(kind=OperationKind.WITHDRAW_YIELD, account=intent.account,
                                    args={"stake_id": intent.stake_id})
        return await self._dispatch(op, intent, operation, _Context())

    async def _withdraw_stake_flow(self, op: PendingOperation, intent: _Intent) -> OperationResult:
        self._transition(op, OperationState.VALIDATING)
        stake = await self.registry.get(intent.account, intent.stake_id)
        self._check(guard.validate_withdraw_stake(stake, int(self._clock())))

        operation = LedgerOperation(kind=OperationKind.WITHDRAW_STAKE, account=intent.account,
                                    args={"stake_id": intent.stake_id})
        return await self._dispatch(op, intent, operation, _Context())

    async def _withdraw_flow(self, op: PendingOperation, intent: _Intent) -> OperationResult:
        amount = intent.params["amount"]

        self._transition(op, OperationState.VALIDATING)
        stake = await self.registry.get(intent.account, intent.stake_id)
        self._check(guard.validate_withdraw(stake, amount, int(self._clock())))

        operation = LedgerOperation(kind=OperationKind.WITHDRAW, account=intent.account,
                                    args={"stake_id": intent.stake_id, "amount": amount})
        return await self._dispatch(op, intent, operation, _Context([amount]))

    async def _reconfirm_flow(self, op: PendingOperation, intent: _Intent) -> OperationResult:
        record = self._failures[intent.key]
        op.confirmation_id = record.handle
        task = asyncio.ensure_future(self._finish(op, intent, record.operation, record.handle, _Context()))
        return await asyncio.shield(task)

    # -- steps ---------------------------------------------------------------

    @staticmethod
    def _check(verdict: guard.Verdict) -> None:
        if not verdict:
            raise ValidationRejected(verdict.reason, verdict.detail)

    @staticmethod
    async def _read(awaitable, what: str):
        try:
            return await awaitable
        except LedgerError as e:
            raise UpstreamUnavailable(f"{what}: {e}") from e

    async def _check_allowance(self, account: str, required: int) -> None:
        allowance = await self._read(self.reader.read_allowance(account, self.reader.spender), "allowance")
        if allowance < required:
            raise AllowanceInsufficient(allowance, required)
        logger.debug(f"Allowance {allowance} covers {required}, skipping approval")

    async def _ensure_allowance(self, op: PendingOperation, intent: _Intent, required: int) -> None:
        self._transition(op, OperationState.ALLOWANCE_CHECK)
        try:
            await self._check_allowance(intent.account, required)
            return
        except AllowanceInsufficient as e:
            logger.info(f"Allowance {e.allowance} below {e.required}, approving")

        spender = self.reader.spender
        self._transition(op, OperationState.APPROVING, "Requesting token approval...")
        approval = LedgerOperation(kind=OperationKind.APPROVE, account=intent.account,
                                   args={"spender": spender, "amount": required})
        try:
            simulation = await self.writer.simulate(approval)
        except LedgerError as e:
            raise SubmissionFailed(detail=f"approval simulation unavailable: {e}") from e
        if not simulation.ok:
            raise ApprovalFailed(normalize_ledger_reason(simulation.reason),
                                 extract_revert_reason(simulation.reason or ""))
        try:
            handle = await self.writer.submit(approval)
        except LedgerError as e:
            raise SubmissionFailed(detail=f"approval: {e}") from e

        # the stake must not be simulated before the approval is final
        try:
            confirmation = await self.writer.await_confirmation(handle, self.confirmation_timeout)
        except LedgerError as e:
            confirmation = Confirmation(status=ConfirmationStatus.TIMED_OUT, handle=handle, reason=str(e))
        if confirmation.status == ConfirmationStatus.REVERTED:
            raise ApprovalFailed(normalize_ledger_reason(confirmation.reason),
                                 extract_revert_reason(confirmation.reason or ""))
        if not confirmation.confirmed:
            # a retry runs the whole flow again, starting from the allowance check
            raise ConfirmationTimedOut(handle, confirmation.reason or f"approval {handle} not final")
        logger.info(f"Approval {handle} confirmed for {intent.account}")

    async def _dispatch(
        self,
        op: PendingOperation,
        intent: _Intent,
        operation: LedgerOperation,
        context: _Context,
    ) -> OperationResult:
        self._transition(op, OperationState.SIMULATING)
        try:
            simulation = await self.writer.simulate(operation)
        except LedgerError as e:
            raise SubmissionFailed(detail=f"simulation unavailable: {e}") from e
        if not simulation.ok:
            reason = normalize_ledger_reason(simulation.reason, context.amounts, context.cap_policy)
            raise SimulationReverted(reason, extract_revert_reason(simulation.reason or ""))

        self._transition(op, OperationState.SUBMITTING, "Submitting transaction...")
        try:
            handle = await self.writer.submit(operation)
        except LedgerError as e:
            raise SubmissionFailed(detail=str(e)) from e

        # from here on the slot belongs to the confirmation task
        op.confirmation_id = handle
        task = asyncio.ensure_future(self._finish(op, intent, operation, handle, context))
        return await asyncio.shield(task)

    async def _finish(
        self,
        op: PendingOperation,
        intent: _Intent,
        operation: LedgerOperation,
        handle: str,
        context: _Context,
    ) -> OperationResult:
        try:
            self._transition(op, OperationState.CONFIRMING)
            try:
                confirmation = await self.writer.await_confirmation(handle, self.confirmation_timeout)
            except LedgerError as e:
                confirmation = Confirmation(status=ConfirmationStatus.TIMED_OUT, handle=handle, reason=str(e))

            if confirmation.confirmed:
                return self._settle(op, intent, confirmation)
            if confirmation.status == ConfirmationStatus.REVERTED:
                reason = normalize_ledger_reason(confirmation.reason, context.amounts, context.cap_policy)
                raise TransactionReverted(reason, extract_revert_reason(confirmation.reason or ""))
            raise ConfirmationTimedOut(handle, confirmation.reason or "")
        except OperationFailed as e:
            self._fail(op, intent, e, operation=operation,
                       handle=handle if isinstance(e, ConfirmationTimedOut) else None)
            raise
        finally:
            self._release(op)

    def _settle(self, op: PendingOperation, intent: _Intent, confirmation: Confirmation) -> OperationResult:
        op.state = OperationState.SETTLED
        if intent.stake_id is not None:
            self.registry.invalidate(intent.account, intent.stake_id)
        for stake_id in confirmation.created_stake_ids:
            self.registry.invalidate(intent.account, stake_id)
        self._failures.pop(intent.key, None)

        result = OperationResult(
            kind=intent.kind,
            account=intent.account,
            stake_id=intent.stake_id,
            confirmation_id=confirmation.handle,
            confirmed_at=confirmation.confirmed_at,
            created_stake_ids=confirmation.created_stake_ids,
        )
        logger.info(f"{intent.kind.value} settled for {intent.account}/{intent.stake_id}: {confirmation.handle}")
        self._emit(EventType.SETTLED, op, confirmation_id=confirmation.handle)
        return result

    def _fail(
        self,
        op: PendingOperation,
        intent: _Intent,
        error: OperationFailed,
        operation: Optional[LedgerOperation] = None,
        handle: Optional[str] = None,
    ) -> None:
        op.state = OperationState.FAILED
        previous = self._failures.pop(intent.key, None)
        if error.retryable:
            attempts = previous.attempts + 1 if previous else 1
            self._failures[intent.key] = _FailedIntent(intent, attempts, handle, operation)
            logger.warning(f"{intent.kind.value} for {intent.account}/{intent.stake_id} failed "
                           f"(attempt {attempts}/{self.max_attempts}, retryable): {error}")
        else:
            logger.error(f"{intent.kind.value} for {intent.account}/{intent.stake_id} failed: {error}")
        self._emit(EventType.FAILED, op, reason=error.reason, message=error.detail,
                   confirmation_id=handle)
