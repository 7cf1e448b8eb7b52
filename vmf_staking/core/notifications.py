"""Lifecycle events for operations.

The engine emits events; whatever renders them (CLI, UI, tests) implements
``NotificationSink``.
"""
from enum import Enum
from typing import Optional

from loguru import logger
from pydantic import BaseModel

from .errors import RejectReason, extract_revert_reason
from .stake import OperationKind, OperationState


class EventType(str, Enum):
    STARTED = "operation_started"
    PROGRESS = "operation_progress"
    SETTLED = "operation_settled"
    FAILED = "operation_failed"


class OperationEvent(BaseModel):
    type: EventType
    kind: OperationKind
    account: str
    stake_id: Optional[int] = None
    state: Optional[OperationState] = None
    reason: Optional[RejectReason] = None
    message: str = ""
    confirmation_id: Optional[str] = None


class NotificationSink:
    """Receives operation events. The default implementation drops them."""

    def emit(self, event: OperationEvent) -> None:
        pass


class LoggingSink(NotificationSink):
    """Renders events through loguru, with explorer links for confirmations."""

    def __init__(self, explorer_url: Optional[str] = None):
        self.explorer_url = explorer_url.rstrip("/") if explorer_url else None

    def tx_link(self, confirmation_id: str) -> Optional[str]:
        if not self.explorer_url:
            return None
        return f"{self.explorer_url}/tx/{confirmation_id}"

    def emit(self, event: OperationEvent) -> None:
        target = f"stake {event.stake_id}" if event.stake_id is not None else "new stake"
        if event.type == EventType.STARTED:
            logger.info(f"{event.kind.value} started for {target}")
        elif event.type == EventType.PROGRESS:
            if event.message:
                logger.info(event.message)
            else:
                logger.debug(f"{event.kind.value}: {event.state.value}")
        elif event.type == EventType.SETTLED:
            logger.success(f"{event.kind.value} settled for {target}: {event.confirmation_id}")
            link = self.tx_link(event.confirmation_id) if event.confirmation_id else None
            if link:
                logger.info(f"View on explorer: {link}")
        elif event.type == EventType.FAILED:
            reason = event.reason.value if event.reason else "unknown"
            detail = extract_revert_reason(event.message)
            logger.error(f"{event.kind.value} failed for {target}: {reason}" + (f" ({detail})" if detail else ""))
