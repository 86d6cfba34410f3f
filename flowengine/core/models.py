"""Data models for flow execution.

Uses Pydantic for the execution aggregate and per-node results.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from flowengine.core.errors import ErrorKind, ValidationError


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _elapsed_ms(started_at: datetime, completed_at: datetime) -> int:
    return int((completed_at - started_at).total_seconds() * 1000)


class NodeExecutionStatus(str, Enum):
    """Outcome of a single node visit."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class FlowExecutionStatus(str, Enum):
    """Lifecycle of a flow execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {FlowExecutionStatus.COMPLETED, FlowExecutionStatus.FAILED, FlowExecutionStatus.CANCELLED}
)


class NodeExecutionResult(BaseModel):
    """Result of one node visit. A node visited twice produces two results."""

    node_id: str
    status: NodeExecutionStatus
    output: Any = None
    error: str | None = None
    # Set on FAILED results so callers can tell NotFound from Forbidden
    error_kind: ErrorKind | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime = Field(default_factory=_utcnow)
    execution_time_ms: int = 0

    @classmethod
    def success(
        cls, node_id: str, output: Any = None, started_at: datetime | None = None
    ) -> "NodeExecutionResult":
        started_at = started_at or _utcnow()
        completed_at = _utcnow()
        return cls(
            node_id=node_id,
            status=NodeExecutionStatus.SUCCESS,
            output=output,
            started_at=started_at,
            completed_at=completed_at,
            execution_time_ms=_elapsed_ms(started_at, completed_at),
        )

    @classmethod
    def failed(
        cls,
        node_id: str,
        error: str,
        started_at: datetime | None = None,
        output: Any = None,
        error_kind: ErrorKind | None = None,
    ) -> "NodeExecutionResult":
        started_at = started_at or _utcnow()
        completed_at = _utcnow()
        return cls(
            node_id=node_id,
            status=NodeExecutionStatus.FAILED,
            output=output,
            error=error,
            error_kind=error_kind,
            started_at=started_at,
            completed_at=completed_at,
            execution_time_ms=_elapsed_ms(started_at, completed_at),
        )

    @property
    def is_success(self) -> bool:
        return self.status == NodeExecutionStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.status == NodeExecutionStatus.FAILED


class FlowExecution(BaseModel):
    """One run of a flow definition.

    The engine drives the state machine: start() on entry, then exactly one of
    complete(), fail() or cancel(). Terminal states are final.
    """

    id: str
    flow_id: str
    flow_version: int = 1
    tenant_id: str
    user_id: str
    session_id: str | None = None
    status: FlowExecutionStatus = FlowExecutionStatus.PENDING
    input_data: dict[str, Any] | None = None
    output_data: Any = None
    error_message: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    execution_time_ms: int | None = None

    @classmethod
    def new(
        cls,
        flow_id: str,
        tenant_id: str,
        user_id: str,
        session_id: str | None = None,
        flow_version: int = 1,
        input_data: dict[str, Any] | None = None,
    ) -> "FlowExecution":
        return cls(
            id=str(uuid.uuid4()),
            flow_id=flow_id,
            flow_version=flow_version,
            tenant_id=tenant_id,
            user_id=user_id,
            session_id=session_id,
            input_data=input_data,
        )

    # --- Transitions ---

    def start(self) -> None:
        self._require_not_terminal("start")
        self.status = FlowExecutionStatus.RUNNING
        self.started_at = _utcnow()

    def complete(self, output_data: Any) -> None:
        self._require_not_terminal("complete")
        self.status = FlowExecutionStatus.COMPLETED
        self.output_data = output_data
        self._finish()

    def fail(self, error_message: str) -> None:
        self._require_not_terminal("fail")
        self.status = FlowExecutionStatus.FAILED
        self.error_message = error_message
        self._finish()

    def cancel(self, reason: str | None = None) -> None:
        self._require_not_terminal("cancel")
        self.status = FlowExecutionStatus.CANCELLED
        if reason:
            self.error_message = reason
        self._finish()

    def _finish(self) -> None:
        self.completed_at = _utcnow()
        self.execution_time_ms = _elapsed_ms(self.started_at, self.completed_at)

    def _require_not_terminal(self, action: str) -> None:
        if self.is_terminal:
            raise ValidationError(
                f"Cannot {action} execution {self.id}: already {self.status.value}"
            )

    # --- Predicates ---

    @property
    def is_running(self) -> bool:
        return self.status == FlowExecutionStatus.RUNNING

    @property
    def is_completed(self) -> bool:
        return self.status == FlowExecutionStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == FlowExecutionStatus.FAILED

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def belongs_to_tenant(self, tenant_id: str) -> bool:
        return self.tenant_id == tenant_id

    def belongs_to_user(self, user_id: str) -> bool:
        return self.user_id == user_id
