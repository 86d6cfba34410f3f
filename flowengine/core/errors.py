"""Error taxonomy for flow execution.

Every error raised by the engine or its collaborators derives from
FlowEngineError and carries an ErrorKind so API layers can map failures
(e.g. NotFound vs Forbidden) without parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from flowengine.core.state import ExecutionState


class ErrorKind(str, Enum):
    """Categories of flow execution errors."""

    VALIDATION = "validation"  # Malformed definition, node data or identifier
    NOT_FOUND = "not_found"  # Missing node, LLM config or tool
    FORBIDDEN = "forbidden"  # Permission check denied access
    REMOTE_CALL = "remote_call"  # LLM/vector/tool collaborator call failed
    ITERATION_LIMIT = "iteration_limit"  # Step-count safety valve tripped
    NODE_FAILED = "node_failed"  # A node returned a FAILED result
    GRAPH_TERMINATION = "graph_termination"  # Frontier emptied before End/Answer
    TIMEOUT = "timeout"  # Run deadline expired
    CANCELLED = "cancelled"  # Run cancelled by the caller


class FlowEngineError(Exception):
    """Base class for flow engine errors."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, state: ExecutionState | None = None):
        super().__init__(message)
        self.message = message
        # Populated by the engine so callers can inspect node_results
        self.state = state


class ValidationError(FlowEngineError):
    """Malformed flow definition, node data or identifier."""

    kind = ErrorKind.VALIDATION


class NotFoundError(FlowEngineError):
    """Referenced node, LLM config or tool does not exist."""

    kind = ErrorKind.NOT_FOUND


class ForbiddenError(FlowEngineError):
    """Access denied by a collaborator's permission check."""

    kind = ErrorKind.FORBIDDEN


class RemoteCallError(FlowEngineError):
    """An LLM, vector or tool collaborator call failed."""

    kind = ErrorKind.REMOTE_CALL


class NodeExecutionError(FlowEngineError):
    """A node returned a FAILED result, which aborts the run.

    ``kind`` is the failing result's error kind when the executor set one
    (e.g. FORBIDDEN for a denied tool), else NODE_FAILED.
    """

    kind = ErrorKind.NODE_FAILED

    def __init__(
        self,
        message: str,
        node_id: str,
        state: ExecutionState | None = None,
        kind: ErrorKind | None = None,
    ):
        super().__init__(message, state)
        self.node_id = node_id
        if kind is not None:
            self.kind = kind


class IterationLimitExceeded(FlowEngineError):
    """The run exceeded its maximum number of engine passes."""

    kind = ErrorKind.ITERATION_LIMIT


class GraphTerminationError(FlowEngineError):
    """The frontier emptied without reaching an End or Answer node."""

    kind = ErrorKind.GRAPH_TERMINATION


class ExecutionTimeoutError(FlowEngineError):
    """The run did not finish before its deadline."""

    kind = ErrorKind.TIMEOUT
