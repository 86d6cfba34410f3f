"""Core modules for the flow engine."""

from flowengine.core.engine import ExecutionEngine
from flowengine.core.engine_factory import ExecutionEngineFactory
from flowengine.core.errors import ErrorKind, FlowEngineError
from flowengine.core.flow_schema import FlowDefinition, FlowEdge, FlowNode, NodeType
from flowengine.core.models import (
    FlowExecution,
    FlowExecutionStatus,
    NodeExecutionResult,
    NodeExecutionStatus,
)
from flowengine.core.state import ExecutionState

__all__ = [
    "ErrorKind",
    "ExecutionEngine",
    "ExecutionEngineFactory",
    "ExecutionState",
    "FlowDefinition",
    "FlowEdge",
    "FlowEngineError",
    "FlowExecution",
    "FlowExecutionStatus",
    "FlowNode",
    "NodeExecutionResult",
    "NodeExecutionStatus",
    "NodeType",
]
