"""Node executors for the flow engine.

Each executor handles one node type: it reads the node's ``data`` payload and
the run's ExecutionState, mutates the state as its side effect and returns a
NodeExecutionResult. Expected failures (bad node data, missing inputs) are
returned as FAILED results, never raised, so the engine can record them
uniformly.

This module holds the executors that need no external services.
"""

import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

from flowengine.core.errors import ValidationError
from flowengine.core.flow_schema import FlowNode, NodeType
from flowengine.core.models import NodeExecutionResult
from flowengine.core.state import ExecutionState
from flowengine.core.variables import node_key, parse_selector, resolve_reference, resolve_template

logger = logging.getLogger(__name__)


class NodeExecutor(ABC):
    """Base class for node executors.

    Subclasses declare the node types they claim in ``handles``; the engine
    dispatches a node to the first registered executor whose can_handle()
    returns True.
    """

    handles: frozenset[NodeType] = frozenset()

    def can_handle(self, node_type: NodeType) -> bool:
        return node_type in self.handles

    @abstractmethod
    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        """Execute ``node`` against ``state``."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def _now() -> datetime:
    return datetime.now(UTC)


class StartNodeExecutor(NodeExecutor):
    """Publishes flow inputs as ``#<start>.<variable>#``.

    Input-supplied values win over the declared defaults.
    """

    handles = frozenset({NodeType.START})

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        started_at = _now()
        published: dict[str, Any] = {}

        for entry in node.data.get("variables") or []:
            if not isinstance(entry, dict) or not isinstance(entry.get("variable"), str):
                return NodeExecutionResult.failed(
                    node.id, "Start node variable entries require a 'variable' name", started_at
                )
            name = entry["variable"]
            if state.has_variable(name):
                value = state.get_variable(name)
            elif "default" in entry:
                value = entry["default"]
            elif entry.get("required"):
                return NodeExecutionResult.failed(
                    node.id, f"Missing required input: {name}", started_at
                )
            else:
                value = None
            state.set_node_variable(node.id, name, value)
            published[name] = value

        return NodeExecutionResult.success(
            node.id, {"message": "Flow started", "inputs": published}, started_at
        )


class EndNodeExecutor(NodeExecutor):
    """Projects selected values into ``variables["outputs"]``.

    Each ``outputs`` entry reads ``#<node>.<var>#`` (falling back to a plain
    ``<var>`` lookup). Without an ``outputs`` config the whole variable table
    is returned instead.
    """

    handles = frozenset({NodeType.END})

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        started_at = _now()
        output_specs = node.data.get("outputs")

        if not output_specs:
            return NodeExecutionResult.success(
                node.id,
                {"message": "Flow completed", "final_variables": dict(state.variables)},
                started_at,
            )

        outputs: dict[str, Any] = {}
        for spec in output_specs:
            if not isinstance(spec, dict):
                return NodeExecutionResult.failed(
                    node.id, "End node output entries must be objects", started_at
                )
            try:
                source_node, var_name = parse_selector(spec.get("value_selector"), "value_selector")
            except ValidationError as e:
                return NodeExecutionResult.failed(node.id, e.message, started_at)

            target = spec.get("variable") or var_name
            key = node_key(source_node, var_name)
            if state.has_variable(key):
                outputs[target] = state.get_variable(key)
            else:
                outputs[target] = state.get_variable(var_name)

        state.set_variable("outputs", outputs)
        return NodeExecutionResult.success(
            node.id, {"message": "Flow completed", "outputs": outputs}, started_at
        )


class VariableNodeExecutor(NodeExecutor):
    """Applies ``assignments`` of ``{name, value}``.

    Values may reference other variables with ``$name`` or ``{{name}}``; an
    unresolved reference is assigned as the literal string.
    """

    handles = frozenset({NodeType.VARIABLE})

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        started_at = _now()
        updated: list[str] = []

        for assignment in node.data.get("assignments") or []:
            if not isinstance(assignment, dict) or not isinstance(assignment.get("name"), str):
                return NodeExecutionResult.failed(
                    node.id, "Variable assignment missing 'name' field", started_at
                )
            if "value" not in assignment:
                return NodeExecutionResult.failed(
                    node.id, f"Variable assignment '{assignment['name']}' missing 'value' field",
                    started_at,
                )
            name = assignment["name"]
            state.set_variable(name, resolve_reference(assignment["value"], state.variables))
            updated.append(name)

        return NodeExecutionResult.success(node.id, {"variables_updated": updated}, started_at)


class ConditionNodeExecutor(NodeExecutor):
    """No-op marker; branch selection happens in the engine's routing step."""

    handles = frozenset({NodeType.CONDITION})

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        return NodeExecutionResult.success(
            node.id,
            {"message": "Condition evaluated", "condition": node.data.get("condition")},
        )


class LoopNodeExecutor(NodeExecutor):
    """Counts visits; routing decides whether the loop continues."""

    handles = frozenset({NodeType.LOOP})

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        started_at = _now()
        iteration = state.increment_loop_counter(node.id)
        return NodeExecutionResult.success(
            node.id, {"message": "Loop iteration", "iteration": iteration}, started_at
        )


class AnswerNodeExecutor(NodeExecutor):
    """Renders ``data.answer`` and publishes it as the run's answer."""

    handles = frozenset({NodeType.ANSWER})

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        started_at = _now()
        template = node.data.get("answer", "")
        if not isinstance(template, str):
            return NodeExecutionResult.failed(
                node.id, "Answer node 'answer' field must be a string", started_at
            )

        answer = resolve_template(template, state.variables)
        state.set_node_variable(node.id, "answer", answer)

        outputs = state.get_variable("outputs")
        if not isinstance(outputs, dict):
            outputs = {}
        outputs["answer"] = answer
        state.set_variable("outputs", outputs)

        return NodeExecutionResult.success(node.id, {"answer": answer}, started_at)


class CodeNodeExecutor(NodeExecutor):
    """Placeholder until a sandboxed code runner exists."""

    handles = frozenset({NodeType.CODE})

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        code = node.data.get("code") or ""
        logger.debug(f"Code node '{node.id}' is a placeholder; code was not run")
        return NodeExecutionResult.success(
            node.id, {"message": "Code execution placeholder", "code_length": len(code)}
        )


class HttpRequestNodeExecutor(NodeExecutor):
    """Placeholder until an HTTP client is wired in."""

    handles = frozenset({NodeType.HTTP_REQUEST})

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        url = node.data.get("url") or ""
        method = node.data.get("method") or "GET"
        logger.debug(f"HTTP request node '{node.id}' is a placeholder; {method} {url} not sent")
        return NodeExecutionResult.success(
            node.id, {"message": "HTTP request placeholder", "url": url, "method": method}
        )
