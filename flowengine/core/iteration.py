"""Iteration node: runs a body sub-flow once per element of an array.

The executor only prepares a control object under
``#<iteration>.iteration_config#``; the engine consumes it to drive the body
(nodes whose ``parent_id`` is the Iteration node) once per item.

Node data::

    {"iterator_selector": ["start", "cities"],
     "output_selector": ["body_llm", "text"],
     "start_node_id": "body_start"}
"""

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from flowengine.core.errors import ValidationError
from flowengine.core.flow_schema import FlowNode, NodeType
from flowengine.core.models import NodeExecutionResult
from flowengine.core.node_executors import NodeExecutor
from flowengine.core.state import ExecutionState
from flowengine.core.variables import node_key, parse_selector

logger = logging.getLogger(__name__)

ITERATION_CONFIG_VAR = "iteration_config"


class IterationConfig(BaseModel):
    """Per-run control object for one Iteration node."""

    iterator_array: list[Any]
    start_node_id: str
    output_node_id: str
    output_var_name: str
    current_index: int = 0
    total_count: int = 0
    output_array: list[Any] = Field(default_factory=list)

    @property
    def is_exhausted(self) -> bool:
        return self.current_index >= self.total_count

    def current_item(self) -> Any:
        return self.iterator_array[self.current_index]

    def collect(self, value: Any) -> None:
        """Record the body output for the current item and advance."""
        self.output_array.append(value)
        self.current_index += 1


def load_iteration_config(state: ExecutionState, iteration_id: str) -> IterationConfig | None:
    raw = state.get_node_variable(iteration_id, ITERATION_CONFIG_VAR)
    if raw is None:
        return None
    return IterationConfig.model_validate(raw)


def store_iteration_config(
    state: ExecutionState, iteration_id: str, config: IterationConfig
) -> None:
    state.set_node_variable(iteration_id, ITERATION_CONFIG_VAR, config.model_dump())


class IterationNodeExecutor(NodeExecutor):
    handles = frozenset({NodeType.ITERATION})

    @staticmethod
    def _selector(node: FlowNode, field_name: str) -> tuple[str, str]:
        if field_name not in node.data:
            raise ValidationError(f"Iteration node missing '{field_name}' field")
        return parse_selector(node.data[field_name], field_name)

    def _build_config(self, node: FlowNode, state: ExecutionState) -> IterationConfig:
        iterator_node, iterator_var = self._selector(node, "iterator_selector")
        output_node, output_var = self._selector(node, "output_selector")

        start_node_id = node.data.get("start_node_id")
        if not isinstance(start_node_id, str) or not start_node_id:
            raise ValidationError("Iteration node missing 'start_node_id' field")

        key = node_key(iterator_node, iterator_var)
        items = state.get_variable(key)
        if not isinstance(items, list):
            raise ValidationError(f"Iterator variable '{key}' not found or not an array")

        return IterationConfig(
            iterator_array=list(items),
            start_node_id=start_node_id,
            output_node_id=output_node,
            output_var_name=output_var,
            total_count=len(items),
        )

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        started_at = datetime.now(UTC)
        try:
            config = self._build_config(node, state)
        except ValidationError as e:
            return NodeExecutionResult.failed(node.id, e.message, started_at, error_kind=e.kind)

        store_iteration_config(state, node.id, config)
        state.set_node_variable(node.id, "iteration_count", config.total_count)
        logger.debug(f"Iteration '{node.id}' prepared over {config.total_count} item(s)")

        return NodeExecutionResult.success(
            node.id,
            {
                "message": "Iteration prepared",
                "iteration_count": config.total_count,
                "start_node_id": config.start_node_id,
            },
            started_at,
        )
