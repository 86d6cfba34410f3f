"""Working memory for a single flow run.

An ExecutionState is created when a run starts, mutated only by the engine and
the executors it dispatches to, and discarded when the run ends. It is never
shared between runs.
"""

from dataclasses import dataclass, field
from typing import Any

from flowengine.core.models import NodeExecutionResult
from flowengine.core.variables import node_key


@dataclass
class ExecutionState:
    """Variables, per-node results, visit trail and loop counters of one run."""

    execution_id: str
    current_node: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    # Latest result per node id; visited_nodes keeps the full trail
    node_results: dict[str, NodeExecutionResult] = field(default_factory=dict)
    visited_nodes: list[str] = field(default_factory=list)
    loop_counters: dict[str, int] = field(default_factory=dict)

    @classmethod
    def with_context(
        cls,
        execution_id: str,
        tenant_id: str,
        user_id: str,
        session_id: str | None = None,
        initial_variables: dict[str, Any] | None = None,
    ) -> "ExecutionState":
        """Seed state with caller variables plus tenant/user/session context."""
        variables = dict(initial_variables or {})
        variables["tenant_id"] = str(tenant_id)
        variables["user_id"] = str(user_id)
        if session_id is not None:
            variables["session_id"] = str(session_id)
        return cls(execution_id=execution_id, variables=variables)

    # --- Variables ---

    def set_variable(self, name: str, value: Any) -> None:
        self.variables[name] = value

    def get_variable(self, name: str, default: Any = None) -> Any:
        return self.variables.get(name, default)

    def has_variable(self, name: str) -> bool:
        return name in self.variables

    def set_node_variable(self, node_id: str, name: str, value: Any) -> None:
        self.variables[node_key(node_id, name)] = value

    def get_node_variable(self, node_id: str, name: str, default: Any = None) -> Any:
        return self.variables.get(node_key(node_id, name), default)

    # --- Results ---

    def record_node_result(self, result: NodeExecutionResult) -> None:
        self.visited_nodes.append(result.node_id)
        self.node_results[result.node_id] = result

    def visit_count(self, node_id: str) -> int:
        return self.visited_nodes.count(node_id)

    # --- Loop counters ---

    def increment_loop_counter(self, loop_id: str) -> int:
        self.loop_counters[loop_id] = self.loop_counters.get(loop_id, 0) + 1
        return self.loop_counters[loop_id]

    def get_loop_counter(self, loop_id: str) -> int:
        return self.loop_counters.get(loop_id, 0)

    def reset_loop_counter(self, loop_id: str) -> None:
        self.loop_counters[loop_id] = 0
