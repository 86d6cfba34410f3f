"""
Flow execution engine.

Walks a FlowDefinition with an explicit frontier of node ids. Each pass
executes every frontier node in order, records its result, and collects the
successors chosen by the routing rules into the next frontier. All results of
a pass are recorded before any successor runs.

A run ends in exactly one way:
- an END or ANSWER node is reached, whatever its result: the execution is
  completed with ``{"variables", "visited_nodes"}``;
- a node fails, a node id is missing, routing raises, the pass budget is
  exhausted, or the frontier empties: the execution is failed and a typed
  FlowEngineError carrying the state is raised;
- the deadline expires (ExecutionTimeoutError) or the task is cancelled.
"""

import asyncio
import copy
import logging
from collections.abc import Iterable
from typing import Any, NoReturn

from flowengine.core.errors import (
    ExecutionTimeoutError,
    FlowEngineError,
    GraphTerminationError,
    IterationLimitExceeded,
    NodeExecutionError,
    NotFoundError,
    ValidationError,
)
from flowengine.core.flow_schema import (
    TERMINAL_NODE_TYPES,
    ConditionHandle,
    FlowDefinition,
    FlowNode,
    LoopHandle,
    NodeType,
)
from flowengine.core.iteration import load_iteration_config, store_iteration_config
from flowengine.core.models import FlowExecution, NodeExecutionResult
from flowengine.core.node_executors import NodeExecutor
from flowengine.core.state import ExecutionState

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 1000
DEFAULT_LOOP_MAX_ITERATIONS = 10

_EQUALITY_OPERATORS = {"==", "eq"}
_INEQUALITY_OPERATORS = {"!=", "ne"}
_NUMERIC_OPERATORS = {
    ">": lambda a, b: a > b,
    "gt": lambda a, b: a > b,
    "<": lambda a, b: a < b,
    "lt": lambda a, b: a < b,
    ">=": lambda a, b: a >= b,
    "gte": lambda a, b: a >= b,
    "<=": lambda a, b: a <= b,
    "lte": lambda a, b: a <= b,
}


def _json_equal(a: Any, b: Any) -> bool:
    """Type-sensitive JSON equality: ``True != 1`` and ``1 != 1.0``."""
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(_json_equal(a[k], b[k]) for k in a)
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(_json_equal(x, y) for x, y in zip(a, b))
    return type(a) is type(b) and a == b


def _as_float(value: Any) -> float | None:
    """Numbers only; strings and booleans are not comparable."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def _ordered_union(target: list[str], items: Iterable[str]) -> None:
    for item in items:
        if item not in target:
            target.append(item)


class _PassBudget:
    """Engine passes shared by the top-level walk and every iteration body."""

    def __init__(self, limit: int):
        self.limit = limit
        self.used = 0

    def consume(self) -> bool:
        if self.used >= self.limit:
            return False
        self.used += 1
        return True


class ExecutionEngine:
    """
    Interprets flow definitions.

    Executors are consulted in registration order; the first whose
    can_handle() accepts the node type runs it.
    """

    def __init__(
        self,
        executors: list[NodeExecutor] | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        run_timeout: float | None = None,
    ):
        if max_iterations <= 0:
            raise ValueError("max_iterations must be greater than 0")
        self.executors = list(executors or [])
        self.max_iterations = max_iterations
        self.run_timeout = run_timeout

    def with_max_iterations(self, max_iterations: int) -> "ExecutionEngine":
        if max_iterations <= 0:
            raise ValueError("max_iterations must be greater than 0")
        engine = copy.copy(self)
        engine.max_iterations = max_iterations
        return engine

    def with_run_timeout(self, seconds: float | None) -> "ExecutionEngine":
        if seconds is not None and seconds <= 0:
            raise ValueError("run_timeout must be greater than 0")
        engine = copy.copy(self)
        engine.run_timeout = seconds
        return engine

    def find_executor(self, node_type: NodeType) -> NodeExecutor | None:
        return next((e for e in self.executors if e.can_handle(node_type)), None)

    # ========== Run ==========

    async def execute(
        self,
        execution: FlowExecution,
        definition: FlowDefinition,
        initial_variables: dict[str, Any] | None = None,
    ) -> ExecutionState:
        """
        Run ``definition`` to completion for ``execution``.

        Returns:
            The final ExecutionState of a completed run.

        Raises:
            FlowEngineError: The run failed; ``execution`` is already marked
                failed and ``error.state`` holds the state at failure.
            asyncio.CancelledError: The task was cancelled; ``execution`` is
                marked cancelled.
        """
        execution.start()
        state = ExecutionState.with_context(
            execution.id,
            execution.tenant_id,
            execution.user_id,
            execution.session_id,
            initial_variables,
        )
        logger.info(f"Starting execution {execution.id} of flow {execution.flow_id}")

        try:
            if self.run_timeout is None:
                await self._run(execution, definition, state)
            else:
                try:
                    await asyncio.wait_for(
                        self._run(execution, definition, state), timeout=self.run_timeout
                    )
                except TimeoutError:
                    message = f"Flow execution timed out after {self.run_timeout} seconds"
                    self._fail(execution, message)
                    raise ExecutionTimeoutError(message, state) from None
        except asyncio.CancelledError:
            if not execution.is_terminal:
                execution.cancel("Flow execution cancelled")
                logger.info(f"Execution {execution.id} cancelled")
            raise

        logger.info(
            f"Execution {execution.id} completed after {len(state.visited_nodes)} node visit(s)"
        )
        return state

    async def _run(
        self, execution: FlowExecution, definition: FlowDefinition, state: ExecutionState
    ) -> None:
        start_nodes = definition.get_start_nodes()
        if not start_nodes:
            self._raise(execution, state, ValidationError("No start node found in flow definition"))
        if len(start_nodes) > 1:
            logger.warning(
                f"Flow has {len(start_nodes)} start nodes; using the first: {start_nodes[0].id}"
            )

        budget = _PassBudget(self.max_iterations)
        terminal = await self._walk(
            [start_nodes[0].id], definition, state, execution, budget, scope=None
        )
        if terminal is None:
            self._raise(
                execution,
                state,
                GraphTerminationError("Flow execution completed without reaching an end node"),
            )

        execution.complete({"variables": state.variables, "visited_nodes": state.visited_nodes})

    async def _walk(
        self,
        frontier: list[str],
        definition: FlowDefinition,
        state: ExecutionState,
        execution: FlowExecution,
        budget: _PassBudget,
        scope: set[str] | None,
    ) -> FlowNode | None:
        """Run passes until a terminal node executes or the frontier empties.

        ``scope`` restricts routing to an iteration body; None is the
        top-level walk, which never schedules body nodes.
        """
        while frontier:
            if not budget.consume():
                self._raise(
                    execution,
                    state,
                    IterationLimitExceeded(
                        f"Flow execution exceeded maximum iterations: {self.max_iterations}"
                    ),
                )

            next_frontier: list[str] = []
            for node_id in frontier:
                node = definition.get_node(node_id)
                if node is None:
                    self._raise(execution, state, NotFoundError(f"Node not found: {node_id}"))

                state.current_node = node_id
                result = await self.execute_node(node, state)
                state.record_node_result(result)

                # Reaching End/Answer completes the run whatever its result
                if node.node_type in TERMINAL_NODE_TYPES:
                    if result.is_failed:
                        logger.warning(
                            f"Terminal node '{node.id}' failed: {result.error}; completing run"
                        )
                    return node

                if result.is_failed:
                    message = result.error or "Node execution failed"
                    self._raise(
                        execution,
                        state,
                        NodeExecutionError(message, node.id, kind=result.error_kind),
                    )

                if node.node_type == NodeType.ITERATION:
                    await self._drive_iteration(node, definition, state, execution, budget)

                try:
                    successors = self.get_next_nodes(node, definition, state)
                except FlowEngineError as e:
                    self._raise(execution, state, e)
                _ordered_union(next_frontier, self._in_scope(successors, definition, scope))

            frontier = next_frontier
        return None

    @staticmethod
    def _in_scope(
        node_ids: list[str], definition: FlowDefinition, scope: set[str] | None
    ) -> list[str]:
        if scope is not None:
            return [n for n in node_ids if n in scope]
        kept = []
        for node_id in node_ids:
            node = definition.get_node(node_id)
            if node is not None and node.parent_id is not None:
                logger.debug(f"Not scheduling iteration body node '{node_id}' at top level")
                continue
            kept.append(node_id)
        return kept

    async def _drive_iteration(
        self,
        node: FlowNode,
        definition: FlowDefinition,
        state: ExecutionState,
        execution: FlowExecution,
        budget: _PassBudget,
    ) -> None:
        """Run the body of ``node`` once per prepared item and publish ``output``."""
        config = load_iteration_config(state, node.id)
        if config is None:
            return

        body = {n.id for n in definition.get_body_nodes(node.id)} | {config.start_node_id}
        if definition.get_node(config.start_node_id) is None:
            self._raise(
                execution, state, NotFoundError(f"Node not found: {config.start_node_id}")
            )

        while not config.is_exhausted:
            index = config.current_index
            state.set_node_variable(node.id, "item", config.current_item())
            state.set_node_variable(node.id, "index", index)
            for body_id in body:
                if body_id in state.loop_counters:
                    state.reset_loop_counter(body_id)

            logger.debug(f"Iteration '{node.id}' item {index + 1}/{config.total_count}")
            await self._walk(
                [config.start_node_id], definition, state, execution, budget, scope=body
            )

            output = state.get_node_variable(config.output_node_id, config.output_var_name)
            if output is None:
                output = state.get_variable(config.output_var_name)
            config.collect(output)
            store_iteration_config(state, node.id, config)

        state.set_node_variable(node.id, "output", list(config.output_array))

    def _fail(self, execution: FlowExecution, message: str) -> None:
        if not execution.is_terminal:
            execution.fail(message)
        logger.info(f"Execution {execution.id} failed: {message}")

    def _raise(
        self, execution: FlowExecution, state: ExecutionState, error: FlowEngineError
    ) -> NoReturn:
        self._fail(execution, error.message)
        error.state = state
        raise error

    # ========== Nodes ==========

    async def execute_node(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        """Dispatch ``node`` to its executor.

        Unexpected executor exceptions become a FAILED result.
        """
        executor = self.find_executor(node.node_type)
        if executor is None:
            return NodeExecutionResult.failed(
                node.id, f"No executor found for node type: {node.node_type.value}"
            )

        logger.debug(f"Executing node '{node.id}' ({node.node_type.value}) with {executor!r}")
        try:
            return await executor.execute(node, state)
        except FlowEngineError as e:
            return NodeExecutionResult.failed(node.id, e.message, error_kind=e.kind)
        except Exception as e:
            logger.exception(f"Executor for node '{node.id}' raised unexpectedly")
            return NodeExecutionResult.failed(node.id, f"Unexpected error in node '{node.id}': {e}")

    # ========== Routing ==========

    def get_next_nodes(
        self, node: FlowNode, definition: FlowDefinition, state: ExecutionState
    ) -> list[str]:
        edges = definition.get_outgoing_edges(node.id)

        if node.node_type == NodeType.CONDITION:
            condition = node.data.get("condition")
            outcome = self.evaluate_condition(condition, state) if condition is not None else None
            next_nodes = []
            for edge in edges:
                if edge.source_handle == ConditionHandle.TRUE.value:
                    follow = bool(outcome)
                elif edge.source_handle == ConditionHandle.FALSE.value:
                    follow = not outcome
                else:
                    follow = True
                if follow:
                    next_nodes.append(edge.target)
            logger.debug(f"Condition '{node.id}' evaluated {outcome}; next: {next_nodes}")
            return next_nodes

        if node.node_type == NodeType.LOOP:
            max_iterations = node.data.get("max_iterations", DEFAULT_LOOP_MAX_ITERATIONS)
            if not isinstance(max_iterations, int) or isinstance(max_iterations, bool):
                max_iterations = DEFAULT_LOOP_MAX_ITERATIONS

            if state.get_loop_counter(node.id) < max_iterations:
                edge = next(
                    (e for e in edges if e.source_handle == LoopHandle.LOOP.value), None
                )
                if edge is None:
                    logger.warning(f"Loop node '{node.id}' has no 'loop' edge")
            else:
                edge = next(
                    (
                        e
                        for e in edges
                        if e.source_handle == LoopHandle.EXIT.value or e.source_handle is None
                    ),
                    None,
                )
            return [edge.target] if edge else []

        return [edge.target for edge in edges]

    def evaluate_condition(self, condition: Any, state: ExecutionState) -> bool:
        """
        Evaluate ``{"variable", "operator", "value"}`` against the state.

        Raises:
            ValidationError: Malformed condition, unknown operator, or the
                variable is not present in the state.
        """
        if not isinstance(condition, dict):
            raise ValidationError("Condition must be an object")

        variable_name = condition.get("variable")
        if not isinstance(variable_name, str):
            raise ValidationError("Condition missing 'variable' field")
        operator = condition.get("operator")
        if not isinstance(operator, str):
            raise ValidationError("Condition missing 'operator' field")
        if "value" not in condition:
            raise ValidationError("Condition missing 'value' field")
        expected = condition["value"]

        if not state.has_variable(variable_name):
            raise ValidationError(f"Variable not found: {variable_name}")
        actual = state.get_variable(variable_name)

        if operator in _EQUALITY_OPERATORS:
            return _json_equal(actual, expected)
        if operator in _INEQUALITY_OPERATORS:
            return not _json_equal(actual, expected)
        if operator in _NUMERIC_OPERATORS:
            a, b = _as_float(actual), _as_float(expected)
            if a is None or b is None:
                return False
            return _NUMERIC_OPERATORS[operator](a, b)
        if operator == "contains":
            if isinstance(actual, str) and isinstance(expected, str):
                return expected in actual
            return False
        raise ValidationError(f"Unknown operator: {operator}")
