"""Node executors that call external collaborators.

LLM, vector search, MCP tool and parameter extraction nodes are the only
places a run performs network I/O. Every failure (config resolution, message
building, tenant extraction, the remote call itself) is returned as a FAILED
NodeExecutionResult carrying the causing message.

Tenant isolation: ``tenant_id`` is read from the execution state and must be
a UUID. It is passed to every collaborator call.
"""

import json
import logging
import re
import uuid
from datetime import UTC, datetime
from typing import Any

import pydantic

from flowengine.core.errors import (
    ErrorKind,
    FlowEngineError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from flowengine.core.flow_schema import FlowNode, NodeType
from flowengine.core.models import NodeExecutionResult
from flowengine.core.node_executors import NodeExecutor
from flowengine.core.resilience import RetryPolicy, call_with_retry
from flowengine.core.services import (
    ChatMessage,
    LLMConfigRepository,
    LLMService,
    MessageRole,
    ModelConfig,
    SearchFilter,
    SearchQuery,
    ToolCallContext,
    ToolRepository,
    ToolService,
    VectorSearchService,
)
from flowengine.core.state import ExecutionState
from flowengine.core.variables import (
    node_key,
    parse_selector,
    resolve_parameters,
    resolve_template,
    stringify,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def _uuid_variable(state: ExecutionState, name: str) -> str | None:
    """Return the state variable as a canonical UUID string, or None."""
    value = state.get_variable(name)
    if not isinstance(value, str):
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        return None


def extract_tenant_id(state: ExecutionState) -> str:
    tenant_id = _uuid_variable(state, "tenant_id")
    if tenant_id is None:
        raise ValidationError("Missing or invalid tenant_id in execution context")
    return tenant_id


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class _LLMBackedExecutor(NodeExecutor):
    """Shared model-config resolution for executors that call the LLM service."""

    label = "LLM"

    def __init__(
        self,
        llm_service: LLMService,
        llm_config_repository: LLMConfigRepository,
        retry_defaults: RetryPolicy | None = None,
    ):
        self.llm_service = llm_service
        self.llm_config_repository = llm_config_repository
        self.retry_defaults = retry_defaults

    async def _resolve_model_config(self, node: FlowNode) -> ModelConfig:
        model_data = node.data.get("model")
        if not isinstance(model_data, dict):
            raise ValidationError(f"{self.label} node missing 'model' field")

        config_id = model_data.get("llm_config_id")
        if not isinstance(config_id, str):
            raise ValidationError(f"{self.label} node missing 'model.llm_config_id' field")
        try:
            uuid.UUID(config_id)
        except ValueError as e:
            raise ValidationError(f"Invalid UUID: {config_id}. Error: {e}") from e

        try:
            llm_config = await self.llm_config_repository.find_by_id(config_id)
        except FlowEngineError:
            raise
        except Exception as e:
            raise NotFoundError(f"Failed to retrieve LLM config: {e}") from e
        if llm_config is None:
            raise NotFoundError(f"LLM config not found: {config_id}")
        return llm_config.config

    async def _chat(
        self, node: FlowNode, model_config: ModelConfig, messages: list[ChatMessage], tenant_id: str
    ):
        policy = RetryPolicy.from_node_data(node.data, self.retry_defaults)
        return await call_with_retry(
            lambda: self.llm_service.chat_completion(model_config, messages, tenant_id),
            policy,
            f"LLM call for node '{node.id}'",
        )


class LLMNodeExecutor(_LLMBackedExecutor):
    """Chat completion against a tenant's configured model.

    Node data::

        {"model": {"llm_config_id": "<uuid>"},
         "prompt_template": [{"role": "system", "text": "..."},
                             {"role": "user", "text": "{{#start.query#}}"}],
         "output_variable": "llm_response"}
    """

    handles = frozenset({NodeType.LLM})

    def _build_messages(self, node: FlowNode, state: ExecutionState) -> list[ChatMessage]:
        messages = []
        for entry in node.data.get("prompt_template") or []:
            if not isinstance(entry, dict):
                continue
            role = entry.get("role")
            if not isinstance(role, str):
                raise ValidationError("Message missing 'role' field")
            text = entry.get("text")
            if not isinstance(text, str):
                raise ValidationError("Message missing 'text' field")

            content = resolve_template(text, state.variables)
            if not content.strip():
                continue
            try:
                message_role = MessageRole(role)
            except ValueError as e:
                raise ValidationError(f"Unknown message role: {role}") from e
            messages.append(ChatMessage(role=message_role, content=content))
        return messages

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        started_at = _now()

        try:
            model_config = await self._resolve_model_config(node)
            messages = self._build_messages(node, state)
            tenant_id = extract_tenant_id(state)
        except FlowEngineError as e:
            return NodeExecutionResult.failed(node.id, e.message, started_at, error_kind=e.kind)

        try:
            response = await self._chat(node, model_config, messages, tenant_id)
        except ValidationError as e:
            return NodeExecutionResult.failed(node.id, e.message, started_at, error_kind=e.kind)
        except Exception as e:
            logger.warning(f"LLM node '{node.id}' call failed: {e}")
            return NodeExecutionResult.failed(node.id, f"LLM call failed: {e}", started_at)

        output_var = node.data.get("output_variable") or "llm_response"
        state.set_variable(output_var, response.content)
        state.set_node_variable(node.id, "text", response.content)

        output = {
            "content": response.content,
            "model_used": response.model_used,
            "usage": response.usage.model_dump(),
            "finish_reason": response.finish_reason.value,
        }
        return NodeExecutionResult.success(node.id, output, started_at)


class VectorSearchNodeExecutor(NodeExecutor):
    """Similarity search with tenant isolation.

    The query vector comes from ``data.query_vector_variable`` (a state
    variable) or ``data.query_vector``. Results are published to
    ``data.output_variable`` (default ``search_results``).
    """

    handles = frozenset({NodeType.VECTOR_SEARCH})

    def __init__(
        self, vector_service: VectorSearchService, retry_defaults: RetryPolicy | None = None
    ):
        self.vector_service = vector_service
        self.retry_defaults = retry_defaults

    def _build_query(self, node: FlowNode, state: ExecutionState) -> SearchQuery:
        data = node.data
        variable_name = data.get("query_vector_variable")
        if isinstance(variable_name, str):
            raw_vector = state.get_variable(variable_name)
            if not isinstance(raw_vector, list):
                raise ValidationError(f"Variable '{variable_name}' not found or not an array")
        elif isinstance(data.get("query_vector"), list):
            raw_vector = data["query_vector"]
        else:
            raise ValidationError("Vector search node missing query vector")

        vector = [float(v) for v in raw_vector if _is_number(v)]
        top_k = data.get("top_k")
        if not isinstance(top_k, int) or isinstance(top_k, bool):
            top_k = 10

        query = SearchQuery.create(vector, top_k)
        namespace = data.get("namespace")
        if isinstance(namespace, str):
            query.namespace = namespace

        if data.get("filter") is not None:
            try:
                query.filter = SearchFilter.model_validate(data["filter"])
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid filter: {e}") from e
        return query

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        started_at = _now()

        try:
            query = self._build_query(node, state)
            tenant_id = extract_tenant_id(state)
            policy = RetryPolicy.from_node_data(node.data, self.retry_defaults)
        except FlowEngineError as e:
            return NodeExecutionResult.failed(node.id, e.message, started_at, error_kind=e.kind)

        try:
            results = await call_with_retry(
                lambda: self.vector_service.search_vectors(query, tenant_id),
                policy,
                f"Vector search for node '{node.id}'",
            )
        except Exception as e:
            logger.warning(f"Vector search node '{node.id}' failed: {e}")
            return NodeExecutionResult.failed(node.id, f"Vector search failed: {e}", started_at)

        results_json = [{"id": r.id, "score": r.score, "metadata": r.metadata} for r in results]
        output_var = node.data.get("output_variable") or "search_results"
        state.set_variable(output_var, results_json)
        state.set_node_variable(node.id, "results", results_json)

        return NodeExecutionResult.success(
            node.id, {"results_count": len(results_json), "results": results_json}, started_at
        )


class MCPToolNodeExecutor(NodeExecutor):
    """Permissioned external tool call.

    Steps: load the tool by UUID, build a call context from the run's
    tenant/user/session, check permission, resolve ``{{var}}`` parameter
    leaves, validate them against the tool, invoke it.
    """

    handles = frozenset({NodeType.MCP_TOOL})

    def __init__(
        self,
        tool_service: ToolService,
        tool_repository: ToolRepository,
        retry_defaults: RetryPolicy | None = None,
    ):
        self.tool_service = tool_service
        self.tool_repository = tool_repository
        self.retry_defaults = retry_defaults

    @staticmethod
    def _extract_context(state: ExecutionState) -> ToolCallContext:
        tenant_id = _uuid_variable(state, "tenant_id")
        if tenant_id is None:
            raise ValidationError("Missing or invalid tenant_id")
        user_id = _uuid_variable(state, "user_id")
        if user_id is None:
            raise ValidationError("Missing or invalid user_id")

        session_id = state.get_variable("session_id")
        return ToolCallContext(
            tenant_id=tenant_id,
            user_id=user_id,
            request_id=str(uuid.uuid4()),
            session_id=session_id if isinstance(session_id, str) else None,
        )

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        started_at = _now()

        tool_id = node.data.get("tool_id")
        if not isinstance(tool_id, str):
            return NodeExecutionResult.failed(
                node.id, "MCP tool node missing 'tool_id' field", started_at
            )
        try:
            tool_id = str(uuid.UUID(tool_id))
        except ValueError as e:
            return NodeExecutionResult.failed(node.id, f"Invalid tool_id: {e}", started_at)

        try:
            tool = await self.tool_repository.find_by_id(tool_id)
        except Exception as e:
            return NodeExecutionResult.failed(
                node.id, f"Failed to retrieve tool: {e}", started_at
            )
        if tool is None:
            return NodeExecutionResult.failed(
                node.id, f"Tool not found: {tool_id}", started_at, error_kind=ErrorKind.NOT_FOUND
            )

        try:
            context = self._extract_context(state)
        except ValidationError as e:
            return NodeExecutionResult.failed(node.id, e.message, started_at, error_kind=e.kind)

        try:
            permission = await self.tool_service.check_tool_permission(tool, context)
        except ForbiddenError as e:
            return NodeExecutionResult.failed(node.id, e.message, started_at, error_kind=e.kind)
        except Exception as e:
            return NodeExecutionResult.failed(
                node.id, f"Permission check failed: {e}", started_at
            )
        if not permission.allowed:
            logger.info(f"Tool '{tool.name}' denied for node '{node.id}': {permission.reason}")
            return NodeExecutionResult.failed(
                node.id,
                permission.reason or "Permission denied",
                started_at,
                error_kind=ErrorKind.FORBIDDEN,
            )

        if "parameters" not in node.data:
            return NodeExecutionResult.failed(
                node.id, "MCP tool node missing 'parameters' field", started_at
            )
        parameters = resolve_parameters(node.data["parameters"], state.variables)

        try:
            await self.tool_service.validate_call_parameters(tool, parameters)
        except Exception as e:
            return NodeExecutionResult.failed(
                node.id, f"Parameter validation failed: {e}", started_at
            )

        try:
            policy = RetryPolicy.from_node_data(node.data, self.retry_defaults)
        except ValidationError as e:
            return NodeExecutionResult.failed(node.id, e.message, started_at, error_kind=e.kind)

        try:
            tool_result = await call_with_retry(
                lambda: self.tool_service.call_tool(tool, parameters, context),
                policy,
                f"Tool '{tool.name}' for node '{node.id}'",
            )
        except Exception as e:
            logger.warning(f"MCP tool node '{node.id}' call failed: {e}")
            return NodeExecutionResult.failed(node.id, f"Tool call failed: {e}", started_at)

        if tool_result.result is not None:
            output_var = node.data.get("output_variable") or "tool_result"
            state.set_variable(output_var, tool_result.result)
            state.set_node_variable(node.id, "result", tool_result.result)

        output = {
            "success": tool_result.success,
            "result": tool_result.result,
            "error": tool_result.error,
            "execution_time_ms": tool_result.execution_time_ms,
        }
        if not tool_result.success:
            return NodeExecutionResult.failed(
                node.id, tool_result.error or "Tool call failed", started_at, output=output
            )
        return NodeExecutionResult.success(node.id, output, started_at)


_ARRAY_PATTERN = re.compile(r"\[.*?\]", re.DOTALL)


def parse_extraction_reply(reply: str) -> list[str]:
    """Parse an LLM reply that should be a JSON array of strings.

    Tries a direct JSON parse, then the widest and the first ``[...]``
    substring, and finally wraps the raw text in a single-element list.
    """

    def _as_strings(value: Any) -> list[str] | None:
        if isinstance(value, list):
            return [item if isinstance(item, str) else stringify(item) for item in value]
        return None

    text = reply.strip()
    candidates = [text]
    start, end = text.find("["), text.rfind("]")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    first = _ARRAY_PATTERN.search(text)
    if first:
        candidates.append(first.group(0))

    for candidate in candidates:
        try:
            parsed = _as_strings(json.loads(candidate))
        except json.JSONDecodeError:
            continue
        if parsed is not None:
            return parsed
    return [text]


class ParameterExtractorNodeExecutor(_LLMBackedExecutor):
    """Asks the LLM to pull parameter values out of a query variable.

    Node data::

        {"model": {"llm_config_id": "<uuid>"},
         "query": ["start", "query"],
         "instruction": "Extract the city names",
         "parameters": [{"name": "cities", "type": "array[string]",
                         "description": "City names"}]}

    The parsed array is published as ``#<node>.<parameters[0].name>#``.
    """

    handles = frozenset({NodeType.PARAMETER_EXTRACTOR})
    label = "Parameter extractor"

    SYSTEM_PROMPT = (
        "You extract parameters from the user's input. "
        "Respond only with a JSON array of strings, one string per extracted value, "
        "and nothing else."
    )

    def _parameter_name(self, node: FlowNode) -> str:
        parameters = node.data.get("parameters")
        if not isinstance(parameters, list) or not parameters:
            raise ValidationError("Parameter extractor node missing 'parameters' field")
        first = parameters[0]
        if not isinstance(first, dict) or not isinstance(first.get("name"), str):
            raise ValidationError("Parameter extractor parameters require a 'name'")
        return first["name"]

    def _build_messages(self, node: FlowNode, state: ExecutionState) -> list[ChatMessage]:
        query_node, query_var = parse_selector(node.data.get("query"), "query")
        key = node_key(query_node, query_var)
        if not state.has_variable(key):
            raise ValidationError(f"Query variable '{key}' not found")
        content = stringify(state.get_variable(key))

        system = self.SYSTEM_PROMPT
        described = [
            f"- {p['name']}: {p.get('description') or p.get('type') or 'value'}"
            for p in node.data.get("parameters", [])
            if isinstance(p, dict) and isinstance(p.get("name"), str)
        ]
        if described:
            system += "\nParameters:\n" + "\n".join(described)
        instruction = node.data.get("instruction")
        if isinstance(instruction, str) and instruction.strip():
            system += "\nInstruction: " + resolve_template(instruction, state.variables)

        return [
            ChatMessage(role=MessageRole.SYSTEM, content=system),
            ChatMessage(role=MessageRole.USER, content=content),
        ]

    async def execute(self, node: FlowNode, state: ExecutionState) -> NodeExecutionResult:
        started_at = _now()

        try:
            parameter_name = self._parameter_name(node)
            model_config = await self._resolve_model_config(node)
            messages = self._build_messages(node, state)
            tenant_id = extract_tenant_id(state)
        except FlowEngineError as e:
            return NodeExecutionResult.failed(node.id, e.message, started_at, error_kind=e.kind)

        try:
            response = await self._chat(node, model_config, messages, tenant_id)
        except ValidationError as e:
            return NodeExecutionResult.failed(node.id, e.message, started_at, error_kind=e.kind)
        except Exception as e:
            logger.warning(f"Parameter extractor node '{node.id}' call failed: {e}")
            return NodeExecutionResult.failed(node.id, f"LLM call failed: {e}", started_at)

        values = parse_extraction_reply(response.content)
        state.set_node_variable(node.id, parameter_name, values)
        state.set_node_variable(node.id, "__is_success", 1)
        state.set_node_variable(node.id, "__reason", "")

        return NodeExecutionResult.success(
            node.id, {"parameters": {parameter_name: values}, "raw": response.content}, started_at
        )
