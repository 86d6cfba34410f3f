"""In-memory collaborator implementations.

Used by the test suite and by ``flowengine run`` for local runs. Everything
is tenant-scoped the same way a real backend would be: configs and tools are
looked up by id, vectors are stored per tenant.
"""

import inspect
import logging
import math
import time
from collections.abc import Callable, Iterable
from typing import Any

import jsonschema

from flowengine.core.errors import RemoteCallError, ValidationError
from flowengine.core.services import (
    ChatMessage,
    ChatResponse,
    ComparisonOperator,
    FilterCondition,
    FilterOperator,
    LLMConfig,
    LLMConfigRepository,
    LLMService,
    ModelConfig,
    PermissionCheckResult,
    SearchQuery,
    SearchResult,
    Tool,
    ToolCallContext,
    ToolCallResult,
    ToolParameter,
    ToolRepository,
    ToolService,
    ToolStatus,
    VectorSearchService,
)

logger = logging.getLogger(__name__)


class InMemoryLLMConfigRepository(LLMConfigRepository):
    def __init__(self, configs: Iterable[LLMConfig] = ()):
        self._configs = {c.id: c for c in configs}

    def add(self, config: LLMConfig) -> None:
        self._configs[config.id] = config

    async def find_by_id(self, config_id: str) -> LLMConfig | None:
        return self._configs.get(config_id)


class InMemoryToolRepository(ToolRepository):
    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools = {t.id: t for t in tools}

    def add(self, tool: Tool) -> None:
        self._tools[tool.id] = tool

    async def find_by_id(self, tool_id: str) -> Tool | None:
        return self._tools.get(tool_id)


class ScriptedLLMService(LLMService):
    """Returns queued replies in order and records every call.

    A queued exception is raised instead of returned, which lets tests
    script provider failures.
    """

    def __init__(self, replies: Iterable[str | ChatResponse | Exception] = ()):
        self._replies = list(replies)
        self.calls: list[tuple[ModelConfig, list[ChatMessage], str]] = []

    def queue(self, reply: str | ChatResponse | Exception) -> None:
        self._replies.append(reply)

    async def chat_completion(
        self, model_config: ModelConfig, messages: list[ChatMessage], tenant_id: str
    ) -> ChatResponse:
        self.calls.append((model_config, list(messages), tenant_id))
        if not self._replies:
            raise RemoteCallError("No scripted reply left")

        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, ChatResponse):
            return reply
        return ChatResponse(content=reply, model_used=model_config.model_name)


# ========== Vector store ==========


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b):
        raise ValidationError(f"Vector dimension mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    return dot / norm


def _matches_condition(metadata: dict[str, Any], condition: FilterCondition) -> bool:
    if condition.field not in metadata:
        return False
    actual = metadata[condition.field]
    expected = condition.value
    op = condition.operator

    try:
        if op == ComparisonOperator.EQUAL:
            return actual == expected
        if op == ComparisonOperator.NOT_EQUAL:
            return actual != expected
        if op == ComparisonOperator.GREATER_THAN:
            return actual > expected
        if op == ComparisonOperator.GREATER_THAN_OR_EQUAL:
            return actual >= expected
        if op == ComparisonOperator.LESS_THAN:
            return actual < expected
        if op == ComparisonOperator.LESS_THAN_OR_EQUAL:
            return actual <= expected
        if op == ComparisonOperator.IN:
            return isinstance(expected, list) and actual in expected
        if op == ComparisonOperator.NOT_IN:
            return isinstance(expected, list) and actual not in expected
        if op == ComparisonOperator.CONTAINS:
            return isinstance(actual, (str, list)) and expected in actual
    except TypeError:
        # Incomparable types never match
        return False
    return False


class InMemoryVectorStore(VectorSearchService):
    """Cosine-similarity search over vectors stored per tenant and namespace."""

    def __init__(self):
        # tenant_id -> namespace -> id -> (vector, metadata)
        self._data: dict[str, dict[str | None, dict[str, tuple[list[float], dict]]]] = {}

    def upsert(
        self,
        tenant_id: str,
        vector_id: str,
        vector: list[float],
        metadata: dict[str, Any] | None = None,
        namespace: str | None = None,
    ) -> None:
        namespaces = self._data.setdefault(tenant_id, {})
        namespaces.setdefault(namespace, {})[vector_id] = (list(vector), dict(metadata or {}))

    def count(self, tenant_id: str, namespace: str | None = None) -> int:
        return len(self._data.get(tenant_id, {}).get(namespace, {}))

    async def search_vectors(self, query: SearchQuery, tenant_id: str) -> list[SearchResult]:
        entries = self._data.get(tenant_id, {}).get(query.namespace, {})
        scored = []
        for vector_id, (vector, metadata) in entries.items():
            if query.filter and query.filter.conditions:
                checks = (_matches_condition(metadata, c) for c in query.filter.conditions)
                if query.filter.operator == FilterOperator.AND:
                    matched = all(checks)
                else:
                    matched = any(checks)
                if not matched:
                    continue
            scored.append((cosine_similarity(query.vector, vector), vector_id, vector, metadata))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            SearchResult(
                id=vector_id,
                score=score,
                vector=vector if query.include_values else None,
                metadata=metadata if query.include_metadata else None,
            )
            for score, vector_id, vector, metadata in scored[: query.top_k]
        ]


# ========== Tools ==========


def tool_parameters_schema(parameters: list[ToolParameter]) -> dict[str, Any]:
    """JSON Schema for a call's parameter object, built from the tool definition."""
    properties: dict[str, Any] = {}
    for param in parameters:
        prop: dict[str, Any] = {"type": param.parameter_type.value}
        if param.description:
            prop["description"] = param.description
        if param.enum_values:
            prop["enum"] = param.enum_values
        properties[param.name] = prop

    return {
        "type": "object",
        "properties": properties,
        "required": [p.name for p in parameters if p.required],
        "additionalProperties": False,
    }


ToolHandler = Callable[[dict[str, Any]], Any]


class LocalToolService(ToolService):
    """Dispatches tool calls to registered Python callables.

    Handlers take the parameter dict and may be sync or async. A handler that
    raises RemoteCallError propagates it so node-level retry can apply; any
    other exception becomes a failed ToolCallResult.
    """

    def __init__(self, handlers: dict[str, ToolHandler] | None = None):
        self._handlers: dict[str, ToolHandler] = dict(handlers or {})

    def register(self, tool_id: str, handler: ToolHandler) -> None:
        self._handlers[tool_id] = handler

    async def check_tool_permission(
        self, tool: Tool, context: ToolCallContext
    ) -> PermissionCheckResult:
        if not tool.can_access(context.tenant_id):
            return PermissionCheckResult.deny("Tool does not belong to user's tenant")
        if tool.status != ToolStatus.ACTIVE:
            return PermissionCheckResult.deny(f"Tool is not active: {tool.status.value}")
        return PermissionCheckResult.allow()

    async def validate_call_parameters(self, tool: Tool, parameters: Any) -> None:
        if not isinstance(parameters, dict):
            raise ValidationError("Parameters must be a JSON object")

        unknown = sorted(set(parameters) - {p.name for p in tool.parameters})
        if unknown:
            raise ValidationError(f"Unknown parameter: {unknown[0]}")
        missing = [p.name for p in tool.parameters if p.required and p.name not in parameters]
        if missing:
            raise ValidationError(f"Missing required parameter: {missing[0]}")

        schema = tool_parameters_schema(tool.parameters)
        try:
            jsonschema.validate(parameters, schema)
        except jsonschema.ValidationError as e:
            location = ".".join(str(p) for p in e.absolute_path) or "parameters"
            raise ValidationError(f"Invalid value for '{location}': {e.message}") from e

    async def call_tool(
        self, tool: Tool, parameters: Any, context: ToolCallContext
    ) -> ToolCallResult:
        handler = self._handlers.get(tool.id)
        if handler is None:
            return ToolCallResult.failed(f"No handler registered for tool: {tool.name}")

        started = time.monotonic()
        try:
            result = handler(parameters)
            if inspect.isawaitable(result):
                result = await result
        except RemoteCallError:
            raise
        except Exception as e:
            logger.warning(f"Tool '{tool.name}' handler failed: {e}")
            elapsed_ms = int((time.monotonic() - started) * 1000)
            return ToolCallResult.failed(str(e), elapsed_ms)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        return ToolCallResult.succeeded(result, elapsed_ms)
