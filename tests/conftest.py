# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the flow engine test suite.

Provides:
- Node/edge/definition builders
- Tenant and user identifiers (UUIDs, as the service executors require)
- Executions, states and engines
- In-memory collaborators (LLM configs, scripted LLM, vector store, tools)
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

import pytest

from flowengine.core.engine_factory import ExecutionEngineFactory
from flowengine.core.flow_schema import FlowDefinition, FlowEdge, FlowNode, NodeType
from flowengine.core.in_memory import (
    InMemoryLLMConfigRepository,
    InMemoryToolRepository,
    InMemoryVectorStore,
    LocalToolService,
    ScriptedLLMService,
)
from flowengine.core.models import FlowExecution
from flowengine.core.services import LLMConfig, ModelConfig, ModelProvider, Tool, ToolParameter
from flowengine.core.state import ExecutionState

TENANT_ID = "11111111-1111-4111-8111-111111111111"
OTHER_TENANT_ID = "22222222-2222-4222-8222-222222222222"
USER_ID = "33333333-3333-4333-8333-333333333333"
LLM_CONFIG_ID = "44444444-4444-4444-8444-444444444444"
TOOL_ID = "55555555-5555-4555-8555-555555555555"


# =============================================================================
# Graph Builders
# =============================================================================


def build_node(
    node_id: str,
    node_type: NodeType | str,
    data: dict[str, Any] | None = None,
    parent_id: str | None = None,
    title: str | None = None,
) -> FlowNode:
    return FlowNode(
        id=node_id,
        node_type=NodeType(node_type),
        data=data or {},
        parent_id=parent_id,
        title=title,
    )


def build_edge(source: str, target: str, handle: str | None = None) -> FlowEdge:
    edge_id = f"{source}->{target}" + (f":{handle}" if handle else "")
    return FlowEdge(id=edge_id, source=source, target=target, source_handle=handle)


@pytest.fixture
def make_node() -> Callable[..., FlowNode]:
    """Factory for FlowNode: make_node("n1", "start", {...})."""
    return build_node


@pytest.fixture
def make_edge() -> Callable[..., FlowEdge]:
    """Factory for FlowEdge: make_edge("a", "b", handle="true")."""
    return build_edge


@pytest.fixture
def make_flow() -> Callable[..., FlowDefinition]:
    """Factory for FlowDefinition from node and edge lists."""

    def _make(nodes: list[FlowNode], edges: list[FlowEdge] | None = None) -> FlowDefinition:
        return FlowDefinition.from_parts(nodes, edges or [])

    return _make


@pytest.fixture
def start_end_flow() -> FlowDefinition:
    """Smallest runnable flow: start -> end."""
    return FlowDefinition.from_parts(
        [build_node("start", "start"), build_node("end", "end")],
        [build_edge("start", "end")],
    )


@pytest.fixture
def sample_flow_json() -> dict[str, Any]:
    """A flow in the JSON wire format with branch handles."""
    return {
        "workflow": {
            "graph": {
                "nodes": [
                    {
                        "id": "start",
                        "node_type": "start",
                        "data": {"variables": [{"variable": "n", "default": 5}]},
                        "position": {"x": 0, "y": 0},
                    },
                    {
                        "id": "check",
                        "node_type": "condition",
                        "data": {
                            "condition": {"variable": "#start.n#", "operator": ">", "value": 3}
                        },
                        "position": {"x": 100, "y": 0},
                    },
                    {
                        "id": "big",
                        "node_type": "answer",
                        "data": {"answer": "big {{#start.n#}}"},
                        "position": {"x": 200, "y": -50},
                    },
                    {
                        "id": "small",
                        "node_type": "end",
                        "data": {},
                        "position": {"x": 200, "y": 50},
                    },
                ],
                "edges": [
                    {"id": "e1", "source": "start", "target": "check"},
                    {"id": "e2", "source": "check", "target": "big", "sourceHandle": "true"},
                    {"id": "e3", "source": "check", "target": "small", "sourceHandle": "false"},
                ],
            }
        }
    }


# =============================================================================
# Execution Fixtures
# =============================================================================


@pytest.fixture
def tenant_id() -> str:
    return TENANT_ID


@pytest.fixture
def user_id() -> str:
    return USER_ID


@pytest.fixture
def execution() -> FlowExecution:
    """A pending execution for the default tenant and user."""
    return FlowExecution.new(flow_id="flow-1", tenant_id=TENANT_ID, user_id=USER_ID)


@pytest.fixture
def state() -> ExecutionState:
    """A fresh state seeded with tenant/user context."""
    return ExecutionState.with_context(str(uuid.uuid4()), TENANT_ID, USER_ID)


@pytest.fixture
def basic_engine():
    return ExecutionEngineFactory.create_basic()


# =============================================================================
# Collaborator Fixtures
# =============================================================================


@pytest.fixture
def llm_config() -> LLMConfig:
    return LLMConfig(
        id=LLM_CONFIG_ID,
        tenant_id=TENANT_ID,
        name="test-model",
        config=ModelConfig(provider=ModelProvider.OPENAI, model_name="gpt-test"),
    )


@pytest.fixture
def llm_config_repository(llm_config) -> InMemoryLLMConfigRepository:
    return InMemoryLLMConfigRepository([llm_config])


@pytest.fixture
def llm_service() -> ScriptedLLMService:
    """Scripted LLM with no queued replies; tests queue what they need."""
    return ScriptedLLMService()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    store = InMemoryVectorStore()
    store.upsert(TENANT_ID, "doc-a", [1.0, 0.0], {"topic": "cats", "year": 2020})
    store.upsert(TENANT_ID, "doc-b", [0.7, 0.7], {"topic": "dogs", "year": 2022})
    store.upsert(TENANT_ID, "doc-c", [0.0, 1.0], {"topic": "dogs", "year": 2024})
    store.upsert(OTHER_TENANT_ID, "doc-x", [1.0, 0.0], {"topic": "cats"})
    return store


@pytest.fixture
def weather_tool() -> Tool:
    return Tool(
        id=TOOL_ID,
        tenant_id=TENANT_ID,
        name="weather",
        description="Current weather for a city",
        parameters=[
            ToolParameter(name="city", type="string", required=True),
            ToolParameter(name="units", type="string", enum_values=["metric", "imperial"]),
        ],
    )


@pytest.fixture
def tool_repository(weather_tool) -> InMemoryToolRepository:
    return InMemoryToolRepository([weather_tool])


@pytest.fixture
def tool_service() -> LocalToolService:
    service = LocalToolService()
    service.register(TOOL_ID, lambda params: {"city": params["city"], "temp": 21})
    return service
