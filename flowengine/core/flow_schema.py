"""Flow definition schema using Pydantic models.

A flow is exchanged as JSON shaped ``{"workflow": {"graph": {"nodes", "edges"}}}``.
Nodes carry a closed ``node_type`` and an untyped ``data`` payload whose shape
depends on the type; edges may carry ``sourceHandle`` strings that select a
branch on Condition ("true"/"false") and Loop ("loop"/"exit") nodes.

Definitions are immutable once built. A new flow version is a new definition.
"""

import json
from enum import Enum
from typing import Any

import networkx as nx
import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field

from flowengine.core.errors import ValidationError


class NodeType(str, Enum):
    """Supported node types in flow graphs"""

    START = "start"  # Entry point, publishes flow inputs
    END = "end"  # Terminal node, projects outputs
    LLM = "llm"  # Chat completion against a configured model
    VECTOR_SEARCH = "vector_search"  # Similarity search in a vector store
    MCP_TOOL = "mcp_tool"  # Permissioned external tool call
    CONDITION = "condition"  # Two-way branch on a structured condition
    LOOP = "loop"  # Bounded loop with "loop"/"exit" edges
    VARIABLE = "variable"  # Variable assignments
    HTTP_REQUEST = "http_request"  # Placeholder HTTP call
    CODE = "code"  # Placeholder code runner
    ANSWER = "answer"  # Terminal node rendering an answer template
    ITERATION = "iteration"  # Runs a body sub-flow once per array item
    PARAMETER_EXTRACTOR = "parameter_extractor"  # LLM-backed parameter extraction


TERMINAL_NODE_TYPES = frozenset({NodeType.END, NodeType.ANSWER})


class ConditionHandle(str, Enum):
    """Source handles on edges leaving a CONDITION node"""

    TRUE = "true"
    FALSE = "false"


class LoopHandle(str, Enum):
    """Source handles on edges leaving a LOOP node"""

    LOOP = "loop"
    EXIT = "exit"


class NodePosition(BaseModel):
    """Editor layout position. No execution semantics."""

    model_config = ConfigDict(frozen=True)

    x: float = 0.0
    y: float = 0.0


class FlowNode(BaseModel):
    """A typed step in the flow graph"""

    model_config = ConfigDict(frozen=True)

    id: str
    node_type: NodeType
    data: dict[str, Any] = Field(default_factory=dict)
    position: NodePosition = Field(default_factory=NodePosition)
    title: str | None = None  # Display label
    parent_id: str | None = None  # Owning ITERATION node for body nodes

    @property
    def label(self) -> str:
        return self.title or self.id


class FlowEdge(BaseModel):
    """Directed edge between nodes with optional branch handles"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    source: str  # Source node ID
    target: str  # Target node ID
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")


class FlowGraph(BaseModel):
    model_config = ConfigDict(frozen=True)

    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)


class FlowWorkflow(BaseModel):
    model_config = ConfigDict(frozen=True)

    graph: FlowGraph = Field(default_factory=FlowGraph)


class FlowDefinition(BaseModel):
    """Complete flow definition"""

    model_config = ConfigDict(frozen=True)

    workflow: FlowWorkflow = Field(default_factory=FlowWorkflow)

    # ========== Construction / Serialization ==========

    @classmethod
    def from_json(cls, payload: str | bytes | dict) -> "FlowDefinition":
        """Parse a definition from a JSON string or an already decoded dict."""
        try:
            if isinstance(payload, dict):
                return cls.model_validate(payload)
            return cls.model_validate_json(payload)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Failed to parse flow definition: {e}") from e

    @classmethod
    def from_yaml(cls, text: str) -> "FlowDefinition":
        """Parse a definition authored as YAML."""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValidationError(f"Failed to parse flow definition: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(
                f"Failed to parse flow definition: expected a mapping, "
                f"got {type(data).__name__}"
            )
        return cls.from_json(data)

    @classmethod
    def from_parts(cls, nodes: list[FlowNode], edges: list[FlowEdge]) -> "FlowDefinition":
        return cls(workflow=FlowWorkflow(graph=FlowGraph(nodes=nodes, edges=edges)))

    def to_json(self) -> dict[str, Any]:
        """Serialize to the JSON wire shape (handles as sourceHandle/targetHandle)."""
        return self.model_dump(mode="json", by_alias=True)

    def to_json_str(self, indent: int | None = None) -> str:
        return json.dumps(self.to_json(), indent=indent)

    # ========== Lookups ==========

    @property
    def nodes(self) -> list[FlowNode]:
        return self.workflow.graph.nodes

    @property
    def edges(self) -> list[FlowEdge]:
        return self.workflow.graph.edges

    def get_node(self, node_id: str) -> FlowNode | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def get_outgoing_edges(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def get_start_nodes(self) -> list[FlowNode]:
        return [n for n in self.nodes if n.node_type == NodeType.START]

    def get_end_nodes(self) -> list[FlowNode]:
        return [n for n in self.nodes if n.node_type == NodeType.END]

    def get_body_nodes(self, parent_id: str) -> list[FlowNode]:
        """Nodes owned by the ITERATION node ``parent_id``."""
        return [n for n in self.nodes if n.parent_id == parent_id]

    # ========== Validation ==========

    def validate(self) -> str | None:  # type: ignore[override]
        """Check structural invariants.

        Returns the first violation as a message, or None when the definition
        is well formed.
        """
        errors = self._structural_errors(first_only=True)
        return errors[0] if errors else None

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure and report every problem found.

        Structural violations come first (the same messages as validate()),
        followed by reachability and loop-control warnings computed with
        NetworkX. Warnings do not make validate() fail.
        """
        errors = self._structural_errors(first_only=False)
        if errors:
            return errors
        return self._structure_warnings()

    def _structural_errors(self, first_only: bool) -> list[str]:
        errors: list[str] = []

        if not self.get_start_nodes():
            errors.append("Flow must have at least one start node")
            if first_only:
                return errors

        if not self.get_end_nodes():
            errors.append("Flow must have at least one end node")
            if first_only:
                return errors

        node_ids: set[str] = set()
        for node in self.nodes:
            if node.id in node_ids:
                errors.append(f"Duplicate node ID: {node.id}")
                if first_only:
                    return errors
            node_ids.add(node.id)

        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge references non-existent source node: {edge.source}")
                if first_only:
                    return errors
            if edge.target not in node_ids:
                errors.append(f"Edge references non-existent target node: {edge.target}")
                if first_only:
                    return errors

        return errors

    def _structure_warnings(self) -> list[str]:
        warnings: list[str] = []
        G = self.to_networkx(include_ownership=True)

        start = self.get_start_nodes()[0]
        reachable = nx.descendants(G, start.id) | {start.id}
        for node in self.nodes:
            if node.id not in reachable:
                warnings.append(
                    f"Node '{node.id}' is unreachable from start node '{start.id}'"
                )

        # Cycles are only bounded when a LOOP node sits on them; otherwise the
        # iteration cap is the only thing that stops them.
        MAX_CYCLES_TO_CHECK = 100
        loop_ids = {n.id for n in self.nodes if n.node_type == NodeType.LOOP}
        for cycle_count, cycle in enumerate(nx.simple_cycles(self.to_networkx()), start=1):
            if cycle_count > MAX_CYCLES_TO_CHECK:
                warnings.append(
                    f"Too many cycles to validate (>{MAX_CYCLES_TO_CHECK}). "
                    f"Simplify graph structure."
                )
                break
            if not loop_ids.intersection(cycle):
                warnings.append(f"Cycle without a loop node: {' -> '.join(cycle)}")

        return warnings

    def to_networkx(self, include_ownership: bool = False) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis.

        With include_ownership, each ITERATION node also gets an edge to every
        body node it owns so that bodies count as reachable.
        """
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        if include_ownership:
            for node in self.nodes:
                if node.parent_id and node.parent_id in G:
                    G.add_edge(node.parent_id, node.id)
        return G

    def topological_levels(self) -> list[list[str]]:
        """Nodes grouped by topological generation (empty when cyclic)"""
        try:
            return [list(level) for level in nx.topological_generations(self.to_networkx())]
        except nx.NetworkXUnfeasible:
            return []
