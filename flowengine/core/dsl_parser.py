"""Import of Dify workflow DSL documents.

A Dify DSL document is a flat ``{version, kind, nodes, edges, variables,
metadata}`` object, authored as JSON or YAML. Node types use Dify's names
(``if-else``, ``knowledge-retrieval``, ...), which are mapped onto NodeType.
"""

import json
import logging
from enum import Enum
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field

from flowengine.core.errors import ValidationError
from flowengine.core.flow_schema import (
    FlowDefinition,
    FlowEdge,
    FlowNode,
    NodePosition,
    NodeType,
)

logger = logging.getLogger(__name__)

SUPPORTED_VERSION_PREFIXES = ("1.", "2.")

NODE_TYPE_ALIASES: dict[str, NodeType] = {
    "start": NodeType.START,
    "end": NodeType.END,
    "answer": NodeType.ANSWER,
    "llm": NodeType.LLM,
    "llm-chat": NodeType.LLM,
    "llm_chat": NodeType.LLM,
    "knowledge-retrieval": NodeType.VECTOR_SEARCH,
    "knowledge_retrieval": NodeType.VECTOR_SEARCH,
    "vector-search": NodeType.VECTOR_SEARCH,
    "vector_search": NodeType.VECTOR_SEARCH,
    "tool": NodeType.MCP_TOOL,
    "mcp-tool": NodeType.MCP_TOOL,
    "mcp_tool": NodeType.MCP_TOOL,
    "if-else": NodeType.CONDITION,
    "if_else": NodeType.CONDITION,
    "condition": NodeType.CONDITION,
    "loop": NodeType.LOOP,
    "iteration": NodeType.ITERATION,
    "variable": NodeType.VARIABLE,
    "variable-assigner": NodeType.VARIABLE,
    "variable_assigner": NodeType.VARIABLE,
    "http-request": NodeType.HTTP_REQUEST,
    "http_request": NodeType.HTTP_REQUEST,
    "http": NodeType.HTTP_REQUEST,
    "code": NodeType.CODE,
    "code-executor": NodeType.CODE,
    "code_executor": NodeType.CODE,
    "parameter-extractor": NodeType.PARAMETER_EXTRACTOR,
    "parameter_extractor": NodeType.PARAMETER_EXTRACTOR,
}


class VariableType(str, Enum):
    """Declared type of a flow input variable."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


VARIABLE_TYPE_ALIASES: dict[str, VariableType] = {
    "string": VariableType.STRING,
    "text": VariableType.STRING,
    "number": VariableType.NUMBER,
    "integer": VariableType.NUMBER,
    "float": VariableType.NUMBER,
    "boolean": VariableType.BOOLEAN,
    "bool": VariableType.BOOLEAN,
    "array": VariableType.ARRAY,
    "list": VariableType.ARRAY,
    "object": VariableType.OBJECT,
    "dict": VariableType.OBJECT,
    "map": VariableType.OBJECT,
}


# ========== DSL document ==========


class DifyPosition(BaseModel):
    x: float = 0.0
    y: float = 0.0


class DifyNode(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    node_type: str = Field(alias="type")
    title: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    position: DifyPosition = Field(default_factory=DifyPosition)
    parent_id: str | None = Field(default=None, alias="parentId")


class DifyEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")


class DifyVariable(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    variable_type: str = Field(alias="type")
    default_value: Any = Field(default=None, alias="defaultValue")
    required: bool = False
    description: str | None = None


class DifyMetadata(BaseModel):
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    author: str | None = None


class DifyDSL(BaseModel):
    # YAML reads an unquoted "version: 1.0" as a float
    model_config = ConfigDict(coerce_numbers_to_str=True)

    version: str
    kind: str = "workflow"
    nodes: list[DifyNode] = Field(default_factory=list)
    edges: list[DifyEdge] = Field(default_factory=list)
    variables: list[DifyVariable] = Field(default_factory=list)
    metadata: DifyMetadata = Field(default_factory=DifyMetadata)


# ========== Import result ==========


class FlowVariable(BaseModel):
    name: str
    variable_type: VariableType
    default_value: Any = None
    required: bool = False
    description: str | None = None


class FlowMetadata(BaseModel):
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    author: str = "Unknown"
    version: str = "1.0.0"


class DSLImport(BaseModel):
    """A converted flow plus the declared inputs and metadata of the DSL."""

    definition: FlowDefinition
    variables: list[FlowVariable] = Field(default_factory=list)
    metadata: FlowMetadata = Field(default_factory=FlowMetadata)


def map_node_type(dify_type: str) -> NodeType:
    node_type = NODE_TYPE_ALIASES.get(dify_type.lower())
    if node_type is None:
        raise ValidationError(f"Unknown node type: {dify_type}")
    return node_type


def map_variable_type(dify_type: str) -> VariableType:
    variable_type = VARIABLE_TYPE_ALIASES.get(dify_type.lower())
    if variable_type is None:
        raise ValidationError(f"Unknown variable type: {dify_type}")
    return variable_type


class DifyDSLParser:
    """Converts Dify DSL documents into FlowDefinitions."""

    def parse(self, text: str) -> DSLImport:
        """
        Parse and convert a DSL document.

        Raises:
            ValidationError: Unparseable input, unsupported version, unknown
                node or variable type, or a converted definition that fails
                FlowDefinition.validate().
        """
        dsl = self._load(text)
        self._check_version(dsl.version)

        nodes = [
            FlowNode(
                id=node.id,
                node_type=map_node_type(node.node_type),
                title=node.title or None,
                data=node.data,
                position=NodePosition(x=node.position.x, y=node.position.y),
                parent_id=node.parent_id,
            )
            for node in dsl.nodes
        ]
        edges = [
            FlowEdge(
                id=edge.id,
                source=edge.source,
                target=edge.target,
                source_handle=edge.source_handle,
                target_handle=edge.target_handle,
            )
            for edge in dsl.edges
        ]
        variables = [
            FlowVariable(
                name=var.name,
                variable_type=map_variable_type(var.variable_type),
                default_value=var.default_value,
                required=var.required,
                description=var.description,
            )
            for var in dsl.variables
        ]
        metadata = FlowMetadata(
            description=dsl.metadata.description,
            tags=dsl.metadata.tags,
            author=dsl.metadata.author or "Unknown",
        )

        definition = FlowDefinition.from_parts(nodes, edges)
        error = definition.validate()
        if error:
            raise ValidationError(error)

        logger.debug(f"Imported DSL {dsl.version} with {len(nodes)} nodes, {len(edges)} edges")
        return DSLImport(definition=definition, variables=variables, metadata=metadata)

    def validate(self, text: str) -> list[str]:
        """
        Report problems in a DSL document without converting it.

        Returns:
            Warning messages; empty when the document looks importable.

        Raises:
            ValidationError: Unparseable input or unsupported version.
        """
        dsl = self._load(text)
        self._check_version(dsl.version)

        warnings: list[str] = []
        if not dsl.nodes:
            warnings.append("DSL has no nodes")

        types = {node.node_type.lower() for node in dsl.nodes}
        if "start" not in types:
            warnings.append("DSL has no start node")
        if "end" not in types:
            warnings.append("DSL has no end node")

        node_ids: set[str] = set()
        for node in dsl.nodes:
            if node.id in node_ids:
                warnings.append(f"Duplicate node ID: {node.id}")
            node_ids.add(node.id)
            if node.node_type.lower() not in NODE_TYPE_ALIASES:
                warnings.append(f"Unknown node type: {node.node_type}")

        for edge in dsl.edges:
            if edge.source not in node_ids:
                warnings.append(f"Edge references non-existent source node: {edge.source}")
            if edge.target not in node_ids:
                warnings.append(f"Edge references non-existent target node: {edge.target}")

        return warnings

    @staticmethod
    def _load(text: str) -> DifyDSL:
        try:
            raw = json.loads(text)
        except json.JSONDecodeError:
            try:
                raw = yaml.safe_load(text)
            except yaml.YAMLError as e:
                raise ValidationError(f"Failed to parse Dify DSL: {e}") from e

        if not isinstance(raw, dict):
            raise ValidationError("Failed to parse Dify DSL: expected a mapping at the top level")
        try:
            return DifyDSL.model_validate(raw)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Failed to parse Dify DSL: {e}") from e

    @staticmethod
    def _check_version(version: str) -> None:
        if not version.startswith(SUPPORTED_VERSION_PREFIXES):
            raise ValidationError(
                f"Unsupported DSL version: {version}. Supported versions: 1.x, 2.x"
            )
