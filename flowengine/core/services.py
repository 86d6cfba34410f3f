"""Collaborator contracts consumed by the service-integrated executors.

The engine does not talk to model providers, vector databases or tool
endpoints itself. It depends on these narrow abstract interfaces, which the
surrounding system implements (see in_memory.py for local implementations).
Collaborators are shared across concurrent runs and are stateless from the
engine's point of view.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from flowengine.core.errors import ValidationError

MAX_TOP_K = 10000


# --- LLM ---


class ModelProvider(str, Enum):
    """Supported model providers."""

    OPENAI = "openai"
    CLAUDE = "claude"
    LOCAL_LLM = "local_llm"
    OLLAMA = "ollama"
    HUGGING_FACE = "hugging_face"


class ModelParameters(BaseModel):
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop_sequences: list[str] | None = None
    custom_parameters: dict[str, Any] = Field(default_factory=dict)


class ModelCredentials(BaseModel):
    api_key: str | None = None
    api_base: str | None = None
    organization: str | None = None
    custom_headers: dict[str, str] = Field(default_factory=dict)


class ModelConfig(BaseModel):
    """Provider, model and sampling parameters for a chat completion."""

    model_config = ConfigDict(protected_namespaces=())

    provider: ModelProvider
    model_name: str
    parameters: ModelParameters = Field(default_factory=ModelParameters)
    credentials: ModelCredentials = Field(default_factory=ModelCredentials)


class LLMConfig(BaseModel):
    """A tenant's stored LLM configuration, addressed by UUID."""

    id: str
    tenant_id: str
    name: str
    config: ModelConfig


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    role: MessageRole
    content: str


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class FinishReason(str, Enum):
    """Reason why the completion finished."""

    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    TOOL_CALLS = "tool_calls"
    ERROR = "error"


class ChatResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    content: str
    model_used: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: FinishReason = FinishReason.STOP


# --- Vector search ---


class FilterOperator(str, Enum):
    AND = "and"
    OR = "or"


class ComparisonOperator(str, Enum):
    EQUAL = "equal"
    NOT_EQUAL = "not_equal"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"


class FilterCondition(BaseModel):
    field: str
    operator: ComparisonOperator
    value: Any


class SearchFilter(BaseModel):
    """Metadata filter applied to vector search candidates."""

    conditions: list[FilterCondition] = Field(default_factory=list)
    operator: FilterOperator = FilterOperator.AND


class SearchQuery(BaseModel):
    vector: list[float]
    top_k: int = 10
    filter: SearchFilter | None = None
    namespace: str | None = None
    include_metadata: bool = True
    include_values: bool = False

    @classmethod
    def create(cls, vector: list[float], top_k: int = 10) -> "SearchQuery":
        if not vector:
            raise ValidationError("Search vector cannot be empty")
        if top_k <= 0:
            raise ValidationError("top_k must be greater than 0")
        if top_k > MAX_TOP_K:
            raise ValidationError(f"top_k cannot exceed {MAX_TOP_K}")
        return cls(vector=vector, top_k=top_k)

    @property
    def dimension(self) -> int:
        return len(self.vector)


class SearchResult(BaseModel):
    id: str
    score: float
    vector: list[float] | None = None
    metadata: dict[str, Any] | None = None


# --- Tools ---


class ToolParameterType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


class ToolParameter(BaseModel):
    """Declared parameter of a tool."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    parameter_type: ToolParameterType = Field(alias="type")
    description: str | None = None
    required: bool = False
    default_value: Any = None
    enum_values: list[Any] | None = None


class ToolStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    TESTING = "testing"


class Tool(BaseModel):
    """An externally defined, permissioned callable."""

    id: str
    tenant_id: str
    name: str
    description: str | None = None
    parameters: list[ToolParameter] = Field(default_factory=list)
    status: ToolStatus = ToolStatus.ACTIVE

    def can_access(self, tenant_id: str) -> bool:
        return self.tenant_id == tenant_id


class ToolCallContext(BaseModel):
    tenant_id: str
    user_id: str
    request_id: str
    session_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PermissionCheckResult(BaseModel):
    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> "PermissionCheckResult":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "PermissionCheckResult":
        return cls(allowed=False, reason=reason)


class ToolCallResult(BaseModel):
    success: bool
    result: Any = None
    error: str | None = None
    execution_time_ms: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def succeeded(cls, result: Any, execution_time_ms: int = 0) -> "ToolCallResult":
        return cls(success=True, result=result, execution_time_ms=execution_time_ms)

    @classmethod
    def failed(cls, error: str, execution_time_ms: int = 0) -> "ToolCallResult":
        return cls(success=False, error=error, execution_time_ms=execution_time_ms)


# --- Collaborator interfaces ---


class LLMConfigRepository(ABC):
    @abstractmethod
    async def find_by_id(self, config_id: str) -> LLMConfig | None:
        """Return the configuration or None when it does not exist."""


class LLMService(ABC):
    @abstractmethod
    async def chat_completion(
        self, model_config: ModelConfig, messages: list[ChatMessage], tenant_id: str
    ) -> ChatResponse:
        """Run a chat completion scoped to ``tenant_id``.

        Raises:
            RemoteCallError: The provider call failed.
        """


class VectorSearchService(ABC):
    @abstractmethod
    async def search_vectors(self, query: SearchQuery, tenant_id: str) -> list[SearchResult]:
        """Similarity search scoped to ``tenant_id``."""


class ToolRepository(ABC):
    @abstractmethod
    async def find_by_id(self, tool_id: str) -> Tool | None:
        """Return the tool or None when it does not exist."""


class ToolService(ABC):
    """Permission checks, parameter validation and invocation for tools."""

    @abstractmethod
    async def check_tool_permission(
        self, tool: Tool, context: ToolCallContext
    ) -> PermissionCheckResult: ...

    @abstractmethod
    async def validate_call_parameters(self, tool: Tool, parameters: Any) -> None:
        """Raise ValidationError when ``parameters`` do not match the tool."""

    @abstractmethod
    async def call_tool(
        self, tool: Tool, parameters: Any, context: ToolCallContext
    ) -> ToolCallResult: ...
