"""Pre-wired ExecutionEngine configurations."""

from flowengine.core.config import EngineConfig
from flowengine.core.engine import ExecutionEngine
from flowengine.core.iteration import IterationNodeExecutor
from flowengine.core.node_executors import (
    AnswerNodeExecutor,
    CodeNodeExecutor,
    ConditionNodeExecutor,
    EndNodeExecutor,
    HttpRequestNodeExecutor,
    LoopNodeExecutor,
    NodeExecutor,
    StartNodeExecutor,
    VariableNodeExecutor,
)
from flowengine.core.service_executors import (
    LLMNodeExecutor,
    MCPToolNodeExecutor,
    ParameterExtractorNodeExecutor,
    VectorSearchNodeExecutor,
)
from flowengine.core.services import (
    LLMConfigRepository,
    LLMService,
    ToolRepository,
    ToolService,
    VectorSearchService,
)


def _basic_executors() -> list[NodeExecutor]:
    return [
        StartNodeExecutor(),
        EndNodeExecutor(),
        VariableNodeExecutor(),
        ConditionNodeExecutor(),
        LoopNodeExecutor(),
        CodeNodeExecutor(),
        HttpRequestNodeExecutor(),
        AnswerNodeExecutor(),
        IterationNodeExecutor(),
    ]


class ExecutionEngineFactory:
    """Builds engines with a standard executor set, optionally configured."""

    @staticmethod
    def create_with_executors(
        executors: list[NodeExecutor], config: EngineConfig | None = None
    ) -> ExecutionEngine:
        config = config or EngineConfig()
        return ExecutionEngine(
            executors,
            max_iterations=config.max_iterations,
            run_timeout=config.run_timeout_seconds,
        )

    @classmethod
    def create_basic(cls, config: EngineConfig | None = None) -> ExecutionEngine:
        """Engine for flows that need no external services."""
        return cls.create_with_executors(_basic_executors(), config)

    @classmethod
    def create_with_services(
        cls,
        llm_service: LLMService,
        llm_config_repository: LLMConfigRepository,
        vector_service: VectorSearchService,
        tool_service: ToolService,
        tool_repository: ToolRepository,
        config: EngineConfig | None = None,
    ) -> ExecutionEngine:
        """Basic executors plus LLM, vector search, MCP tool and parameter extraction."""
        retry_defaults = (config or EngineConfig()).remote_retry.to_policy()
        executors = _basic_executors() + [
            LLMNodeExecutor(llm_service, llm_config_repository, retry_defaults),
            VectorSearchNodeExecutor(vector_service, retry_defaults),
            MCPToolNodeExecutor(tool_service, tool_repository, retry_defaults),
            ParameterExtractorNodeExecutor(llm_service, llm_config_repository, retry_defaults),
        ]
        return cls.create_with_executors(executors, config)
