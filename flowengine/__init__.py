"""flowengine - declarative AI agent flow execution.

Walks node/edge flow graphs (LLM calls, vector search, tools, branches, loops)
against tenant-scoped collaborators and reports a terminal outcome.
"""

__version__ = "0.1.0"
