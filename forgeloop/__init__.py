"""Cached, retryable LLM workflows with a persistent context tree and MCTS branch selection."""

from .artifacts import FileSystemArtifactStore, MemoryArtifactStore, NullArtifactStore, create_store
from .context import ContextNode
from .core.config import Settings, get_settings, load_settings
from .core.logging import configure_logging, get_logger
from .core.errors import (
    CacheWriteConflict,
    ForgeloopError,
    ModelCallError,
    NotAncestorError,
    RetryExhausted,
    StatefulToolCacheWarning,
    StrictOverwriteError,
    ToolExecutionError,
)
from .orchestration import ExecutionEngine, GenerationBuilder, SearchController, load_request_file
from .schemas import Message, OutputFormat, OverwritePolicy
from .services import ModelClientContext
from .tools import FunctionTool, SideEffects, Tool

__all__ = [
    "CacheWriteConflict",
    "ContextNode",
    "ExecutionEngine",
    "FileSystemArtifactStore",
    "ForgeloopError",
    "FunctionTool",
    "GenerationBuilder",
    "MemoryArtifactStore",
    "Message",
    "ModelCallError",
    "ModelClientContext",
    "NotAncestorError",
    "NullArtifactStore",
    "OutputFormat",
    "OverwritePolicy",
    "RetryExhausted",
    "SearchController",
    "Settings",
    "SideEffects",
    "StatefulToolCacheWarning",
    "StrictOverwriteError",
    "Tool",
    "ToolExecutionError",
    "configure_logging",
    "create_store",
    "get_logger",
    "get_settings",
    "load_request_file",
    "load_settings",
]
