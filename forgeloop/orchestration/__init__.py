from .benchmark import (
    BenchmarkResult,
    EliminationTournament,
    SPRTEliminationTournament,
    SPRTResult,
    benchmark_models,
)
from .builder import GenerationBuilder, GenerationConfig, GenerationResult, Outcome, load_request_file
from .engine import EngineResult, ExecutionEngine, ToolCallResult
from .search import SearchChoice, SearchController, SearchNode

__all__ = [
    "BenchmarkResult",
    "EliminationTournament",
    "EngineResult",
    "ExecutionEngine",
    "GenerationBuilder",
    "GenerationConfig",
    "GenerationResult",
    "Outcome",
    "SPRTEliminationTournament",
    "SPRTResult",
    "SearchChoice",
    "SearchController",
    "SearchNode",
    "ToolCallResult",
    "benchmark_models",
    "load_request_file",
]
