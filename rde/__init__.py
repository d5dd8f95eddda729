"""RDE - Recursive Decomposition Engine.

Handles inputs far larger than a model's context window.  The input is
stored outside the prompt and exposed to a Python REPL as ``CONTEXT``; the
model writes code to inspect it, hands slices to sub-model calls or to
recursive copies of itself, and finishes with ``FINAL(...)``.  Depth,
sub-call, concurrency, iteration and wall-clock budgets bound the work.

Example:
    >>> from rde import Engine, EngineConfig
    >>> from rde.backends import AnthropicBackend
    >>>
    >>> engine = Engine(AnthropicBackend(), model="claude-sonnet-4-20250514")
    >>> outcome = engine.process(
    ...     Path("service.log"),
    ...     EngineConfig(max_iterations=8, max_depth=2),
    ...     query="Which request ids failed, and why?",
    ... )
    >>> print(outcome.kind, outcome.text)
"""

from .backends import (
    AnthropicBackend,
    CallbackBackend,
    ClaudeCLIBackend,
    CompletionResult,
    LLMBackend,
    OpenAICompatibleBackend,
    TokenUsage,
)
from .config import ConfigError, RDEConfig, load_config, resolve_role
from .context import ContextArtifact, ContextStore, ContextView, LazyContext, StringContext
from .dispatch import (
    Deadline,
    SubcallBudget,
    SubcallDispatcher,
    SubcallKind,
    SubcallRecord,
    SubcallStatus,
)
from .engine import Engine, EngineConfig, EngineLoop, EngineResult, estimate_tokens
from .errors import (
    BudgetExceeded,
    DepthExceeded,
    EnvironmentStartError,
    FragmentRuntimeError,
    ModelRequestFailed,
    PolicyLimit,
    RDEError,
    SubcallFailed,
    SubcallTimeout,
    UnsupportedContent,
    WallTimeExceeded,
)
from .repl import ExecutionResult, FinalSignal, REPLEnv
from .trajectory import (
    EngineStats,
    Exhausted,
    FinalAnswer,
    FinalFromVariable,
    Iteration,
    JSONLTrajectorySink,
    MemoryTrajectorySink,
    Outcome,
    Trajectory,
    is_exhausted,
)

__version__ = "0.1.0"

__all__ = [
    "Engine",
    "EngineConfig",
    "EngineLoop",
    "EngineResult",
    "EngineStats",
    "estimate_tokens",
    "Outcome",
    "FinalAnswer",
    "FinalFromVariable",
    "Exhausted",
    "is_exhausted",
    "Iteration",
    "Trajectory",
    "JSONLTrajectorySink",
    "MemoryTrajectorySink",
    "ContextArtifact",
    "ContextStore",
    "ContextView",
    "LazyContext",
    "StringContext",
    "REPLEnv",
    "ExecutionResult",
    "FinalSignal",
    "SubcallDispatcher",
    "SubcallRecord",
    "SubcallKind",
    "SubcallStatus",
    "SubcallBudget",
    "Deadline",
    "LLMBackend",
    "AnthropicBackend",
    "OpenAICompatibleBackend",
    "ClaudeCLIBackend",
    "CallbackBackend",
    "CompletionResult",
    "TokenUsage",
    "RDEConfig",
    "ConfigError",
    "load_config",
    "resolve_role",
    "RDEError",
    "UnsupportedContent",
    "EnvironmentStartError",
    "ModelRequestFailed",
    "PolicyLimit",
    "DepthExceeded",
    "BudgetExceeded",
    "WallTimeExceeded",
    "FragmentRuntimeError",
    "SubcallTimeout",
    "SubcallFailed",
]
