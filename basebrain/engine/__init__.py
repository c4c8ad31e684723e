"""Basebrain agent engine: streaming tool loop, gated shell commands, per-turn undo."""
from .models import (
    CommandExecution,
    CommandStatus,
    StreamEvent,
    StreamEventType,
    ToolOutcome,
    TurnPhase,
    TurnState,
)
from .config import EngineConfig
from .errors import (
    BasebrainError,
    CommandConflictError,
    ConflictError,
    InvalidTransitionError,
    ModelServiceError,
    NotFoundError,
    ProcessError,
    StreamError,
    TurnInProgressError,
    ValidationError,
)

__all__ = [
    # Core loop (lazy import to avoid circular deps)
    "AgentLoop",
    "CommandExecutor",
    "ToolDispatcher",
    "SnapshotRecorder",
    "RollbackEngine",
    "RollbackResult",
    # Models
    "CommandExecution",
    "CommandStatus",
    "StreamEvent",
    "StreamEventType",
    "ToolOutcome",
    "TurnPhase",
    "TurnState",
    # Config
    "EngineConfig",
    "load_yaml_config",
    # Providers (lazy import)
    "ModelClient",
    "HttpModelClient",
    # Errors
    "BasebrainError",
    "CommandConflictError",
    "ConflictError",
    "InvalidTransitionError",
    "ModelServiceError",
    "NotFoundError",
    "ProcessError",
    "StreamError",
    "TurnInProgressError",
    "ValidationError",
]


def __getattr__(name: str):
    if name == "AgentLoop":
        from .agent_loop import AgentLoop
        return AgentLoop
    if name == "CommandExecutor":
        from .commands import CommandExecutor
        return CommandExecutor
    if name == "ToolDispatcher":
        from .dispatcher import ToolDispatcher
        return ToolDispatcher
    if name == "SnapshotRecorder":
        from .snapshots import SnapshotRecorder
        return SnapshotRecorder
    if name == "RollbackEngine":
        from .rollback import RollbackEngine
        return RollbackEngine
    if name == "RollbackResult":
        from .rollback import RollbackResult
        return RollbackResult
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ModelClient":
        from .providers.base import ModelClient
        return ModelClient
    if name == "HttpModelClient":
        from .providers.http_provider import HttpModelClient
        return HttpModelClient
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
