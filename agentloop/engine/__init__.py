"""Agent loop engine: drives agent CLIs and tracks their sessions."""
from .models import (
    ErrorKind,
    FolderSession,
    IterationRecord,
    IterationStatus,
    ProcessHandle,
    ProviderKind,
    ProviderStatus,
    SessionKind,
)
from .config import COMPLETION_SENTINEL, LoopConfig
from .errors import (
    AgentLoopError,
    IterationError,
    LaunchError,
    PersistenceError,
    ProviderRuntimeError,
    ProviderUnavailableError,
)
from .line_buffer import LineBuffer, LineBufferDemux
from .session_store import SessionStore, StoreSnapshot

__all__ = [
    # Top-level wiring (lazy import to avoid circular deps)
    "AgentLoop",
    # Models
    "ErrorKind",
    "FolderSession",
    "IterationRecord",
    "IterationStatus",
    "ProcessHandle",
    "ProviderKind",
    "ProviderStatus",
    "SessionKind",
    # Config
    "COMPLETION_SENTINEL",
    "LoopConfig",
    # YAML config (lazy import)
    "AgentLoopConfig",
    "load_yaml_config",
    # Core components
    "LineBuffer",
    "LineBufferDemux",
    "SessionStore",
    "StoreSnapshot",
    "ProcessRegistry",
    "SessionIdReconciler",
    "IterationController",
    "SubprocessLauncher",
    # Providers (lazy import)
    "Provider",
    "ProviderRegistry",
    "ClaudeCodeProvider",
    "AmpProvider",
    # Errors
    "AgentLoopError",
    "IterationError",
    "LaunchError",
    "PersistenceError",
    "ProviderRuntimeError",
    "ProviderUnavailableError",
]


def __getattr__(name: str):
    if name == "AgentLoop":
        from .runtime import AgentLoop
        return AgentLoop
    if name == "AgentLoopConfig":
        from .yaml_config import AgentLoopConfig
        return AgentLoopConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ProcessRegistry":
        from .process_registry import ProcessRegistry
        return ProcessRegistry
    if name == "SessionIdReconciler":
        from .reconciler import SessionIdReconciler
        return SessionIdReconciler
    if name == "IterationController":
        from .iteration import IterationController
        return IterationController
    if name == "SubprocessLauncher":
        from .launcher import SubprocessLauncher
        return SubprocessLauncher
    if name == "Provider":
        from .providers.base import Provider
        return Provider
    if name == "ProviderRegistry":
        from .providers.registry import ProviderRegistry
        return ProviderRegistry
    if name == "ClaudeCodeProvider":
        from .providers.claude_provider import ClaudeCodeProvider
        return ClaudeCodeProvider
    if name == "AmpProvider":
        from .providers.amp_provider import AmpProvider
        return AmpProvider
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
