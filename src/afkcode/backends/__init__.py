from afkcode.backends.base import (
    AgentBackend,
    AllBackendsExhaustedError,
    BackendDescriptor,
    BackendExecutionError,
    BackendProcessError,
    BackendReply,
    BackendTimeoutError,
    TurnOutcome,
)
from afkcode.backends.catalog import (
    KNOWN_BACKENDS,
    build_backend,
    build_descriptor,
    build_descriptors,
    parse_backend_order,
)
from afkcode.backends.chain import BackendChain
from afkcode.backends.claude import ClaudeCodeBackend
from afkcode.backends.codex import CodexBackend
from afkcode.backends.executor import TurnExecutor, TurnResult
from afkcode.backends.gemini import GeminiBackend
from afkcode.backends.warp import WarpAgentBackend

__all__ = [
    "KNOWN_BACKENDS",
    "AgentBackend",
    "AllBackendsExhaustedError",
    "BackendChain",
    "BackendDescriptor",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendReply",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "GeminiBackend",
    "TurnExecutor",
    "TurnOutcome",
    "TurnResult",
    "WarpAgentBackend",
    "build_backend",
    "build_descriptor",
    "build_descriptors",
    "parse_backend_order",
]
