from boardbot.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    SessionResult,
)
from boardbot.backends.claude import ClaudeCodeBackend
from boardbot.backends.codex import CodexBackend
from boardbot.backends.codex_sdk import CodexSDKBackend
from boardbot.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CodexSDKBackend",
    "ResilientBackend",
    "RetryPolicy",
    "SessionResult",
]
