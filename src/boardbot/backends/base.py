from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


@dataclass(slots=True)
class SessionResult:
    """Structured outcome of one agent session."""

    text: str = ""
    files_modified: list[str] = field(default_factory=list)
    completion_indicators: int = 0
    exit_signal: bool = False
    errors: list[str] = field(default_factory=list)
    session_handle: str | None = None
    pr_url: str | None = None


class AgentBackend(ABC):
    @abstractmethod
    async def run_session(
        self,
        prompt: str,
        *,
        continuation_handle: str | None = None,
        working_directory: Path | None = None,
    ) -> SessionResult:
        """Run one agent session, resuming ``continuation_handle`` when given."""
