from __future__ import annotations


class BoardbotError(RuntimeError):
    """Base class for orchestration failures."""


class StoreError(BoardbotError):
    """Raised when a task store operation fails."""


class StoreUnavailableError(StoreError):
    """Raised when the task store cannot be reached at all."""


class TransitionError(BoardbotError):
    """Raised when a status change is not allowed by the active workflow."""

    def __init__(self, current: str, target: str, reason: str = "") -> None:
        message = f"Invalid transition {current} -> {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.target = target


class DependencyError(BoardbotError):
    """Raised when a dependency edge would violate graph constraints."""
