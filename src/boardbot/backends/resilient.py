from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from boardbot.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendTimeoutError,
    SessionResult,
)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


class ResilientBackend(AgentBackend):
    """Session timeout, retry with backoff, then failover to a second backend.

    Continuation handles belong to the backend that issued them, so a
    failover starts a fresh session on the fallback.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: str, backend: str, **payload: Any) -> None:
        if self.event_hook:
            self.event_hook({"event": event, "backend": backend, **payload})

    def _chain(self) -> list[tuple[str, AgentBackend]]:
        chain = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            chain.append((self.fallback_name, self.fallback_backend))
        return chain

    async def _session_with_timeout(
        self,
        backend: AgentBackend,
        prompt: str,
        continuation_handle: str | None,
        working_directory: Path | None,
    ) -> SessionResult:
        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(
                backend.run_session(
                    prompt,
                    continuation_handle=continuation_handle,
                    working_directory=working_directory,
                ),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend session timed out after {timeout:.1f}s", retriable=True
            ) from exc

    async def _attempt_backend(
        self,
        name: str,
        backend: AgentBackend,
        prompt: str,
        continuation_handle: str | None,
        working_directory: Path | None,
        errors: list[str],
    ) -> SessionResult | None:
        """Run ``backend`` with retries; ``None`` once it is given up on."""
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt:
                delay = self.retry_policy.delay_for(attempt)
                self._emit("backend_retry", name, attempt=attempt, delay_seconds=delay)
                await asyncio.sleep(delay)
            try:
                result = await self._session_with_timeout(
                    backend, prompt, continuation_handle, working_directory
                )
            except Exception as exc:
                retriable = exc.retriable if isinstance(exc, BackendExecutionError) else True
                errors.append(f"{name}[{attempt}]: {exc}")
                self._emit(
                    "backend_attempt_failed",
                    name,
                    attempt=attempt,
                    error=str(exc),
                    retriable=retriable,
                )
                if not retriable:
                    return None
                continue
            if name != self.primary_name:
                self._emit("backend_fallback_success", name, attempt=attempt)
            return result
        return None

    async def run_session(
        self,
        prompt: str,
        *,
        continuation_handle: str | None = None,
        working_directory: Path | None = None,
    ) -> SessionResult:
        errors: list[str] = []
        for name, backend in self._chain():
            handle = continuation_handle
            if name != self.primary_name:
                handle = None
                self._emit(
                    "backend_failover_start",
                    name,
                    dropped_handle=continuation_handle is not None,
                )
            result = await self._attempt_backend(
                name, backend, prompt, handle, working_directory, errors
            )
            if result is not None:
                return result

        raise BackendExecutionError(
            f"All backend attempts failed. {'; '.join(errors[-6:])}",
            retriable=False,
        )
