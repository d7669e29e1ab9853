from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from boardbot import events, prompts
from boardbot.backends import AgentBackend, SessionResult
from boardbot.config import ExecutionConfig
from boardbot.errors import StoreError, StoreUnavailableError
from boardbot.events import EventEmitter
from boardbot.models import Task
from boardbot.store import UNSET, TaskStore

logger = logging.getLogger(__name__)

REQUIRED_INDICATORS = 2


class LoopOutcome(str, Enum):
    COMPLETED = "completed"
    CIRCUIT_BROKEN = "circuit_broken"
    MAX_LOOPS_REACHED = "max_loops_reached"
    FAILED = "failed"


COMPLETION_NOTES = {
    LoopOutcome.COMPLETED: "Task completed: exit conditions met (indicators + signal)",
    LoopOutcome.CIRCUIT_BROKEN: "Circuit breaker: no progress after {no_progress} loops",
    LoopOutcome.FAILED: "Circuit breaker: error threshold exceeded ({errors} errors)",
    LoopOutcome.MAX_LOOPS_REACHED: "Max loops reached without clear completion signal",
}


@dataclass(slots=True)
class ExecutionContext:
    loop_count: int = 0
    error_count: int = 0
    files_changed: list[str] = field(default_factory=list)
    last_progress_loop: int = 0
    completion_indicators: int = 0
    exit_signal: bool = False
    session_handle: str | None = None
    pr_url: str | None = None
    last_output: str = ""

    def merge_files(self, paths: Iterable[str]) -> list[str]:
        """Add unseen paths and return the ones that were new."""
        added: list[str] = []
        for path in paths:
            if path and path not in self.files_changed:
                self.files_changed.append(path)
                added.append(path)
        return added

    def absorb(self, result: SessionResult) -> list[str]:
        if result.session_handle:
            self.session_handle = result.session_handle
        if result.pr_url:
            self.pr_url = result.pr_url
        added = self.merge_files(result.files_modified)
        if added:
            self.last_progress_loop = self.loop_count
        self.completion_indicators += max(0, result.completion_indicators)
        # Only the latest signal counts.
        self.exit_signal = result.exit_signal
        self.last_output = result.text
        return added

    def should_exit(self) -> bool:
        return self.completion_indicators >= REQUIRED_INDICATORS and self.exit_signal

    def loops_without_progress(self) -> int:
        return self.loop_count - self.last_progress_loop


@dataclass(slots=True)
class ExecutionResult:
    outcome: LoopOutcome
    loop_count: int
    error_count: int
    files_changed: list[str]
    completion_notes: str
    session_handle: str | None = None
    pr_url: str | None = None
    last_output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == LoopOutcome.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "loop_count": self.loop_count,
            "error_count": self.error_count,
            "files_changed": list(self.files_changed),
            "completion_notes": self.completion_notes,
            "session_handle": self.session_handle,
            "pr_url": self.pr_url,
        }


class ExecutionLoopEngine:
    def __init__(
        self,
        backend: AgentBackend,
        store: TaskStore,
        *,
        settings: ExecutionConfig | None = None,
        emitter: EventEmitter | None = None,
        worker: str | None = None,
        working_directory: Path | None = None,
    ) -> None:
        self.backend = backend
        self.store = store
        self.settings = settings or ExecutionConfig()
        self.emitter = emitter or EventEmitter(store)
        self.worker = worker
        self.working_directory = working_directory

    def _prompt_for(self, task: Task, context: ExecutionContext, fix: str | None) -> str:
        if context.loop_count == 1:
            return prompts.initial_prompt(task, fix)
        return prompts.continuation_prompt(context.files_changed, context.loop_count)

    async def _checkpoint(self, task: Task, context: ExecutionContext) -> None:
        merged = list(task.files_changed)
        merged.extend(path for path in context.files_changed if path not in merged)
        fields = {
            "loop_count": task.loop_count + context.loop_count,
            "error_count": task.error_count + context.error_count,
            "files_changed": merged,
            "agent_session_handle": context.session_handle,
        }
        try:
            await asyncio.to_thread(
                self.store.update_execution_fields,
                task.id,
                fields,
                expected_assignee=self.worker if self.worker is not None else UNSET,
            )
        except StoreUnavailableError:
            raise
        except StoreError:
            logger.warning("Checkpoint failed for task %s", task.id, exc_info=True)

    def _report_loop(self, task: Task, context: ExecutionContext, added: list[str]) -> None:
        loop = context.loop_count
        if added:
            shown = ", ".join(added[:3])
            more = f" (+{len(added) - 3} more)" if len(added) > 3 else ""
            self.emitter.emit(
                task.id,
                events.PROGRESS,
                f"Modified {len(added)} file(s): {shown}{more}",
                loop_number=loop,
            )
        every = max(1, self.settings.progress_event_every)
        if (loop - 1) % every == 0:
            self.emitter.emit(
                task.id,
                events.PROGRESS,
                f"Loop {loop}: {len(context.files_changed)} files changed, "
                f"{context.completion_indicators} completion indicators",
                loop_number=loop,
            )

    def _tripped(self, context: ExecutionContext) -> LoopOutcome | None:
        if context.loops_without_progress() >= self.settings.no_progress_loops:
            return LoopOutcome.CIRCUIT_BROKEN
        if context.error_count >= self.settings.circuit_breaker_threshold:
            return LoopOutcome.FAILED
        return None

    def _finish(
        self, task: Task, context: ExecutionContext, outcome: LoopOutcome
    ) -> ExecutionResult:
        notes = COMPLETION_NOTES[outcome].format(
            no_progress=self.settings.no_progress_loops,
            errors=context.error_count,
        )
        logger.info(
            "Task %s finished with %s after %d loop(s), %d error(s)",
            task.id,
            outcome.value,
            context.loop_count,
            context.error_count,
        )
        self.emitter.emit(
            task.id,
            events.SUMMARY,
            f"{notes}. Loops: {context.loop_count}, files changed: "
            f"{len(context.files_changed)}, errors: {context.error_count}",
            loop_number=context.loop_count,
        )
        return ExecutionResult(
            outcome=outcome,
            loop_count=context.loop_count,
            error_count=context.error_count,
            files_changed=list(context.files_changed),
            completion_notes=notes,
            session_handle=context.session_handle,
            pr_url=context.pr_url,
            last_output=context.last_output,
        )

    async def run(self, task: Task, *, fix_instructions: str | None = None) -> ExecutionResult:
        context = ExecutionContext(session_handle=task.agent_session_handle)
        max_loops = max(1, self.settings.max_loops)

        for loop in range(1, max_loops + 1):
            context.loop_count = loop
            prompt = self._prompt_for(task, context, fix_instructions)
            try:
                result = await self.backend.run_session(
                    prompt,
                    continuation_handle=context.session_handle,
                    working_directory=self.working_directory,
                )
            except Exception as exc:
                context.error_count += 1
                logger.warning("Task %s loop %d: agent invocation failed: %s", task.id, loop, exc)
                self.emitter.emit(
                    task.id, events.ERROR, f"Agent invocation failed: {exc}", loop_number=loop
                )
                await self._checkpoint(task, context)
                outcome = self._tripped(context)
                if outcome is not None:
                    return self._finish(task, context, outcome)
                continue

            added = context.absorb(result)
            self._report_loop(task, context, added)

            if context.should_exit():
                await self._checkpoint(task, context)
                return self._finish(task, context, LoopOutcome.COMPLETED)

            if result.errors:
                context.error_count += len(result.errors)
                self.emitter.emit(
                    task.id,
                    events.ERROR,
                    "Errors: " + "; ".join(result.errors[:3]),
                    loop_number=loop,
                )

            await self._checkpoint(task, context)
            outcome = self._tripped(context)
            if outcome is not None:
                return self._finish(task, context, outcome)

        return self._finish(task, context, LoopOutcome.MAX_LOOPS_REACHED)
