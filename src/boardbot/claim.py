from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from boardbot import events
from boardbot.dependencies import DependencyResolver
from boardbot.errors import TransitionError
from boardbot.events import EventEmitter
from boardbot.models import Task, TaskStatus, branch_name_for
from boardbot.selector import Candidate
from boardbot.store import TaskStore
from boardbot.workflow import WorkflowGates

logger = logging.getLogger(__name__)

# Fix and intake work is executed; verification and refinement are owned in place.
CLAIM_TARGETS: dict[TaskStatus, TaskStatus] = {
    TaskStatus.TODO: TaskStatus.IN_PROGRESS,
    TaskStatus.REVIEW_REJECTED: TaskStatus.IN_PROGRESS,
    TaskStatus.TEST_FAILED: TaskStatus.IN_PROGRESS,
    TaskStatus.AI_REVIEW: TaskStatus.AI_REVIEW,
    TaskStatus.TESTING: TaskStatus.TESTING,
    TaskStatus.REFINEMENT: TaskStatus.REFINEMENT,
}


class ClaimProtocol:
    """Ownership changes for one worker, all expressed as conditional updates."""

    def __init__(
        self,
        store: TaskStore,
        worker: str,
        *,
        emitter: EventEmitter | None = None,
        resolver: DependencyResolver | None = None,
    ) -> None:
        self.store = store
        self.worker = worker
        self.emitter = emitter or EventEmitter(store, author=worker)
        self.resolver = resolver or DependencyResolver(store)

    def claim(self, candidate: Candidate) -> Task | None:
        """Take ownership of ``candidate``; ``None`` means another worker won."""
        task = candidate.task
        source = candidate.tier_status
        target = CLAIM_TARGETS.get(source)
        if target is None:
            raise TransitionError(source.value, "claimed", "status is not claimable")

        fields: dict[str, Any] = {}
        if target == TaskStatus.IN_PROGRESS and not task.branch_name:
            fields["branch_name"] = branch_name_for(task)

        affected = self.store.compare_and_set_status(
            task.id,
            source,
            target,
            assigned_to=self.worker,
            expected_assignee=None,
            fields=fields,
        )
        if not affected:
            logger.info("Lost claim race for task %s (%s)", task.id, source.value)
            return None

        logger.info("Claimed task %s: %s -> %s", task.id, source.value, target.value)
        self.emitter.emit(
            task.id,
            events.CLAIM,
            f"Claimed by {self.worker} ({source.value} -> {target.value})",
        )
        return self.store.get_task(task.id)

    def release(
        self,
        task: Task,
        *,
        status: TaskStatus | None = None,
        fields: Mapping[str, Any] | None = None,
    ) -> bool:
        """Drop ownership, optionally moving the task and writing fields."""
        target = status or task.status
        affected = self.store.compare_and_set_status(
            task.id,
            task.status,
            target,
            assigned_to=None,
            expected_assignee=self.worker,
            fields=fields,
        )
        if not affected:
            logger.warning(
                "Could not release task %s: no longer %s/%s",
                task.id,
                task.status.value,
                self.worker,
            )
            return False
        return True

    def advance(
        self,
        task: Task,
        target: TaskStatus,
        gates: WorkflowGates,
        *,
        fields: Mapping[str, Any] | None = None,
        reason: str = "",
    ) -> bool:
        """Validate ``task.status -> target`` against the active workflow and release into it."""
        if target != task.status:
            gates.require_transition(task.status, target)
        if not self.release(task, status=target, fields=fields):
            return False

        message = f"{task.status.value} -> {target.value}"
        if reason:
            message = f"{message}: {reason}"
        logger.info("Task %s %s", task.id, message)
        self.emitter.emit(task.id, events.STATUS_CHANGE, message)

        if target == TaskStatus.DONE:
            finished = self.store.get_task(task.id)
            if finished is not None:
                self.resolver.try_auto_complete_parent(finished)
        return True
