from __future__ import annotations

import logging
from collections.abc import Collection, Iterator
from dataclasses import dataclass

from boardbot import events
from boardbot.dependencies import DependencyResolver
from boardbot.events import EventEmitter
from boardbot.models import REFINED_LABEL, REVIEW_APPROVED_LABEL, Task, TaskStatus
from boardbot.store import TaskStore
from boardbot.workflow import WorkflowGates

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Tier:
    name: str
    statuses: tuple[TaskStatus, ...]


TIERS: tuple[Tier, ...] = (
    Tier("fix", (TaskStatus.REVIEW_REJECTED, TaskStatus.TEST_FAILED)),
    Tier("verification", (TaskStatus.AI_REVIEW, TaskStatus.TESTING)),
    Tier("intake", (TaskStatus.TODO,)),
    Tier("refinement", (TaskStatus.REFINEMENT,)),
)

_SKIP_LABELS: dict[str, str] = {
    "verification": REVIEW_APPROVED_LABEL,
    "refinement": REFINED_LABEL,
}


@dataclass(frozen=True, slots=True)
class Candidate:
    task: Task
    tier: str

    @property
    def tier_status(self) -> TaskStatus:
        return self.task.status


def selection_key(task: Task) -> tuple[int, str, int, str]:
    return (task.priority.rank, task.created_at, task.order, task.id)


class PrioritySelector:
    """Picks the next unit of work across tiers in fixed precedence."""

    def __init__(
        self,
        store: TaskStore,
        *,
        resolver: DependencyResolver | None = None,
        emitter: EventEmitter | None = None,
        max_retries: int = 3,
    ) -> None:
        self.store = store
        self.resolver = resolver or DependencyResolver(store)
        self.emitter = emitter
        self.max_retries = max_retries
        self._reported_cycles: set[str] = set()

    def _tier_candidates(
        self, workspace_id: str, tier: Tier, gates: WorkflowGates
    ) -> list[Task]:
        statuses = [status for status in tier.statuses if gates.is_stage_active(status)]
        if not statuses:
            return []
        ready = self.store.list_candidates(
            workspace_id,
            statuses,
            exclude_blocked=True,
            max_retries=self.max_retries,
        )
        self._diagnose_blocked(workspace_id, statuses, {task.id for task in ready})
        skip_label = _SKIP_LABELS.get(tier.name)
        if skip_label is not None:
            ready = [task for task in ready if not task.has_label(skip_label)]
        return sorted(ready, key=selection_key)

    def _diagnose_blocked(
        self, workspace_id: str, statuses: list[TaskStatus], ready_ids: set[str]
    ) -> None:
        everything = self.store.list_candidates(
            workspace_id, statuses, max_retries=self.max_retries
        )
        for task in everything:
            if task.id in ready_ids:
                continue
            cycle = self.resolver.find_cycle(task.id)
            if cycle is None:
                continue
            message = "Task is blocked by a dependency cycle: " + " -> ".join(cycle)
            logger.warning("task %s: %s", task.id, message)
            if task.id not in self._reported_cycles and self.emitter is not None:
                self._reported_cycles.add(task.id)
                self.emitter.emit(task.id, events.DEPENDENCY_CYCLE, message)

    def iter_candidates(
        self,
        workspace_id: str,
        gates: WorkflowGates,
        *,
        exclude_ids: Collection[str] = (),
    ) -> Iterator[Candidate]:
        for tier in TIERS:
            for task in self._tier_candidates(workspace_id, tier, gates):
                if task.id in exclude_ids:
                    continue
                yield Candidate(task=task, tier=tier.name)

    def select_next(
        self,
        workspace_id: str,
        gates: WorkflowGates,
        *,
        exclude_ids: Collection[str] = (),
    ) -> Candidate | None:
        return next(self.iter_candidates(workspace_id, gates, exclude_ids=exclude_ids), None)
