from __future__ import annotations

import copy
import threading
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from boardbot.errors import DependencyError, StoreError
from boardbot.models import (
    FeatureKey,
    FeatureToggle,
    Task,
    TaskDependency,
    TaskEvent,
    TaskStatus,
    utcnow_iso,
)
from boardbot.store.base import UNSET, TaskStore, _Unset, validate_fields


class InMemoryTaskStore(TaskStore):
    """Process-local store guarded by one lock; used by tests and single workers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}
        self._dependencies: dict[tuple[str, str], TaskDependency] = {}
        self._toggles: dict[tuple[str, FeatureKey], FeatureToggle] = {}
        self._events: list[TaskEvent] = []

    def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._tasks:
                raise StoreError(f"Task already exists: {task.id}")
            self._tasks[task.id] = copy.deepcopy(task)
            return copy.deepcopy(task)

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task is not None else None

    def list_tasks(
        self, workspace_id: str, statuses: Iterable[TaskStatus] | None = None
    ) -> list[Task]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                copy.deepcopy(task)
                for task in self._tasks.values()
                if task.workspace_id == workspace_id and (wanted is None or task.status in wanted)
            ]

    def _is_blocked_locked(self, task_id: str) -> bool:
        for source, target in self._dependencies:
            if source != task_id:
                continue
            dependency = self._tasks.get(target)
            if dependency is None or dependency.status != TaskStatus.DONE:
                return True
        return False

    def list_candidates(
        self,
        workspace_id: str,
        statuses: Sequence[TaskStatus],
        *,
        exclude_blocked: bool = False,
        max_retries: int | None = None,
    ) -> list[Task]:
        wanted = set(statuses)
        with self._lock:
            candidates: list[Task] = []
            for task in self._tasks.values():
                if task.workspace_id != workspace_id or task.status not in wanted:
                    continue
                if task.parent_task_id is not None or task.assigned_to is not None:
                    continue
                if max_retries is not None and task.retry_count >= max_retries:
                    continue
                if exclude_blocked and self._is_blocked_locked(task.id):
                    continue
                candidates.append(copy.deepcopy(task))
            return candidates

    def list_subtasks(self, parent_task_id: str) -> list[Task]:
        with self._lock:
            return [
                copy.deepcopy(task)
                for task in self._tasks.values()
                if task.parent_task_id == parent_task_id
            ]

    def get_dependencies(self, task_id: str) -> list[TaskDependency]:
        with self._lock:
            return [
                copy.deepcopy(dependency)
                for (source, _), dependency in self._dependencies.items()
                if source == task_id
            ]

    def add_dependency(self, dependency: TaskDependency) -> None:
        key = (dependency.task_id, dependency.depends_on_task_id)
        with self._lock:
            if key in self._dependencies:
                raise DependencyError(f"Dependency already exists: {key[0]} -> {key[1]}")
            self._dependencies[key] = copy.deepcopy(dependency)

    def get_feature_toggles(self, workspace_id: str) -> list[FeatureToggle]:
        with self._lock:
            toggles: list[FeatureToggle] = []
            for feature_key in FeatureKey:
                key = (workspace_id, feature_key)
                if key not in self._toggles:
                    self._toggles[key] = FeatureToggle.default(workspace_id, feature_key)
                toggles.append(copy.deepcopy(self._toggles[key]))
            return toggles

    def set_feature_toggle(self, toggle: FeatureToggle) -> None:
        with self._lock:
            key = (toggle.workspace_id, FeatureKey(toggle.feature_key))
            self._toggles[key] = copy.deepcopy(toggle)

    @staticmethod
    def _owner_matches(task: Task, expected_assignee: str | None | _Unset) -> bool:
        if expected_assignee is UNSET:
            return True
        return task.assigned_to == expected_assignee

    @staticmethod
    def _apply(task: Task, payload: Mapping[str, Any]) -> None:
        for name, value in payload.items():
            setattr(task, name, copy.deepcopy(value))
        task.updated_at = utcnow_iso()

    @staticmethod
    def _stamp(task: Task, new_status: TaskStatus) -> None:
        now = utcnow_iso()
        if new_status == TaskStatus.IN_PROGRESS and task.started_at is None:
            task.started_at = now
        if new_status in {TaskStatus.REVIEW, TaskStatus.DONE}:
            task.completed_at = now

    def compare_and_set_status(
        self,
        task_id: str,
        expected_status: TaskStatus,
        new_status: TaskStatus,
        *,
        assigned_to: str | None | _Unset = UNSET,
        expected_assignee: str | None | _Unset = UNSET,
        fields: Mapping[str, Any] | None = None,
    ) -> int:
        payload = validate_fields(fields or {})
        payload["status"] = TaskStatus(new_status)
        if assigned_to is not UNSET:
            payload["assigned_to"] = assigned_to
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != expected_status:
                return 0
            if not self._owner_matches(task, expected_assignee):
                return 0
            self._apply(task, payload)
            self._stamp(task, payload["status"])
            return 1

    def mark_done_if_not_done(self, task_id: str) -> int:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status == TaskStatus.DONE:
                return 0
            self._apply(task, {"status": TaskStatus.DONE})
            self._stamp(task, TaskStatus.DONE)
            return 1

    def update_execution_fields(
        self,
        task_id: str,
        fields: Mapping[str, Any],
        *,
        expected_assignee: str | None | _Unset = UNSET,
    ) -> int:
        payload = validate_fields(fields)
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or not self._owner_matches(task, expected_assignee):
                return 0
            self._apply(task, payload)
            return 1

    def add_event(self, event: TaskEvent) -> None:
        with self._lock:
            self._events.append(copy.deepcopy(event))

    def list_events(self, task_id: str) -> list[TaskEvent]:
        with self._lock:
            return [copy.deepcopy(event) for event in self._events if event.task_id == task_id]
