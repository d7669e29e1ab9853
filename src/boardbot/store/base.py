from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Final

from boardbot.errors import StoreError
from boardbot.models import FeatureToggle, Task, TaskDependency, TaskEvent, TaskStatus


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Final = _Unset()

EXECUTION_FIELDS = frozenset(
    {
        "loop_count",
        "error_count",
        "retry_count",
        "files_changed",
        "completion_notes",
        "status",
        "agent_session_handle",
        "review_rounds",
        "labels",
        "title",
        "description",
        "branch_name",
        "pr_url",
        "started_at",
        "completed_at",
    }
)


class TaskStore(ABC):
    """Narrow persistence contract the orchestration core relies on.

    Every mutation that can race with another worker is a conditional
    update returning the number of affected rows; callers treat ``0`` as
    "someone else got there first" and never as an error.
    """

    @abstractmethod
    def create_task(self, task: Task) -> Task:
        """Persist a new task and return the stored copy."""

    @abstractmethod
    def get_task(self, task_id: str) -> Task | None:
        """Return the task or ``None`` when it does not exist."""

    @abstractmethod
    def list_tasks(
        self, workspace_id: str, statuses: Iterable[TaskStatus] | None = None
    ) -> list[Task]:
        """Return workspace tasks, optionally restricted to ``statuses``."""

    @abstractmethod
    def list_candidates(
        self,
        workspace_id: str,
        statuses: Sequence[TaskStatus],
        *,
        exclude_blocked: bool = False,
        max_retries: int | None = None,
    ) -> list[Task]:
        """Return unassigned top-level tasks in ``statuses``.

        ``exclude_blocked`` drops tasks with an unfinished dependency and
        ``max_retries`` drops tasks whose failed passes reached the ceiling.
        Ordering is left to the caller.
        """

    @abstractmethod
    def list_subtasks(self, parent_task_id: str) -> list[Task]:
        """Return all tasks whose parent is ``parent_task_id``."""

    @abstractmethod
    def get_dependencies(self, task_id: str) -> list[TaskDependency]:
        """Return the edges ``task_id -> depends_on_task_id``."""

    @abstractmethod
    def add_dependency(self, dependency: TaskDependency) -> None:
        """Insert an edge; raises ``DependencyError`` on a duplicate pair."""

    @abstractmethod
    def get_feature_toggles(self, workspace_id: str) -> list[FeatureToggle]:
        """Return every feature toggle, creating missing ones with defaults."""

    @abstractmethod
    def set_feature_toggle(self, toggle: FeatureToggle) -> None:
        """Insert or replace a feature toggle."""

    @abstractmethod
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
        """Move ``task_id`` to ``new_status`` only if it is still in ``expected_status``.

        ``expected_assignee`` adds an ownership guard (``None`` means
        unassigned). ``assigned_to`` rewrites ownership and ``fields`` writes
        execution fields in the same conditional update. Entering
        ``in_progress`` stamps ``started_at`` once; entering ``review`` or
        ``done`` stamps ``completed_at``.
        """

    @abstractmethod
    def mark_done_if_not_done(self, task_id: str) -> int:
        """Set ``done`` unless the task already is; returns affected rows."""

    @abstractmethod
    def update_execution_fields(
        self,
        task_id: str,
        fields: Mapping[str, Any],
        *,
        expected_assignee: str | None | _Unset = UNSET,
    ) -> int:
        """Write execution telemetry, optionally guarded by current ownership."""

    @abstractmethod
    def add_event(self, event: TaskEvent) -> None:
        """Append an observability event."""

    @abstractmethod
    def list_events(self, task_id: str) -> list[TaskEvent]:
        """Return events for ``task_id`` oldest first."""


def validate_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - EXECUTION_FIELDS
    if unknown:
        raise StoreError(f"Unsupported execution fields: {', '.join(sorted(unknown))}")
    payload = dict(fields)
    if "status" in payload:
        payload["status"] = TaskStatus(payload["status"])
    return payload
