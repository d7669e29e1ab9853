from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Closed task lifecycle, declared in board order."""

    BACKLOG = "backlog"
    REFINEMENT = "refinement"
    TODO = "todo"
    REVIEW_REJECTED = "review_rejected"
    TEST_FAILED = "test_failed"
    IN_PROGRESS = "in_progress"
    TESTING = "testing"
    AI_REVIEW = "ai_review"
    REVIEW = "review"
    DONE = "done"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Sort key, lower runs first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.URGENT: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


class FeatureKey(str, Enum):
    REFINEMENT = "refinement"
    AI_REVIEW = "ai_review"
    LOCAL_TESTING = "local_testing"


DEFAULT_FEATURE_CONFIGS: dict[FeatureKey, dict[str, Any]] = {
    FeatureKey.REFINEMENT: {"auto_advance": True},
    FeatureKey.AI_REVIEW: {"auto_advance_on_approve": True, "max_review_rounds": 3},
    FeatureKey.LOCAL_TESTING: {"auto_advance_on_approve": True, "max_review_rounds": 3},
}

REFINED_LABEL = "refined"
REVIEW_APPROVED_LABEL = "review_approved"


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_task_id() -> str:
    return str(uuid.uuid4())


@dataclass(slots=True)
class Task:
    id: str
    workspace_id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.BACKLOG
    priority: Priority = Priority.MEDIUM
    task_list_id: str | None = None
    parent_task_id: str | None = None
    labels: list[str] = field(default_factory=list)
    assignee: str | None = None
    assigned_to: str | None = None
    order: int = 0
    loop_count: int = 0
    error_count: int = 0
    retry_count: int = 0
    files_changed: list[str] = field(default_factory=list)
    completion_notes: str | None = None
    pr_url: str | None = None
    branch_name: str | None = None
    agent_session_handle: str | None = None
    review_rounds: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def is_subtask(self) -> bool:
        return self.parent_task_id is not None

    def has_label(self, label: str) -> bool:
        return label in self.labels

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "task_list_id": self.task_list_id,
            "parent_task_id": self.parent_task_id,
            "labels": list(self.labels),
            "assignee": self.assignee,
            "assigned_to": self.assigned_to,
            "order": self.order,
            "loop_count": self.loop_count,
            "error_count": self.error_count,
            "retry_count": self.retry_count,
            "files_changed": list(self.files_changed),
            "completion_notes": self.completion_notes,
            "pr_url": self.pr_url,
            "branch_name": self.branch_name,
            "agent_session_handle": self.agent_session_handle,
            "review_rounds": self.review_rounds,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        payload = dict(data)
        payload["status"] = TaskStatus(payload.get("status", TaskStatus.BACKLOG.value))
        payload["priority"] = Priority(payload.get("priority", Priority.MEDIUM.value))
        payload["labels"] = list(payload.get("labels") or [])
        payload["files_changed"] = list(payload.get("files_changed") or [])
        return cls(**payload)


@dataclass(slots=True)
class TaskDependency:
    task_id: str
    depends_on_task_id: str
    workspace_id: str
    created_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class FeatureToggle:
    workspace_id: str
    feature_key: FeatureKey
    enabled: bool = False
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def default(cls, workspace_id: str, feature_key: FeatureKey) -> FeatureToggle:
        return cls(
            workspace_id=workspace_id,
            feature_key=feature_key,
            enabled=False,
            config=dict(DEFAULT_FEATURE_CONFIGS[feature_key]),
        )


@dataclass(slots=True)
class TaskEvent:
    task_id: str
    event_type: str
    message: str
    author: str = "boardbot"
    loop_number: int | None = None
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "event_type": self.event_type,
            "message": self.message,
            "author": self.author,
            "loop_number": self.loop_number,
            "created_at": self.created_at,
        }


_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
_PR_NUMBER_PATTERN = re.compile(r"/pull/(\d+)")
_REPO_SLUG_PATTERN = re.compile(r"github\.com[/:]([^/]+/[^/.]+)")


def branch_name_for(task: Task) -> str:
    """Deterministic work branch, e.g. ``task/1a2b3c4d/fix-login-redirect``."""
    slug = _SLUG_PATTERN.sub("-", task.title.lower()).strip("-")[:40].rstrip("-")
    return f"task/{task.id[:8]}/{slug or 'work'}"


def pr_number_from_url(pr_url: str) -> int | None:
    match = _PR_NUMBER_PATTERN.search(pr_url)
    return int(match.group(1)) if match else None


def repo_slug_from_url(url: str) -> str | None:
    match = _REPO_SLUG_PATTERN.search(url)
    return match.group(1) if match else None
