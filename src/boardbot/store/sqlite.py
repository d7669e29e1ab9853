from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from boardbot.errors import DependencyError, StoreError, StoreUnavailableError
from boardbot.models import (
    FeatureKey,
    FeatureToggle,
    Priority,
    Task,
    TaskDependency,
    TaskEvent,
    TaskStatus,
    utcnow_iso,
)
from boardbot.store.base import UNSET, TaskStore, _Unset, validate_fields

logger = logging.getLogger(__name__)

_STATUS_CHECK = ", ".join(f"'{status.value}'" for status in TaskStatus)
_PRIORITY_CHECK = ", ".join(f"'{priority.value}'" for priority in Priority)

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    task_list_id TEXT,
    parent_task_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL CHECK (status IN ({_STATUS_CHECK})),
    priority TEXT NOT NULL CHECK (priority IN ({_PRIORITY_CHECK})),
    labels TEXT NOT NULL DEFAULT '[]',
    assignee TEXT,
    assigned_to TEXT,
    "order" INTEGER NOT NULL DEFAULT 0,
    loop_count INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    retry_count INTEGER NOT NULL DEFAULT 0,
    files_changed TEXT NOT NULL DEFAULT '[]',
    completion_notes TEXT,
    pr_url TEXT,
    branch_name TEXT,
    agent_session_handle TEXT,
    review_rounds INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_workspace_status ON tasks (workspace_id, status);
CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks (parent_task_id);

CREATE TABLE IF NOT EXISTS task_dependencies (
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    depends_on_task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    workspace_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (task_id, depends_on_task_id),
    CHECK (task_id <> depends_on_task_id)
);

CREATE TABLE IF NOT EXISTS feature_toggles (
    workspace_id TEXT NOT NULL,
    feature_key TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 0,
    config TEXT NOT NULL DEFAULT '{{}}',
    PRIMARY KEY (workspace_id, feature_key)
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    message TEXT NOT NULL,
    author TEXT NOT NULL,
    loop_number INTEGER,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_task_events_task ON task_events (task_id, id);
"""

_COLUMNS = (
    "id",
    "workspace_id",
    "task_list_id",
    "parent_task_id",
    "title",
    "description",
    "status",
    "priority",
    "labels",
    "assignee",
    "assigned_to",
    "order",
    "loop_count",
    "error_count",
    "retry_count",
    "files_changed",
    "completion_notes",
    "pr_url",
    "branch_name",
    "agent_session_handle",
    "review_rounds",
    "created_at",
    "updated_at",
    "started_at",
    "completed_at",
)
_JSON_COLUMNS = {"labels", "files_changed"}

_BLOCKED_CLAUSE = """
EXISTS (
    SELECT 1 FROM task_dependencies d
    LEFT JOIN tasks dep ON dep.id = d.depends_on_task_id
    WHERE d.task_id = tasks.id AND (dep.id IS NULL OR dep.status <> 'done')
)
"""


def _quote(column: str) -> str:
    return f'"{column}"'


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        return json.dumps(list(value or []), ensure_ascii=False)
    if isinstance(value, TaskStatus | Priority):
        return value.value
    return value


def _row_to_task(row: sqlite3.Row) -> Task:
    data = {column: row[column] for column in _COLUMNS}
    for column in _JSON_COLUMNS:
        data[column] = json.loads(data[column] or "[]")
    return Task.from_dict(data)


class SQLiteTaskStore(TaskStore):
    """Shared-file store; claims are single conditional UPDATE statements."""

    def __init__(self, path: Path, *, timeout_seconds: float = 30.0) -> None:
        self.path = Path(path)
        self.timeout_seconds = timeout_seconds
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.initialize()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout_seconds)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Cannot open task store {self.path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            with conn:
                yield conn
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"Task store unavailable: {exc}") from exc
        except sqlite3.IntegrityError as exc:
            raise StoreError(f"Task store constraint failed: {exc}") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        logger.debug("Initialized task store at %s", self.path)

    def create_task(self, task: Task) -> Task:
        columns = ", ".join(_quote(column) for column in _COLUMNS)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        values = [_encode(column, getattr(task, column)) for column in _COLUMNS]
        with self._connect() as conn:
            conn.execute(f"INSERT INTO tasks ({columns}) VALUES ({placeholders})", values)
        return task

    def get_task(self, task_id: str) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row is not None else None

    def list_tasks(
        self, workspace_id: str, statuses: Iterable[TaskStatus] | None = None
    ) -> list[Task]:
        query = "SELECT * FROM tasks WHERE workspace_id = ?"
        params: list[Any] = [workspace_id]
        if statuses is not None:
            wanted = [TaskStatus(status).value for status in statuses]
            if not wanted:
                return []
            query += f" AND status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at, id", params).fetchall()
        return [_row_to_task(row) for row in rows]

    def list_candidates(
        self,
        workspace_id: str,
        statuses: Sequence[TaskStatus],
        *,
        exclude_blocked: bool = False,
        max_retries: int | None = None,
    ) -> list[Task]:
        wanted = [TaskStatus(status).value for status in statuses]
        if not wanted:
            return []
        query = (
            "SELECT * FROM tasks WHERE workspace_id = ? "
            f"AND status IN ({', '.join('?' for _ in wanted)}) "
            "AND parent_task_id IS NULL AND assigned_to IS NULL"
        )
        params: list[Any] = [workspace_id, *wanted]
        if max_retries is not None:
            query += " AND retry_count < ?"
            params.append(max_retries)
        if exclude_blocked:
            query += f" AND NOT {_BLOCKED_CLAUSE}"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_task(row) for row in rows]

    def list_subtasks(self, parent_task_id: str) -> list[Task]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE parent_task_id = ? ORDER BY \"order\", created_at",
                (parent_task_id,),
            ).fetchall()
        return [_row_to_task(row) for row in rows]

    def get_dependencies(self, task_id: str) -> list[TaskDependency]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT task_id, depends_on_task_id, workspace_id, created_at "
                "FROM task_dependencies WHERE task_id = ? ORDER BY created_at",
                (task_id,),
            ).fetchall()
        return [TaskDependency(**dict(row)) for row in rows]

    def add_dependency(self, dependency: TaskDependency) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO task_dependencies "
                    "(task_id, depends_on_task_id, workspace_id, created_at) VALUES (?, ?, ?, ?)",
                    (
                        dependency.task_id,
                        dependency.depends_on_task_id,
                        dependency.workspace_id,
                        dependency.created_at,
                    ),
                )
        except StoreError as exc:
            if isinstance(exc, StoreUnavailableError):
                raise
            raise DependencyError(
                f"Cannot add dependency {dependency.task_id} -> "
                f"{dependency.depends_on_task_id}: {exc}"
            ) from exc

    def get_feature_toggles(self, workspace_id: str) -> list[FeatureToggle]:
        with self._connect() as conn:
            for feature_key in FeatureKey:
                default = FeatureToggle.default(workspace_id, feature_key)
                conn.execute(
                    "INSERT OR IGNORE INTO feature_toggles "
                    "(workspace_id, feature_key, enabled, config) VALUES (?, ?, ?, ?)",
                    (workspace_id, feature_key.value, 0, json.dumps(default.config)),
                )
            rows = conn.execute(
                "SELECT * FROM feature_toggles WHERE workspace_id = ?", (workspace_id,)
            ).fetchall()
        toggles: list[FeatureToggle] = []
        for row in rows:
            try:
                feature_key = FeatureKey(row["feature_key"])
            except ValueError:
                logger.warning("Ignoring unknown feature toggle %s", row["feature_key"])
                continue
            toggles.append(
                FeatureToggle(
                    workspace_id=row["workspace_id"],
                    feature_key=feature_key,
                    enabled=bool(row["enabled"]),
                    config=json.loads(row["config"] or "{}"),
                )
            )
        return toggles

    def set_feature_toggle(self, toggle: FeatureToggle) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO feature_toggles (workspace_id, feature_key, enabled, config) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT (workspace_id, feature_key) "
                "DO UPDATE SET enabled = excluded.enabled, config = excluded.config",
                (
                    toggle.workspace_id,
                    FeatureKey(toggle.feature_key).value,
                    1 if toggle.enabled else 0,
                    json.dumps(toggle.config or {}),
                ),
            )

    @staticmethod
    def _assignments(payload: Mapping[str, Any]) -> tuple[list[str], list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in payload.items():
            clauses.append(f"{_quote(column)} = ?")
            params.append(_encode(column, value))
        clauses.append("updated_at = ?")
        params.append(utcnow_iso())
        return clauses, params

    @staticmethod
    def _owner_guard(expected_assignee: str | None | _Unset) -> tuple[str, list[Any]]:
        if expected_assignee is UNSET:
            return "", []
        if expected_assignee is None:
            return " AND assigned_to IS NULL", []
        return " AND assigned_to = ?", [expected_assignee]

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
        clauses, params = self._assignments(payload)
        if payload["status"] == TaskStatus.IN_PROGRESS:
            clauses.append("started_at = COALESCE(started_at, ?)")
            params.append(utcnow_iso())
        if payload["status"] in {TaskStatus.REVIEW, TaskStatus.DONE}:
            clauses.append("completed_at = ?")
            params.append(utcnow_iso())
        guard, guard_params = self._owner_guard(expected_assignee)
        query = (
            f"UPDATE tasks SET {', '.join(clauses)} WHERE id = ? AND status = ?{guard}"
        )
        with self._connect() as conn:
            cursor = conn.execute(
                query,
                [*params, task_id, TaskStatus(expected_status).value, *guard_params],
            )
            return cursor.rowcount

    def mark_done_if_not_done(self, task_id: str) -> int:
        now = utcnow_iso()
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE tasks SET status = 'done', updated_at = ?, completed_at = ? "
                "WHERE id = ? AND status <> 'done'",
                (now, now, task_id),
            )
            return cursor.rowcount

    def update_execution_fields(
        self,
        task_id: str,
        fields: Mapping[str, Any],
        *,
        expected_assignee: str | None | _Unset = UNSET,
    ) -> int:
        payload = validate_fields(fields)
        clauses, params = self._assignments(payload)
        guard, guard_params = self._owner_guard(expected_assignee)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE tasks SET {', '.join(clauses)} WHERE id = ?{guard}",
                [*params, task_id, *guard_params],
            )
            return cursor.rowcount

    def add_event(self, event: TaskEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO task_events "
                "(task_id, event_type, message, author, loop_number, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    event.task_id,
                    event.event_type,
                    event.message,
                    event.author,
                    event.loop_number,
                    event.created_at,
                ),
            )

    def list_events(self, task_id: str) -> list[TaskEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT task_id, event_type, message, author, loop_number, created_at "
                "FROM task_events WHERE task_id = ? ORDER BY id",
                (task_id,),
            ).fetchall()
        return [TaskEvent(**dict(row)) for row in rows]
