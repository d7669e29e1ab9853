from __future__ import annotations

import logging

from boardbot.errors import DependencyError
from boardbot.models import Task, TaskDependency, TaskStatus
from boardbot.store import TaskStore

logger = logging.getLogger(__name__)


class DependencyResolver:
    """Answers blocking questions over the dependency graph and parent/subtask tree."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def unfinished_dependencies(self, task: Task) -> list[str]:
        pending: list[str] = []
        for dependency in self.store.get_dependencies(task.id):
            target = self.store.get_task(dependency.depends_on_task_id)
            if target is None or target.status != TaskStatus.DONE:
                pending.append(dependency.depends_on_task_id)
        return pending

    def is_blocked(self, task: Task) -> bool:
        return bool(self.unfinished_dependencies(task))

    def find_cycle(self, task_id: str) -> list[str] | None:
        """Return a dependency path that leads back to ``task_id``, if any."""
        stack: list[tuple[str, list[str]]] = [(task_id, [task_id])]
        visited: set[str] = set()
        while stack:
            current, path = stack.pop()
            for dependency in self.store.get_dependencies(current):
                target = dependency.depends_on_task_id
                if target == task_id:
                    return [*path, target]
                if target in visited:
                    continue
                visited.add(target)
                stack.append((target, [*path, target]))
        return None

    def blocking_reason(self, task: Task) -> str | None:
        cycle = self.find_cycle(task.id)
        if cycle is not None:
            return "dependency cycle: " + " -> ".join(cycle)
        pending = self.unfinished_dependencies(task)
        if pending:
            return "blocked by " + ", ".join(pending)
        return None

    def _reaches(self, start_id: str, goal_id: str) -> bool:
        stack = [start_id]
        visited: set[str] = set()
        while stack:
            current = stack.pop()
            if current == goal_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            stack.extend(dep.depends_on_task_id for dep in self.store.get_dependencies(current))
        return False

    def add_dependency(self, task_id: str, depends_on_task_id: str) -> TaskDependency:
        if task_id == depends_on_task_id:
            raise DependencyError("A task cannot depend on itself")
        task = self.store.get_task(task_id)
        target = self.store.get_task(depends_on_task_id)
        if task is None or target is None:
            missing = task_id if task is None else depends_on_task_id
            raise DependencyError(f"Task not found: {missing}")
        if task.workspace_id != target.workspace_id:
            raise DependencyError("Dependencies must stay within one workspace")
        if any(
            dep.depends_on_task_id == depends_on_task_id
            for dep in self.store.get_dependencies(task_id)
        ):
            raise DependencyError(f"Dependency already exists: {task_id} -> {depends_on_task_id}")
        if self._reaches(depends_on_task_id, task_id):
            raise DependencyError(
                f"Adding {task_id} -> {depends_on_task_id} would create a circular dependency"
            )
        dependency = TaskDependency(
            task_id=task_id,
            depends_on_task_id=depends_on_task_id,
            workspace_id=task.workspace_id,
        )
        self.store.add_dependency(dependency)
        return dependency

    def try_auto_complete_parent(self, task: Task) -> list[str]:
        """Complete ancestors whose subtasks are now all done.

        Safe to race: the parent update only applies while the parent is not
        yet ``done``, so concurrent sibling completions finish it at most once.
        Returns the ids this call actually completed.
        """
        completed: list[str] = []
        current = task
        seen: set[str] = set()
        while current.status == TaskStatus.DONE and current.parent_task_id is not None:
            parent_id = current.parent_task_id
            if parent_id in seen:
                logger.warning("Parent chain loops back to %s; stopping", parent_id)
                break
            seen.add(parent_id)
            siblings = self.store.list_subtasks(parent_id)
            if not siblings or any(child.status != TaskStatus.DONE for child in siblings):
                break
            if self.store.mark_done_if_not_done(parent_id):
                logger.info("Auto-completed parent %s after all subtasks finished", parent_id)
                completed.append(parent_id)
            parent = self.store.get_task(parent_id)
            if parent is None:
                break
            current = parent
        return completed
