import threading

import pytest

from boardbot.dependencies import DependencyResolver
from boardbot.errors import DependencyError
from boardbot.models import Task, TaskDependency, TaskStatus
from boardbot.store import InMemoryTaskStore


def _task(store: InMemoryTaskStore, task_id: str, **overrides) -> Task:
    payload = {"id": task_id, "workspace_id": "ws", "title": task_id, "status": TaskStatus.TODO}
    payload.update(overrides)
    return store.create_task(Task(**payload))


def test_task_with_unfinished_dependency_is_blocked() -> None:
    store = InMemoryTaskStore()
    _task(store, "a")
    blocked = _task(store, "b")
    resolver = DependencyResolver(store)
    resolver.add_dependency("b", "a")

    assert resolver.is_blocked(blocked)
    assert resolver.blocking_reason(blocked) == "blocked by a"

    store.update_execution_fields("a", {"status": TaskStatus.DONE})

    assert not resolver.is_blocked(blocked)
    assert resolver.blocking_reason(blocked) is None


def test_add_dependency_rejects_self_duplicate_and_cycle() -> None:
    store = InMemoryTaskStore()
    for task_id in ("a", "b", "c"):
        _task(store, task_id)
    resolver = DependencyResolver(store)
    resolver.add_dependency("b", "a")
    resolver.add_dependency("c", "b")

    with pytest.raises(DependencyError, match="itself"):
        resolver.add_dependency("a", "a")
    with pytest.raises(DependencyError, match="already exists"):
        resolver.add_dependency("b", "a")
    with pytest.raises(DependencyError, match="circular"):
        resolver.add_dependency("a", "c")
    with pytest.raises(DependencyError, match="not found"):
        resolver.add_dependency("a", "missing")


def test_add_dependency_rejects_cross_workspace_edges() -> None:
    store = InMemoryTaskStore()
    _task(store, "a")
    _task(store, "b", workspace_id="other")

    with pytest.raises(DependencyError, match="workspace"):
        DependencyResolver(store).add_dependency("a", "b")


def test_existing_cycle_is_reported_and_blocks_without_looping() -> None:
    store = InMemoryTaskStore()
    a = _task(store, "a")
    _task(store, "b")
    # Written straight to the store to simulate a cycle that predates validation.
    store.add_dependency(TaskDependency("a", "b", "ws"))
    store.add_dependency(TaskDependency("b", "a", "ws"))
    resolver = DependencyResolver(store)

    assert resolver.find_cycle("a") == ["a", "b", "a"]
    assert resolver.is_blocked(a)
    assert resolver.blocking_reason(a) == "dependency cycle: a -> b -> a"


def test_parent_completes_only_after_last_subtask() -> None:
    store = InMemoryTaskStore()
    _task(store, "parent", status=TaskStatus.IN_PROGRESS)
    for index in range(3):
        _task(store, f"child-{index}", parent_task_id="parent")
    resolver = DependencyResolver(store)

    store.update_execution_fields("child-0", {"status": TaskStatus.DONE})
    assert resolver.try_auto_complete_parent(store.get_task("child-0")) == []
    assert store.get_task("parent").status == TaskStatus.IN_PROGRESS

    store.update_execution_fields("child-1", {"status": TaskStatus.DONE})
    store.update_execution_fields("child-2", {"status": TaskStatus.DONE})
    assert resolver.try_auto_complete_parent(store.get_task("child-2")) == ["parent"]
    assert store.get_task("parent").status == TaskStatus.DONE
    assert store.get_task("parent").completed_at is not None


def test_auto_completion_recurses_to_grandparent() -> None:
    store = InMemoryTaskStore()
    _task(store, "root", status=TaskStatus.IN_PROGRESS)
    _task(store, "mid", parent_task_id="root", status=TaskStatus.IN_PROGRESS)
    _task(store, "leaf", parent_task_id="mid", status=TaskStatus.DONE)

    completed = DependencyResolver(store).try_auto_complete_parent(store.get_task("leaf"))

    assert completed == ["mid", "root"]
    assert store.get_task("root").status == TaskStatus.DONE


def test_concurrent_sibling_completion_completes_parent_once() -> None:
    store = InMemoryTaskStore()
    _task(store, "parent", status=TaskStatus.IN_PROGRESS)
    for index in range(8):
        _task(store, f"child-{index}", parent_task_id="parent", status=TaskStatus.DONE)
    resolver = DependencyResolver(store)
    results: list[list[str]] = []
    barrier = threading.Barrier(8)

    def _complete(child_id: str) -> None:
        barrier.wait()
        results.append(resolver.try_auto_complete_parent(store.get_task(child_id)))

    threads = [
        threading.Thread(target=_complete, args=(f"child-{index}",)) for index in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(len(result) for result in results) == 1
    assert store.get_task("parent").status == TaskStatus.DONE


def test_undone_task_never_completes_parent() -> None:
    store = InMemoryTaskStore()
    _task(store, "parent", status=TaskStatus.IN_PROGRESS)
    child = _task(store, "child", parent_task_id="parent", status=TaskStatus.REVIEW)

    assert DependencyResolver(store).try_auto_complete_parent(child) == []
