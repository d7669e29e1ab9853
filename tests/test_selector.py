from boardbot.dependencies import DependencyResolver
from boardbot.events import EventEmitter
from boardbot.models import (
    REFINED_LABEL,
    FeatureKey,
    FeatureToggle,
    Priority,
    Task,
    TaskDependency,
    TaskStatus,
)
from boardbot.selector import PrioritySelector
from boardbot.store import InMemoryTaskStore
from boardbot.workflow import WorkflowGates, resolve_gates


def _task(store: InMemoryTaskStore, task_id: str, **overrides) -> Task:
    payload = {
        "id": task_id,
        "workspace_id": "ws",
        "title": task_id,
        "status": TaskStatus.TODO,
        "created_at": "2026-01-01T00:00:00+00:00",
    }
    payload.update(overrides)
    return store.create_task(Task(**payload))


def _gates(*enabled: FeatureKey) -> WorkflowGates:
    toggles = []
    for key in FeatureKey:
        toggle = FeatureToggle.default("ws", key)
        toggle.enabled = key in enabled
        toggles.append(toggle)
    return resolve_gates(toggles)


def _order(selector: PrioritySelector, gates: WorkflowGates) -> list[str]:
    return [candidate.task.id for candidate in selector.iter_candidates("ws", gates)]


def test_priority_then_fifo_within_tier() -> None:
    store = InMemoryTaskStore()
    _task(store, "low", priority=Priority.LOW)
    _task(store, "old-high", priority=Priority.HIGH, created_at="2026-01-01T00:00:00+00:00")
    _task(store, "new-high", priority=Priority.HIGH, created_at="2026-01-02T00:00:00+00:00")
    _task(store, "urgent", priority=Priority.URGENT, created_at="2026-01-03T00:00:00+00:00")
    _task(store, "medium", priority=Priority.MEDIUM)

    order = _order(PrioritySelector(store), _gates())

    assert order == ["urgent", "old-high", "new-high", "medium", "low"]


def test_tier_precedence_beats_priority() -> None:
    store = InMemoryTaskStore()
    _task(store, "refine", status=TaskStatus.REFINEMENT, priority=Priority.URGENT)
    _task(store, "intake", status=TaskStatus.TODO, priority=Priority.URGENT)
    _task(store, "verify", status=TaskStatus.AI_REVIEW, priority=Priority.LOW)
    _task(store, "fix", status=TaskStatus.REVIEW_REJECTED, priority=Priority.LOW)

    selector = PrioritySelector(store)
    gates = _gates(FeatureKey.AI_REVIEW, FeatureKey.REFINEMENT)

    assert _order(selector, gates) == ["fix", "verify", "intake", "refine"]
    candidate = selector.select_next("ws", gates)
    assert candidate is not None
    assert candidate.tier == "fix"
    assert candidate.tier_status == TaskStatus.REVIEW_REJECTED


def test_disabled_stages_are_not_polled() -> None:
    store = InMemoryTaskStore()
    _task(store, "stale-review", status=TaskStatus.AI_REVIEW)
    _task(store, "intake")

    assert _order(PrioritySelector(store), _gates()) == ["intake"]


def test_blocked_task_is_never_selected() -> None:
    store = InMemoryTaskStore()
    _task(store, "dependency", status=TaskStatus.IN_PROGRESS)
    _task(store, "blocked", priority=Priority.URGENT)
    DependencyResolver(store).add_dependency("blocked", "dependency")
    selector = PrioritySelector(store)

    assert selector.select_next("ws", _gates()) is None

    store.update_execution_fields("dependency", {"status": TaskStatus.DONE})
    candidate = selector.select_next("ws", _gates())
    assert candidate is not None
    assert candidate.task.id == "blocked"


def test_skip_rules_subtasks_errors_and_claimed() -> None:
    store = InMemoryTaskStore()
    _task(store, "parent", status=TaskStatus.BACKLOG)
    _task(store, "subtask", parent_task_id="parent")
    _task(store, "retried-out", retry_count=3)
    _task(store, "claimed", assigned_to="other-worker")
    _task(store, "eligible", retry_count=2)

    assert _order(PrioritySelector(store, max_retries=3), _gates()) == ["eligible"]


def test_refined_tasks_skip_refinement_tier() -> None:
    store = InMemoryTaskStore()
    _task(store, "done-refining", status=TaskStatus.REFINEMENT, labels=[REFINED_LABEL])
    _task(store, "raw", status=TaskStatus.REFINEMENT)

    assert _order(PrioritySelector(store), _gates(FeatureKey.REFINEMENT)) == ["raw"]


def test_exclude_ids_moves_to_next_candidate() -> None:
    store = InMemoryTaskStore()
    _task(store, "first", priority=Priority.HIGH)
    _task(store, "second")

    candidate = PrioritySelector(store).select_next("ws", _gates(), exclude_ids={"first"})

    assert candidate is not None
    assert candidate.task.id == "second"


def test_dependency_cycle_is_reported_once() -> None:
    store = InMemoryTaskStore()
    _task(store, "a")
    _task(store, "b")
    store.add_dependency(TaskDependency("a", "b", "ws"))
    store.add_dependency(TaskDependency("b", "a", "ws"))
    selector = PrioritySelector(store, emitter=EventEmitter(store))

    assert selector.select_next("ws", _gates()) is None
    assert selector.select_next("ws", _gates()) is None

    cycle_events = [e for e in store.list_events("a") if e.event_type == "dependency_cycle"]
    assert len(cycle_events) == 1
    assert "a -> b -> a" in cycle_events[0].message
