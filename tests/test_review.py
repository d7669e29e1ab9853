import asyncio
from pathlib import Path

from boardbot.backends import AgentBackend, BackendTimeoutError, SessionResult
from boardbot.claim import ClaimProtocol
from boardbot.models import REVIEW_APPROVED_LABEL, FeatureKey, FeatureToggle, Task, TaskStatus
from boardbot.review import ReviewWorkflow, Verdict, parse_verdict
from boardbot.store import InMemoryTaskStore
from boardbot.workflow import resolve_gates

APPROVE = 'REVIEW_VERDICT: {"verdict": "approve", "remarks": "looks good"}'
REJECT = 'REVIEW_VERDICT: {"verdict": "reject", "remarks": "missing tests for empty page"}'


class JudgeBackend(AgentBackend):
    def __init__(self, replies: list[str | Exception]) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def run_session(
        self,
        prompt: str,
        *,
        continuation_handle: str | None = None,
        working_directory: Path | None = None,
    ) -> SessionResult:
        self.prompts.append(prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SessionResult(text=reply)


def _gates(*enabled: FeatureKey, **configs: dict):
    toggles = []
    for key in FeatureKey:
        toggle = FeatureToggle.default("ws", key)
        toggle.enabled = key in enabled
        toggle.config.update(configs.get(key.value, {}))
        toggles.append(toggle)
    return resolve_gates(toggles)


def _claimed(store: InMemoryTaskStore, status: TaskStatus, **overrides) -> Task:
    payload = {
        "id": "task-1",
        "workspace_id": "ws",
        "title": "Paginate orders",
        "status": status,
        "assigned_to": "worker-1",
    }
    payload.update(overrides)
    return store.create_task(Task(**payload))


def _workflow(store: InMemoryTaskStore, backend: AgentBackend) -> ReviewWorkflow:
    return ReviewWorkflow(backend, ClaimProtocol(store, "worker-1"))


def test_approve_with_auto_advance_finishes_task() -> None:
    store = InMemoryTaskStore()
    task = _claimed(store, TaskStatus.AI_REVIEW)
    gates = _gates(FeatureKey.AI_REVIEW)

    outcome = asyncio.run(_workflow(store, JudgeBackend([APPROVE])).run(task, gates))

    assert outcome.verdict == Verdict.APPROVE
    assert outcome.target_status == TaskStatus.DONE
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.DONE
    assert stored.assigned_to is None


def test_approve_without_auto_advance_waits_in_place() -> None:
    store = InMemoryTaskStore()
    task = _claimed(store, TaskStatus.AI_REVIEW)
    gates = _gates(FeatureKey.AI_REVIEW, ai_review={"auto_advance_on_approve": False})

    outcome = asyncio.run(_workflow(store, JudgeBackend([APPROVE])).run(task, gates))

    assert outcome.target_status == TaskStatus.AI_REVIEW
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.AI_REVIEW
    assert stored.assigned_to is None
    assert REVIEW_APPROVED_LABEL in stored.labels


def test_rejection_sends_task_back_with_remarks() -> None:
    store = InMemoryTaskStore()
    task = _claimed(store, TaskStatus.AI_REVIEW)
    gates = _gates(FeatureKey.AI_REVIEW)

    outcome = asyncio.run(_workflow(store, JudgeBackend([REJECT])).run(task, gates))

    assert outcome.target_status == TaskStatus.REVIEW_REJECTED
    assert outcome.review_rounds == 1
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.REVIEW_REJECTED
    assert stored.review_rounds == 1
    assert stored.completion_notes == "missing tests for empty page"


def test_third_rejection_escalates_to_human_review() -> None:
    store = InMemoryTaskStore()
    task = _claimed(store, TaskStatus.AI_REVIEW)
    gates = _gates(FeatureKey.AI_REVIEW)
    workflow = _workflow(store, JudgeBackend([REJECT, REJECT, REJECT]))

    outcomes = []
    for _ in range(3):
        outcomes.append(asyncio.run(workflow.run(task, gates)))
        if outcomes[-1].escalated:
            break
        store.compare_and_set_status(
            task.id, TaskStatus.REVIEW_REJECTED, TaskStatus.AI_REVIEW, assigned_to="worker-1"
        )
        task = store.get_task(task.id)

    assert [outcome.target_status for outcome in outcomes] == [
        TaskStatus.REVIEW_REJECTED,
        TaskStatus.REVIEW_REJECTED,
        TaskStatus.REVIEW,
    ]
    assert outcomes[-1].escalated
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.REVIEW
    assert stored.review_rounds == 3


def test_exhausted_rounds_escalate_without_agent_call() -> None:
    store = InMemoryTaskStore()
    task = _claimed(store, TaskStatus.AI_REVIEW, review_rounds=2)
    gates = _gates(FeatureKey.AI_REVIEW, ai_review={"max_review_rounds": 2})
    backend = JudgeBackend([])

    outcome = asyncio.run(_workflow(store, backend).run(task, gates))

    assert outcome.escalated
    assert backend.prompts == []
    assert store.get_task(task.id).status == TaskStatus.REVIEW


def test_testing_stage_hands_over_to_ai_review() -> None:
    store = InMemoryTaskStore()
    task = _claimed(store, TaskStatus.TESTING)
    gates = _gates(FeatureKey.AI_REVIEW, FeatureKey.LOCAL_TESTING)
    backend = JudgeBackend([APPROVE])

    outcome = asyncio.run(_workflow(store, backend).run(task, gates))

    assert outcome.target_status == TaskStatus.AI_REVIEW
    assert "local testing gate" in backend.prompts[0]
    assert store.get_task(task.id).status == TaskStatus.AI_REVIEW


def test_testing_rejection_goes_to_test_failed() -> None:
    store = InMemoryTaskStore()
    task = _claimed(store, TaskStatus.TESTING)
    gates = _gates(FeatureKey.LOCAL_TESTING)

    outcome = asyncio.run(_workflow(store, JudgeBackend([REJECT])).run(task, gates))

    assert outcome.target_status == TaskStatus.TEST_FAILED
    assert store.get_task(task.id).status == TaskStatus.TEST_FAILED


def test_session_failure_escalates_with_error() -> None:
    store = InMemoryTaskStore()
    task = _claimed(store, TaskStatus.AI_REVIEW)
    gates = _gates(FeatureKey.AI_REVIEW)
    backend = JudgeBackend([BackendTimeoutError("timed out", backend="claude")])

    outcome = asyncio.run(_workflow(store, backend).run(task, gates))

    assert outcome.escalated
    assert outcome.verdict is None
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.REVIEW
    assert stored.error_count == 1
    assert "error" in [event.event_type for event in store.list_events(task.id)]


def test_parse_verdict_prefers_last_block() -> None:
    text = f"first draft\n{REJECT}\nthen reconsidered\n{APPROVE}"

    verdict = parse_verdict(text)

    assert verdict.verdict == Verdict.APPROVE
    assert verdict.remarks == "looks good"


def test_parse_verdict_keywords_and_silence() -> None:
    assert parse_verdict("All checks pass. APPROVED").verdict == Verdict.APPROVE
    assert parse_verdict("REQUEST_CHANGES: rename helper").verdict == Verdict.REJECT
    silent = parse_verdict("I looked at the diff.")
    assert silent.verdict == Verdict.REJECT
    assert silent.remarks == "reviewer produced no verdict"
