from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from boardbot import events, prompts
from boardbot.backends import AgentBackend
from boardbot.claim import ClaimProtocol
from boardbot.errors import TransitionError
from boardbot.events import EventEmitter
from boardbot.models import REVIEW_APPROVED_LABEL, FeatureKey, Task, TaskStatus
from boardbot.workflow import WorkflowGates

logger = logging.getLogger(__name__)

_VERDICT_BLOCK = re.compile(prompts.VERDICT_MARKER + r":\s*(\{[\s\S]*?\})")
_APPROVE_WORD = re.compile(r"\bAPPROVE(?:D)?\b")
_REJECT_WORD = re.compile(r"\b(?:REQUEST_CHANGES|REJECT(?:ED)?)\b")

STAGES: dict[TaskStatus, tuple[FeatureKey, str]] = {
    TaskStatus.AI_REVIEW: (FeatureKey.AI_REVIEW, "AI review"),
    TaskStatus.TESTING: (FeatureKey.LOCAL_TESTING, "local testing"),
}


class Verdict(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass(slots=True)
class ReviewVerdict:
    verdict: Verdict
    remarks: str = ""


@dataclass(slots=True)
class ReviewOutcome:
    task_id: str
    stage: TaskStatus
    target_status: TaskStatus
    review_rounds: int
    verdict: Verdict | None = None
    escalated: bool = False
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "stage": self.stage.value,
            "target_status": self.target_status.value,
            "review_rounds": self.review_rounds,
            "verdict": self.verdict.value if self.verdict else None,
            "escalated": self.escalated,
            "notes": self.notes,
        }


def parse_verdict(text: str) -> ReviewVerdict:
    """Read the reviewer's verdict; anything unreadable counts as a rejection."""
    for match in reversed(list(_VERDICT_BLOCK.finditer(text))):
        try:
            payload = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        raw = str(payload.get("verdict", "")).strip().lower()
        remarks = str(payload.get("remarks") or "").strip()
        if raw in {"approve", "approved"}:
            return ReviewVerdict(Verdict.APPROVE, remarks)
        if raw in {"reject", "rejected", "request_changes"}:
            return ReviewVerdict(Verdict.REJECT, remarks)

    rejected = _REJECT_WORD.search(text)
    approved = _APPROVE_WORD.search(text)
    if rejected:
        return ReviewVerdict(Verdict.REJECT, text.strip()[-1000:])
    if approved:
        return ReviewVerdict(Verdict.APPROVE, "")
    return ReviewVerdict(Verdict.REJECT, "reviewer produced no verdict")


class ReviewWorkflow:
    """Single-shot judge for tasks parked in ``ai_review`` or ``testing``.

    Rejections send the task back for a fix pass until ``max_review_rounds``
    is used up, after which the task is force-advanced to human ``review``.
    """

    def __init__(
        self,
        backend: AgentBackend,
        claims: ClaimProtocol,
        *,
        emitter: EventEmitter | None = None,
        working_directory: Path | None = None,
    ) -> None:
        self.backend = backend
        self.claims = claims
        self.emitter = emitter or claims.emitter
        self.working_directory = working_directory

    def _settle(
        self,
        task: Task,
        gates: WorkflowGates,
        target: TaskStatus,
        *,
        fields: dict[str, Any],
        outcome: ReviewOutcome,
    ) -> ReviewOutcome:
        self.claims.advance(task, target, gates, fields=fields, reason=outcome.notes)
        return outcome

    def _escalate(
        self,
        task: Task,
        gates: WorkflowGates,
        *,
        rounds: int,
        notes: str,
        verdict: Verdict | None = None,
        extra: dict[str, Any] | None = None,
    ) -> ReviewOutcome:
        fields: dict[str, Any] = {"review_rounds": rounds, "completion_notes": notes}
        fields.update(extra or {})
        logger.info("Escalating task %s to human review: %s", task.id, notes)
        return self._settle(
            task,
            gates,
            TaskStatus.REVIEW,
            fields=fields,
            outcome=ReviewOutcome(
                task_id=task.id,
                stage=task.status,
                target_status=TaskStatus.REVIEW,
                review_rounds=rounds,
                verdict=verdict,
                escalated=True,
                notes=notes,
            ),
        )

    async def run(self, task: Task, gates: WorkflowGates) -> ReviewOutcome:
        if task.status not in STAGES:
            raise TransitionError(task.status.value, "review", "task is not in a review stage")
        feature, label = STAGES[task.status]
        config = gates.config_for(feature)
        max_rounds = max(1, int(config.get("max_review_rounds", 3)))
        auto_advance = bool(config.get("auto_advance_on_approve", True))

        if task.review_rounds >= max_rounds:
            return self._escalate(
                task,
                gates,
                rounds=task.review_rounds,
                notes=f"Escalated to human review after {task.review_rounds} {label} rounds",
            )

        try:
            session = await self.backend.run_session(
                prompts.review_prompt(task, label),
                working_directory=self.working_directory,
            )
        except Exception as exc:
            logger.warning("Review session failed for task %s: %s", task.id, exc)
            self.emitter.emit(task.id, events.ERROR, f"{label} session failed: {exc}")
            return self._escalate(
                task,
                gates,
                rounds=task.review_rounds,
                notes=f"{label} session failed, escalated to human review",
                extra={"error_count": task.error_count + 1},
            )

        verdict = parse_verdict(session.text)
        self.emitter.emit(
            task.id,
            events.REVIEW,
            f"{label} verdict: {verdict.verdict.value}"
            + (f" ({verdict.remarks[:300]})" if verdict.remarks else ""),
        )

        if verdict.verdict == Verdict.REJECT:
            rounds = task.review_rounds + 1
            if rounds >= max_rounds:
                return self._escalate(
                    task,
                    gates,
                    rounds=rounds,
                    verdict=Verdict.REJECT,
                    notes=f"Escalated to human review after {rounds} {label} rounds",
                )
            target = gates.rejection_status_for(task.status)
            return self._settle(
                task,
                gates,
                target,
                fields={"review_rounds": rounds, "completion_notes": verdict.remarks},
                outcome=ReviewOutcome(
                    task_id=task.id,
                    stage=task.status,
                    target_status=target,
                    review_rounds=rounds,
                    verdict=Verdict.REJECT,
                    notes=f"{label} rejected (round {rounds}/{max_rounds})",
                ),
            )

        if not auto_advance:
            labels = [*task.labels, REVIEW_APPROVED_LABEL]
            self.claims.release(task, fields={"labels": labels})
            return ReviewOutcome(
                task_id=task.id,
                stage=task.status,
                target_status=task.status,
                review_rounds=task.review_rounds,
                verdict=Verdict.APPROVE,
                notes=f"{label} approved, waiting for manual promotion",
            )

        if task.status == TaskStatus.AI_REVIEW:
            target = TaskStatus.DONE
        else:
            target = gates.status_after_testing()
        return self._settle(
            task,
            gates,
            target,
            fields={},
            outcome=ReviewOutcome(
                task_id=task.id,
                stage=task.status,
                target_status=target,
                review_rounds=task.review_rounds,
                verdict=Verdict.APPROVE,
                notes=f"{label} approved",
            ),
        )
