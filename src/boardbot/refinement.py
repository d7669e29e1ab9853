from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from boardbot import events, prompts
from boardbot.backends import AgentBackend
from boardbot.claim import ClaimProtocol
from boardbot.models import REFINED_LABEL, FeatureKey, Task, TaskStatus
from boardbot.workflow import WorkflowGates

logger = logging.getLogger(__name__)

_REFINED_BLOCK = re.compile(prompts.REFINED_MARKER + r":\s*(\{[\s\S]*?\})")


@dataclass(slots=True)
class RefinementOutcome:
    task_id: str
    refined: bool
    target_status: TaskStatus
    notes: str = ""


def parse_refinement(text: str) -> dict[str, str] | None:
    for match in reversed(list(_REFINED_BLOCK.finditer(text))):
        try:
            payload: Any = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        title = str(payload.get("title") or "").strip()
        description = str(payload.get("description") or "").strip()
        if title or description:
            return {"title": title, "description": description}
    return None


class RefinementWorkflow:
    """Rewrites a raw ``refinement`` task into an executable one in a single session."""

    def __init__(
        self,
        backend: AgentBackend,
        claims: ClaimProtocol,
        *,
        max_retries: int = 3,
        working_directory: Path | None = None,
    ) -> None:
        self.backend = backend
        self.claims = claims
        self.max_retries = max_retries
        self.working_directory = working_directory

    def _fail(self, task: Task, gates: WorkflowGates, reason: str) -> RefinementOutcome:
        attempts = task.retry_count + 1
        self.claims.emitter.emit(task.id, events.ERROR, f"Refinement failed: {reason}")
        if attempts >= self.max_retries:
            # Out of retries: hand the unrefined task to intake with a fresh retry budget.
            self.claims.advance(
                task,
                TaskStatus.TODO,
                gates,
                fields={"retry_count": 0},
                reason="refinement retries exhausted",
            )
            return RefinementOutcome(task.id, False, TaskStatus.TODO, reason)
        self.claims.release(task, fields={"retry_count": attempts})
        return RefinementOutcome(task.id, False, task.status, reason)

    async def run(self, task: Task, gates: WorkflowGates) -> RefinementOutcome:
        try:
            session = await self.backend.run_session(
                prompts.refinement_prompt(task),
                working_directory=self.working_directory,
            )
        except Exception as exc:
            logger.warning("Refinement session failed for task %s: %s", task.id, exc)
            return self._fail(task, gates, str(exc))

        refined = parse_refinement(session.text)
        if refined is None:
            return self._fail(task, gates, "no refined task in agent output")

        fields: dict[str, Any] = {
            "title": refined["title"] or task.title,
            "description": refined["description"] or task.description,
            "labels": [*task.labels, REFINED_LABEL],
        }
        auto_advance = bool(gates.config_for(FeatureKey.REFINEMENT).get("auto_advance", True))
        if auto_advance:
            self.claims.advance(task, TaskStatus.TODO, gates, fields=fields, reason="refined")
            return RefinementOutcome(task.id, True, TaskStatus.TODO, "refined")
        self.claims.release(task, fields=fields)
        return RefinementOutcome(task.id, True, task.status, "refined, awaiting promotion")
