from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from boardbot import events
from boardbot.backends import AgentBackend
from boardbot.claim import CLAIM_TARGETS, ClaimProtocol
from boardbot.config import BoardbotConfig
from boardbot.dependencies import DependencyResolver
from boardbot.engine import ExecutionLoopEngine, ExecutionResult, LoopOutcome
from boardbot.errors import StoreUnavailableError
from boardbot.events import EventEmitter
from boardbot.models import REVIEW_APPROVED_LABEL, Task, TaskStatus
from boardbot.refinement import RefinementWorkflow
from boardbot.review import STAGES, ReviewWorkflow
from boardbot.selector import Candidate, PrioritySelector
from boardbot.store import TaskStore
from boardbot.workflow import WorkflowGates, resolve_gates

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 1000


@dataclass(slots=True)
class CycleReport:
    kind: str = "idle"
    task_id: str | None = None
    claimed_status: TaskStatus | None = None
    final_status: TaskStatus | None = None
    lost_claims: int = 0
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "task_id": self.task_id,
            "claimed_status": self.claimed_status.value if self.claimed_status else None,
            "final_status": self.final_status.value if self.final_status else None,
            "lost_claims": self.lost_claims,
            "detail": dict(self.detail),
        }


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class PollCycleDriver:
    """Outer worker loop: select, claim, then execute, review or refine.

    Several drivers (in one process or many) may share a store; the claim
    is the only coordination point between them.
    """

    def __init__(
        self,
        store: TaskStore,
        backend: AgentBackend,
        config: BoardbotConfig | None = None,
        *,
        review_backend: AgentBackend | None = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.config = config or BoardbotConfig.default()
        self.worker = self.config.worker.name
        self.workspace_id = self.config.worker.workspace_id
        working_directory = Path(self.config.worker.working_directory)

        self.emitter = EventEmitter(store, author=self.worker)
        self.resolver = DependencyResolver(store)
        self.selector = PrioritySelector(
            store,
            resolver=self.resolver,
            emitter=self.emitter,
            max_retries=self.config.selection.max_retries,
        )
        self.claims = ClaimProtocol(
            store, self.worker, emitter=self.emitter, resolver=self.resolver
        )
        self.engine = ExecutionLoopEngine(
            backend,
            store,
            settings=self.config.execution,
            emitter=self.emitter,
            worker=self.worker,
            working_directory=working_directory,
        )
        self.review = ReviewWorkflow(
            review_backend or backend,
            self.claims,
            emitter=self.emitter,
            working_directory=working_directory,
        )
        self.refinement = RefinementWorkflow(
            review_backend or backend,
            self.claims,
            max_retries=self.config.selection.max_retries,
            working_directory=working_directory,
        )
        self._in_flight: set[str] = set()
        self._busy_projects: set[str] = set()

    def resolve_gates(self) -> WorkflowGates:
        return resolve_gates(self.store.get_feature_toggles(self.workspace_id))

    def claim_next(
        self, gates: WorkflowGates, report: CycleReport
    ) -> tuple[Candidate, Task] | None:
        """Claim the best candidate, re-selecting after every lost race.

        A project runs at most one session at a time since its tasks share
        one working directory.
        """
        excluded = set(self._in_flight)
        while True:
            candidate = self.selector.select_next(self.workspace_id, gates, exclude_ids=excluded)
            if candidate is None:
                return None
            project = candidate.task.task_list_id
            if project is not None and project in self._busy_projects:
                excluded.add(candidate.task.id)
                continue
            task = self.claims.claim(candidate)
            if task is not None:
                self._in_flight.add(task.id)
                if project is not None:
                    self._busy_projects.add(project)
                return candidate, task
            excluded.add(candidate.task.id)
            report.lost_claims += 1

    def _route_execution(
        self, task: Task, result: ExecutionResult, gates: WorkflowGates
    ) -> TaskStatus:
        latest = self.store.get_task(task.id) or task
        notes = result.completion_notes
        if result.last_output:
            notes = f"{notes}\n\n{result.last_output[-OUTPUT_TAIL_CHARS:]}"
        fields: dict[str, Any] = {
            "completion_notes": notes,
            "labels": [label for label in latest.labels if label != REVIEW_APPROVED_LABEL],
        }
        if result.pr_url:
            fields["pr_url"] = result.pr_url
        if result.outcome == LoopOutcome.COMPLETED:
            target = gates.status_after_execution()
        elif result.outcome == LoopOutcome.FAILED:
            target = TaskStatus.TODO
            fields["retry_count"] = latest.retry_count + 1
        else:
            target = TaskStatus.REVIEW
        self.claims.advance(latest, target, gates, fields=fields, reason=result.outcome.value)
        return target

    async def process(self, candidate: Candidate, task: Task, gates: WorkflowGates) -> CycleReport:
        report = CycleReport(task_id=task.id, claimed_status=task.status)
        try:
            if task.status == TaskStatus.IN_PROGRESS:
                fix = task.completion_notes if candidate.tier == "fix" else None
                result = await self.engine.run(task, fix_instructions=fix)
                report.kind = "execution"
                report.final_status = await asyncio.to_thread(
                    self._route_execution, task, result, gates
                )
                report.detail = result.to_dict()
            elif task.status in STAGES:
                outcome = await self.review.run(task, gates)
                report.kind = "review"
                report.final_status = outcome.target_status
                report.detail = outcome.to_dict()
            elif task.status == TaskStatus.REFINEMENT:
                refined = await self.refinement.run(task, gates)
                report.kind = "refinement"
                report.final_status = refined.target_status
                report.detail = {"refined": refined.refined, "notes": refined.notes}
            else:
                logger.error("Claimed task %s in unexpected status %s", task.id, task.status)
                self.claims.release(task)
        finally:
            self._in_flight.discard(task.id)
            if task.task_list_id is not None:
                self._busy_projects.discard(task.task_list_id)
        return report

    async def poll_once(self) -> CycleReport:
        gates = await asyncio.to_thread(self.resolve_gates)
        report = CycleReport()
        claimed = await asyncio.to_thread(self.claim_next, gates, report)
        if claimed is None:
            return report
        candidate, task = claimed
        processed = await self.process(candidate, task, gates)
        processed.lost_claims = report.lost_claims
        return processed

    def sweep_stale_claims(self, now: datetime | None = None) -> list[str]:
        """Hand back claims whose owner stopped checkpointing."""
        timeout = self.config.worker.stale_claim_timeout_seconds
        if timeout <= 0:
            return []
        cutoff = (now or datetime.now(UTC)) - timedelta(seconds=timeout)
        claimable = set(CLAIM_TARGETS.values())
        released: list[str] = []
        for task in self.store.list_tasks(self.workspace_id, claimable):
            if task.assigned_to is None or task.id in self._in_flight:
                continue
            if _parse_timestamp(task.updated_at) > cutoff:
                continue
            target = TaskStatus.TODO if task.status == TaskStatus.IN_PROGRESS else task.status
            affected = self.store.compare_and_set_status(
                task.id,
                task.status,
                target,
                assigned_to=None,
                expected_assignee=task.assigned_to,
                fields={"retry_count": task.retry_count + 1},
            )
            if not affected:
                continue
            logger.warning(
                "Reclaimed stale task %s from %s (%s -> %s)",
                task.id,
                task.assigned_to,
                task.status.value,
                target.value,
            )
            self.emitter.emit(
                task.id,
                events.STATUS_CHANGE,
                f"Stale claim by {task.assigned_to} released: "
                f"{task.status.value} -> {target.value}",
            )
            released.append(task.id)
        return released

    async def _run_claimed(
        self,
        candidate: Candidate,
        task: Task,
        gates: WorkflowGates,
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            report = await self.process(candidate, task, gates)
            logger.info("Cycle finished: %s", report.to_dict())
        except StoreUnavailableError as exc:
            logger.error("Store unavailable while processing task %s: %s", task.id, exc)
        except Exception:
            logger.exception("Processing task %s crashed; claim left for recovery", task.id)
        finally:
            semaphore.release()

    def _poll_store(self) -> tuple[WorkflowGates, tuple[Candidate, Task] | None]:
        self.sweep_stale_claims()
        gates = self.resolve_gates()
        return gates, self.claim_next(gates, CycleReport())

    @staticmethod
    async def _sleep(stop: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(0.0, seconds))
        except TimeoutError:
            return

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        worker_config = self.config.worker
        semaphore = asyncio.Semaphore(max(1, worker_config.max_concurrent_sessions))
        running: set[asyncio.Task[None]] = set()
        store_failures = 0
        logger.info(
            "Worker %s polling workspace %s every %.1fs",
            self.worker,
            self.workspace_id,
            worker_config.poll_interval_seconds,
        )

        while not stop.is_set():
            await semaphore.acquire()
            try:
                gates, claimed = await asyncio.to_thread(self._poll_store)
            except StoreUnavailableError as exc:
                semaphore.release()
                store_failures += 1
                delay = min(
                    worker_config.max_backoff_seconds,
                    worker_config.backoff_seconds * (2 ** (store_failures - 1)),
                )
                logger.error("Task store unavailable (%s); retrying in %.1fs", exc, delay)
                await self._sleep(stop, delay)
                continue
            except BaseException:
                semaphore.release()
                raise

            store_failures = 0
            if claimed is None:
                semaphore.release()
                await self._sleep(stop, worker_config.poll_interval_seconds)
                continue

            candidate, task = claimed
            job = asyncio.create_task(self._run_claimed(candidate, task, gates, semaphore))
            running.add(job)
            job.add_done_callback(running.discard)

        if running:
            await asyncio.gather(*running)
        logger.info("Worker %s stopped", self.worker)
