from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from boardbot.errors import TransitionError
from boardbot.models import DEFAULT_FEATURE_CONFIGS, FeatureKey, FeatureToggle, TaskStatus

STAGE_OWNERS: dict[TaskStatus, FeatureKey] = {
    TaskStatus.REFINEMENT: FeatureKey.REFINEMENT,
    TaskStatus.REVIEW_REJECTED: FeatureKey.AI_REVIEW,
    TaskStatus.AI_REVIEW: FeatureKey.AI_REVIEW,
    TaskStatus.TEST_FAILED: FeatureKey.LOCAL_TESTING,
    TaskStatus.TESTING: FeatureKey.LOCAL_TESTING,
}

_S = TaskStatus

TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    _S.BACKLOG: frozenset({_S.REFINEMENT, _S.TODO}),
    _S.REFINEMENT: frozenset({_S.TODO, _S.BACKLOG}),
    _S.TODO: frozenset({_S.IN_PROGRESS, _S.BACKLOG, _S.REFINEMENT}),
    _S.REVIEW_REJECTED: frozenset({_S.IN_PROGRESS, _S.REVIEW, _S.TODO}),
    _S.TEST_FAILED: frozenset({_S.IN_PROGRESS, _S.REVIEW, _S.TODO}),
    _S.IN_PROGRESS: frozenset(
        {_S.TESTING, _S.AI_REVIEW, _S.REVIEW, _S.TODO, _S.REVIEW_REJECTED}
    ),
    _S.TESTING: frozenset({_S.AI_REVIEW, _S.REVIEW, _S.TEST_FAILED, _S.TODO}),
    _S.AI_REVIEW: frozenset({_S.REVIEW, _S.DONE, _S.REVIEW_REJECTED, _S.TODO}),
    _S.REVIEW: frozenset({_S.DONE, _S.TODO, _S.IN_PROGRESS}),
    _S.DONE: frozenset({_S.TODO}),
}


@dataclass(frozen=True, slots=True)
class WorkflowGates:
    """Resolved view of one workspace's feature toggles."""

    enabled: frozenset[FeatureKey] = frozenset()
    configs: dict[FeatureKey, dict[str, Any]] = field(default_factory=dict)

    @property
    def valid_statuses(self) -> tuple[TaskStatus, ...]:
        return tuple(status for status in TaskStatus if self.is_stage_active(status))

    def is_feature_enabled(self, feature_key: FeatureKey) -> bool:
        return feature_key in self.enabled

    def is_stage_active(self, status: TaskStatus) -> bool:
        owner = STAGE_OWNERS.get(status)
        return owner is None or owner in self.enabled

    def config_for(self, feature_key: FeatureKey) -> dict[str, Any]:
        merged = dict(DEFAULT_FEATURE_CONFIGS[feature_key])
        merged.update(self.configs.get(feature_key, {}))
        return merged

    def status_after_execution(self) -> TaskStatus:
        if self.is_stage_active(TaskStatus.TESTING):
            return TaskStatus.TESTING
        if self.is_stage_active(TaskStatus.AI_REVIEW):
            return TaskStatus.AI_REVIEW
        return TaskStatus.REVIEW

    def status_after_testing(self) -> TaskStatus:
        if self.is_stage_active(TaskStatus.AI_REVIEW):
            return TaskStatus.AI_REVIEW
        return TaskStatus.REVIEW

    @staticmethod
    def rejection_status_for(stage: TaskStatus) -> TaskStatus:
        if stage == TaskStatus.TESTING:
            return TaskStatus.TEST_FAILED
        if stage == TaskStatus.AI_REVIEW:
            return TaskStatus.REVIEW_REJECTED
        raise TransitionError(stage.value, "rejected", "stage has no rejection status")

    def can_transition(self, current: TaskStatus, target: TaskStatus) -> bool:
        # A task parked in a since-disabled stage may still leave it.
        if not self.is_stage_active(target):
            return False
        return target in TRANSITIONS.get(current, frozenset())

    def require_transition(self, current: TaskStatus, target: TaskStatus) -> None:
        if not self.is_stage_active(target):
            raise TransitionError(current.value, target.value, "target stage is disabled")
        if target not in TRANSITIONS.get(current, frozenset()):
            raise TransitionError(current.value, target.value)


def resolve_gates(toggles: Iterable[FeatureToggle]) -> WorkflowGates:
    enabled: set[FeatureKey] = set()
    configs: dict[FeatureKey, dict[str, Any]] = {}
    for toggle in toggles:
        key = FeatureKey(toggle.feature_key)
        configs[key] = dict(toggle.config or {})
        if toggle.enabled:
            enabled.add(key)
    return WorkflowGates(enabled=frozenset(enabled), configs=configs)
