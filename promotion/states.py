"""
Promotion stage graph.

The graph is a small state machine. Transitions are pure functions of
(state, event); the coordinator performs the side effects and feeds the
resulting events back in. Stage results are kept in an append-only chain.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from core.exceptions import InvalidTransitionError
from deployment.models import DeploymentOutcome
from promotion.versioning import VersionTag, parse_tags


class PromotionState(str, Enum):
    NOT_STARTED = "not_started"
    ACCEPTANCE_RUNNING = "acceptance_running"
    ACCEPTANCE_PASSED = "acceptance_passed"
    QA_RUNNING = "qa_running"
    QA_PASSED = "qa_passed"
    SIGNOFF_PENDING = "signoff_pending"
    SIGNOFF_GRANTED = "signoff_granted"
    SIGNOFF_DENIED = "signoff_denied"
    PRODUCTION_RUNNING = "production_running"
    RELEASED = "released"
    FAILED = "failed"


class PromotionEvent(str, Enum):
    ACCEPTANCE_TRIGGERED = "acceptance_triggered"
    ACCEPTANCE_SUCCEEDED = "acceptance_succeeded"
    ACCEPTANCE_FAILED = "acceptance_failed"
    QA_TRIGGERED = "qa_triggered"
    QA_SUCCEEDED = "qa_succeeded"
    QA_FAILED = "qa_failed"
    SIGNOFF_REQUESTED = "signoff_requested"
    SIGNOFF_APPROVED = "signoff_approved"
    SIGNOFF_REJECTED = "signoff_rejected"
    PRODUCTION_TRIGGERED = "production_triggered"
    PRODUCTION_SUCCEEDED = "production_succeeded"
    PRODUCTION_FAILED = "production_failed"


S = PromotionState
E = PromotionEvent

TRANSITIONS: Dict[Tuple[PromotionState, PromotionEvent], PromotionState] = {
    (S.NOT_STARTED, E.ACCEPTANCE_TRIGGERED): S.ACCEPTANCE_RUNNING,
    (S.ACCEPTANCE_RUNNING, E.ACCEPTANCE_SUCCEEDED): S.ACCEPTANCE_PASSED,
    (S.ACCEPTANCE_RUNNING, E.ACCEPTANCE_FAILED): S.FAILED,
    (S.ACCEPTANCE_PASSED, E.QA_TRIGGERED): S.QA_RUNNING,
    (S.QA_RUNNING, E.QA_SUCCEEDED): S.QA_PASSED,
    (S.QA_RUNNING, E.QA_FAILED): S.FAILED,
    (S.QA_PASSED, E.SIGNOFF_REQUESTED): S.SIGNOFF_PENDING,
    (S.SIGNOFF_PENDING, E.SIGNOFF_APPROVED): S.SIGNOFF_GRANTED,
    (S.SIGNOFF_PENDING, E.SIGNOFF_REJECTED): S.SIGNOFF_DENIED,
    (S.SIGNOFF_GRANTED, E.PRODUCTION_TRIGGERED): S.PRODUCTION_RUNNING,
    (S.PRODUCTION_RUNNING, E.PRODUCTION_SUCCEEDED): S.RELEASED,
    (S.PRODUCTION_RUNNING, E.PRODUCTION_FAILED): S.FAILED,
}

def transition(state: PromotionState, event: PromotionEvent) -> PromotionState:
    """Next state for event, or InvalidTransitionError."""
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(state.value, event.value) from None


class TagSnapshot(BaseModel):
    """What the registry tag set says about one candidate."""

    model_config = ConfigDict(frozen=True)

    candidate: VersionTag
    candidate_exists: bool = False
    granted: bool = False
    denied: bool = False
    released: bool = False


def snapshot(tags: Iterable[str], candidate: VersionTag) -> TagSnapshot:
    candidate = candidate.candidate()
    parsed = {str(tag) for tag in parse_tags(tags)}
    return TagSnapshot(
        candidate=candidate,
        candidate_exists=str(candidate) in parsed,
        granted=str(candidate.with_signoff(True)) in parsed,
        denied=str(candidate.with_signoff(False)) in parsed,
        released=str(candidate.to_release()) in parsed,
    )


def restore_state(tags: Iterable[str], candidate: VersionTag) -> PromotionState:
    """
    Rebuild the promotion state of a candidate from the registry tag set.

    QA runs leave no tag, so a candidate that passed acceptance restores
    as acceptance_passed until it is signed off.
    """
    snap = snapshot(tags, candidate)
    if not snap.candidate_exists:
        return S.NOT_STARTED
    if snap.denied:
        return S.SIGNOFF_DENIED
    if snap.granted:
        return S.SIGNOFF_GRANTED
    return S.ACCEPTANCE_PASSED


class PromotionStageResult(BaseModel):
    """Outcome of one stage invocation."""

    stage: str
    state: PromotionState
    source_tag: Optional[str] = None
    produced_tag: Optional[str] = None
    skipped: bool = False
    message: str = ""
    error_code: Optional[str] = None
    diagnostics: str = ""
    deployment: Optional[DeploymentOutcome] = None
    transitions: List[Tuple[PromotionState, PromotionEvent, PromotionState]] = Field(default_factory=list)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def failed(self) -> bool:
        return self.state == S.FAILED


class PromotionChain:
    """Append-only record of stage results within one coordinator."""

    def __init__(self):
        self._results: List[PromotionStageResult] = []

    def append(self, result: PromotionStageResult) -> None:
        self._results.append(result)

    @property
    def results(self) -> Tuple[PromotionStageResult, ...]:
        return tuple(self._results)

    @property
    def last(self) -> Optional[PromotionStageResult]:
        return self._results[-1] if self._results else None

    def __len__(self) -> int:
        return len(self._results)
