"""
Unit tests for the promotion stage graph
"""

import pytest

from core.exceptions import InvalidTransitionError
from promotion.states import (
    TRANSITIONS,
    PromotionChain,
    PromotionEvent,
    PromotionStageResult,
    PromotionState,
    restore_state,
    transition,
)
from promotion.versioning import VersionTag

pytestmark = pytest.mark.unit

S = PromotionState
E = PromotionEvent
RC1 = VersionTag.parse("v1.0.0-rc.1")


class TestTransitions:
    def test_happy_path(self):
        state = S.NOT_STARTED
        for event in [
            E.ACCEPTANCE_TRIGGERED,
            E.ACCEPTANCE_SUCCEEDED,
            E.QA_TRIGGERED,
            E.QA_SUCCEEDED,
            E.SIGNOFF_REQUESTED,
            E.SIGNOFF_APPROVED,
            E.PRODUCTION_TRIGGERED,
            E.PRODUCTION_SUCCEEDED,
        ]:
            state = transition(state, event)

        assert state == S.RELEASED

    @pytest.mark.parametrize(
        "state,event",
        [
            (S.ACCEPTANCE_RUNNING, E.ACCEPTANCE_FAILED),
            (S.QA_RUNNING, E.QA_FAILED),
            (S.PRODUCTION_RUNNING, E.PRODUCTION_FAILED),
        ],
    )
    def test_running_stages_can_fail(self, state, event):
        assert transition(state, event) == S.FAILED

    def test_rejected_signoff(self):
        assert transition(S.SIGNOFF_PENDING, E.SIGNOFF_REJECTED) == S.SIGNOFF_DENIED

    @pytest.mark.parametrize(
        "state,event",
        [
            (S.ACCEPTANCE_PASSED, E.PRODUCTION_TRIGGERED),
            (S.QA_PASSED, E.PRODUCTION_TRIGGERED),
            (S.SIGNOFF_DENIED, E.PRODUCTION_TRIGGERED),
            (S.NOT_STARTED, E.QA_TRIGGERED),
            (S.RELEASED, E.ACCEPTANCE_TRIGGERED),
        ],
    )
    def test_invalid_transitions(self, state, event):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(state, event)

        assert exc_info.value.details == {"state": state.value, "event": event.value}

    def test_terminal_states_have_no_exits(self):
        sources = {source for source, _event in TRANSITIONS}
        assert sources.isdisjoint({S.RELEASED, S.FAILED, S.SIGNOFF_DENIED})

    def test_production_only_reachable_through_granted_signoff(self):
        sources = [source for (source, event), target in TRANSITIONS.items() if target == S.PRODUCTION_RUNNING]
        assert sources == [S.SIGNOFF_GRANTED]


class TestRestoreState:
    def test_unknown_candidate(self):
        assert restore_state(["latest"], RC1) == S.NOT_STARTED

    def test_accepted_candidate(self):
        assert restore_state(["latest", "v1.0.0-rc.1"], RC1) == S.ACCEPTANCE_PASSED

    def test_granted_candidate(self):
        assert restore_state(["v1.0.0-rc.1", "v1.0.0-rc.1-qa-success"], RC1) == S.SIGNOFF_GRANTED

    def test_denial_wins_over_grant(self):
        tags = ["v1.0.0-rc.1", "v1.0.0-rc.1-qa-success", "v1.0.0-rc.1-qa-failure"]
        assert restore_state(tags, RC1) == S.SIGNOFF_DENIED

    def test_other_candidates_do_not_leak(self):
        tags = ["v1.0.0-rc.1", "v1.0.0-rc.2", "v1.0.0-rc.2-qa-success"]
        assert restore_state(tags, RC1) == S.ACCEPTANCE_PASSED


class TestPromotionChain:
    def test_append_only_record(self):
        chain = PromotionChain()
        chain.append(PromotionStageResult(stage="qa-signoff", state=S.SIGNOFF_GRANTED, source_tag="v1.0.0-rc.1"))
        chain.append(PromotionStageResult(stage="production", state=S.FAILED, source_tag="v1.0.0-rc.1"))

        assert len(chain) == 2
        assert chain.last.failed is True
        assert [result.stage for result in chain.results] == ["qa-signoff", "production"]
        assert isinstance(chain.results, tuple)
