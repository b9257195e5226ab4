"""
Tests for the subscription status state machine.
"""

import pytest

from edpsych.entitlements.errors import InvalidStatusTransitionError
from edpsych.entitlements.lifecycle import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    can_transition,
    ensure_transition,
    is_terminal,
)
from edpsych.entitlements.models import SubscriptionStatus as S


VALID = [
    (S.TRIALING, S.ACTIVE),
    (S.TRIALING, S.TRIAL_EXPIRED),
    (S.TRIALING, S.CANCELLED),
    (S.ACTIVE, S.PAST_DUE),
    (S.ACTIVE, S.CANCELLED),
    (S.PAST_DUE, S.ACTIVE),
    (S.PAST_DUE, S.UNPAID),
    (S.PAST_DUE, S.CANCELLED),
    (S.UNPAID, S.CANCELLED),
]


class TestTransitions:

    @pytest.mark.parametrize("source,target", VALID)
    def test_allowed(self, source, target):
        assert can_transition(source, target)
        assert ensure_transition(source, target) is target

    def test_everything_else_is_rejected(self):
        for source in S:
            for target in S:
                if (source, target) in VALID:
                    continue
                assert not can_transition(source, target), (source, target)

    @pytest.mark.parametrize("source,target", [
        (S.CANCELLED, S.ACTIVE),
        (S.TRIAL_EXPIRED, S.TRIALING),
        (S.UNPAID, S.ACTIVE),
        (S.ACTIVE, S.TRIALING),
        (S.ACTIVE, S.ACTIVE),
    ])
    def test_ensure_raises(self, source, target):
        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            ensure_transition(source, target)
        assert exc_info.value.from_status == source.value
        assert exc_info.value.to_status == target.value

    def test_accepts_string_values(self):
        assert can_transition("past_due", "active")
        assert ensure_transition("trialing", "active") is S.ACTIVE

    def test_unknown_status_is_not_a_transition(self):
        assert not can_transition("active", "paused")
        with pytest.raises(InvalidStatusTransitionError):
            ensure_transition("frozen", "active")


class TestTerminalStates:

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {S.CANCELLED, S.TRIAL_EXPIRED}
        assert is_terminal("cancelled")
        assert not is_terminal(S.PAST_DUE)

    def test_every_status_has_a_rule(self):
        assert set(ALLOWED_TRANSITIONS) == set(S)

    def test_only_entitled_statuses_grant_access(self):
        assert {s for s in S if s.grants_access} == {S.ACTIVE, S.TRIALING}
        assert {s for s in S if s.is_current} == {S.ACTIVE, S.TRIALING, S.PAST_DUE, S.UNPAID}
