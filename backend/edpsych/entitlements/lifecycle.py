"""
Subscription lifecycle rules.

    trialing   -> active | trial_expired | cancelled
    active     -> past_due | cancelled
    past_due   -> active | unpaid | cancelled
    unpaid     -> cancelled
    cancelled, trial_expired: terminal

Reactivating a cancelled subscription creates a new record; terminal records
are never mutated back into a current state.
"""

from typing import Dict, FrozenSet, Union

from edpsych.entitlements.errors import InvalidStatusTransitionError
from edpsych.entitlements.models import SubscriptionStatus

S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.TRIALING: frozenset({S.ACTIVE, S.TRIAL_EXPIRED, S.CANCELLED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.CANCELLED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.UNPAID, S.CANCELLED}),
    S.UNPAID: frozenset({S.CANCELLED}),
    S.CANCELLED: frozenset(),
    S.TRIAL_EXPIRED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(
    from_status: Union[SubscriptionStatus, str],
    to_status: Union[SubscriptionStatus, str],
) -> bool:
    try:
        source = SubscriptionStatus(from_status)
        target = SubscriptionStatus(to_status)
    except ValueError:
        return False
    return target in ALLOWED_TRANSITIONS[source]


def ensure_transition(
    from_status: Union[SubscriptionStatus, str],
    to_status: Union[SubscriptionStatus, str],
) -> SubscriptionStatus:
    """Validate a status change and return the target status."""
    if not can_transition(from_status, to_status):
        raise InvalidStatusTransitionError(
            getattr(from_status, "value", from_status),
            getattr(to_status, "value", to_status),
        )
    return SubscriptionStatus(to_status)


def is_terminal(status: Union[SubscriptionStatus, str]) -> bool:
    return SubscriptionStatus(status) in TERMINAL_STATUSES
