"""
Recovery Lifecycle State Machine.

WHAT:
    The allowed transitions of Subscriber.recovery_state.

WHY:
    The recovery flow used to be encoded in a handful of booleans and
    timestamps (recovery_sent, recovery_scheduled_for, converted). Making the
    state explicit lets every conditional update name the states it expects
    to find, so a concurrent writer that moved the row elsewhere makes the
    update match zero rows instead of silently overwriting it.

STATE TRANSITIONS:
    pending   → scheduled (window stamped), claimed, converted
    scheduled → claimed, pending (schedule cleared), converted
    claimed   → sent, failed, pending/scheduled (unlock), converted
    sent      → converted
    failed    → pending/scheduled (explicit release), converted
    converted → (terminal)

REFERENCES:
    - winback/models.py (RecoveryStateEnum)
    - winback/services/subscriber_store.py (transition)
"""

from typing import Dict, FrozenSet, Iterable

from ..models import RecoveryStateEnum
from .errors import InvalidTransitionError

S = RecoveryStateEnum

TRANSITIONS: Dict[RecoveryStateEnum, FrozenSet[RecoveryStateEnum]] = {
    S.pending: frozenset({S.scheduled, S.claimed, S.converted}),
    S.scheduled: frozenset({S.claimed, S.pending, S.converted}),
    S.claimed: frozenset({S.sent, S.failed, S.pending, S.scheduled, S.converted}),
    S.sent: frozenset({S.converted}),
    S.failed: frozenset({S.pending, S.scheduled, S.converted}),
    S.converted: frozenset(),
}

# States from which a worker may take the dispatch lock
CLAIMABLE_STATES = frozenset({S.pending, S.scheduled})


def can_transition(from_state: RecoveryStateEnum, to_state: RecoveryStateEnum) -> bool:
    return to_state in TRANSITIONS.get(from_state, frozenset())


def sources_for(to_state: RecoveryStateEnum) -> FrozenSet[RecoveryStateEnum]:
    """All states from which `to_state` is reachable in one step."""
    return frozenset(src for src, targets in TRANSITIONS.items() if to_state in targets)


def validate_transition(from_states: Iterable[RecoveryStateEnum], to_state: RecoveryStateEnum) -> None:
    """Raise InvalidTransitionError unless every source state may reach `to_state`."""
    for from_state in from_states:
        if not can_transition(from_state, to_state):
            raise InvalidTransitionError(from_state, to_state)


def is_terminal(state: RecoveryStateEnum) -> bool:
    return not TRANSITIONS.get(state)
