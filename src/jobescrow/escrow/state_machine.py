"""Job state machine — transition rules for the job lifecycle.

Job lifecycle:
    CREATED → DEPOSITED → SUBMITTED ⇄ CHANGE_REQUESTED
    SUBMITTED → FINISHED
    CREATED/DEPOSITED → CANCELED (only when cancel marks the state)

Fail-closed: any transition not explicitly listed is invalid. JobEscrow
validates every state change here before applying it; the service uses
the same machine to report which operations a job accepts.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, List, Tuple

from jobescrow.models.job import (
    TERMINAL_STATES,
    JobState,
    allowed_transitions,
)

# Operations accepted per state (creator-only checks happen separately)
_OPERATIONS: Dict[JobState, Tuple[str, ...]] = {
    JobState.CREATED: ("receive_funds", "cancel"),
    JobState.DEPOSITED: ("submit", "cancel"),
    JobState.SUBMITTED: ("receive_funds", "request_change"),
    JobState.CHANGE_REQUESTED: ("submit",),
    JobState.FINISHED: ("cancel",),
    JobState.CANCELED: ("cancel",),
}


class JobStateMachine:
    """Validates job state transitions against the lifecycle graph.

    Pure computation: no mutation, no side effects.
    """

    def __init__(self, mark_canceled: bool = False) -> None:
        self._mark_canceled = mark_canceled

    def validate_transition(self, current: JobState, target: JobState) -> List[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        allowed = self.valid_transitions(current)
        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid job transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    def valid_transitions(self, state: JobState) -> FrozenSet[JobState]:
        """Return the set of valid target states from the given state."""
        return allowed_transitions(state, self._mark_canceled)

    def available_operations(self, state: JobState) -> Tuple[str, ...]:
        """Operations that would not fail with InvalidState right now."""
        return _OPERATIONS.get(state, ())

    @staticmethod
    def is_terminal(state: JobState) -> bool:
        """Check if a state is terminal (no further transitions)."""
        return state in TERMINAL_STATES
