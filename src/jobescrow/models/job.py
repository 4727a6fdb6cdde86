"""Job model — the single aggregate record of a commissioned-work escrow.

All monetary values are non-negative integers in the smallest native
currency unit. No floats, no Decimal: the host ledger moves whole units.

Invariants (transitions are validated by JobStateMachine):
- State advances only along JOB_TRANSITIONS (no skipped states)
- buyer is set at most once, on CREATED → DEPOSITED
- cut_amount and expected_deposit are derived once and never change
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Mapping, Optional


class JobState(str, enum.Enum):
    """Lifecycle state of a job.

    State machine:
        CREATED → DEPOSITED → SUBMITTED → FINISHED
        SUBMITTED → CHANGE_REQUESTED → SUBMITTED
        CANCELED is terminal and only reachable when cancel marks it
    """
    CREATED = "created"
    DEPOSITED = "deposited"
    SUBMITTED = "submitted"
    CHANGE_REQUESTED = "change_requested"
    FINISHED = "finished"
    CANCELED = "canceled"


# Valid job state transitions
JOB_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.CREATED: frozenset({JobState.DEPOSITED}),
    JobState.DEPOSITED: frozenset({JobState.SUBMITTED}),
    JobState.SUBMITTED: frozenset({
        JobState.CHANGE_REQUESTED,
        JobState.FINISHED,
    }),
    JobState.CHANGE_REQUESTED: frozenset({JobState.SUBMITTED}),
    JobState.FINISHED: frozenset(),
    JobState.CANCELED: frozenset(),
}

# Extra edges used only when cancel is configured to mark the job CANCELED
CANCEL_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.CREATED: frozenset({JobState.CANCELED}),
    JobState.DEPOSITED: frozenset({JobState.CANCELED}),
}

TERMINAL_STATES: FrozenSet[JobState] = frozenset({
    JobState.FINISHED,
    JobState.CANCELED,
})


def allowed_transitions(
    state: JobState,
    mark_canceled: bool = False,
) -> FrozenSet[JobState]:
    """Return the states reachable in one step from ``state``."""
    allowed = JOB_TRANSITIONS.get(state, frozenset())
    if mark_canceled:
        allowed = allowed | CANCEL_TRANSITIONS.get(state, frozenset())
    return allowed


def escrow_account_for(job_id: str) -> str:
    """Host-ledger account that custodies a job's funds."""
    return f"escrow:{job_id}"


@dataclass
class Job:
    """A job escrow record.

    Mutable — state, buyer, submission and rejection fields change during
    the job lifecycle. Everything else is fixed at creation.
    """
    job_id: str
    name: str
    creator: str
    seller: str
    amount: int
    cut_amount: int
    expected_deposit: int
    state: JobState = JobState.CREATED
    buyer: Optional[str] = None
    last_submission_hash: Optional[bytes] = None
    rejection_reason: Optional[str] = None

    @property
    def escrow_account(self) -> str:
        return escrow_account_for(self.job_id)

    def mutable_fields(self) -> Mapping[str, Any]:
        """Capture the fields an operation may mutate, for rollback."""
        return {
            "state": self.state,
            "buyer": self.buyer,
            "last_submission_hash": self.last_submission_hash,
            "rejection_reason": self.rejection_reason,
        }

    def restore(self, saved: Mapping[str, Any]) -> None:
        for key, value in saved.items():
            setattr(self, key, value)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready view of the committed record."""
        return {
            "job_id": self.job_id,
            "name": self.name,
            "creator": self.creator,
            "seller": self.seller,
            "buyer": self.buyer,
            "amount": self.amount,
            "cut_amount": self.cut_amount,
            "expected_deposit": self.expected_deposit,
            "state": self.state.value,
            "last_submission_hash": (
                self.last_submission_hash.hex()
                if self.last_submission_hash is not None else None
            ),
            "rejection_reason": self.rejection_reason,
        }
