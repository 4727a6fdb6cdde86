"""Job escrow — two-party escrow state machine for commissioned work."""

from jobescrow.errors import (
    ArithmeticOverflow,
    EscrowError,
    InsufficientDeposit,
    InsufficientFunds,
    InvalidParameter,
    InvalidState,
    JobNotFound,
    NotAuthorized,
    TransferFailed,
)
from jobescrow.escrow import JobEscrow, JobStateMachine
from jobescrow.ledger import HostLedger, InMemoryLedger, TransferResult
from jobescrow.models import Job, JobState
from jobescrow.service import JobEscrowService, ServiceResult

__all__ = [
    "ArithmeticOverflow",
    "EscrowError",
    "HostLedger",
    "InMemoryLedger",
    "InsufficientDeposit",
    "InsufficientFunds",
    "InvalidParameter",
    "InvalidState",
    "Job",
    "JobEscrow",
    "JobEscrowService",
    "JobNotFound",
    "JobState",
    "JobStateMachine",
    "NotAuthorized",
    "ServiceResult",
    "TransferFailed",
    "TransferResult",
]
