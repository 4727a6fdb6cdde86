"""Error taxonomy for job escrow operations.

Every failure is synchronous and surfaced to the caller of the operation
that raised it. Errors subclass ValueError so that callers catching the
usual validation error still see them.

    InvalidParameter      bad creation input — permanent, recreate the job
    ArithmeticOverflow    percentage math left the integer word
    NotAuthorized         wrong caller for a creator-only operation
    InvalidState          operation not valid from the current state
    InsufficientDeposit   first funding below the expected deposit
    InsufficientFunds     cumulative balance still below the agreed amount
    TransferFailed        host ledger refused a payout or refund
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from jobescrow.ledger.host import TransferResult
    from jobescrow.models.job import JobState


class EscrowError(ValueError):
    """Base class for all job escrow failures."""

    @property
    def code(self) -> str:
        """Stable error code reported in service results."""
        return type(self).__name__


class InvalidParameter(EscrowError):
    """Raised when an operation input is out of range or malformed."""


class ArithmeticOverflow(InvalidParameter):
    """Raised when checked arithmetic leaves the unsigned word range."""


class NotAuthorized(EscrowError):
    """Raised when a privileged operation is called by the wrong party."""

    def __init__(self, caller: str, operation: str) -> None:
        super().__init__(f"{caller} is not authorized to {operation}")
        self.caller = caller
        self.operation = operation


class InvalidState(EscrowError):
    """Raised when an operation is not valid from the job's current state."""

    def __init__(self, state: JobState, operation: str) -> None:
        super().__init__(f"Cannot {operation} while job is {state.value}")
        self.state = state
        self.operation = operation


class InsufficientDeposit(EscrowError):
    """Raised when the first funding is below the expected deposit."""

    def __init__(self, required: int, received: int) -> None:
        super().__init__(
            f"Deposit of {received} is below the expected deposit of {required}"
        )
        self.required = required
        self.received = received


class InsufficientFunds(EscrowError):
    """Raised when the held balance does not yet cover the agreed amount.

    The value received by the failing call stays held by the job.
    """

    def __init__(self, required: int, balance: int) -> None:
        super().__init__(
            f"Held balance of {balance} is below the agreed amount of {required}"
        )
        self.required = required
        self.balance = balance


class TransferFailed(EscrowError):
    """Raised when the host ledger reports a failed transfer."""

    def __init__(self, result: TransferResult, purpose: Optional[str] = None) -> None:
        label = f"{purpose} " if purpose else ""
        super().__init__(
            f"{label}transfer of {result.amount} from {result.sender} to "
            f"{result.recipient} failed: {result.reason or 'rejected'}"
        )
        self.result = result
        self.purpose = purpose


class JobNotFound(EscrowError):
    """Raised by the service layer for an unknown job identifier."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id
