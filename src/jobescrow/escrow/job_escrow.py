"""Job escrow — state machine and fund custody for one commissioned job.

A buyer funds the job, the seller's work is delivered as a fixed-size
content digest, and the creator takes a percentage cut when the job
finalizes. Custody of value is delegated to an injected HostLedger; the
escrow only decides who is paid, how much and when.

On finalization the held balance settles as:
    cut_amount → creator   (skipped when zero)
    remainder  → seller    (the entire rest of the held balance)

On cancel, the entire held balance is refunded to the buyer.

Every operation is all-or-nothing. Mutable fields are snapshotted and
the body runs inside ``ledger.atomic()``; if anything raises, including
a failed transfer, the snapshot is restored and the ledger rolls back.
The one exception is a short final payment: value received while
SUBMITTED is kept even when it does not yet cover the agreed amount.

State machine:
    CREATED → DEPOSITED              (first funding ≥ expected deposit)
    DEPOSITED → SUBMITTED            (creator submits work digest)
    SUBMITTED → CHANGE_REQUESTED     (creator asks for changes)
    CHANGE_REQUESTED → SUBMITTED     (creator resubmits)
    SUBMITTED → FINISHED             (held balance reaches amount)
    CREATED/DEPOSITED → CANCELED     (only with mark_canceled)
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from jobescrow.arithmetic import UINT256_MAX, percentage_of
from jobescrow.errors import (
    InsufficientDeposit,
    InsufficientFunds,
    InvalidParameter,
    InvalidState,
    NotAuthorized,
    TransferFailed,
)
from jobescrow.escrow.state_machine import JobStateMachine
from jobescrow.ledger.host import HostLedger
from jobescrow.models.digest import DIGEST_SIZE, DigestLike, parse_digest
from jobescrow.models.job import Job, JobState

logger = logging.getLogger(__name__)

# Cancellation is refused once work is in review for the current deposit
_NOT_CANCELABLE = frozenset({JobState.SUBMITTED, JobState.CHANGE_REQUESTED})


def _require_percentage(value: int, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(f"{label} must be an integer, got {value!r}")
    if not 0 <= value <= 100:
        raise InvalidParameter(f"{label} must be within [0, 100], got {value}")
    return value


def _require_units(value: int, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(f"{label} must be an integer, got {value!r}")
    if not 0 <= value <= UINT256_MAX:
        raise InvalidParameter(f"{label} must be a non-negative 256-bit integer, got {value}")
    return value


class JobEscrow:
    """A single job aggregate bound to a host ledger.

    Usage:
        escrow = JobEscrow.create(
            ledger, "job-1", "Logo design", seller="sally",
            amount=100, cut_percentage=10, deposit_percentage=50,
            creator="carol",
        )
        escrow.receive_funds("bob", 60)
        escrow.submit("carol", digest)
        escrow.receive_funds("bob", 40)   # pays carol 10, sally 90
    """

    def __init__(
        self,
        job: Job,
        ledger: HostLedger,
        mark_canceled: bool = False,
        digest_size: int = DIGEST_SIZE,
    ) -> None:
        self._job = job
        self._ledger = ledger
        self._mark_canceled = mark_canceled
        self._digest_size = digest_size
        self._state_machine = JobStateMachine(mark_canceled)
        self._lock = threading.RLock()

    @classmethod
    def create(
        cls,
        ledger: HostLedger,
        job_id: str,
        name: str,
        seller: str,
        amount: int,
        cut_percentage: int,
        deposit_percentage: int,
        creator: str,
        mark_canceled: bool = False,
        digest_size: int = DIGEST_SIZE,
    ) -> JobEscrow:
        """Create a job in CREATED state with derived cut and deposit.

        Raises InvalidParameter if a percentage is outside [0, 100] or
        the amount does not fit the unsigned word.
        """
        if not job_id or not job_id.strip():
            raise InvalidParameter("Job ID must be non-empty")
        _require_percentage(cut_percentage, "cut_percentage")
        _require_percentage(deposit_percentage, "deposit_percentage")
        _require_units(amount, "amount")

        job = Job(
            job_id=job_id.strip(),
            name=name,
            creator=creator,
            seller=seller,
            amount=amount,
            cut_amount=percentage_of(amount, cut_percentage),
            expected_deposit=percentage_of(amount, deposit_percentage),
        )
        logger.info(
            "Job %s created by %s: amount=%d cut=%d deposit=%d",
            job.job_id, creator, amount, job.cut_amount, job.expected_deposit,
        )
        return cls(job, ledger, mark_canceled=mark_canceled, digest_size=digest_size)

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def receive_funds(self, caller: str, value: int) -> JobState:
        """Single entry point for incoming value; behavior depends on state.

        CREATED: value must cover the expected deposit; caller becomes
        buyer. SUBMITTED: value is added to the held balance and, once
        the balance covers the amount, the job pays out and finishes.
        Any other state rejects the value outright.

        Returns the state after the call.
        """
        _require_units(value, "value")
        shortfall: Optional[int] = None

        with self._operation("receive funds") as job:
            if job.state == JobState.CREATED:
                if value < job.expected_deposit:
                    raise InsufficientDeposit(job.expected_deposit, value)
                self._collect(caller, value)
                job.buyer = caller
                self._advance(job, JobState.DEPOSITED, "receive funds")
                logger.info("Job %s deposit of %d accepted from %s", job.job_id, value, caller)

            elif job.state == JobState.SUBMITTED:
                self._collect(caller, value)
                balance = self._ledger.balance_of(job.escrow_account)
                if balance < job.amount:
                    shortfall = balance
                else:
                    self._settle(job)

            else:
                raise InvalidState(job.state, "receive funds")

        if shortfall is not None:
            logger.info(
                "Job %s holds %d of %d after payment from %s",
                self._job.job_id, shortfall, self._job.amount, caller,
            )
            raise InsufficientFunds(self._job.amount, shortfall)
        return self._job.state

    def submit(self, caller: str, submission_hash: DigestLike) -> JobState:
        """Record a work digest and move to SUBMITTED. Creator only."""
        with self._operation("submit") as job:
            self._require_creator(caller, "submit")
            if job.state not in (JobState.DEPOSITED, JobState.CHANGE_REQUESTED):
                raise InvalidState(job.state, "submit")
            job.last_submission_hash = parse_digest(submission_hash, self._digest_size)
            self._advance(job, JobState.SUBMITTED, "submit")
            logger.info(
                "Job %s submission %s recorded",
                job.job_id, job.last_submission_hash.hex(),
            )
        return self._job.state

    def request_change(self, caller: str) -> JobState:
        """Send a submitted job back for another submission. Creator only."""
        with self._operation("request change") as job:
            self._require_creator(caller, "request change")
            if job.state != JobState.SUBMITTED:
                raise InvalidState(job.state, "request change")
            self._advance(job, JobState.CHANGE_REQUESTED, "request change")
            logger.info("Job %s change requested", job.job_id)
        return self._job.state

    def cancel(self, caller: str, reason: str) -> int:
        """Refund the held balance to the buyer and record the reason.

        Creator only. Refused while SUBMITTED or CHANGE_REQUESTED. The
        state is left as it was unless the escrow was built with
        ``mark_canceled``, in which case CREATED and DEPOSITED jobs move
        to CANCELED.

        Returns the refunded amount.
        """
        with self._operation("cancel") as job:
            self._require_creator(caller, "cancel")
            if job.state in _NOT_CANCELABLE:
                raise InvalidState(job.state, "cancel")

            refund = self._ledger.balance_of(job.escrow_account)
            if refund > 0:
                if job.buyer is None:
                    raise InvalidState(job.state, "refund a job with no buyer")
                self._pay(job.buyer, refund, "refund")

            job.rejection_reason = reason
            if self._mark_canceled and job.state in (JobState.CREATED, JobState.DEPOSITED):
                self._advance(job, JobState.CANCELED, "cancel")
            logger.info(
                "Job %s canceled (%s), refunded %d to %s",
                job.job_id, reason, refund, job.buyer,
            )
        return refund

    # ------------------------------------------------------------------
    # Views
    #
    # Views take the aggregate lock, so a read waits for an operation in
    # flight and only ever returns committed fields.
    # ------------------------------------------------------------------

    @property
    def job_id(self) -> str:
        return self._job.job_id

    @property
    def creator(self) -> str:
        return self._job.creator

    def get_state(self) -> JobState:
        with self._lock:
            return self._job.state

    def get_buyer(self) -> Optional[str]:
        with self._lock:
            return self._job.buyer

    def get_deposit_amount(self) -> int:
        """Expected deposit, derived at creation."""
        return self._job.expected_deposit

    def get_cut_amount(self) -> int:
        return self._job.cut_amount

    def get_submission_hash(self) -> Optional[bytes]:
        with self._lock:
            return self._job.last_submission_hash

    def get_rejection_reason(self) -> Optional[str]:
        with self._lock:
            return self._job.rejection_reason

    def get_balance(self) -> int:
        """Value currently held by the job on the host ledger."""
        with self._lock:
            return self._ledger.balance_of(self._job.escrow_account)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data = self._job.to_dict()
            data["balance"] = self._ledger.balance_of(self._job.escrow_account)
        return data

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(self, name: str) -> Iterator[Job]:
        """Serialize, stage and roll back one operation on failure."""
        with self._lock:
            saved = self._job.mutable_fields()
            try:
                with self._ledger.atomic():
                    yield self._job
            except BaseException as e:
                self._job.restore(saved)
                logger.warning("Job %s %s rolled back: %s", self._job.job_id, name, e)
                raise

    def _advance(self, job: Job, target: JobState, operation: str) -> None:
        errors = self._state_machine.validate_transition(job.state, target)
        if errors:
            logger.debug("Job %s: %s", job.job_id, errors[0])
            raise InvalidState(job.state, operation)
        job.state = target

    def _require_creator(self, caller: str, operation: str) -> None:
        if caller != self._job.creator:
            raise NotAuthorized(caller, operation)

    def _collect(self, caller: str, value: int) -> None:
        if value == 0:
            return
        result = self._ledger.transfer(caller, self._job.escrow_account, value)
        if not result.success:
            raise TransferFailed(result, "incoming")

    def _pay(self, recipient: str, amount: int, purpose: str) -> None:
        result = self._ledger.transfer(self._job.escrow_account, recipient, amount)
        if not result.success:
            raise TransferFailed(result, purpose)

    def _settle(self, job: Job) -> None:
        """Pay the creator's cut, then everything left to the seller."""
        if job.cut_amount > 0:
            self._pay(job.creator, job.cut_amount, "cut")
        remainder = self._ledger.balance_of(job.escrow_account)
        if remainder > 0:
            self._pay(job.seller, remainder, "seller payment")
        self._advance(job, JobState.FINISHED, "receive funds")
        logger.info(
            "Job %s finished: cut %d to %s, %d to seller %s",
            job.job_id, job.cut_amount, job.creator, remainder, job.seller,
        )
