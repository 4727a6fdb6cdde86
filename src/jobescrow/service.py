"""Job escrow service — unified facade over many independent jobs.

This is the primary interface for programmatic access. It:
- Keys every JobEscrow aggregate by an explicit job identifier
- Serializes mutating operations per job behind an exclusive lock
- Resolves the caller (explicit id or signed operation); a signed
  operation is consumed only after it commits
- Records every committed mutation in the audit event log
- Converts typed escrow errors into ServiceResult values

Views do not take the job lock. They wait on the aggregate and ledger
locks instead, so they never observe a half-applied operation.

Audit ordering: the escrow operation commits first (value has already
moved on the host ledger and cannot be taken back), then the event is
appended. If the append fails the result still succeeds but carries a
warning, and the service is flagged as audit-degraded for operators.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import uuid4

from jobescrow.config import EscrowConfig
from jobescrow.errors import (
    EscrowError,
    InsufficientFunds,
    InvalidParameter,
    JobNotFound,
    NotAuthorized,
)
from jobescrow.escrow.job_escrow import JobEscrow
from jobescrow.escrow.state_machine import JobStateMachine
from jobescrow.identity import Authorization, CallerAuthenticator, SignatureLike
from jobescrow.ledger.host import HostLedger
from jobescrow.models.digest import DigestLike, parse_digest
from jobescrow.models.job import JobState
from jobescrow.persistence.event_log import EventKind, EventLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None


class JobEscrowService:
    """Facade over job escrows sharing one host ledger.

    Usage:
        service = JobEscrowService(InMemoryLedger())
        result = service.create_job(
            "Logo design", seller="sally", amount=100,
            cut_percentage=10, deposit_percentage=50, creator="carol",
        )
        job_id = result.data["job_id"]
        service.receive_funds(job_id, 60, caller="bob")
        service.submit(job_id, digest, caller="carol")
        service.receive_funds(job_id, 40, caller="bob")

    Signed callers (optional):
        service = JobEscrowService(ledger, authenticator=CallerAuthenticator())
        service.submit(job_id, digest, signature=sig, nonce=1)
    """

    def __init__(
        self,
        ledger: HostLedger,
        config: Optional[EscrowConfig] = None,
        event_log: Optional[EventLog] = None,
        authenticator: Optional[CallerAuthenticator] = None,
    ) -> None:
        if not isinstance(ledger, HostLedger):
            raise TypeError(
                f"Ledger must implement HostLedger Protocol, got {type(ledger)}",
            )
        self._ledger = ledger
        self._config = config or EscrowConfig()
        self._event_log = event_log
        self._authenticator = authenticator
        self._state_machine = JobStateMachine(self._config.mark_canceled)

        self._jobs: dict[str, JobEscrow] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0
        self._event_lock = threading.Lock()
        self._audit_degraded = False

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    def create_job(
        self,
        name: str,
        seller: str,
        amount: int,
        cut_percentage: int,
        deposit_percentage: int,
        creator: str,
        job_id: Optional[str] = None,
    ) -> ServiceResult:
        """Create a job; the caller becomes its creator."""
        if job_id is None:
            job_id = f"job-{uuid4().hex[:12]}"
        try:
            escrow = JobEscrow.create(
                self._ledger,
                job_id=job_id,
                name=name,
                seller=seller,
                amount=amount,
                cut_percentage=cut_percentage,
                deposit_percentage=deposit_percentage,
                creator=creator,
                mark_canceled=self._config.mark_canceled,
                digest_size=self._config.digest_size,
            )
            with self._registry_lock:
                if escrow.job_id in self._jobs:
                    raise InvalidParameter(f"Job ID already exists: {escrow.job_id}")
                self._jobs[escrow.job_id] = escrow
                self._locks[escrow.job_id] = threading.Lock()
        except EscrowError as e:
            return self._failure(job_id, "create", e)

        data: dict[str, Any] = {
            "job_id": escrow.job_id,
            "state": escrow.get_state().value,
            "cut_amount": escrow.get_cut_amount(),
            "expected_deposit": escrow.get_deposit_amount(),
        }
        with self._job_lock(escrow.job_id):
            warning = self._record(EventKind.JOB_CREATED, creator, {
                "job_id": escrow.job_id,
                "name": name,
                "seller": seller,
                "amount": amount,
                "cut_amount": escrow.get_cut_amount(),
                "expected_deposit": escrow.get_deposit_amount(),
            })
        return self._success(data, warning)

    def receive_funds(
        self,
        job_id: str,
        value: int,
        caller: Optional[str] = None,
        signature: Optional[SignatureLike] = None,
        nonce: int = 0,
    ) -> ServiceResult:
        """Send value to a job. Outcome depends on the job's state."""
        try:
            escrow = self._get(job_id)
            with self._job_lock(job_id):
                who, grant = self._resolve_caller(
                    job_id, "receive_funds", caller, signature, {"value": value}, nonce,
                )
                prior = escrow.get_state()
                try:
                    state = escrow.receive_funds(who, value)
                except InsufficientFunds as e:
                    # Value was retained by the job: audit it, then report
                    self._consume(grant)
                    warning = self._record(EventKind.PAYMENT_RECEIVED, who, {
                        "job_id": job_id, "value": value, "balance": e.balance,
                    })
                    result = self._failure(job_id, "receive_funds", e)
                    data = {"balance": e.balance, "state": prior.value}
                    if warning:
                        data["warning"] = warning
                    return ServiceResult(
                        success=False, errors=result.errors,
                        data=data, error_code=result.error_code,
                    )

                if prior == JobState.CREATED:
                    kind = EventKind.DEPOSIT_ACCEPTED
                    payload = {"job_id": job_id, "value": value, "buyer": who}
                else:
                    kind = EventKind.JOB_FINISHED
                    payload = {
                        "job_id": job_id,
                        "value": value,
                        "cut_amount": escrow.get_cut_amount(),
                        "creator": escrow.creator,
                    }
                self._consume(grant)
                warning = self._record(kind, who, payload)
        except EscrowError as e:
            return self._failure(job_id, "receive_funds", e)

        return self._success(
            {"job_id": job_id, "state": state.value, "balance": escrow.get_balance()},
            warning,
        )

    def submit(
        self,
        job_id: str,
        submission_hash: DigestLike,
        caller: Optional[str] = None,
        signature: Optional[SignatureLike] = None,
        nonce: int = 0,
    ) -> ServiceResult:
        """Record the seller's delivered work digest. Creator only."""
        try:
            escrow = self._get(job_id)
            digest = parse_digest(submission_hash, self._config.digest_size)
            with self._job_lock(job_id):
                who, grant = self._resolve_caller(
                    job_id, "submit", caller, signature,
                    {"submission_hash": digest.hex()}, nonce,
                )
                state = escrow.submit(who, digest)
                self._consume(grant)
                warning = self._record(EventKind.WORK_SUBMITTED, who, {
                    "job_id": job_id, "submission_hash": digest.hex(),
                })
        except EscrowError as e:
            return self._failure(job_id, "submit", e)
        return self._success(
            {"job_id": job_id, "state": state.value, "submission_hash": digest.hex()},
            warning,
        )

    def request_change(
        self,
        job_id: str,
        caller: Optional[str] = None,
        signature: Optional[SignatureLike] = None,
        nonce: int = 0,
    ) -> ServiceResult:
        """Ask for a resubmission. Creator only."""
        try:
            escrow = self._get(job_id)
            with self._job_lock(job_id):
                who, grant = self._resolve_caller(
                    job_id, "request_change", caller, signature, {}, nonce,
                )
                state = escrow.request_change(who)
                self._consume(grant)
                warning = self._record(EventKind.CHANGE_REQUESTED, who, {"job_id": job_id})
        except EscrowError as e:
            return self._failure(job_id, "request_change", e)
        return self._success({"job_id": job_id, "state": state.value}, warning)

    def cancel(
        self,
        job_id: str,
        reason: str,
        caller: Optional[str] = None,
        signature: Optional[SignatureLike] = None,
        nonce: int = 0,
    ) -> ServiceResult:
        """Refund the buyer and record why the job was canceled. Creator only."""
        try:
            escrow = self._get(job_id)
            with self._job_lock(job_id):
                who, grant = self._resolve_caller(
                    job_id, "cancel", caller, signature, {"reason": reason}, nonce,
                )
                refunded = escrow.cancel(who, reason)
                self._consume(grant)
                warning = self._record(EventKind.JOB_CANCELED, who, {
                    "job_id": job_id,
                    "reason": reason,
                    "refunded": refunded,
                    "buyer": escrow.get_buyer(),
                })
        except EscrowError as e:
            return self._failure(job_id, "cancel", e)
        return self._success(
            {
                "job_id": job_id,
                "state": escrow.get_state().value,
                "refunded": refunded,
                "rejection_reason": reason,
            },
            warning,
        )

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[JobEscrow]:
        """Look up a job aggregate."""
        return self._jobs.get(job_id)

    def job_view(self, job_id: str) -> ServiceResult:
        """Committed fields of a job plus the operations its state allows."""
        escrow = self._jobs.get(job_id)
        if escrow is None:
            return self._failure(job_id, "view", JobNotFound(job_id))
        data = escrow.snapshot()
        state = escrow.get_state()
        data["available_operations"] = list(
            self._state_machine.available_operations(state)
        )
        data["terminal"] = self._state_machine.is_terminal(state)
        return ServiceResult(success=True, data=data)

    def list_jobs(self) -> list[str]:
        return sorted(self._jobs)

    def status(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for escrow in list(self._jobs.values()):
            key = escrow.get_state().value
            counts[key] = counts.get(key, 0) + 1
        return {
            "jobs": len(self._jobs),
            "jobs_by_state": counts,
            "events": self._event_log.count if self._event_log is not None else 0,
            "mark_canceled": self._config.mark_canceled,
            "audit_degraded": self._audit_degraded,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get(self, job_id: str) -> JobEscrow:
        escrow = self._jobs.get(job_id)
        if escrow is None:
            raise JobNotFound(job_id)
        return escrow

    @contextmanager
    def _job_lock(self, job_id: str) -> Iterator[None]:
        with self._locks[job_id]:
            yield

    def _resolve_caller(
        self,
        job_id: str,
        operation: str,
        caller: Optional[str],
        signature: Optional[SignatureLike],
        params: dict[str, Any],
        nonce: int,
    ) -> tuple[str, Optional[Authorization]]:
        """Return the acting identity, recovering it from a signature if given.

        Must run under the job lock. The returned authorization is only
        consumed once the operation commits.
        """
        if signature is None:
            if not caller:
                raise InvalidParameter(f"{operation} requires a caller or a signature")
            return caller, None
        if self._authenticator is None:
            raise NotAuthorized(caller or "<unsigned>", f"{operation} (no authenticator configured)")
        grant = self._authenticator.verify(job_id, operation, signature, params, nonce)
        if caller is not None and caller != grant.address:
            raise NotAuthorized(grant.address, f"{operation} on behalf of {caller}")
        return grant.address, grant

    def _consume(self, grant: Optional[Authorization]) -> None:
        if grant is not None and self._authenticator is not None:
            self._authenticator.consume(grant)

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        with self._event_lock:
            self._event_counter += 1
            return f"EVT-{self._event_counter:08d}"

    def _record(
        self, kind: EventKind, actor_id: str, payload: dict[str, Any],
    ) -> Optional[str]:
        """Append an audit event. Returns a warning string on failure.

        MUST NOT roll back the operation — value has already moved.
        """
        if self._event_log is None:
            return None
        try:
            self._event_log.record(self._next_event_id(), kind, actor_id, payload)
        except (ValueError, OSError) as e:
            self._audit_degraded = True
            logger.error("Audit append failed for %s: %s", kind.value, e)
            return f"Audit degraded: {e}; operation committed but not logged"
        return None

    @staticmethod
    def _success(data: dict[str, Any], warning: Optional[str]) -> ServiceResult:
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    @staticmethod
    def _failure(job_id: Optional[str], operation: str, error: EscrowError) -> ServiceResult:
        logger.warning("%s on %s failed [%s]: %s", operation, job_id, error.code, error)
        return ServiceResult(success=False, errors=[str(error)], error_code=error.code)
