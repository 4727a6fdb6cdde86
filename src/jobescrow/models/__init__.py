"""Job escrow data models."""

from jobescrow.models.digest import (
    DIGEST_SIZE,
    bundle_digest,
    content_digest,
    parse_digest,
)
from jobescrow.models.job import (
    JOB_TRANSITIONS,
    TERMINAL_STATES,
    Job,
    JobState,
    allowed_transitions,
    escrow_account_for,
)

__all__ = [
    "DIGEST_SIZE",
    "JOB_TRANSITIONS",
    "TERMINAL_STATES",
    "Job",
    "JobState",
    "allowed_transitions",
    "bundle_digest",
    "content_digest",
    "escrow_account_for",
    "parse_digest",
]
