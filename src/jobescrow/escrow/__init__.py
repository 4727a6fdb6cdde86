"""Job escrow engine — the aggregate and its lifecycle rules."""

from jobescrow.escrow.job_escrow import JobEscrow
from jobescrow.escrow.state_machine import JobStateMachine

__all__ = ["JobEscrow", "JobStateMachine"]
