"""Host ledger capability — value custody, balances and transfers."""

from jobescrow.ledger.host import HostLedger, TransferResult
from jobescrow.ledger.memory import InMemoryLedger

__all__ = ["HostLedger", "InMemoryLedger", "TransferResult"]
