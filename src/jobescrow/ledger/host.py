"""Host ledger abstraction — custody of value lives outside the escrow.

The escrow never holds balances itself. It asks the host ledger to move
value between accounts and to report balances. Any ledger integrated
with the escrow must implement the HostLedger Protocol; swapping one
ledger for another requires zero changes to escrow logic.

Atomicity contract: transfers made inside ``atomic()`` either all
commit or all roll back when the block raises. This reproduces
revert-on-failure semantics without requiring a blockchain.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ContextManager, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a single host-ledger transfer.

    A failed transfer is reported, not raised. The caller decides
    whether the failure aborts the enclosing operation.
    """
    success: bool
    sender: str
    recipient: str
    amount: int
    reason: Optional[str] = None


@runtime_checkable
class HostLedger(Protocol):
    """Contract for host ledger implementations."""

    def balance_of(self, account: str) -> int:
        """Current balance held by ``account``."""
        ...

    def transfer(self, sender: str, recipient: str, amount: int) -> TransferResult:
        """Move ``amount`` from ``sender`` to ``recipient``."""
        ...

    def atomic(self) -> ContextManager[None]:
        """Group transfers so they commit together or not at all."""
        ...
