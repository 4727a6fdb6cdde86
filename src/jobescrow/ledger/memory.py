"""In-memory host ledger.

Balances are plain integers keyed by account id. Storage is in-memory
only; the ledger is the reference implementation of HostLedger used by
the service, the CLI demo and the tests.

Reads take the same lock as ``atomic()``, so a balance read from another
thread waits for an open atomic block to commit or roll back and never
sees a transfer that is later undone.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from contextlib import contextmanager
from typing import Deque, Dict, Iterator, List, Set

from jobescrow.ledger.host import TransferResult

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10_000


class InMemoryLedger:
    """Integer balance ledger with snapshot-based atomic blocks.

    Only the most recent ``history_limit`` transfer results are kept.

    Usage:
        ledger = InMemoryLedger()
        ledger.mint("buyer", 100)
        with ledger.atomic():
            ledger.transfer("buyer", "escrow:job-1", 60)
    """

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if history_limit < 0:
            raise ValueError("History limit must be non-negative")
        self._balances: Dict[str, int] = {}
        self._rejecting: Set[str] = set()
        self._history: Deque[TransferResult] = deque(maxlen=history_limit)
        # Transfers ever appended; rollback uses it to drop its own entries
        self._appended = 0
        self._lock = threading.RLock()

    def mint(self, account: str, amount: int) -> None:
        """Credit ``account`` with new value (test and demo funding)."""
        if amount < 0:
            raise ValueError("Mint amount must be non-negative")
        with self._lock:
            self._balances[account] = self._balances.get(account, 0) + amount

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(account, 0)

    def reject_incoming(self, account: str) -> None:
        """Make every transfer to ``account`` fail, like a refusing recipient."""
        with self._lock:
            self._rejecting.add(account)

    def accept_incoming(self, account: str) -> None:
        with self._lock:
            self._rejecting.discard(account)

    def transfer(self, sender: str, recipient: str, amount: int) -> TransferResult:
        with self._lock:
            reason = None
            if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                reason = f"invalid amount: {amount!r}"
            elif recipient in self._rejecting:
                reason = f"recipient {recipient} rejected transfer"
            elif self._balances.get(sender, 0) < amount:
                reason = (
                    f"insufficient balance: {sender} holds "
                    f"{self._balances.get(sender, 0)}"
                )

            if reason is not None:
                result = TransferResult(False, sender, recipient, amount, reason)
                logger.debug("Transfer refused: %s", reason)
            else:
                self._balances[sender] -= amount
                self._balances[recipient] = self._balances.get(recipient, 0) + amount
                result = TransferResult(True, sender, recipient, amount)
            self._history.append(result)
            self._appended += 1
            return result

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Snapshot balances; restore them if the block raises.

        Nested blocks roll back only their own transfers unless the
        exception propagates further. The lock is held for the whole
        block, so other threads see either none or all of its transfers.
        """
        with self._lock:
            balances = dict(self._balances)
            appended = self._appended
            try:
                yield
            except BaseException:
                self._balances = balances
                for _ in range(min(self._appended - appended, len(self._history))):
                    self._history.pop()
                self._appended = appended
                raise

    def history(self) -> List[TransferResult]:
        """Recent committed and refused transfers, oldest first."""
        with self._lock:
            return list(self._history)

    def total_supply(self) -> int:
        with self._lock:
            return sum(self._balances.values())
