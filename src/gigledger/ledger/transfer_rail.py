"""Transfer rail — the external collaborator that actually moves funds.

The escrow manager never moves money itself. It commits its ledger
change and then asks a TransferRail to pay out. A rail either returns a
transfer reference or raises RailError. Completed legs of a multi-leg
payout can be reversed when a later leg fails, so a payout is
all-or-nothing from the ledger's point of view.

Adding a settlement backend = implement the TransferRail Protocol. The
escrow manager does not change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Set, runtime_checkable

logger = logging.getLogger(__name__)


class RailError(Exception):
    """Raised by a rail when a transfer cannot be performed."""


@runtime_checkable
class TransferRail(Protocol):
    """Contract for fund-transfer backends."""

    @property
    def rail_id(self) -> str:
        """Unique identifier of this rail (e.g. 'in_memory', 'bank_ach')."""
        ...

    def transfer(self, destination: str, amount: int, reference: str) -> str:
        """Send ``amount`` to ``destination``. Returns a transfer ID.

        Raises RailError on failure. The escrow manager treats any other
        exception the same way and reverses earlier legs.
        """
        ...

    def reverse(self, transfer_id: str) -> None:
        """Undo a transfer previously returned by ``transfer``."""
        ...


@dataclass(frozen=True)
class TransferRecord:
    """A single transfer performed by the in-memory rail."""
    transfer_id: str
    destination: str
    amount: int
    reference: str
    reversed: bool = False


class InMemoryTransferRail:
    """Transfer rail that keeps payee balances in a dict.

    Useful as the default rail and in tests: destinations listed in
    ``failing_destinations`` make every transfer to them fail, and the
    optional ``before_transfer`` hook runs ahead of each transfer (it
    may call back into the marketplace to probe reentrancy).

    Usage:
        rail = InMemoryTransferRail()
        tx = rail.transfer("alice", 784, "job-1:release")
        rail.balance_of("alice")  # 784
    """

    def __init__(
        self,
        failing_destinations: Optional[Set[str]] = None,
        before_transfer: Optional[Callable[[str, int, str], None]] = None,
    ) -> None:
        self._balances: Dict[str, int] = {}
        self._records: Dict[str, TransferRecord] = {}
        self._order: List[str] = []
        self._counter = 0
        self.failing_destinations: Set[str] = set(failing_destinations or ())
        self.before_transfer = before_transfer

    @property
    def rail_id(self) -> str:
        return "in_memory"

    def transfer(self, destination: str, amount: int, reference: str) -> str:
        if amount <= 0:
            raise RailError(f"Transfer amount must be positive, got {amount}")
        if self.before_transfer is not None:
            self.before_transfer(destination, amount, reference)
        if destination in self.failing_destinations:
            raise RailError(f"Destination rejected transfer: {destination}")

        self._counter += 1
        transfer_id = f"TX-{self._counter:08d}"
        self._records[transfer_id] = TransferRecord(
            transfer_id=transfer_id,
            destination=destination,
            amount=amount,
            reference=reference,
        )
        self._order.append(transfer_id)
        self._balances[destination] = self._balances.get(destination, 0) + amount
        logger.debug("Transferred %d to %s (%s)", amount, destination, transfer_id)
        return transfer_id

    def reverse(self, transfer_id: str) -> None:
        record = self._records.get(transfer_id)
        if record is None:
            raise RailError(f"Unknown transfer: {transfer_id}")
        if record.reversed:
            raise RailError(f"Transfer already reversed: {transfer_id}")
        self._balances[record.destination] -= record.amount
        self._records[transfer_id] = TransferRecord(
            transfer_id=record.transfer_id,
            destination=record.destination,
            amount=record.amount,
            reference=record.reference,
            reversed=True,
        )
        logger.debug("Reversed %s", transfer_id)

    def balance_of(self, destination: str) -> int:
        """Net amount received by ``destination``."""
        return self._balances.get(destination, 0)

    def transfers(self, include_reversed: bool = False) -> List[TransferRecord]:
        """Transfers in the order they were made."""
        records = [self._records[tid] for tid in self._order]
        if include_reversed:
            return records
        return [r for r in records if not r.reversed]
