"""Escrow manager — custody of job funds between posting and payout.

When a client posts a job, whatever they attach is held in an escrow
entry keyed by job ID. The entry is drained at most once:

    HELD → RELEASED   client releases payment for completed work
    HELD → REFUNDED   client cancels an open job

Release pays out exactly the job price, split as:
    platform_fee      → platform payout account (floor(price * rate / 100))
    freelancer_amount → freelancer (price - platform_fee)
Anything deposited above the price stays in the entry.

Refund returns the whole balance to the depositor.

Ordering: the ledger change is committed first and the transfers run
last, so a reentrant call during a transfer already sees the drained
entry. If any transfer fails, completed legs are reversed and the entry
is restored to exactly what it was before the call.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Set, Tuple

from gigledger.errors import (
    AlreadyReleasedError,
    InsufficientEscrowError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    TransferFailedError,
)
from gigledger.ledger.fees import DEFAULT_FEE_PERCENT, split_price
from gigledger.ledger.transfer_rail import RailError, TransferRail
from gigledger.models.escrow import EscrowEntry, EscrowState, Settlement

logger = logging.getLogger(__name__)


class EscrowManager:
    """Holds per-job escrow entries and settles them through a rail.

    Usage:
        manager = EscrowManager(rail, platform_account="platform")
        manager.open_escrow(1, "client-1", 1000)
        settlement = manager.release(1, price=800, payee_id="freelancer-1")
        manager.balance(1)  # 200
    """

    def __init__(
        self,
        rail: TransferRail,
        platform_account: str,
        fee_percent: int = DEFAULT_FEE_PERCENT,
    ) -> None:
        if not platform_account or not platform_account.strip():
            raise ValueError("Platform account must be non-empty")
        self._rail = rail
        self._platform_account = platform_account
        self._fee_percent = fee_percent
        self._entries: Dict[int, EscrowEntry] = {}
        self._fees_collected = 0
        self._in_flight: Set[int] = set()
        self._in_flight_lock = threading.Lock()

    @property
    def platform_account(self) -> str:
        return self._platform_account

    @property
    def fee_percent(self) -> int:
        return self._fee_percent

    @property
    def fees_collected(self) -> int:
        """Total platform fees paid out so far."""
        return self._fees_collected

    def open_escrow(
        self,
        job_id: int,
        depositor_id: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> EscrowEntry:
        """Create the escrow entry for a new job.

        The deposit is not checked against the job price; a short deposit
        surfaces later as InsufficientEscrowError on release.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise InvalidInputError(f"Deposit must be a non-negative integer, got {amount!r}")
        if job_id in self._entries:
            raise ValueError(f"Escrow already exists for job {job_id}")
        if now is None:
            now = datetime.now(timezone.utc)

        entry = EscrowEntry(
            job_id=job_id,
            depositor_id=depositor_id,
            deposited=amount,
            balance=amount,
            created_at=now,
        )
        self._entries[job_id] = entry
        return entry

    def discard(self, job_id: int) -> None:
        """Forget an entry that was opened for a job that never committed."""
        entry = self._entries.get(job_id)
        if entry is not None and entry.state != EscrowState.HELD:
            raise ValueError(f"Cannot discard settled escrow for job {job_id}")
        self._entries.pop(job_id, None)

    def get(self, job_id: int) -> EscrowEntry:
        """Get the escrow entry for a job."""
        entry = self._entries.get(job_id)
        if entry is None:
            raise NotFoundError(f"No escrow for job {job_id}")
        return entry

    def balance(self, job_id: int) -> int:
        """Amount currently held for a job."""
        return self.get(job_id).balance

    def total_held(self) -> int:
        """Sum of all balances, stranded surplus included."""
        return sum(e.balance for e in list(self._entries.values()))

    def release(
        self,
        job_id: int,
        price: int,
        payee_id: str,
        now: Optional[datetime] = None,
    ) -> Settlement:
        """Pay ``price`` out of escrow: fee to the platform, rest to payee.

        Raises:
            AlreadyReleasedError: the entry was already released.
            InvalidStateError: the entry was refunded, or is mid-settlement.
            InsufficientEscrowError: balance is below ``price``.
            TransferFailedError: a transfer failed; nothing changed.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        with self._exclusive(job_id):
            entry = self.get(job_id)
            if entry.state == EscrowState.RELEASED:
                raise AlreadyReleasedError(f"Payment for job {job_id} was already released")
            if not entry.can_transition_to(EscrowState.RELEASED):
                raise InvalidStateError(
                    f"Escrow for job {job_id} is {entry.state.value}, cannot release"
                )
            if entry.balance < price:
                raise InsufficientEscrowError(
                    f"Escrow for job {job_id} holds {entry.balance}, price is {price}"
                )

            split = split_price(price, self._fee_percent)
            settled = replace(
                entry,
                state=EscrowState.RELEASED,
                balance=entry.balance - price,
                released=price,
                settled_at=now,
            )
            legs = [
                (payee_id, split.freelancer_amount),
                (self._platform_account, split.platform_fee),
            ]

            # Commit before paying out.
            self._entries[job_id] = settled
            self._fees_collected += split.platform_fee
            try:
                self._pay_out(job_id, "release", legs)
            except Exception:
                self._entries[job_id] = entry
                self._fees_collected -= split.platform_fee
                raise

        logger.info(
            "Released job %d: %d to %s, fee %d, %d left in escrow",
            job_id, split.freelancer_amount, payee_id,
            split.platform_fee, settled.balance,
        )
        return Settlement(
            job_id=job_id,
            entry=settled,
            transfers=tuple((dest, amt) for dest, amt in legs if amt > 0),
            split=split,
        )

    def refund(
        self,
        job_id: int,
        now: Optional[datetime] = None,
    ) -> Settlement:
        """Return the whole balance to the depositor.

        Raises:
            InvalidStateError: the entry was already settled, or is mid-settlement.
            InsufficientEscrowError: nothing is held.
            TransferFailedError: the refund transfer failed; nothing changed.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        with self._exclusive(job_id):
            entry = self.get(job_id)
            if not entry.can_transition_to(EscrowState.REFUNDED):
                raise InvalidStateError(
                    f"Escrow for job {job_id} is {entry.state.value}, cannot refund"
                )
            if entry.balance <= 0:
                raise InsufficientEscrowError(f"Escrow for job {job_id} is empty")

            amount = entry.balance
            settled = replace(
                entry,
                state=EscrowState.REFUNDED,
                balance=0,
                refunded=amount,
                settled_at=now,
            )
            legs = [(entry.depositor_id, amount)]

            self._entries[job_id] = settled
            try:
                self._pay_out(job_id, "refund", legs)
            except Exception:
                self._entries[job_id] = entry
                raise

        logger.info("Refunded %d to %s for job %d", amount, entry.depositor_id, job_id)
        return Settlement(job_id=job_id, entry=settled, transfers=tuple(legs))

    @contextmanager
    def _exclusive(self, job_id: int) -> Iterator[None]:
        """Per-job in-flight exclusion for settlement."""
        with self._in_flight_lock:
            if job_id in self._in_flight:
                raise InvalidStateError(
                    f"Escrow settlement already in progress for job {job_id}"
                )
            self._in_flight.add(job_id)
        try:
            yield
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(job_id)

    def _pay_out(
        self,
        job_id: int,
        action: str,
        legs: List[Tuple[str, int]],
    ) -> None:
        """Run every leg or none of them.

        Zero-amount legs are skipped. On any failure raised by the rail,
        legs already sent are reversed in reverse order and
        TransferFailedError is raised.
        """
        done: List[str] = []
        reference = f"job-{job_id}:{action}"
        try:
            for destination, amount in legs:
                if amount <= 0:
                    continue
                done.append(self._rail.transfer(destination, amount, reference))
        except Exception as e:
            logger.warning(
                "Transfer failed on %s for job %d (%s): %s", self._rail.rail_id, job_id, action, e,
            )
            for transfer_id in reversed(done):
                try:
                    self._rail.reverse(transfer_id)
                except RailError:
                    logger.exception(
                        "Could not reverse %s for job %d; manual reconciliation needed",
                        transfer_id, job_id,
                    )
            raise TransferFailedError(f"Transfer failed for job {job_id}: {e}") from e
