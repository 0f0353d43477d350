"""Escrow models — per-job custody records and the payout split.

All amounts are integers in the smallest currency unit. Fees use floor
division, so there are no fractional units anywhere in the ledger.

Invariant: freelancer_amount + platform_fee == price for every split.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional


class EscrowState(str, enum.Enum):
    """Lifecycle state of an escrow entry.

    State machine:
        HELD → RELEASED
        HELD → REFUNDED
    """
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


ESCROW_TRANSITIONS: Dict[EscrowState, frozenset] = {
    EscrowState.HELD: frozenset({EscrowState.RELEASED, EscrowState.REFUNDED}),
    EscrowState.RELEASED: frozenset(),
    EscrowState.REFUNDED: frozenset(),
}


@dataclass(frozen=True)
class EscrowEntry:
    """Funds held on behalf of one job.

    balance never grows after creation. A release takes exactly the job
    price out; a refund takes the whole balance out. Whatever a release
    leaves behind stays here.
    """
    job_id: int
    depositor_id: str
    deposited: int
    balance: int
    created_at: datetime
    state: EscrowState = EscrowState.HELD
    released: int = 0
    refunded: int = 0
    settled_at: Optional[datetime] = None

    def can_transition_to(self, target: EscrowState) -> bool:
        return target in ESCROW_TRANSITIONS[self.state]


@dataclass(frozen=True)
class FeeSplit:
    """How a released price is divided."""
    price: int
    fee_percent: int
    platform_fee: int
    freelancer_amount: int


@dataclass(frozen=True)
class Settlement:
    """Result of a completed escrow drain."""
    job_id: int
    entry: EscrowEntry
    transfers: tuple[tuple[str, int], ...]
    split: Optional[FeeSplit] = None
