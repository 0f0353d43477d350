"""Ledger subsystem — escrow custody, fee split, and transfer rails."""

from gigledger.ledger.escrow import EscrowManager
from gigledger.ledger.fees import platform_fee, split_price
from gigledger.ledger.transfer_rail import InMemoryTransferRail, RailError, TransferRail

__all__ = [
    "EscrowManager",
    "InMemoryTransferRail",
    "RailError",
    "TransferRail",
    "platform_fee",
    "split_price",
]
