"""gigledger — escrow-backed job marketplace core."""

from gigledger.config import MarketplaceConfig
from gigledger.errors import FailureReason, MarketplaceError
from gigledger.service import MarketplaceService, ServiceResult

__version__ = "0.1.0"

__all__ = [
    "FailureReason",
    "MarketplaceConfig",
    "MarketplaceError",
    "MarketplaceService",
    "ServiceResult",
]
