"""Core data models for gigledger."""

from gigledger.models.escrow import (
    EscrowEntry,
    EscrowState,
    FeeSplit,
    Settlement,
)
from gigledger.models.marketplace import (
    Application,
    CallerRole,
    Job,
    JobStatus,
    UserProfile,
)

__all__ = [
    "Application",
    "CallerRole",
    "EscrowEntry",
    "EscrowState",
    "FeeSplit",
    "Job",
    "JobStatus",
    "Settlement",
    "UserProfile",
]
