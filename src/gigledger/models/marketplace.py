"""Marketplace models — user profiles, jobs, and applications.

Records are frozen: every mutation replaces the stored record with a new
one (dataclasses.replace), so a record handed to a reader never changes
underneath it.

Job lifecycle: OPEN → ASSIGNED → COMPLETED → DISPUTED
               OPEN → CANCELLED
               ASSIGNED → DISPUTED
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class JobStatus(str, enum.Enum):
    """Lifecycle state of a job."""
    OPEN = "open"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class CallerRole(str, enum.Enum):
    """How the calling principal relates to a particular job."""
    CLIENT = "client"
    FREELANCER = "freelancer"
    OUTSIDER = "outsider"


@dataclass(frozen=True)
class UserProfile:
    """A registered principal.

    Role flags are fixed at registration. The resume is only kept for
    freelancers.
    """
    principal_id: str
    is_client: bool
    is_freelancer: bool
    created_at: datetime
    resume: str = ""
    rating: int = 0
    completed_jobs: int = 0


@dataclass(frozen=True)
class Job:
    """A job posted by a client.

    freelancer_id stays None until the job is assigned. price can only
    go down, once, when a discounted bid is accepted.
    """
    job_id: int
    client_id: str
    title: str
    description: str
    price: int
    created_at: datetime
    status: JobStatus = JobStatus.OPEN
    freelancer_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    funds_released: bool = False

    def role_of(self, principal_id: str) -> CallerRole:
        """Resolve the caller's relationship to this job."""
        if principal_id == self.client_id:
            return CallerRole.CLIENT
        if self.freelancer_id is not None and principal_id == self.freelancer_id:
            return CallerRole.FREELANCER
        return CallerRole.OUTSIDER


@dataclass(frozen=True)
class Application:
    """A freelancer's bid on a job. Immutable once submitted."""
    job_id: int
    freelancer_id: str
    resume: str
    bid: int
    submitted_at: datetime
