"""Registry — id sequences and lookup indices.

Keeps the lookups the marketplace needs without scanning every job:
- job IDs each principal created (as client) and was assigned (as freelancer);
- the applications on each job, in submission order;
- which freelancers already applied to each job (dedup set).

Indices are append-only and never pruned. Every stored collection is an
immutable tuple/frozenset that is replaced, never mutated, so a reader
always gets a complete snapshot.
"""

from __future__ import annotations

import threading
from typing import Dict, FrozenSet, Tuple

from gigledger.errors import AlreadyAppliedError, InvalidInputError
from gigledger.models.marketplace import Application


class SequenceGenerator:
    """Monotonic 1-based id allocator.

    ``peek()`` shows the id the next commit will get; ``advance()``
    consumes it. Ids are never reused, and 0 is never handed out.
    """

    def __init__(self, start: int = 1) -> None:
        if start < 1:
            raise ValueError(f"Sequence must start at 1 or above, got {start}")
        self._next = start
        self._lock = threading.Lock()

    def peek(self) -> int:
        return self._next

    def advance(self) -> int:
        with self._lock:
            value = self._next
            self._next += 1
            return value

    @property
    def issued(self) -> int:
        """How many ids were handed out."""
        return self._next - 1


class JobIndex:
    """Per-principal job lists."""

    def __init__(self) -> None:
        self._client_jobs: Dict[str, Tuple[int, ...]] = {}
        self._freelancer_jobs: Dict[str, Tuple[int, ...]] = {}

    def add_client_job(self, principal_id: str, job_id: int) -> None:
        self._client_jobs[principal_id] = self._client_jobs.get(principal_id, ()) + (job_id,)

    def add_freelancer_job(self, principal_id: str, job_id: int) -> None:
        self._freelancer_jobs[principal_id] = (
            self._freelancer_jobs.get(principal_id, ()) + (job_id,)
        )

    def client_jobs(self, principal_id: str) -> Tuple[int, ...]:
        return self._client_jobs.get(principal_id, ())

    def freelancer_jobs(self, principal_id: str) -> Tuple[int, ...]:
        return self._freelancer_jobs.get(principal_id, ())


class ApplicationBook:
    """Applications per job plus the per-job dedup set."""

    def __init__(self) -> None:
        self._applications: Dict[int, Tuple[Application, ...]] = {}
        self._applied: Dict[int, FrozenSet[str]] = {}

    def has_applied(self, job_id: int, freelancer_id: str) -> bool:
        return freelancer_id in self._applied.get(job_id, frozenset())

    def check_can_apply(self, job_id: int, freelancer_id: str) -> None:
        """Raise AlreadyAppliedError on a second application."""
        if self.has_applied(job_id, freelancer_id):
            raise AlreadyAppliedError(
                f"Freelancer {freelancer_id} already applied to job {job_id}"
            )

    def add(self, application: Application) -> int:
        """Append an application. Returns its index within the job."""
        self.check_can_apply(application.job_id, application.freelancer_id)
        existing = self._applications.get(application.job_id, ())
        self._applications[application.job_id] = existing + (application,)
        self._applied[application.job_id] = (
            self._applied.get(application.job_id, frozenset())
            | {application.freelancer_id}
        )
        return len(existing)

    def for_job(self, job_id: int) -> Tuple[Application, ...]:
        return self._applications.get(job_id, ())

    def get(self, job_id: int, index: int) -> Application:
        """Look up an application by its submission index."""
        applications = self.for_job(job_id)
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(applications):
            raise InvalidInputError(
                f"Job {job_id} has no application at index {index!r} "
                f"({len(applications)} submitted)"
            )
        return applications[index]
