"""Job state machine — enforces valid lifecycle transitions.

Job lifecycle:
    OPEN → ASSIGNED → COMPLETED → DISPUTED
    ASSIGNED → DISPUTED
    OPEN → CANCELLED

State semantics:
- OPEN: accepting applications, title/description still editable.
- ASSIGNED: a freelancer was chosen, work in progress.
- COMPLETED: either party declared the work done; payment may be released.
- DISPUTED: terminal here; resolution happens outside the marketplace.
- CANCELLED: terminal; the client withdrew the job and was refunded.

Fail-closed: invalid transitions raise. There are no implicit transitions.
"""

from __future__ import annotations

from dataclasses import replace

from gigledger.errors import InvalidStateError
from gigledger.models.marketplace import Job, JobStatus


# Valid transitions: {from_state: {allowed_to_states}}
_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.OPEN: {JobStatus.ASSIGNED, JobStatus.CANCELLED},
    JobStatus.ASSIGNED: {JobStatus.COMPLETED, JobStatus.DISPUTED},
    JobStatus.COMPLETED: {JobStatus.DISPUTED},
    # Terminal states — no outgoing transitions
    JobStatus.DISPUTED: set(),
    JobStatus.CANCELLED: set(),
}


class JobStateMachine:
    """Validates and applies job status transitions.

    Pure computation: returns the transitioned record and never touches
    storage or the event log. The service layer commits the result.
    """

    @staticmethod
    def validate_transition(job: Job, target: JobStatus) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        current = job.status
        allowed = JobStateMachine.valid_transitions(current)

        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid job transition for job {job.job_id}: "
                f"{current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def apply_transition(job: Job, target: JobStatus, **changes) -> Job:
        """Validate a transition and return the updated record.

        Extra keyword arguments are applied to the new record alongside
        the status change. Raises InvalidStateError if not allowed.
        """
        errors = JobStateMachine.validate_transition(job, target)
        if errors:
            raise InvalidStateError(errors[0])
        return replace(job, status=target, **changes)

    @staticmethod
    def require_status(job: Job, *expected: JobStatus) -> None:
        """Raise InvalidStateError unless the job is in one of ``expected``."""
        if job.status not in expected:
            wanted = " or ".join(s.value for s in expected)
            raise InvalidStateError(
                f"Job {job.job_id} is {job.status.value}, expected {wanted}"
            )

    @staticmethod
    def is_terminal(status: JobStatus) -> bool:
        """Check if a status is terminal (no further transitions)."""
        return not _TRANSITIONS.get(status)

    @staticmethod
    def valid_transitions(status: JobStatus) -> set[JobStatus]:
        """Return the set of valid target states from the given state."""
        return set(_TRANSITIONS.get(status, set()))
