"""Marketplace service — unified facade for the job marketplace.

This is the primary interface for programmatic access to gigledger.
It orchestrates all subsystems:
- Registration (client / freelancer profiles)
- Job lifecycle (create, edit, apply, assign, complete, dispute, cancel)
- Escrow settlement (release with platform fee, refund on cancel)
- Reputation (running-average ratings)
- Event log (one event per committed action, in commit order)

Callers are identified by an opaque principal id that an upstream
authentication layer has already verified.

Every write action runs under a single re-entrant writer lock, so
actions are applied one at a time in a total order. Each action either
commits completely and emits its event, or changes nothing and returns
a failed ServiceResult naming the reason.

Commit ordering per action:
1. Validate and stage new records (pure, nothing visible yet).
2. Append the audit event. This is the commit point for actions that
   move no money; if it fails, nothing was applied.
3. Apply the staged records, then publish the event to subscribers.

Payment actions (release, cancel) differ: the job and escrow changes are
applied before the transfer so a reentrant call sees them, and are
restored if the transfer fails. The event is appended after the money
has moved; an event-log failure at that point is reported as a warning.
Because of that, an action committed from inside a transfer callback (a
rating on the just-released job, say) is logged ahead of the payment
event that enabled it. The log then holds the reentrant action first,
while the payment state was visible to it all along.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from gigledger.config import MarketplaceConfig
from gigledger.engine.job_state_machine import JobStateMachine
from gigledger.engine.reputation import updated_rating, validate_score
from gigledger.errors import (
    AlreadyRegisteredError,
    AlreadyReleasedError,
    AuditFailureError,
    BidExceedsPriceError,
    FailureReason,
    InsufficientEscrowError,
    InvalidInputError,
    InvalidRoleError,
    InvalidStateError,
    MarketplaceError,
    NotFoundError,
    UnauthorizedError,
)
from gigledger.ledger.escrow import EscrowManager
from gigledger.ledger.transfer_rail import InMemoryTransferRail, TransferRail
from gigledger.models.escrow import EscrowEntry
from gigledger.models.marketplace import (
    Application,
    CallerRole,
    Job,
    JobStatus,
    UserProfile,
)
from gigledger.persistence.event_log import EventKind, EventLog, EventRecord
from gigledger.registry import ApplicationBook, JobIndex, SequenceGenerator

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    reason: Optional[FailureReason] = None


class MarketplaceService:
    """Job marketplace with escrow-backed settlement.

    Usage:
        service = MarketplaceService(MarketplaceConfig(platform_account="platform"))

        service.register_user("alice", is_client=True, is_freelancer=False)
        service.register_user("bob", is_client=False, is_freelancer=True, resume="Go dev")

        result = service.create_job("alice", "API", "Build it", price=1000, deposit=1000)
        job_id = result.data["job_id"]
        service.apply_for_job("bob", job_id, bid=800)
        service.assign_job("alice", job_id, "bob", application_index=0)
        service.complete_job("bob", job_id)
        service.release_payment("alice", job_id)
        service.give_rating("alice", job_id, 5)
    """

    def __init__(
        self,
        config: Optional[MarketplaceConfig] = None,
        rail: Optional[TransferRail] = None,
        event_log: Optional[EventLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config or MarketplaceConfig()
        self._rail = rail if rail is not None else InMemoryTransferRail()
        if event_log is None:
            event_log = EventLog(storage_path=self._config.event_log_path)
        self._event_log = event_log
        self._clock = clock or _utc_now

        self._escrow = EscrowManager(
            self._rail,
            platform_account=self._config.platform_account,
            fee_percent=self._config.platform_fee_percent,
        )
        self._users: dict[str, UserProfile] = {}
        self._jobs: dict[int, Job] = {}
        self._job_ids = SequenceGenerator()
        self._user_ids = SequenceGenerator()
        self._index = JobIndex()
        self._applications = ApplicationBook()

        self._lock = threading.RLock()
        # Continue numbering after whatever a reloaded log already holds
        self._event_counter = event_log.count
        # Set when a settled payment could not be written to the event log
        self._audit_degraded = False

    @property
    def config(self) -> MarketplaceConfig:
        return self._config

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def rail(self) -> TransferRail:
        return self._rail

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_user(
        self,
        caller: str,
        is_client: bool,
        is_freelancer: bool,
        resume: str = "",
    ) -> ServiceResult:
        """Create the caller's profile. Roles can never change afterwards."""
        def _op() -> tuple[EventRecord, dict[str, Any]]:
            self._require_principal(caller)
            if caller in self._users:
                raise AlreadyRegisteredError(f"Principal already registered: {caller}")
            if not is_client and not is_freelancer:
                raise InvalidRoleError("A user must be a client, a freelancer, or both")

            profile = UserProfile(
                principal_id=caller,
                is_client=bool(is_client),
                is_freelancer=bool(is_freelancer),
                created_at=self._clock(),
                resume=resume if is_freelancer else "",
            )
            event = self._record(EventKind.USER_REGISTERED, caller, {
                "principal_id": caller,
                "is_client": profile.is_client,
                "is_freelancer": profile.is_freelancer,
            })

            self._users[caller] = profile
            self._user_ids.advance()
            return event, {"principal_id": caller, "total_users": self._user_ids.issued}

        return self._execute("register_user", _op)

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    def create_job(
        self,
        caller: str,
        title: str,
        description: str,
        price: int,
        deposit: int,
    ) -> ServiceResult:
        """Post a job and hold ``deposit`` in escrow for it."""
        def _op() -> tuple[EventRecord, dict[str, Any]]:
            profile = self._users.get(caller)
            if profile is None or not profile.is_client:
                raise UnauthorizedError(f"{caller} is not a registered client")
            self._require_text(title, "title")
            self._require_text(description, "description")
            self._require_amount(price, "price", minimum=1)
            self._require_amount(deposit, "deposit", minimum=0)

            now = self._clock()
            job_id = self._job_ids.peek()
            job = Job(
                job_id=job_id,
                client_id=caller,
                title=title,
                description=description,
                price=price,
                created_at=now,
            )
            self._escrow.open_escrow(job_id, caller, deposit, now=now)
            try:
                event = self._record(EventKind.JOB_CREATED, caller, {
                    "job_id": job_id,
                    "client_id": caller,
                    "title": title,
                    "price": price,
                    "deposit": deposit,
                })
            except AuditFailureError:
                self._escrow.discard(job_id)
                raise

            self._jobs[job_id] = job
            self._job_ids.advance()
            self._index.add_client_job(caller, job_id)
            logger.info("Job %d created by %s (price %d, escrow %d)", job_id, caller, price, deposit)
            return event, {"job_id": job_id, "status": job.status.value, "escrow": deposit}

        return self._execute("create_job", _op)

    def edit_job(
        self,
        caller: str,
        job_id: int,
        title: str,
        description: str,
    ) -> ServiceResult:
        """Replace the title and description of an open job."""
        def _op() -> tuple[EventRecord, dict[str, Any]]:
            job = self._require_job(job_id)
            if job.role_of(caller) != CallerRole.CLIENT:
                raise UnauthorizedError(f"Only the client can edit job {job_id}")
            JobStateMachine.require_status(job, JobStatus.OPEN)
            self._require_text(title, "title")
            self._require_text(description, "description")

            updated = replace(job, title=title, description=description)
            event = self._record(EventKind.JOB_UPDATED, caller, {
                "job_id": job_id,
                "title": title,
                "description": description,
            })
            self._jobs[job_id] = updated
            return event, {"job_id": job_id}

        return self._execute("edit_job", _op)

    def apply_for_job(self, caller: str, job_id: int, bid: int) -> ServiceResult:
        """Submit the caller's single application to an open job."""
        def _op() -> tuple[EventRecord, dict[str, Any]]:
            job = self._require_job(job_id)
            profile = self._users.get(caller)
            if profile is None or not profile.is_freelancer:
                raise UnauthorizedError(f"{caller} is not a registered freelancer")
            JobStateMachine.require_status(job, JobStatus.OPEN)
            self._applications.check_can_apply(job_id, caller)
            self._require_amount(bid, "bid", minimum=0)
            if bid > job.price:
                raise BidExceedsPriceError(
                    f"Bid {bid} exceeds the price {job.price} of job {job_id}"
                )

            application = Application(
                job_id=job_id,
                freelancer_id=caller,
                resume=profile.resume,
                bid=bid,
                submitted_at=self._clock(),
            )
            index = len(self._applications.for_job(job_id))
            event = self._record(EventKind.FREELANCER_APPLIED, caller, {
                "job_id": job_id,
                "freelancer_id": caller,
                "bid": bid,
                "application_index": index,
            })
            self._applications.add(application)
            return event, {"job_id": job_id, "application_index": index}

        return self._execute("apply_for_job", _op)

    def assign_job(
        self,
        caller: str,
        job_id: int,
        freelancer_id: str,
        application_index: int,
    ) -> ServiceResult:
        """Accept one application and hand the job to its freelancer.

        A bid strictly between 0 and the price becomes the new price; a
        bid of 0 or of exactly the price leaves the price unchanged.
        """
        def _op() -> tuple[EventRecord, dict[str, Any]]:
            job = self._require_job(job_id)
            if job.role_of(caller) != CallerRole.CLIENT:
                raise UnauthorizedError(f"Only the client can assign job {job_id}")
            JobStateMachine.require_status(job, JobStatus.OPEN)
            target = self._users.get(freelancer_id)
            if target is None or not target.is_freelancer:
                raise UnauthorizedError(f"{freelancer_id} is not a registered freelancer")
            application = self._applications.get(job_id, application_index)
            if application.freelancer_id != freelancer_id:
                raise InvalidInputError(
                    f"Application {application_index} on job {job_id} was submitted by "
                    f"{application.freelancer_id}, not {freelancer_id}"
                )

            price = job.price
            if 0 < application.bid < job.price:
                price = application.bid
            assigned = JobStateMachine.apply_transition(
                job, JobStatus.ASSIGNED, freelancer_id=freelancer_id, price=price,
            )
            event = self._record(EventKind.JOB_ASSIGNED, caller, {
                "job_id": job_id,
                "freelancer_id": freelancer_id,
                "application_index": application_index,
                "bid": application.bid,
                "price": price,
            })

            self._jobs[job_id] = assigned
            self._index.add_freelancer_job(freelancer_id, job_id)
            logger.info("Job %d assigned to %s at price %d", job_id, freelancer_id, price)
            return event, {"job_id": job_id, "freelancer_id": freelancer_id, "price": price}

        return self._execute("assign_job", _op)

    def complete_job(self, caller: str, job_id: int) -> ServiceResult:
        """Mark an assigned job done. Either party may do this alone."""
        def _op() -> tuple[EventRecord, dict[str, Any]]:
            job = self._require_job(job_id)
            role = job.role_of(caller)
            if role == CallerRole.OUTSIDER:
                raise UnauthorizedError(f"{caller} is not a party to job {job_id}")
            JobStateMachine.require_status(job, JobStatus.ASSIGNED)

            now = self._clock()
            completed = JobStateMachine.apply_transition(
                job, JobStatus.COMPLETED, completed_at=now,
            )
            freelancer = self._users[job.freelancer_id]
            credited = replace(freelancer, completed_jobs=freelancer.completed_jobs + 1)
            event = self._record(EventKind.JOB_COMPLETED, caller, {
                "job_id": job_id,
                "completed_by": caller,
                "completed_by_role": role.value,
                "freelancer_id": job.freelancer_id,
            })

            self._jobs[job_id] = completed
            self._users[freelancer.principal_id] = credited
            logger.info("Job %d completed by %s (%s)", job_id, caller, role.value)
            return event, {"job_id": job_id, "status": completed.status.value}

        return self._execute("complete_job", _op)

    def raise_dispute(self, caller: str, job_id: int) -> ServiceResult:
        """Flag an assigned or completed job as disputed.

        Only records the dispute; resolution happens elsewhere. Once
        payment has been released the job can no longer be disputed.
        """
        def _op() -> tuple[EventRecord, dict[str, Any]]:
            job = self._require_job(job_id)
            role = job.role_of(caller)
            if role == CallerRole.OUTSIDER:
                raise UnauthorizedError(f"{caller} is not a party to job {job_id}")
            JobStateMachine.require_status(job, JobStatus.ASSIGNED, JobStatus.COMPLETED)
            if job.funds_released:
                raise InvalidStateError(
                    f"Payment for job {job_id} was already released; it cannot be disputed"
                )

            disputed = JobStateMachine.apply_transition(job, JobStatus.DISPUTED)
            event = self._record(EventKind.DISPUTE_RAISED, caller, {
                "job_id": job_id,
                "raised_by": caller,
                "raised_by_role": role.value,
                "previous_status": job.status.value,
            })
            self._jobs[job_id] = disputed
            logger.info("Dispute raised on job %d by %s", job_id, caller)
            return event, {"job_id": job_id, "status": disputed.status.value}

        return self._execute("raise_dispute", _op)

    def cancel_job(self, caller: str, job_id: int) -> ServiceResult:
        """Cancel an open job and refund its whole escrow to the client."""
        def _op() -> tuple[Optional[EventRecord], dict[str, Any]]:
            job = self._require_job(job_id)
            if job.role_of(caller) != CallerRole.CLIENT:
                raise UnauthorizedError(f"Only the client can cancel job {job_id}")
            JobStateMachine.require_status(job, JobStatus.OPEN)
            if self._escrow.balance(job_id) <= 0:
                raise InsufficientEscrowError(f"No escrow to refund for job {job_id}")

            cancelled = JobStateMachine.apply_transition(job, JobStatus.CANCELLED)
            self._jobs[job_id] = cancelled
            try:
                settlement = self._escrow.refund(job_id, now=self._clock())
            except Exception:
                self._jobs[job_id] = job
                raise

            refunded = settlement.entry.refunded
            event, warning = self._record_settled(EventKind.JOB_CANCELLED, caller, {
                "job_id": job_id,
                "client_id": caller,
                "refunded": refunded,
            })
            data: dict[str, Any] = {
                "job_id": job_id,
                "status": cancelled.status.value,
                "refunded": refunded,
            }
            if warning:
                data["warning"] = warning
            return event, data

        return self._execute("cancel_job", _op)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def release_payment(self, caller: str, job_id: int) -> ServiceResult:
        """Pay the freelancer for a completed job, less the platform fee.

        At most once per job. If either transfer fails the job and the
        escrow entry are left exactly as they were.
        """
        def _op() -> tuple[Optional[EventRecord], dict[str, Any]]:
            job = self._require_job(job_id)
            if job.role_of(caller) != CallerRole.CLIENT:
                raise UnauthorizedError(f"Only the client can release payment for job {job_id}")
            JobStateMachine.require_status(job, JobStatus.COMPLETED)
            if job.funds_released:
                raise AlreadyReleasedError(f"Payment for job {job_id} was already released")

            # Commit before paying out.
            self._jobs[job_id] = replace(job, funds_released=True)
            try:
                settlement = self._escrow.release(
                    job_id, job.price, job.freelancer_id, now=self._clock(),
                )
            except Exception:
                self._jobs[job_id] = job
                raise

            split = settlement.split
            event, warning = self._record_settled(EventKind.PAYMENT_RELEASED, caller, {
                "job_id": job_id,
                "freelancer_id": job.freelancer_id,
                "price": split.price,
                "freelancer_amount": split.freelancer_amount,
                "platform_fee": split.platform_fee,
                "escrow_remaining": settlement.entry.balance,
            })
            data: dict[str, Any] = {
                "job_id": job_id,
                "freelancer_id": job.freelancer_id,
                "freelancer_amount": split.freelancer_amount,
                "platform_fee": split.platform_fee,
                "escrow_remaining": settlement.entry.balance,
            }
            if warning:
                data["warning"] = warning
            return event, data

        return self._execute("release_payment", _op)

    # ------------------------------------------------------------------
    # Reputation
    # ------------------------------------------------------------------

    def give_rating(self, caller: str, job_id: int, rating: int) -> ServiceResult:
        """Rate the other party of a completed job.

        The client rates the freelancer; the freelancer rates the client.
        """
        def _op() -> tuple[EventRecord, dict[str, Any]]:
            job = self._require_job(job_id)
            JobStateMachine.require_status(job, JobStatus.COMPLETED)
            validate_score(rating)
            role = job.role_of(caller)
            if role == CallerRole.CLIENT:
                ratee_id = job.freelancer_id
            elif role == CallerRole.FREELANCER:
                ratee_id = job.client_id
            else:
                raise UnauthorizedError(f"{caller} is not a party to job {job_id}")

            ratee = self._users[ratee_id]
            new_rating = updated_rating(ratee.rating, ratee.completed_jobs, rating)
            event = self._record(EventKind.RATING_GIVEN, caller, {
                "job_id": job_id,
                "rater_id": caller,
                "ratee_id": ratee_id,
                "rating": rating,
                "new_rating": new_rating,
            })
            self._users[ratee_id] = replace(ratee, rating=new_rating)
            return event, {"ratee_id": ratee_id, "rating": new_rating}

        return self._execute("give_rating", _op)

    # ------------------------------------------------------------------
    # Read actions
    # ------------------------------------------------------------------

    def get_job_details(self, job_id: int) -> Job:
        return self._require_job(job_id)

    def get_job_applications(self, job_id: int) -> tuple[Application, ...]:
        self._require_job(job_id)
        return self._applications.for_job(job_id)

    def get_client_jobs(self, principal_id: str) -> tuple[int, ...]:
        return self._index.client_jobs(principal_id)

    def get_freelancer_jobs(self, principal_id: str) -> tuple[int, ...]:
        return self._index.freelancer_jobs(principal_id)

    def get_user_profile(self, principal_id: str) -> Optional[UserProfile]:
        return self._users.get(principal_id)

    def get_total_jobs(self) -> int:
        return self._job_ids.issued

    def get_total_users(self) -> int:
        return self._user_ids.issued

    def get_escrowed_amount(self, job_id: int) -> int:
        self._require_job(job_id)
        return self._escrow.balance(job_id)

    def get_escrow_entry(self, job_id: int) -> EscrowEntry:
        self._require_job(job_id)
        return self._escrow.get(job_id)

    def status(self) -> dict[str, Any]:
        """Summary of the marketplace.

        Taken under the writer lock so job counts and escrow totals come
        from the same moment.
        """
        with self._lock:
            jobs = list(self._jobs.values())
            held = self._escrow.total_held()
            fees_collected = self._escrow.fees_collected
            users = self.get_total_users()
            events = self._event_log.count
            audit_degraded = self._audit_degraded

        counts: dict[str, int] = {}
        for job in jobs:
            counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return {
            "users": users,
            "jobs": {
                "total": len(jobs),
                "by_status": counts,
                "closed": sum(1 for job in jobs if JobStateMachine.is_terminal(job.status)),
            },
            "escrow": {
                "held": held,
                "fees_collected": fees_collected,
                "fee_percent": self._escrow.fee_percent,
                "platform_account": self._escrow.platform_account,
                "rail": self._rail.rail_id,
            },
            "events": events,
            "audit_degraded": audit_degraded,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _execute(
        self,
        action: str,
        operation: Callable[[], tuple[Optional[EventRecord], dict[str, Any]]],
    ) -> ServiceResult:
        """Run one write action under the writer lock.

        Precondition failures become failed results. The event is
        published only after the operation has fully committed.
        """
        with self._lock:
            try:
                event, data = operation()
            except MarketplaceError as e:
                logger.debug("%s rejected (%s): %s", action, e.reason.value, e)
                return ServiceResult(success=False, errors=[str(e)], reason=e.reason)
            if event is not None:
                self._event_log.publish(event)
        return ServiceResult(success=True, data=data)

    def _next_event_id(self) -> str:
        return f"EVT-{self._event_counter + 1:08d}"

    def _record(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
    ) -> EventRecord:
        """Append an event to the log. Raises AuditFailureError on failure."""
        try:
            event = EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
                timestamp_utc=self._clock(),
            )
            self._event_log.append(event)
        except (ValueError, OSError) as e:
            raise AuditFailureError(f"Event log failure: {e}") from e
        self._event_counter += 1
        return event

    def _record_settled(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
    ) -> tuple[Optional[EventRecord], Optional[str]]:
        """Record the event for a payment that has already settled.

        Funds have moved, so an event-log failure cannot undo the action.
        It marks the service as audit-degraded and returns a warning.
        """
        try:
            return self._record(kind, actor_id, payload), None
        except AuditFailureError as e:
            self._audit_degraded = True
            logger.warning("%s for job %s settled but not logged: %s", kind.value, payload.get("job_id"), e)
            return None, f"Audit degraded: {e}; funds settled but event not recorded"

    def _require_job(self, job_id: int) -> Job:
        job = None
        if isinstance(job_id, int) and not isinstance(job_id, bool):
            job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id!r}")
        return job

    @staticmethod
    def _require_principal(principal_id: str) -> None:
        if not isinstance(principal_id, str) or not principal_id.strip():
            raise InvalidInputError("Principal id must be a non-empty string")

    @staticmethod
    def _require_text(value: str, name: str) -> None:
        if not isinstance(value, str) or not value.strip():
            raise InvalidInputError(f"{name} must be non-empty")

    @staticmethod
    def _require_amount(value: int, name: str, minimum: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
            raise InvalidInputError(f"{name} must be an integer >= {minimum}, got {value!r}")
