"""Tests for MarketplaceService — proves the facade orchestrates correctly."""

import pytest
from datetime import datetime, timezone

from gigledger.config import MarketplaceConfig
from gigledger.errors import FailureReason, NotFoundError
from gigledger.ledger.transfer_rail import InMemoryTransferRail
from gigledger.models.escrow import EscrowState
from gigledger.models.marketplace import JobStatus
from gigledger.persistence.event_log import EventKind
from gigledger.service import MarketplaceService


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def rail() -> InMemoryTransferRail:
    return InMemoryTransferRail()


@pytest.fixture
def service(rail: InMemoryTransferRail) -> MarketplaceService:
    svc = MarketplaceService(MarketplaceConfig(), rail=rail, clock=_now)
    svc.register_user("alice", is_client=True, is_freelancer=False)
    svc.register_user("bob", is_client=False, is_freelancer=True, resume="Go and Python")
    svc.register_user("carol", is_client=False, is_freelancer=True, resume="Rust")
    return svc


def _make_job(service: MarketplaceService, price: int = 1000, deposit: int = 1000) -> int:
    result = service.create_job("alice", "API", "Build the API", price=price, deposit=deposit)
    assert result.success, result.errors
    return result.data["job_id"]


def _make_assigned(service: MarketplaceService, bid: int = 0, deposit: int = 1000) -> int:
    job_id = _make_job(service, deposit=deposit)
    assert service.apply_for_job("bob", job_id, bid=bid).success
    assert service.assign_job("alice", job_id, "bob", 0).success
    return job_id


def _make_completed(service: MarketplaceService, bid: int = 0) -> int:
    job_id = _make_assigned(service, bid=bid)
    assert service.complete_job("bob", job_id).success
    return job_id


class TestRegistration:
    def test_register_and_lookup(self, service: MarketplaceService) -> None:
        profile = service.get_user_profile("bob")
        assert profile.is_freelancer
        assert not profile.is_client
        assert profile.resume == "Go and Python"
        assert profile.rating == 0
        assert service.get_total_users() == 3

    def test_register_twice_fails(self, service: MarketplaceService) -> None:
        result = service.register_user("alice", is_client=False, is_freelancer=True)
        assert not result.success
        assert result.reason == FailureReason.ALREADY_REGISTERED
        assert service.get_user_profile("alice").is_client

    def test_no_role_fails(self, service: MarketplaceService) -> None:
        result = service.register_user("dave", is_client=False, is_freelancer=False)
        assert result.reason == FailureReason.INVALID_ROLE
        assert service.get_user_profile("dave") is None
        assert service.get_total_users() == 3

    def test_both_roles(self, service: MarketplaceService) -> None:
        assert service.register_user("dave", is_client=True, is_freelancer=True).success
        profile = service.get_user_profile("dave")
        assert profile.is_client and profile.is_freelancer

    def test_client_resume_not_kept(self, service: MarketplaceService) -> None:
        service.register_user("erin", is_client=True, is_freelancer=False, resume="ignored")
        assert service.get_user_profile("erin").resume == ""

    def test_blank_principal_fails(self, service: MarketplaceService) -> None:
        result = service.register_user("  ", is_client=True, is_freelancer=False)
        assert result.reason == FailureReason.INVALID_INPUT


class TestCreateAndEdit:
    def test_create_job(self, service: MarketplaceService) -> None:
        result = service.create_job("alice", "API", "Build it", price=1000, deposit=1200)
        assert result.success
        assert result.data == {"job_id": 1, "status": "open", "escrow": 1200}
        job = service.get_job_details(1)
        assert job.status == JobStatus.OPEN
        assert job.freelancer_id is None
        assert service.get_escrowed_amount(1) == 1200
        assert service.get_client_jobs("alice") == (1,)
        assert service.get_total_jobs() == 1

    def test_job_ids_are_sequential(self, service: MarketplaceService) -> None:
        assert _make_job(service) == 1
        assert _make_job(service) == 2

    def test_freelancer_cannot_create(self, service: MarketplaceService) -> None:
        result = service.create_job("bob", "API", "Build it", price=1000, deposit=1000)
        assert result.reason == FailureReason.UNAUTHORIZED
        assert service.get_total_jobs() == 0

    def test_unregistered_cannot_create(self, service: MarketplaceService) -> None:
        result = service.create_job("mallory", "API", "Build it", price=1000, deposit=1000)
        assert result.reason == FailureReason.UNAUTHORIZED

    @pytest.mark.parametrize("price,deposit", [(0, 100), (-1, 100), (100, -1), (100, 1.5)])
    def test_bad_amounts(self, service: MarketplaceService, price, deposit) -> None:
        result = service.create_job("alice", "API", "Build it", price=price, deposit=deposit)
        assert result.reason == FailureReason.INVALID_INPUT
        assert service.get_total_jobs() == 0

    def test_failed_create_leaves_no_escrow(self, service: MarketplaceService) -> None:
        service.create_job("alice", "", "Build it", price=1000, deposit=1000)
        _make_job(service, deposit=300)
        assert service.status()["escrow"]["held"] == 300

    def test_edit_open_job(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        assert service.edit_job("alice", job_id, "New title", "New text").success
        job = service.get_job_details(job_id)
        assert job.title == "New title"
        assert job.description == "New text"

    def test_edit_by_other_fails(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        result = service.edit_job("bob", job_id, "Mine", "Mine")
        assert result.reason == FailureReason.UNAUTHORIZED
        assert service.get_job_details(job_id).title == "API"

    def test_edit_assigned_fails(self, service: MarketplaceService) -> None:
        job_id = _make_assigned(service)
        result = service.edit_job("alice", job_id, "Late", "Late")
        assert result.reason == FailureReason.INVALID_STATE

    def test_edit_unknown_job(self, service: MarketplaceService) -> None:
        assert service.edit_job("alice", 99, "x", "y").reason == FailureReason.NOT_FOUND


class TestApplyAndAssign:
    def test_apply(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        result = service.apply_for_job("bob", job_id, bid=800)
        assert result.success
        assert result.data["application_index"] == 0
        apps = service.get_job_applications(job_id)
        assert len(apps) == 1
        assert apps[0].bid == 800
        assert apps[0].resume == "Go and Python"

    def test_apply_twice_fails(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        service.apply_for_job("bob", job_id, bid=800)
        result = service.apply_for_job("bob", job_id, bid=700)
        assert result.reason == FailureReason.ALREADY_APPLIED
        assert len(service.get_job_applications(job_id)) == 1

    def test_bid_above_price_fails(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        result = service.apply_for_job("bob", job_id, bid=1001)
        assert result.reason == FailureReason.BID_EXCEEDS_PRICE

    def test_client_only_cannot_apply(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        assert service.apply_for_job("alice", job_id, bid=0).reason == FailureReason.UNAUTHORIZED

    def test_apply_unknown_job(self, service: MarketplaceService) -> None:
        assert service.apply_for_job("bob", 7, bid=0).reason == FailureReason.NOT_FOUND

    def test_assign_discounted_bid_lowers_price(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        service.apply_for_job("bob", job_id, bid=800)
        result = service.assign_job("alice", job_id, "bob", 0)
        assert result.success
        assert result.data["price"] == 800
        job = service.get_job_details(job_id)
        assert job.status == JobStatus.ASSIGNED
        assert job.freelancer_id == "bob"
        assert job.price == 800
        assert service.get_freelancer_jobs("bob") == (job_id,)

    @pytest.mark.parametrize("bid", [0, 1000])
    def test_zero_or_full_bid_keeps_price(self, service: MarketplaceService, bid: int) -> None:
        job_id = _make_job(service)
        service.apply_for_job("bob", job_id, bid=bid)
        service.assign_job("alice", job_id, "bob", 0)
        assert service.get_job_details(job_id).price == 1000

    def test_assign_picks_second_application(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        service.apply_for_job("bob", job_id, bid=900)
        service.apply_for_job("carol", job_id, bid=600)
        assert service.assign_job("alice", job_id, "carol", 1).success
        assert service.get_job_details(job_id).price == 600
        assert service.get_freelancer_jobs("bob") == ()

    def test_assign_mismatched_application(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        service.apply_for_job("bob", job_id, bid=900)
        result = service.assign_job("alice", job_id, "carol", 0)
        assert result.reason == FailureReason.INVALID_INPUT
        assert service.get_job_details(job_id).status == JobStatus.OPEN

    def test_assign_bad_index(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        result = service.assign_job("alice", job_id, "bob", 0)
        assert result.reason == FailureReason.INVALID_INPUT

    def test_assign_to_non_freelancer(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        result = service.assign_job("alice", job_id, "alice", 0)
        assert result.reason == FailureReason.UNAUTHORIZED

    def test_assign_by_other_fails(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        service.apply_for_job("bob", job_id, bid=0)
        assert service.assign_job("bob", job_id, "bob", 0).reason == FailureReason.UNAUTHORIZED

    def test_assign_twice_fails(self, service: MarketplaceService) -> None:
        job_id = _make_assigned(service)
        result = service.assign_job("alice", job_id, "bob", 0)
        assert result.reason == FailureReason.INVALID_STATE

    def test_apply_after_assign_fails(self, service: MarketplaceService) -> None:
        job_id = _make_assigned(service)
        assert service.apply_for_job("carol", job_id, bid=0).reason == FailureReason.INVALID_STATE


class TestCompleteAndDispute:
    @pytest.mark.parametrize("caller", ["alice", "bob"])
    def test_either_party_completes(self, service: MarketplaceService, caller: str) -> None:
        job_id = _make_assigned(service)
        assert service.complete_job(caller, job_id).success
        job = service.get_job_details(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at == _now()
        assert service.get_user_profile("bob").completed_jobs == 1

    def test_outsider_cannot_complete(self, service: MarketplaceService) -> None:
        job_id = _make_assigned(service)
        assert service.complete_job("carol", job_id).reason == FailureReason.UNAUTHORIZED
        assert service.get_user_profile("bob").completed_jobs == 0

    def test_complete_open_job_fails(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        assert service.complete_job("alice", job_id).reason == FailureReason.INVALID_STATE

    def test_complete_twice_fails(self, service: MarketplaceService) -> None:
        job_id = _make_completed(service)
        assert service.complete_job("bob", job_id).reason == FailureReason.INVALID_STATE
        assert service.get_user_profile("bob").completed_jobs == 1

    def test_dispute_assigned(self, service: MarketplaceService) -> None:
        job_id = _make_assigned(service)
        assert service.raise_dispute("bob", job_id).success
        assert service.get_job_details(job_id).status == JobStatus.DISPUTED

    def test_dispute_completed_before_release(self, service: MarketplaceService) -> None:
        job_id = _make_completed(service)
        assert service.raise_dispute("alice", job_id).success
        assert service.release_payment("alice", job_id).reason == FailureReason.INVALID_STATE
        assert service.get_escrowed_amount(job_id) == 1000

    def test_dispute_after_release_fails(self, service: MarketplaceService) -> None:
        job_id = _make_completed(service)
        service.release_payment("alice", job_id)
        assert service.raise_dispute("bob", job_id).reason == FailureReason.INVALID_STATE
        assert service.get_job_details(job_id).status == JobStatus.COMPLETED

    def test_dispute_open_job_fails(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        assert service.raise_dispute("alice", job_id).reason == FailureReason.INVALID_STATE

    def test_outsider_cannot_dispute(self, service: MarketplaceService) -> None:
        job_id = _make_assigned(service)
        assert service.raise_dispute("carol", job_id).reason == FailureReason.UNAUTHORIZED


class TestCancel:
    def test_cancel_refunds_client(self, service: MarketplaceService, rail: InMemoryTransferRail) -> None:
        job_id = _make_job(service, deposit=1200)
        result = service.cancel_job("alice", job_id)
        assert result.success
        assert result.data["refunded"] == 1200
        assert service.get_job_details(job_id).status == JobStatus.CANCELLED
        assert service.get_escrowed_amount(job_id) == 0
        assert service.get_escrow_entry(job_id).state == EscrowState.REFUNDED
        assert rail.balance_of("alice") == 1200

    def test_cancel_assigned_fails(self, service: MarketplaceService) -> None:
        job_id = _make_assigned(service)
        assert service.cancel_job("alice", job_id).reason == FailureReason.INVALID_STATE

    def test_cancel_by_other_fails(self, service: MarketplaceService) -> None:
        job_id = _make_job(service)
        assert service.cancel_job("bob", job_id).reason == FailureReason.UNAUTHORIZED

    def test_cancel_without_escrow_fails(self, service: MarketplaceService) -> None:
        job_id = _make_job(service, deposit=0)
        assert service.cancel_job("alice", job_id).reason == FailureReason.INSUFFICIENT_ESCROW
        assert service.get_job_details(job_id).status == JobStatus.OPEN

    def test_cancel_transfer_failure_changes_nothing(self, service: MarketplaceService, rail: InMemoryTransferRail) -> None:
        job_id = _make_job(service)
        rail.failing_destinations.add("alice")
        result = service.cancel_job("alice", job_id)
        assert result.reason == FailureReason.TRANSFER_FAILED
        assert service.get_job_details(job_id).status == JobStatus.OPEN
        assert service.get_escrowed_amount(job_id) == 1000


class TestReleasePayment:
    def test_release_pays_freelancer_and_platform(self, service: MarketplaceService, rail: InMemoryTransferRail) -> None:
        job_id = _make_completed(service)
        result = service.release_payment("alice", job_id)
        assert result.success
        assert result.data["freelancer_amount"] == 980
        assert result.data["platform_fee"] == 20
        assert result.data["escrow_remaining"] == 0
        assert rail.balance_of("bob") == 980
        assert rail.balance_of("platform") == 20
        job = service.get_job_details(job_id)
        assert job.funds_released
        assert job.status == JobStatus.COMPLETED

    def test_release_twice_fails(self, service: MarketplaceService, rail: InMemoryTransferRail) -> None:
        job_id = _make_completed(service)
        service.release_payment("alice", job_id)
        assert service.release_payment("alice", job_id).reason == FailureReason.ALREADY_RELEASED
        assert rail.balance_of("bob") == 980

    def test_freelancer_cannot_release(self, service: MarketplaceService) -> None:
        job_id = _make_completed(service)
        assert service.release_payment("bob", job_id).reason == FailureReason.UNAUTHORIZED

    def test_release_before_completion_fails(self, service: MarketplaceService) -> None:
        job_id = _make_assigned(service)
        assert service.release_payment("alice", job_id).reason == FailureReason.INVALID_STATE

    def test_short_deposit(self, service: MarketplaceService) -> None:
        job_id = _make_assigned(service, deposit=500)
        service.complete_job("bob", job_id)
        result = service.release_payment("alice", job_id)
        assert result.reason == FailureReason.INSUFFICIENT_ESCROW
        assert not service.get_job_details(job_id).funds_released

    def test_transfer_failure_changes_nothing(self, service: MarketplaceService, rail: InMemoryTransferRail) -> None:
        job_id = _make_completed(service)
        rail.failing_destinations.add("platform")
        result = service.release_payment("alice", job_id)
        assert result.reason == FailureReason.TRANSFER_FAILED
        assert not service.get_job_details(job_id).funds_released
        assert service.get_escrowed_amount(job_id) == 1000
        assert rail.balance_of("bob") == 0

        rail.failing_destinations.clear()
        assert service.release_payment("alice", job_id).success


class TestRatings:
    def test_client_rates_freelancer(self, service: MarketplaceService) -> None:
        job_id = _make_completed(service)
        result = service.give_rating("alice", job_id, 5)
        assert result.success
        # (0*1 + 5) // 2
        assert result.data == {"ratee_id": "bob", "rating": 2}
        assert service.get_user_profile("bob").rating == 2

    def test_freelancer_rates_client(self, service: MarketplaceService) -> None:
        job_id = _make_completed(service)
        assert service.give_rating("bob", job_id, 4).success
        assert service.get_user_profile("alice").rating == 4

    @pytest.mark.parametrize("rating", [0, 6, -1, True, 4.5])
    def test_out_of_range(self, service: MarketplaceService, rating) -> None:
        job_id = _make_completed(service)
        assert service.give_rating("alice", job_id, rating).reason == FailureReason.INVALID_RATING
        assert service.get_user_profile("bob").rating == 0

    def test_rate_before_completion_fails(self, service: MarketplaceService) -> None:
        job_id = _make_assigned(service)
        assert service.give_rating("alice", job_id, 5).reason == FailureReason.INVALID_STATE

    def test_outsider_cannot_rate(self, service: MarketplaceService) -> None:
        job_id = _make_completed(service)
        assert service.give_rating("carol", job_id, 5).reason == FailureReason.UNAUTHORIZED


class TestEvents:
    def test_one_event_per_committed_action(self, service: MarketplaceService) -> None:
        before = service.event_log.count
        job_id = _make_completed(service)
        service.release_payment("alice", job_id)
        kinds = [e.event_kind for e in service.event_log.events()[before:]]
        assert kinds == [
            EventKind.JOB_CREATED,
            EventKind.FREELANCER_APPLIED,
            EventKind.JOB_ASSIGNED,
            EventKind.JOB_COMPLETED,
            EventKind.PAYMENT_RELEASED,
        ]

    def test_failed_action_emits_nothing(self, service: MarketplaceService) -> None:
        before = service.event_log.count
        service.register_user("alice", is_client=True, is_freelancer=False)
        service.cancel_job("alice", 42)
        service.create_job("bob", "x", "y", price=1, deposit=1)
        assert service.event_log.count == before

    def test_subscriber_sees_committed_state(self, service: MarketplaceService) -> None:
        seen: list[JobStatus] = []

        def _on_event(event) -> None:
            if event.event_kind == EventKind.JOB_ASSIGNED:
                seen.append(service.get_job_details(event.payload["job_id"]).status)

        service.event_log.subscribe(_on_event)
        _make_assigned(service)
        assert seen == [JobStatus.ASSIGNED]

    def test_event_ids_are_sequential(self, service: MarketplaceService) -> None:
        ids = [e.event_id for e in service.event_log.events()]
        assert ids == ["EVT-00000001", "EVT-00000002", "EVT-00000003"]


class TestReads:
    @pytest.mark.parametrize("job_id", [0, 99, -1, True, "1"])
    def test_unknown_job(self, service: MarketplaceService, job_id) -> None:
        _make_job(service)
        with pytest.raises(NotFoundError):
            service.get_job_details(job_id)
        with pytest.raises(NotFoundError):
            service.get_escrowed_amount(job_id)
        with pytest.raises(NotFoundError):
            service.get_job_applications(job_id)

    def test_unknown_principal(self, service: MarketplaceService) -> None:
        assert service.get_user_profile("nobody") is None
        assert service.get_client_jobs("nobody") == ()
        assert service.get_freelancer_jobs("nobody") == ()

    def test_status(self, service: MarketplaceService) -> None:
        _make_completed(service)
        _make_job(service, deposit=50)
        status = service.status()
        assert status["users"] == 3
        assert status["jobs"] == {"total": 2, "by_status": {"completed": 1, "open": 1}, "closed": 0}
        assert status["escrow"]["rail"] == "in_memory"
        assert status["escrow"]["held"] == 1050
        assert status["escrow"]["fee_percent"] == 2
        assert status["audit_degraded"] is False

    def test_status_counts_closed_jobs(self, service: MarketplaceService) -> None:
        service.cancel_job("alice", _make_job(service))
        job_id = _make_assigned(service)
        service.raise_dispute("bob", job_id)
        _make_job(service)
        assert service.status()["jobs"]["closed"] == 2
