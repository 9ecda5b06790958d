"""
Unit Tests for the Credit Request Workflow

Tests cover:
1. Request creation and validation
2. Approval by the named grantor or the admin pool
3. Rejection
4. Terminal states and failure atomicity
"""

from uuid import UUID

import pytest

from dispatch.scheduling import PostScheduler
from ledger.config import Settings
from ledger.errors import (
    ForbiddenError,
    InvalidAmountError,
    NotPendingError,
    RequestNotFoundError,
    ValidationError,
)
from ledger.models import AccountRole, EntryKind, RequestStatus
from ledger.requests import CreditRequestWorkflow
from ledger.service import LedgerService


# Test constants
ADMIN_ID = UUID("11111111-1111-1111-1111-111111111111")


def make_workflow() -> CreditRequestWorkflow:
    settings = Settings(_env_file=None, ADMIN_ACCOUNT_IDS=str(ADMIN_ID), MAX_REQUEST_AMOUNT=10000)
    return CreditRequestWorkflow(LedgerService(settings=settings))


def make_parties(workflow: CreditRequestWorkflow):
    ledger = workflow.ledger
    publisher = ledger.create_account("Deals Channel Owner", AccountRole.PUBLISHER)
    advertiser = ledger.create_account("advertiser")
    return publisher, advertiser


class TestCreateRequest:
    """Tests for opening credit requests."""

    def test_create_pending_request(self):
        workflow = make_workflow()
        publisher, advertiser = make_parties(workflow)

        request = workflow.create_request(advertiser.id, 100, grantor_id=publisher.id, reason="Spring campaign")

        assert request.status == RequestStatus.PENDING
        assert request.grantor_account_id == publisher.id
        assert not request.is_admin_pool
        assert workflow.ledger.global_balance(advertiser.id) == 0

    def test_amount_bounds(self):
        workflow = make_workflow()
        publisher, advertiser = make_parties(workflow)

        with pytest.raises(InvalidAmountError):
            workflow.create_request(advertiser.id, 0, grantor_id=publisher.id)
        with pytest.raises(InvalidAmountError):
            workflow.create_request(advertiser.id, 10001, grantor_id=publisher.id)

        assert workflow.list_for_requester(advertiser.id) == []

    def test_cannot_ask_an_advertiser(self):
        workflow = make_workflow()
        _, advertiser = make_parties(workflow)
        other = workflow.ledger.create_account("other advertiser")

        with pytest.raises(ValidationError):
            workflow.create_request(advertiser.id, 10, grantor_id=other.id)

    def test_channel_must_belong_to_grantor(self):
        workflow = make_workflow()
        publisher, advertiser = make_parties(workflow)
        someone_else = workflow.ledger.create_account("someone else", AccountRole.PUBLISHER)
        channel = PostScheduler(workflow.ledger).register_channel(someone_else.id, "Other", "@other")

        with pytest.raises(ValidationError):
            workflow.create_request(advertiser.id, 10, grantor_id=publisher.id, channel_id=channel.id)

    def test_listings(self):
        workflow = make_workflow()
        publisher, advertiser = make_parties(workflow)
        to_publisher = workflow.create_request(advertiser.id, 10, grantor_id=publisher.id)
        to_admins = workflow.create_request(advertiser.id, 20)
        workflow.reject(to_publisher.id, publisher.id, "No budget")

        assert {r.id for r in workflow.list_for_requester(advertiser.id)} == {to_publisher.id, to_admins.id}
        assert [r.id for r in workflow.list_for_grantor(publisher.id)] == [to_publisher.id]
        assert workflow.list_for_grantor(publisher.id, RequestStatus.PENDING) == []
        assert [r.id for r in workflow.list_admin_pool(RequestStatus.PENDING)] == [to_admins.id]


class TestApprove:
    """Tests for approving requests."""

    def test_grantor_approval_appends_publisher_grant(self):
        workflow = make_workflow()
        publisher, advertiser = make_parties(workflow)
        request = workflow.create_request(advertiser.id, 100, grantor_id=publisher.id)

        response = workflow.approve(request.id, publisher.id)

        assert response.request.status == RequestStatus.APPROVED
        assert response.request.processed_by_account_id == publisher.id
        assert response.request.ledger_entry_id == response.ledger_entry.id
        assert response.ledger_entry.kind == EntryKind.PUBLISHER_GRANT
        assert response.ledger_entry.granted_by_account_id == publisher.id
        assert workflow.ledger.global_balance(advertiser.id) == 100
        assert workflow.ledger.available_from(advertiser.id, publisher.id) == 100

    def test_admin_pool_approval_with_override(self):
        workflow = make_workflow()
        _, advertiser = make_parties(workflow)
        request = workflow.create_request(advertiser.id, 500, reason="Launch")

        response = workflow.approve(request.id, ADMIN_ID, amount_override=200, notes="Partial")

        assert response.ledger_entry.kind == EntryKind.ADMIN_GRANT
        assert response.ledger_entry.amount == 200
        assert response.ledger_entry.description == "Approved credit request: Launch"
        assert response.request.approved_amount == 200
        assert response.request.notes == "Partial"
        assert workflow.ledger.global_balance(advertiser.id) == 200

    def test_admin_named_as_grantor_grants_from_pool(self):
        """An admin never opens a grantor sub-balance, even when asked by name."""
        workflow = make_workflow()
        _, advertiser = make_parties(workflow)
        request = workflow.create_request(advertiser.id, 100, grantor_id=ADMIN_ID)

        response = workflow.approve(request.id, ADMIN_ID)

        assert response.ledger_entry.kind == EntryKind.ADMIN_GRANT
        assert response.ledger_entry.granted_by_account_id == ADMIN_ID
        assert workflow.ledger.global_balance(advertiser.id) == 100
        assert workflow.ledger.available_from(advertiser.id, ADMIN_ID) == 0
        assert workflow.ledger.credits_by_grantor(advertiser.id) == []

    def test_only_named_grantor_may_approve(self):
        workflow = make_workflow()
        publisher, advertiser = make_parties(workflow)
        other = workflow.ledger.create_account("other", AccountRole.PUBLISHER)
        request = workflow.create_request(advertiser.id, 100, grantor_id=publisher.id)

        with pytest.raises(ForbiddenError):
            workflow.approve(request.id, other.id)
        with pytest.raises(ForbiddenError):
            workflow.approve(request.id, ADMIN_ID)

        assert workflow.get_request(request.id).status == RequestStatus.PENDING
        assert workflow.ledger.global_balance(advertiser.id) == 0

    def test_only_admins_may_approve_admin_pool(self):
        workflow = make_workflow()
        publisher, advertiser = make_parties(workflow)
        request = workflow.create_request(advertiser.id, 100)

        with pytest.raises(ForbiddenError):
            workflow.approve(request.id, publisher.id)

    def test_unknown_request(self):
        workflow = make_workflow()
        publisher, _ = make_parties(workflow)

        with pytest.raises(RequestNotFoundError):
            workflow.approve(UUID("00000000-0000-0000-0000-000000000000"), publisher.id)

    def test_failed_grant_leaves_request_pending(self, monkeypatch):
        """Status change and grant are one unit."""
        workflow = make_workflow()
        publisher, advertiser = make_parties(workflow)
        request = workflow.create_request(advertiser.id, 100, grantor_id=publisher.id)
        original_append = workflow.ledger.append_entry

        def append_then_fail(*args, **kwargs):
            original_append(*args, **kwargs)
            raise RuntimeError("storage failure")

        monkeypatch.setattr(workflow.ledger, "append_entry", append_then_fail)
        with pytest.raises(RuntimeError):
            workflow.approve(request.id, publisher.id)

        assert workflow.get_request(request.id).status == RequestStatus.PENDING
        assert workflow.ledger.global_balance(advertiser.id) == 0
        assert workflow.ledger.get_balance(advertiser.id).total_entries == 0


class TestTerminalStates:
    """Approved and rejected requests never move again."""

    def test_reject_records_reason(self):
        workflow = make_workflow()
        publisher, advertiser = make_parties(workflow)
        request = workflow.create_request(advertiser.id, 100, grantor_id=publisher.id)

        response = workflow.reject(request.id, publisher.id, "Not a fit for the channel")

        assert response.request.status == RequestStatus.REJECTED
        assert response.request.notes == "Not a fit for the channel"
        assert response.ledger_entry is None
        assert workflow.ledger.global_balance(advertiser.id) == 0

    def test_approved_request_cannot_be_processed_again(self):
        workflow = make_workflow()
        publisher, advertiser = make_parties(workflow)
        request = workflow.create_request(advertiser.id, 100, grantor_id=publisher.id)
        workflow.approve(request.id, publisher.id)

        with pytest.raises(NotPendingError):
            workflow.approve(request.id, publisher.id)
        with pytest.raises(NotPendingError):
            workflow.reject(request.id, publisher.id, "Changed my mind")

        assert workflow.get_request(request.id).status == RequestStatus.APPROVED
        assert workflow.ledger.global_balance(advertiser.id) == 100
        assert workflow.ledger.get_balance(advertiser.id).total_entries == 1

    def test_terminal_state_reported_before_amount(self):
        workflow = make_workflow()
        publisher, advertiser = make_parties(workflow)
        request = workflow.create_request(advertiser.id, 100, grantor_id=publisher.id)
        workflow.approve(request.id, publisher.id)

        with pytest.raises(NotPendingError):
            workflow.approve(request.id, publisher.id, amount_override=0)

        assert workflow.ledger.global_balance(advertiser.id) == 100

    def test_rejected_request_cannot_be_approved(self):
        workflow = make_workflow()
        publisher, advertiser = make_parties(workflow)
        request = workflow.create_request(advertiser.id, 100, grantor_id=publisher.id)
        workflow.reject(request.id, publisher.id, "No")

        # even a caller who could never process it gets the terminal-state error
        stranger = workflow.ledger.create_account("stranger")
        with pytest.raises(NotPendingError):
            workflow.approve(request.id, stranger.id)

        assert workflow.ledger.get_balance(advertiser.id).total_entries == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
