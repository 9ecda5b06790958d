import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .errors import (
    AccountNotFoundError,
    ChannelNotFoundError,
    ForbiddenError,
    InvalidAmountError,
    NotPendingError,
    RequestNotFoundError,
    ValidationError,
)
from .models import (
    AccountRole,
    CreditRequest,
    CreditRequestResponse,
    EntryKind,
    NewLedgerEntry,
    RequestStatus,
)
from .service import LedgerService

log = logging.getLogger(__name__)


class CreditRequestWorkflow:
    """PENDING -> APPROVED | REJECTED, both terminal.

    Requests only move on an explicit decision by the named grantor, or by an
    admin for requests addressed to the admin pool. There is no expiry.
    """

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    def create_request(
        self,
        requester_id: UUID,
        amount: int,
        grantor_id: Optional[UUID] = None,
        channel_id: Optional[UUID] = None,
        reason: Optional[str] = None,
    ) -> CreditRequest:
        max_amount = self.ledger.settings.MAX_REQUEST_AMOUNT
        if amount <= 0 or amount > max_amount:
            raise InvalidAmountError(f"Requested amount must be between 1 and {max_amount}")
        self.ledger.get_account(requester_id)

        if grantor_id is not None:
            grantor = self.ledger.get_account(grantor_id)
            if grantor.role == AccountRole.ADVERTISER:
                raise ValidationError("Credits can only be requested from publishers or admins")
            if grantor_id == requester_id:
                raise ValidationError("Cannot request credits from yourself")
        if channel_id is not None:
            channel = self.storage.channels.get(channel_id)
            if not channel:
                raise ChannelNotFoundError(f"Channel {channel_id} not found")
            if channel["owner_account_id"] != grantor_id:
                raise ValidationError("Channel does not belong to the grantor")

        data = {
            "id": uuid4(),
            "requester_account_id": requester_id,
            "grantor_account_id": grantor_id,
            "channel_id": channel_id,
            "amount": amount,
            "reason": reason,
            "status": RequestStatus.PENDING,
            "processed_by_account_id": None,
            "processed_at": None,
            "notes": None,
            "approved_amount": None,
            "ledger_entry_id": None,
            "created_at": datetime.now(timezone.utc),
        }
        with self.storage.transaction():
            self.storage.credit_requests[data["id"]] = data
        log.info("credit request created id=%s requester=%s grantor=%s amount=%s",
                 data["id"], requester_id, grantor_id, amount)
        return CreditRequest(**data)

    def get_request(self, request_id: UUID) -> CreditRequest:
        data = self.storage.credit_requests.get(request_id)
        if not data:
            raise RequestNotFoundError(f"Credit request {request_id} not found")
        return CreditRequest(**data)

    def _check_can_process(self, request: CreditRequest, approver_id: UUID) -> None:
        if not request.can_process():
            raise NotPendingError(f"Credit request {request.id} is already {request.status.value}")

        try:
            approver = self.ledger.get_account(approver_id)
        except AccountNotFoundError:
            raise ForbiddenError(f"Account {approver_id} cannot process credit requests")

        if request.is_admin_pool:
            allowed = approver.role == AccountRole.ADMIN
        else:
            allowed = approver_id == request.grantor_account_id
        if not allowed:
            raise ForbiddenError(f"Account {approver_id} cannot process credit request {request.id}")

    def approve(
        self,
        request_id: UUID,
        approver_id: UUID,
        amount_override: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> CreditRequestResponse:
        request = self.get_request(request_id)

        # status flip and grant are one unit: on failure the request stays PENDING
        with self.storage.account_lock(request.requester_account_id), self.storage.transaction():
            request = self.get_request(request_id)
            self._check_can_process(request, approver_id)
            amount = amount_override if amount_override is not None else request.amount
            if amount <= 0:
                raise InvalidAmountError("Approved amount must be positive")

            # admins never open a grantor sub-balance, even when named directly
            if self.ledger.get_account(approver_id).role == AccountRole.ADMIN:
                kind = EntryKind.ADMIN_GRANT
                description = f"Approved credit request: {request.reason or 'No reason provided'}"
            else:
                kind = EntryKind.PUBLISHER_GRANT
                description = "Credits granted by channel owner"
            entry = self.ledger.append_entry(NewLedgerEntry(
                account_id=request.requester_account_id,
                amount=amount,
                kind=kind,
                granted_by_account_id=approver_id,
                related_channel_id=request.channel_id,
                description=description,
            ))

            data = self.storage.credit_requests[request_id]
            data["status"] = RequestStatus.APPROVED
            data["processed_by_account_id"] = approver_id
            data["processed_at"] = datetime.now(timezone.utc)
            data["approved_amount"] = amount
            data["ledger_entry_id"] = entry.id
            if notes:
                data["notes"] = notes

        log.info("credit request approved id=%s by=%s amount=%s", request_id, approver_id, amount)
        return CreditRequestResponse(
            request=CreditRequest(**data),
            ledger_entry=entry,
            message="Credit request approved",
        )

    def reject(self, request_id: UUID, approver_id: UUID, reason: str) -> CreditRequestResponse:
        with self.storage.transaction():
            request = self.get_request(request_id)
            self._check_can_process(request, approver_id)

            data = self.storage.credit_requests[request_id]
            data["status"] = RequestStatus.REJECTED
            data["processed_by_account_id"] = approver_id
            data["processed_at"] = datetime.now(timezone.utc)
            data["notes"] = reason

        log.info("credit request rejected id=%s by=%s", request_id, approver_id)
        return CreditRequestResponse(request=CreditRequest(**data), message="Credit request rejected")

    def list_for_requester(self, requester_id: UUID) -> list[CreditRequest]:
        return self._list(lambda r: r["requester_account_id"] == requester_id)

    def list_for_grantor(self, grantor_id: UUID, status: Optional[RequestStatus] = None) -> list[CreditRequest]:
        return self._list(lambda r: r["grantor_account_id"] == grantor_id, status)

    def list_admin_pool(self, status: Optional[RequestStatus] = None) -> list[CreditRequest]:
        return self._list(lambda r: r["grantor_account_id"] is None, status)

    def _list(self, predicate, status: Optional[RequestStatus] = None) -> list[CreditRequest]:
        rows = [
            CreditRequest(**r) for r in self.storage.credit_requests.values()
            if predicate(r) and (status is None or r["status"] == status)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows
