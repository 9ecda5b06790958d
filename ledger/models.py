from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class AccountRole(str, Enum):
    ADMIN = "ADMIN"
    PUBLISHER = "PUBLISHER"
    ADVERTISER = "ADVERTISER"


class EntryKind(str, Enum):
    PURCHASE = "PURCHASE"
    EARNED = "EARNED"
    ADMIN_GRANT = "ADMIN_GRANT"
    PUBLISHER_GRANT = "PUBLISHER_GRANT"
    SPENT = "SPENT"

    @property
    def is_grant(self) -> bool:
        return self in (EntryKind.ADMIN_GRANT, EntryKind.PUBLISHER_GRANT)


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Account(BaseModel):
    id: UUID
    name: str = ""
    role: AccountRole = AccountRole.ADVERTISER
    balance: int = 0
    version: int = 0
    free_posts_used: int = 0
    free_posts_limit: int = 0
    commission_rate: Optional[float] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NewLedgerEntry(BaseModel):
    """An entry as submitted to the store, before it is assigned an id."""

    account_id: UUID
    amount: int
    kind: EntryKind
    granted_by_account_id: Optional[UUID] = None
    related_channel_id: Optional[UUID] = None
    related_post_id: Optional[UUID] = None
    reference_entry_id: Optional[UUID] = None
    description: str = ""


class LedgerEntry(BaseModel):
    id: UUID
    account_id: UUID
    amount: int
    kind: EntryKind
    granted_by_account_id: Optional[UUID] = None
    related_channel_id: Optional[UUID] = None
    related_post_id: Optional[UUID] = None
    reference_entry_id: Optional[UUID] = None
    description: str
    balance_after: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Authorization(BaseModel):
    """Single-use permission to append one SPENT entry.

    Bound to the account version observed when the check passed; the append
    is refused if the balance moved in between.
    """

    id: UUID
    account_id: UUID
    amount: int
    grantor_id: Optional[UUID] = None
    account_version: int
    created_at: datetime


class CreditRequest(BaseModel):
    id: UUID
    requester_account_id: UUID
    grantor_account_id: Optional[UUID] = None
    channel_id: Optional[UUID] = None
    amount: int
    reason: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    processed_by_account_id: Optional[UUID] = None
    processed_at: Optional[datetime] = None
    notes: Optional[str] = None
    approved_amount: Optional[int] = None
    ledger_entry_id: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_admin_pool(self) -> bool:
        return self.grantor_account_id is None

    def can_process(self) -> bool:
        return self.status == RequestStatus.PENDING


class CreateAccountRequest(BaseModel):
    name: str = ""
    role: AccountRole = AccountRole.ADVERTISER


class UpdatePostingTermsRequest(BaseModel):
    free_posts_limit: Optional[int] = Field(default=None, ge=0)
    commission_rate: Optional[float] = Field(default=None, ge=0, le=1,
                                             description="Platform share of this owner's paid posts")


class PurchaseCreditsRequest(BaseModel):
    credits: int = Field(..., ge=1)
    payment_reference: str = Field(..., description="Provider reference of the confirmed payment")


class GrantCreditsRequest(BaseModel):
    grantor_id: UUID
    amount: int = Field(..., ge=1)
    notes: Optional[str] = None


class ReverseEntryRequest(BaseModel):
    reason: str = Field(..., description="Reason for the correction")
    performed_by: Optional[str] = None


class CreateCreditRequest(BaseModel):
    requester_id: UUID
    amount: int = Field(..., ge=1)
    grantor_id: Optional[UUID] = Field(default=None, description="Omit to ask the admin pool")
    channel_id: Optional[UUID] = None
    reason: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "requester_id": "550e8400-e29b-41d4-a716-446655440000",
            "grantor_id": "660e8400-e29b-41d4-a716-446655440001",
            "amount": 100,
            "reason": "Spring campaign",
        }
    })


class ApproveCreditRequest(BaseModel):
    approver_id: UUID
    amount: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = None


class RejectCreditRequest(BaseModel):
    approver_id: UUID
    reason: str


class UserBalance(BaseModel):
    account_id: UUID
    current_balance: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class GrantorCredit(BaseModel):
    grantor_id: UUID
    grantor_name: str = ""
    total_granted: int
    spent_on_grantor_channels: int
    available: int


class LedgerHistoryResponse(BaseModel):
    account_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int


class CreditRequestResponse(BaseModel):
    request: CreditRequest
    ledger_entry: Optional[LedgerEntry] = None
    message: str


class IntegrityReport(BaseModel):
    checked_accounts: int
    ok: bool
    mismatches: dict[str, dict[str, int]] = Field(default_factory=dict)
