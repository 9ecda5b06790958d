import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID, uuid4

from .config import Settings, get_settings
from .errors import (
    AccountNotFoundError,
    ConflictError,
    ForbiddenError,
    InsufficientCreditError,
    InvalidAmountError,
    MissingGrantorError,
    NotFoundError,
    StaleAuthorizationError,
    ValidationError,
)
from .models import (
    Account,
    AccountRole,
    Authorization,
    EntryKind,
    GrantorCredit,
    IntegrityReport,
    LedgerEntry,
    LedgerHistoryResponse,
    NewLedgerEntry,
    UserBalance,
)
from .storage import InMemoryStorage

log = logging.getLogger(__name__)


class LedgerService:
    """Append-only credit ledger with a cached balance per account.

    The cached ``balance`` on each account is only ever changed together with
    the entry that explains it. Grantor sub-balances are never stored; they
    are folds over the entries, filtered by grantor and channel.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage(admin_ids=self.settings.admin_ids)

    # accounts

    def create_account(self, name: str = "", role: AccountRole = AccountRole.ADVERTISER,
                       account_id: Optional[UUID] = None) -> Account:
        account_id = account_id or uuid4()
        with self.storage.transaction():
            if account_id in self.storage.accounts:
                raise ConflictError(f"Account {account_id} already exists")
            data = {
                "id": account_id, "name": name, "role": role,
                "balance": 0, "version": 0, "created_at": datetime.now(timezone.utc),
                "free_posts_used": 0, "free_posts_limit": self.settings.FREE_POSTS_LIMIT,
                "commission_rate": None,
            }
            self.storage.accounts[account_id] = data
        return Account(**data)

    def get_account(self, account_id: UUID) -> Account:
        return Account(**self._account_row(account_id))

    def _account_row(self, account_id: UUID) -> dict:
        row = self.storage.accounts.get(account_id)
        if not row:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return row

    def update_posting_terms(self, account_id: UUID, free_posts_limit: Optional[int] = None,
                             commission_rate: Optional[float] = None) -> Account:
        """Set an owner's free-post quota and the platform share of its paid posts."""
        if free_posts_limit is not None and free_posts_limit < 0:
            raise ValidationError("free_posts_limit must not be negative")
        if commission_rate is not None and not 0 <= commission_rate <= 1:
            raise ValidationError("commission_rate must be between 0 and 1")
        with self.storage.account_lock(account_id), self.storage.transaction():
            row = self._account_row(account_id)
            if free_posts_limit is not None:
                row["free_posts_limit"] = free_posts_limit
            if commission_rate is not None:
                row["commission_rate"] = commission_rate
        return Account(**row)

    def commission_for(self, owner_id: UUID) -> float:
        rate = self._account_row(owner_id).get("commission_rate")
        return self.settings.PLATFORM_COMMISSION if rate is None else rate

    # entry store

    def append(self, entry: NewLedgerEntry, authorization: Optional[Authorization] = None) -> UUID:
        return self.append_entry(entry, authorization).id

    def append_entry(self, entry: NewLedgerEntry, authorization: Optional[Authorization] = None) -> LedgerEntry:
        """Write one entry and move the cached balance by the same amount, atomically."""
        if entry.amount == 0:
            raise InvalidAmountError("Ledger entry amount must be non-zero")
        if entry.kind.is_grant and entry.granted_by_account_id is None:
            raise MissingGrantorError(f"{entry.kind.value} entry requires granted_by_account_id")
        if entry.kind == EntryKind.SPENT and entry.amount > 0 and entry.reference_entry_id is None:
            raise InvalidAmountError("SPENT entries must be negative")

        try:
            with self.storage.account_lock(entry.account_id), self.storage.transaction():
                account = self._account_row(entry.account_id)

                if entry.kind == EntryKind.SPENT and entry.amount < 0:
                    self._consume_authorization(account, entry, authorization)

                new_balance = account["balance"] + entry.amount
                if new_balance < 0:
                    raise InsufficientCreditError(-entry.amount, account["balance"])

                entry_id = uuid4()
                data = {
                    "id": entry_id,
                    **entry.model_dump(),
                    "balance_after": new_balance,
                    "created_at": datetime.now(timezone.utc),
                }
                self.storage.ledger_entries[entry_id] = data
                account["balance"] = new_balance
                account["version"] += 1
        except StaleAuthorizationError:
            # a stale token can never succeed later, drop it
            with self.storage.transaction():
                self.storage.authorizations.pop(authorization.id, None)
            raise

        log.info(
            "ledger append account=%s kind=%s amount=%s balance=%s",
            entry.account_id, entry.kind.value, entry.amount, new_balance,
        )
        return LedgerEntry(**data)

    def _consume_authorization(self, account: dict, entry: NewLedgerEntry,
                               authorization: Optional[Authorization]) -> None:
        if authorization is None:
            raise ForbiddenError("SPENT entry requires a spend authorization")
        stored = self.storage.authorizations.get(authorization.id)
        if not stored:
            raise StaleAuthorizationError(f"Authorization {authorization.id} is unknown, used or expired")
        if stored["created_at"] < datetime.now(timezone.utc) - self._authorization_ttl:
            raise StaleAuthorizationError(f"Authorization {authorization.id} expired")
        if stored["account_id"] != entry.account_id or stored["amount"] != -entry.amount:
            raise StaleAuthorizationError("Authorization does not match this spend")
        if stored["account_version"] != account["version"]:
            raise StaleAuthorizationError(
                f"Balance of account {entry.account_id} changed since authorization; re-authorize"
            )
        del self.storage.authorizations[authorization.id]

    def get_entry(self, entry_id: UUID) -> LedgerEntry:
        data = self.storage.ledger_entries.get(entry_id)
        if not data:
            raise NotFoundError(f"Ledger entry {entry_id} not found")
        return LedgerEntry(**data)

    def reverse_entry(self, entry_id: UUID, reason: str, performed_by: Optional[str] = None) -> LedgerEntry:
        """Offset an entry with a new one of inverse sign. The original stays untouched."""
        original = self.get_entry(entry_id)
        with self.storage.account_lock(original.account_id), self.storage.transaction():
            if any(e.get("reference_entry_id") == entry_id for e in self.storage.ledger_entries.values()):
                raise ConflictError(f"Ledger entry {entry_id} was already reversed")
            description = f"Reversal of {entry_id}: {reason}"
            if performed_by:
                description += f" (by {performed_by})"
            return self.append_entry(NewLedgerEntry(
                account_id=original.account_id,
                amount=-original.amount,
                kind=original.kind,
                granted_by_account_id=original.granted_by_account_id,
                related_channel_id=original.related_channel_id,
                related_post_id=original.related_post_id,
                reference_entry_id=entry_id,
                description=description,
            ))

    # credit sources

    def record_purchase(self, account_id: UUID, credits: int, payment_reference: str) -> LedgerEntry:
        """Book credits for a confirmed payment. Replaying the same reference is a no-op."""
        key = f"purchase:{payment_reference}"
        with self.storage.account_lock(account_id), self.storage.transaction():
            existing = self.storage.idempotency_index.get(key)
            if existing:
                return self.get_entry(existing)
            entry = self.append_entry(NewLedgerEntry(
                account_id=account_id,
                amount=credits,
                kind=EntryKind.PURCHASE,
                description=f"Credits purchased ({payment_reference})",
            ))
            self.storage.idempotency_index[key] = entry.id
        return entry

    def grant_credits(self, grantor_id: UUID, account_id: UUID, amount: int,
                      notes: Optional[str] = None) -> LedgerEntry:
        grantor = self.get_account(grantor_id)
        if grantor.role == AccountRole.ADMIN:
            kind = EntryKind.ADMIN_GRANT
        elif grantor.role == AccountRole.PUBLISHER:
            kind = EntryKind.PUBLISHER_GRANT
        else:
            raise ForbiddenError("Only publishers and admins can grant credits")
        if amount <= 0:
            raise InvalidAmountError("Granted amount must be positive")
        return self.append_entry(NewLedgerEntry(
            account_id=account_id,
            amount=amount,
            kind=kind,
            granted_by_account_id=grantor_id,
            description=notes or f"Credits granted by {grantor.name or grantor_id}",
        ))

    # balance accessor

    def global_balance(self, account_id: UUID) -> int:
        return self._account_row(account_id)["balance"]

    def derived_balance(self, account_id: UUID) -> int:
        return sum(e["amount"] for e in self.storage.entries_for(account_id))

    def _grantor_totals(self, account_id: UUID, grantor_id: UUID) -> tuple[int, int]:
        channel_ids = self.storage.channel_ids_owned_by(grantor_id)
        granted = 0
        spent = 0
        for e in self.storage.entries_for(account_id):
            if e["kind"] == EntryKind.PUBLISHER_GRANT and e["granted_by_account_id"] == grantor_id:
                granted += e["amount"]
            elif e["kind"] == EntryKind.SPENT and e["related_channel_id"] in channel_ids:
                # refunds carry a positive amount and give the headroom back
                spent -= e["amount"]
        return granted, spent

    def available_from(self, account_id: UUID, grantor_id: UUID) -> int:
        granted, spent = self._grantor_totals(account_id, grantor_id)
        available = granted - spent
        if available < 0:
            log.warning(
                "negative sub-balance account=%s grantor=%s granted=%s spent=%s",
                account_id, grantor_id, granted, spent,
            )
            return 0
        return available

    def authorize_spend(self, account_id: UUID, amount: int,
                        related_grantor_id: Optional[UUID] = None) -> Authorization:
        if amount <= 0:
            raise InvalidAmountError("Spend amount must be positive")
        with self.storage.account_lock(account_id), self.storage.transaction():
            account = self._account_row(account_id)
            balance = account["balance"]
            grantor_available = None
            if related_grantor_id is not None:
                grantor_available = self.available_from(account_id, related_grantor_id)
            if balance < amount or (grantor_available is not None and grantor_available < amount):
                raise InsufficientCreditError(amount, balance, grantor_available)

            auth = Authorization(
                id=uuid4(),
                account_id=account_id,
                amount=amount,
                grantor_id=related_grantor_id,
                account_version=account["version"],
                created_at=datetime.now(timezone.utc),
            )
            self._purge_expired_authorizations(auth.created_at)
            self.storage.authorizations[auth.id] = auth.model_dump()
        return auth

    @property
    def _authorization_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.AUTHORIZATION_TTL_SECONDS)

    def _purge_expired_authorizations(self, now: datetime) -> None:
        cutoff = now - self._authorization_ttl
        expired = [a["id"] for a in self.storage.authorizations.values() if a["created_at"] < cutoff]
        for auth_id in expired:
            del self.storage.authorizations[auth_id]

    def credits_by_grantor(self, account_id: UUID) -> list[GrantorCredit]:
        self._account_row(account_id)
        grantor_ids = []
        for e in self.storage.entries_for(account_id):
            grantor = e["granted_by_account_id"]
            if e["kind"] == EntryKind.PUBLISHER_GRANT and grantor not in grantor_ids:
                grantor_ids.append(grantor)

        result = []
        for grantor_id in grantor_ids:
            granted, spent = self._grantor_totals(account_id, grantor_id)
            grantor = self.storage.accounts.get(grantor_id) or {}
            result.append(GrantorCredit(
                grantor_id=grantor_id,
                grantor_name=grantor.get("name", ""),
                total_granted=granted,
                spent_on_grantor_channels=spent,
                available=max(0, granted - spent),
            ))
        return result

    def get_balance(self, account_id: UUID) -> UserBalance:
        account = self._account_row(account_id)
        entries = self.storage.entries_for(account_id)
        last_entry = max(entries, key=lambda e: e["created_at"]) if entries else None
        return UserBalance(
            account_id=account_id,
            current_balance=account["balance"],
            total_entries=len(entries),
            last_transaction_at=last_entry["created_at"] if last_entry else None,
        )

    def get_ledger_history(self, account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        all_entries = [LedgerEntry(**e) for e in self.storage.entries_for(account_id)]
        all_entries.reverse()
        return LedgerHistoryResponse(
            account_id=account_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=self.global_balance(account_id),
        )

    def verify_integrity(self) -> IntegrityReport:
        """Re-derive every balance from the log and compare with the cache."""
        mismatches = {}
        with self.storage.transaction():
            for account_id, account in self.storage.accounts.items():
                derived = self.derived_balance(account_id)
                if derived != account["balance"]:
                    mismatches[str(account_id)] = {"cached": account["balance"], "derived": derived}
        if mismatches:
            log.error("ledger integrity check failed for %s accounts", len(mismatches))
        return IntegrityReport(
            checked_accounts=len(self.storage.accounts),
            ok=not mismatches,
            mismatches=mismatches,
        )
