"""
Credit Ledger for Monetized Channels

This module provides:
- Immutable ledger entries with a cached balance per account
- Per-grantor sub-balances computed from the log
- Single-use spend authorizations
- Credit request workflow: pending → approved / rejected
- Integrity check re-deriving balances from entries
"""

from .models import (
    AccountRole,
    EntryKind,
    RequestStatus,
    Account,
    LedgerEntry,
    CreditRequest,
    UserBalance,
)
from .requests import CreditRequestWorkflow
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "AccountRole",
    "EntryKind",
    "RequestStatus",
    "Account",
    "LedgerEntry",
    "CreditRequest",
    "UserBalance",
    "CreditRequestWorkflow",
    "LedgerService",
    "InMemoryStorage",
]
