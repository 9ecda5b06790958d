import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional
from uuid import UUID

from .models import AccountRole

_MISSING = object()


class Table(dict):
    """Rows keyed by id.

    Inside a transaction the first touch of a row saves a shallow copy of it
    to the storage undo log, so only rows the block reads or writes are
    copied. Tables with ``immutable_rows`` only log inserts and deletes.
    Iteration always returns a snapshot taken under the write lock.
    """

    def __init__(self, storage: "InMemoryStorage", name: str, immutable_rows: bool = False):
        super().__init__()
        self._storage = storage
        self.name = name
        self.immutable_rows = immutable_rows

    def _remember(self, key, writing: bool = False) -> None:
        undo = self._storage._undo_log()
        if undo is None or (self.name, key) in undo:
            return
        if not dict.__contains__(self, key):
            undo[(self.name, key)] = _MISSING
        elif writing or not self.immutable_rows:
            undo[(self.name, key)] = copy.copy(dict.__getitem__(self, key))

    def __getitem__(self, key):
        self._remember(key)
        return super().__getitem__(key)

    def get(self, key, default=None):
        if dict.__contains__(self, key):
            self._remember(key)
        return super().get(key, default)

    def __setitem__(self, key, value):
        self._remember(key, writing=True)
        super().__setitem__(key, value)

    def __delitem__(self, key):
        self._remember(key, writing=True)
        super().__delitem__(key)

    def pop(self, key, *default):
        self._remember(key, writing=True)
        return super().pop(key, *default)

    def values(self) -> list:
        with self._storage._write_lock:
            keys = list(dict.keys(self))
            for key in keys:
                self._remember(key)
            return [dict.__getitem__(self, key) for key in keys]

    def items(self) -> list:
        with self._storage._write_lock:
            return list(zip(dict.keys(self), self.values()))


class InMemoryStorage:
    """Tables for accounts, ledger, credit requests and the posting side.

    Every write goes through ``transaction()``: one re-entrant write lock
    plus an undo log of the rows the block touched, replayed if the block
    raises. Ledger entries are append-only, so their rollback only drops
    keys added inside the block.

    Lock order is always account locks first, then the write lock.
    """

    def __init__(self, admin_ids: Iterable[UUID] = ()):
        self.accounts = Table(self, "accounts")
        self.ledger_entries = Table(self, "ledger_entries", immutable_rows=True)
        self.credit_requests = Table(self, "credit_requests")
        self.authorizations = Table(self, "authorizations")
        self.idempotency_index = Table(self, "idempotency_index", immutable_rows=True)

        self.channels = Table(self, "channels")
        self.posts = Table(self, "posts")
        self.fire_times = Table(self, "fire_times")

        self._write_lock = threading.RLock()
        self._undo: Optional[dict] = None
        self._tx_thread: Optional[int] = None
        self._locks_guard = threading.Lock()
        self._account_locks: dict[UUID, threading.RLock] = {}
        self._seed_data(admin_ids)

    def _seed_data(self, admin_ids: Iterable[UUID]):
        now = datetime.now(timezone.utc)
        for admin_id in admin_ids:
            self.accounts[admin_id] = {
                "id": admin_id, "name": "admin", "role": AccountRole.ADMIN,
                "balance": 0, "version": 0, "created_at": now,
                "free_posts_used": 0, "free_posts_limit": 0, "commission_rate": None,
            }

    def _undo_log(self) -> Optional[dict]:
        # reads from other threads never land in the running block's log
        if self._tx_thread != threading.get_ident():
            return None
        return self._undo

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        with self._write_lock:
            if self._undo is not None:
                # nested blocks join the outermost unit
                yield self
                return

            self._undo = {}
            self._tx_thread = threading.get_ident()
            try:
                yield self
            except BaseException:
                self._rollback()
                raise
            finally:
                self._undo = None
                self._tx_thread = None

    def _rollback(self) -> None:
        for (name, key), prior in self._undo.items():
            table = getattr(self, name)
            if prior is _MISSING:
                dict.pop(table, key, None)
            else:
                dict.__setitem__(table, key, prior)

    def _lock_for(self, account_id: UUID) -> threading.RLock:
        with self._locks_guard:
            lock = self._account_locks.get(account_id)
            if lock is None:
                lock = self._account_locks[account_id] = threading.RLock()
            return lock

    @contextmanager
    def account_lock(self, *account_ids: Optional[UUID]) -> Iterator[None]:
        """Serialize work on the given accounts; ids are locked in a fixed order."""
        ids = sorted({a for a in account_ids if a is not None}, key=str)
        locks = [self._lock_for(a) for a in ids]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    def entries_for(self, account_id: UUID) -> list[dict]:
        return [e for e in self.ledger_entries.values() if e["account_id"] == account_id]

    def channel_ids_owned_by(self, owner_id: UUID) -> set[UUID]:
        return {c["id"] for c in self.channels.values() if c["owner_account_id"] == owner_id}
