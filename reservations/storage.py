import copy
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from ledger.models import CreditTransaction
from ledger.service import LedgerStorage
from .models import Booking, Member, Session

logger = logging.getLogger(__name__)

# Ledger first, sessions last: a removed session never lands before its refunds.
COMMIT_ORDER = ("transactions", "bookings", "members", "sessions")

ROW_MODELS = {
    "transactions": CreditTransaction,
    "bookings": Booking,
    "members": Member,
    "sessions": Session,
}


class JsonFileStore:
    """Durable get/replace store: one JSON document per collection."""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, collection: str) -> str:
        return os.path.join(self.directory, f"{collection}.json")

    def get(self, collection: str) -> dict[str, dict]:
        path = self._path(collection)
        if not os.path.exists(path):
            return {}
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def replace(self, collection: str, records: dict[str, dict]) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{collection}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2)
            os.replace(tmp_path, self._path(collection))
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise



class WorkingSet(LedgerStorage):
    """
    Private view of the store for one write section.

    A collection is copied the first time the section touches it, so an
    operation pays only for the collections it reads or writes.
    """

    # Ledger rows are appended, never edited in place.
    SHALLOW = frozenset({"transactions"})

    def __init__(self, source: "InMemoryStorage"):
        self._source = source
        self._copies: dict[str, dict[str, dict]] = {}
        self.changes: dict[str, list[str]] = {}

    def _collection(self, name: str) -> dict[str, dict]:
        if name not in self._copies:
            rows = getattr(self._source, name)
            self._copies[name] = dict(rows) if name in self.SHALLOW else copy.deepcopy(rows)
        return self._copies[name]

    @property
    def members(self) -> dict[str, dict]:
        return self._collection("members")

    @property
    def transactions(self) -> dict[str, dict]:
        return self._collection("transactions")

    @property
    def sessions(self) -> dict[str, dict]:
        return self._collection("sessions")

    @property
    def bookings(self) -> dict[str, dict]:
        return self._collection("bookings")

    def touched(self) -> dict[str, dict[str, dict]]:
        return self._copies


CommitListener = Callable[[str, dict[str, list[str]], int], None]


class InMemoryStorage(LedgerStorage):
    def __init__(self, backend: Optional[JsonFileStore] = None):
        super().__init__()
        self.sessions: dict[str, dict] = {}
        self.bookings: dict[str, dict] = {}
        self.backend = backend
        self.commit_count = 0
        # Serialised rows as last written to the backend.
        self._records: dict[str, dict[str, dict]] = {name: {} for name in COMMIT_ORDER}
        self._listeners: list[CommitListener] = []
        self._lock = threading.RLock()
        if backend is not None:
            self._load()

    def is_empty(self) -> bool:
        with self._lock:
            return not any(getattr(self, name) for name in COMMIT_ORDER)

    def on_commit(self, listener: CommitListener) -> None:
        """Register `listener(action, changes, commit_number)`, called under the lock after each commit."""
        self._listeners.append(listener)

    @contextmanager
    def snapshot(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            yield self

    @contextmanager
    def transaction(self, action: str = "write") -> Iterator[WorkingSet]:
        """Serialise a write section. Changes land only if the block exits cleanly."""
        with self._lock:
            work = WorkingSet(self)
            yield work
            work.changes = self._commit(work)
            if work.changes:
                self.commit_count += 1
                for listener in list(self._listeners):
                    listener(action, work.changes, self.commit_count)

    def _commit(self, work: WorkingSet) -> dict[str, list[str]]:
        touched = work.touched()
        changes: dict[str, list[str]] = {}
        for name in COMMIT_ORDER:
            if name not in touched:
                continue
            before = getattr(self, name)
            after = touched[name]
            changed = sorted(
                key for key in before.keys() | after.keys()
                if before.get(key) is not after.get(key) and before.get(key) != after.get(key)
            )
            if changed:
                changes[name] = changed

        previous = {name: getattr(self, name) for name in changes}
        saved_records = {name: self._records[name] for name in changes}
        for name in changes:
            setattr(self, name, touched[name])

        written = []
        try:
            for name in COMMIT_ORDER:
                if name in changes:
                    self._persist(name, changes[name])
                    written.append(name)
        except Exception:
            logger.error("Persisting %s failed after writing %s; rolling back", sorted(changes), written)
            for name, rows in previous.items():
                setattr(self, name, rows)
            self._restore(written, saved_records)
            raise
        return changes

    def _persist(self, name: str, keys: list[str]) -> None:
        if self.backend is None:
            return
        model = ROW_MODELS[name]
        rows = getattr(self, name)
        records = dict(self._records[name])
        for key in keys:
            if key in rows:
                records[key] = model(**rows[key]).model_dump(mode="json")
            else:
                records.pop(key, None)
        self.backend.replace(name, records)
        self._records[name] = records

    def _restore(self, written: list[str], records: dict[str, dict[str, dict]]) -> None:
        # Put back collections this commit already wrote. If that fails too, the
        # files are ahead of memory and balances are repaired from the log on load.
        for name in written:
            self._records[name] = records[name]
            try:
                self.backend.replace(name, records[name])
            except Exception:
                logger.exception("Could not restore %s after failed commit", name)

    def _load(self) -> None:
        for name in COMMIT_ORDER:
            model = ROW_MODELS[name]
            rows = {key: model.model_validate(row) for key, row in self.backend.get(name).items()}
            setattr(self, name, {key: row.model_dump() for key, row in rows.items()})
            self._records[name] = {key: row.model_dump(mode="json") for key, row in rows.items()}
        logger.info(
            "Loaded store: %d members, %d sessions, %d bookings, %d transactions",
            len(self.members), len(self.sessions), len(self.bookings), len(self.transactions),
        )
