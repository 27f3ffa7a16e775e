import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

from .errors import VersionConflictError

_MISSING = object()

COLLECTIONS = (
    "transactions",
    "enrollments",
    "withdrawals",
    "commissions",
    "affiliate_links",
    "affiliate_payouts",
    "lecturer_accounts",
    "courses",
    "study_groups",
    "users",
)

INDEXES = (
    "transaction_index",    # external_reference -> transaction id
    "enrollment_index",     # (student_id, course_id) -> enrollment id
    "withdrawal_index",     # reference -> withdrawal id
    "commission_index",     # idempotency key -> commission id
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStorage:
    """Document store with atomic counters, compare-and-set and a rollback journal.

    Reads hand out deep copies, so a caller can only change stored state
    through ``put``/``increment``/``compare_and_set``. Every one of those runs
    under the store lock; inside ``atomic()`` they are also journaled and rolled
    back together if the block raises.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utcnow
        for name in COLLECTIONS + INDEXES:
            setattr(self, name, {})
        self._lock = threading.RLock()
        self._journal: Optional[list] = None

    def now(self) -> datetime:
        return self.clock()

    @contextmanager
    def atomic(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            if self._journal is not None:
                # nested unit of work joins the outer one
                yield self
                return
            self._journal = []
            try:
                yield self
            except BaseException:
                self._rollback()
                raise
            finally:
                self._journal = None

    def get(self, collection: str, key: Any) -> Optional[dict]:
        with self._lock:
            doc = self._collection(collection).get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def find(self, collection: str, predicate: Callable[[dict], bool]) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._collection(collection).values() if predicate(d)]

    def keys(self, collection: str) -> list:
        with self._lock:
            return list(self._collection(collection).keys())

    def put(self, collection: str, key: Any, doc: Any) -> None:
        with self._lock:
            store = self._collection(collection)
            self._record(store, key)
            store[key] = copy.deepcopy(doc)

    def increment(self, collection: str, key: Any, defaults: Optional[dict] = None, **deltas: int) -> dict:
        """Add ``deltas`` to numeric fields in one step; creates the doc from ``defaults`` if absent."""
        with self._lock:
            store = self._collection(collection)
            self._record(store, key)
            doc = store.get(key)
            if doc is None:
                doc = copy.deepcopy(defaults) if defaults else {}
            else:
                doc = dict(doc)
            for field_name, delta in deltas.items():
                doc[field_name] = doc.get(field_name, 0) + delta
            store[key] = doc
            return copy.deepcopy(doc)

    def compare_and_set(self, collection: str, key: Any, doc: dict, expected_version: int) -> dict:
        """Write ``doc`` only if the stored version is still ``expected_version``; bumps the version."""
        with self._lock:
            store = self._collection(collection)
            current = store.get(key)
            current_version = current.get("version", 0) if current is not None else None
            if current_version != expected_version:
                raise VersionConflictError(
                    f"{collection}/{key} is at version {current_version}, expected {expected_version}",
                    context={"collection": collection, "key": str(key)},
                )
            new_doc = copy.deepcopy(doc)
            new_doc["version"] = expected_version + 1
            self._record(store, key)
            store[key] = new_doc
            return copy.deepcopy(new_doc)

    def _collection(self, name: str) -> dict:
        if name not in COLLECTIONS and name not in INDEXES:
            raise KeyError(f"Unknown collection {name}")
        return getattr(self, name)

    def _record(self, store: dict, key: Any) -> None:
        if self._journal is not None:
            previous = store.get(key, _MISSING)
            if previous is not _MISSING:
                previous = copy.deepcopy(previous)
            self._journal.append((store, key, previous))

    def _rollback(self) -> None:
        for store, key, previous in reversed(self._journal):
            if previous is _MISSING:
                store.pop(key, None)
            else:
                store[key] = previous
