"""
store.py
========
Storage adapter contract used by the enforcer, and an in-memory adapter.

The in-memory adapter has no native transactions. A unit of work copies a
kind's table the first time it reads that kind and keeps reading the copy;
``write_all`` applies the staged changes with a compare-and-swap on per-kind
version counters, so a concurrent writer to any kind this unit of work read
or wrote turns into a ``WriteConflict`` instead of a lost update.
"""

import abc
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from .errors import StorageTimeout, WriteConflict

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CHANGE SET TYPES
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RowInsert:
    kind: object
    row: Mapping[str, object]


@dataclass(frozen=True)
class RowUpdate:
    """Replace the stored row ``id`` with ``row`` (whose id may differ)."""
    kind: object
    id: int
    row: Mapping[str, object]


@dataclass(frozen=True)
class RowDelete:
    kind: object
    id: int


@dataclass
class CommitResult:
    inserted_ids: List[int] = field(default_factory=list)


# ---------------------------------------------------------------------------
# ADAPTER CONTRACT
# ---------------------------------------------------------------------------

class StorageAdapter(abc.ABC):
    """
    Read/write access to persisted rows with atomic multi-row commit.

    Rows are plain dicts keyed by field name, always including ``id``.
    """

    @abc.abstractmethod
    def begin_unit_of_work(self):
        """Open a unit of work and return its handle."""

    @abc.abstractmethod
    def read_snapshot(self, handle, kind, filter: Optional[Mapping[str, object]] = None) -> List[dict]:
        """Rows of ``kind`` matching every ``filter`` item by equality, ordered by id."""

    @abc.abstractmethod
    def write_all(
        self,
        handle,
        inserts: Sequence[RowInsert] = (),
        updates: Sequence[RowUpdate] = (),
        deletes: Sequence[RowDelete] = (),
    ) -> CommitResult:
        """Commit every change or none; raise WriteConflict if the snapshot went stale."""

    @abc.abstractmethod
    def rollback(self, handle) -> None:
        """Discard the unit of work. A no-op once the handle committed or rolled back."""


def _matches(row: Mapping[str, object], filter: Optional[Mapping[str, object]]) -> bool:
    if not filter:
        return True
    return all(row.get(name) == value for name, value in filter.items())


# ---------------------------------------------------------------------------
# IN-MEMORY ADAPTER
# ---------------------------------------------------------------------------

@dataclass
class MemoryUnitOfWork:
    # version of every kind when the unit began; a read replaces its kind's
    # entry with the version of the copy it took
    versions: Dict[object, int]
    tables: Dict[object, Dict[int, dict]] = field(default_factory=dict)
    closed: bool = False


class MemoryStore(StorageAdapter):
    """Thread-safe dict-backed store with optimistic, versioned commits."""

    def __init__(self, lock_timeout: float = 5.0):
        self._lock = threading.Lock()
        self._lock_timeout = lock_timeout
        self._tables: Dict[object, Dict[int, dict]] = defaultdict(dict)
        self._versions: Dict[object, int] = defaultdict(int)
        self._last_id: Dict[object, int] = defaultdict(int)

    @contextmanager
    def _locked(self):
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise StorageTimeout(f"store lock not acquired within {self._lock_timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    def begin_unit_of_work(self) -> MemoryUnitOfWork:
        with self._locked():
            versions = dict(self._versions)
        return MemoryUnitOfWork(versions=versions)

    def read_snapshot(self, handle: MemoryUnitOfWork, kind, filter=None) -> List[dict]:
        self._ensure_open(handle)
        rows = handle.tables.get(kind)
        if rows is None:
            with self._locked():
                # rows are replaced on write, never mutated, so a shallow copy suffices
                rows = dict(self._tables.get(kind, {}))
                handle.versions[kind] = self._versions.get(kind, 0)
            handle.tables[kind] = rows
        return [dict(rows[row_id]) for row_id in sorted(rows) if _matches(rows[row_id], filter)]

    def write_all(self, handle: MemoryUnitOfWork, inserts=(), updates=(), deletes=()) -> CommitResult:
        self._ensure_open(handle)
        written = {c.kind for c in list(inserts) + list(updates) + list(deletes)}

        with self._locked():
            for kind in set(handle.tables) | written:
                if self._versions[kind] != handle.versions.get(kind, 0):
                    raise WriteConflict(f"{kind} changed since the unit of work began")

            staged = {kind: dict(self._tables[kind]) for kind in written}
            last_id = {kind: self._last_id[kind] for kind in written}

            for change in updates:
                table = staged[change.kind]
                if change.id not in table:
                    raise WriteConflict(f"{change.kind} {change.id} vanished before commit")
                row = dict(change.row)
                del table[change.id]
                if row["id"] in table:
                    raise WriteConflict(f"{change.kind} {row['id']} already exists")
                table[row["id"]] = row
                last_id[change.kind] = max(last_id[change.kind], row["id"])

            for change in deletes:
                if staged[change.kind].pop(change.id, None) is None:
                    raise WriteConflict(f"{change.kind} {change.id} vanished before commit")

            result = CommitResult()
            for change in inserts:
                table = staged[change.kind]
                row_id = max(last_id[change.kind], max(table, default=0)) + 1
                last_id[change.kind] = row_id
                row = dict(change.row)
                row["id"] = row_id
                table[row_id] = row
                result.inserted_ids.append(row_id)

            # nothing above raised: publish the staged tables in one step
            for kind in written:
                self._tables[kind] = staged[kind]
                self._last_id[kind] = last_id[kind]
                self._versions[kind] += 1

        handle.closed = True
        logger.debug(
            "memory commit: %d inserts, %d updates, %d deletes",
            len(inserts), len(updates), len(deletes),
        )
        return result

    def rollback(self, handle: MemoryUnitOfWork) -> None:
        if handle.closed:
            return
        handle.closed = True
        handle.tables = {}

    @staticmethod
    def _ensure_open(handle: MemoryUnitOfWork):
        if handle.closed:
            raise RuntimeError("unit of work is already finished")
