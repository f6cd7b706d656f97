"""
errors.py
=========
Error taxonomy returned by the integrity engine.

Every rejected operation raises one of these. The ``transient`` flag tells the
caller whether retrying the whole logical operation can succeed as-is:
 - ValidationFailed, ReferentialViolation, Restricted*, NotFound -> fix input
 - ConcurrentModification, StorageUnavailable -> retry later
"""

from typing import Dict, Iterable, List, Optional


class EngineError(Exception):
    """Base class for every error the engine signals to callers."""
    transient = False


class ValidationFailed(EngineError):
    """Candidate row broke one or more catalog constraints."""

    def __init__(self, kind, reasons):
        self.kind = kind
        self.reasons = list(reasons)
        details = "; ".join(str(r) for r in self.reasons)
        super().__init__(f"{kind} failed validation: {details}")


class ReferentialViolation(EngineError):
    """A foreign reference points at a parent row that does not exist."""

    def __init__(self, kind, field: str, parent_kind, parent_id):
        self.kind = kind
        self.field = field
        self.parent_kind = parent_kind
        self.parent_id = parent_id
        super().__init__(
            f"{kind}.{field} references missing {parent_kind} {parent_id!r}"
        )


class RestrictViolation(EngineError):
    """A parent mutation is blocked by child rows under a restrict policy."""
    action = "mutate"

    def __init__(self, kind, row_id, blockers: Dict[object, Iterable[int]]):
        self.kind = kind
        self.row_id = row_id
        self.blockers = {k: sorted(ids) for k, ids in blockers.items()}
        summary = ", ".join(
            f"{k} {ids}" for k, ids in sorted(self.blockers.items(), key=lambda kv: str(kv[0]))
        )
        super().__init__(f"cannot {self.action} {kind} {row_id}: referenced by {summary}")

    @property
    def blocking_kind(self):
        """First blocking entity kind (by name)."""
        return sorted(self.blockers, key=str)[0]

    @property
    def blocking_ids(self) -> List[int]:
        return self.blockers[self.blocking_kind]


class RestrictedDelete(RestrictViolation):
    action = "delete"


class RestrictedUpdate(RestrictViolation):
    action = "re-key"


class NotFound(EngineError):
    def __init__(self, kind, row_id):
        self.kind = kind
        self.row_id = row_id
        super().__init__(f"{kind} {row_id!r} not found")


class ConcurrentModification(EngineError):
    """Rows read by the operation changed before it could commit."""
    transient = True


class StorageUnavailable(EngineError):
    """Infrastructure failure in the storage layer, propagated unchanged."""
    transient = True

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class StorageTimeout(StorageUnavailable):
    """The unit of work could not commit or abort within the store's timeout."""


class WriteConflict(Exception):
    """
    Raised by storage adapters from write_all() when a concurrent writer
    invalidated the unit of work. The enforcer turns it into
    ConcurrentModification.
    """
