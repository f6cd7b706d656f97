"""
Referential-integrity and constraint-enforcement engine for hospital records.
"""

from .catalog import HOSPITAL_CATALOG, Catalog, EntityKind, Policy
from .enforcer import DeleteResult, IntegrityEnforcer
from .errors import (
    ConcurrentModification,
    EngineError,
    NotFound,
    ReferentialViolation,
    RestrictedDelete,
    RestrictedUpdate,
    StorageTimeout,
    StorageUnavailable,
    ValidationFailed,
)
from .graph import GraphCycleError, RelationshipGraph
from .store import MemoryStore, StorageAdapter
from .validator import Validator, Violation

__all__ = [
    "HOSPITAL_CATALOG",
    "Catalog",
    "EntityKind",
    "Policy",
    "DeleteResult",
    "IntegrityEnforcer",
    "ConcurrentModification",
    "EngineError",
    "NotFound",
    "ReferentialViolation",
    "RestrictedDelete",
    "RestrictedUpdate",
    "StorageTimeout",
    "StorageUnavailable",
    "ValidationFailed",
    "GraphCycleError",
    "RelationshipGraph",
    "MemoryStore",
    "StorageAdapter",
    "Validator",
    "Violation",
]
