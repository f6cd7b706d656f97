"""
enforcer.py
===========
Integrity Enforcer: the entry point for every mutation.

Each public operation:
 - captures "now" once,
 - opens one unit of work on the storage adapter,
 - reads what it needs, validates every row it would write,
 - computes cascade / restrict / set-null effects,
 - commits the whole change set with a single write_all() or raises.

Nothing outside the unit of work happens before the commit, so a
ConcurrentModification can always be retried from scratch.
"""

import datetime
import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .catalog import HOSPITAL_CATALOG, Catalog, EntityKind, EntitySchema, Policy
from .errors import (
    ConcurrentModification,
    EngineError,
    NotFound,
    ReferentialViolation,
    RestrictedDelete,
    RestrictedUpdate,
    StorageUnavailable,
    ValidationFailed,
    WriteConflict,
)
from .graph import RelationshipGraph
from .store import RowDelete, RowInsert, RowUpdate, StorageAdapter
from .validator import Validator, Violation

logger = logging.getLogger(__name__)

RowKey = Tuple[EntityKind, int]


@dataclass
class DeleteResult:
    """Rows removed and rows whose reference was cleared by one delete."""
    deleted: List[RowKey] = field(default_factory=list)
    nullified: List[RowKey] = field(default_factory=list)


def _plain(value):
    # str enums are stored as their value
    if isinstance(value, enum.Enum):
        return value.value
    return value


class IntegrityEnforcer:

    def __init__(
        self,
        store: StorageAdapter,
        catalog: Catalog = HOSPITAL_CATALOG,
        graph: Optional[RelationshipGraph] = None,
        clock: Callable[[], datetime.datetime] = datetime.datetime.now,
        conflict_retries: int = 0,
    ):
        self.store = store
        self.catalog = catalog
        self.graph = graph or RelationshipGraph.from_catalog(catalog)
        self.validator = Validator(catalog)
        self.clock = clock
        self.conflict_retries = conflict_retries

    # ---------------------------------------------------------------------
    # PUBLIC OPERATIONS
    # ---------------------------------------------------------------------

    def get(self, kind, row_id) -> dict:
        """Return the stored row or raise NotFound."""
        kind = EntityKind(kind)
        handle = self.store.begin_unit_of_work()
        try:
            return self._load(handle, kind, row_id)
        finally:
            self.store.rollback(handle)

    def insert(self, kind, fields: Mapping[str, object]) -> int:
        """Validate and store one new row; returns its generated id."""
        schema = self.catalog.describe(kind)

        def operation(handle, now):
            managed = [n for n in fields if schema.has_field(n) and schema.field(n).generated]
            if managed:
                raise ValidationFailed(schema.kind, [
                    Violation(n, "generated", "is assigned by the system") for n in managed
                ])
            candidate = self._with_defaults(schema, fields, now)
            candidate["created_at"] = now

            snapshot = self.store.read_snapshot(handle, schema.kind)
            self._raise_if_invalid(schema.kind, self.validator.validate(
                schema.kind, candidate, snapshot, now,
            ))
            self._check_references(handle, schema, candidate, schema.references)

            result = self.store.write_all(handle, inserts=[RowInsert(schema.kind, candidate)])
            return result.inserted_ids[0]

        row_id = self._run("insert", schema.kind, operation)
        logger.info("inserted %s %s", schema.kind, row_id)
        return row_id

    def update(self, kind, row_id, changes: Mapping[str, object]) -> None:
        """
        Merge ``changes`` into the stored row and re-validate the whole row.

        Changing ``id`` re-keys the row: child references follow the edge's
        update policy inside the same unit of work.
        """
        schema = self.catalog.describe(kind)

        def operation(handle, now):
            current = self._load(handle, schema.kind, row_id)
            patch = {name: _plain(value) for name, value in changes.items()}
            frozen = [n for n in patch if schema.has_field(n) and schema.field(n).read_only
                      and patch[n] != current.get(n)]
            if frozen:
                raise ValidationFailed(schema.kind, [
                    Violation(n, "read_only", "cannot be changed") for n in frozen
                ])

            candidate = dict(current)
            candidate.update(patch)
            # re-sent stored values do not count as changes
            changed = [n for n in patch if patch[n] != current.get(n)]
            snapshot = self.store.read_snapshot(handle, schema.kind)
            self._raise_if_invalid(schema.kind, self.validator.validate(
                schema.kind, candidate, snapshot, now, changed=changed, exclude_id=row_id,
            ))
            touched_refs = [f for f in schema.references if f.name in changed]
            self._check_references(handle, schema, candidate, touched_refs)

            updates: Dict[RowKey, RowUpdate] = {
                (schema.kind, row_id): RowUpdate(schema.kind, row_id, candidate),
            }
            new_id = candidate["id"]
            if new_id != row_id:
                self._propagate_rekey(handle, schema.kind, row_id, new_id, now, updates)

            self.store.write_all(handle, updates=list(updates.values()))
            return len(updates)

        touched = self._run("update", schema.kind, operation)
        logger.info("updated %s %s (%d rows)", schema.kind, row_id, touched)

    def delete(self, kind, row_id) -> DeleteResult:
        """
        Delete a row together with everything its cascade edges reach.

        The affected set is computed with a breadth-first worklist before
        anything is written; a single restrict blocker aborts the whole
        delete with no effect.
        """
        kind = EntityKind(kind)

        def operation(handle, now):
            root = self._load(handle, kind, row_id)
            plan = self._plan_delete(handle, kind, root["id"])

            updates = []
            for (child_kind, child_id), fields in plan.nullify.items():
                row = plan.rows[(child_kind, child_id)]
                for name in fields:
                    row[name] = None
                self._raise_if_invalid(child_kind, self.validator.validate(
                    child_kind, row, (), now, changed=fields, exclude_id=child_id,
                ))
                updates.append(RowUpdate(child_kind, child_id, row))
            deletes = [RowDelete(k, i) for k, i in plan.order]

            self.store.write_all(handle, updates=updates, deletes=deletes)
            return DeleteResult(deleted=list(plan.order), nullified=list(plan.nullify))

        result = self._run("delete", kind, operation)
        logger.info(
            "deleted %s %s: %d rows removed, %d references cleared",
            kind, row_id, len(result.deleted), len(result.nullified),
        )
        return result

    # ---------------------------------------------------------------------
    # TRANSACTION BOUNDARY
    # ---------------------------------------------------------------------

    def _run(self, action: str, kind, operation):
        attempt = 0
        while True:
            attempt += 1
            now = self.clock()
            handle = self.store.begin_unit_of_work()
            try:
                return operation(handle, now)
            except WriteConflict as exc:
                if attempt > self.conflict_retries:
                    logger.warning("%s %s gave up after %d attempt(s): %s", action, kind, attempt, exc)
                    raise ConcurrentModification(f"{action} {kind}: {exc}") from exc
                logger.warning("%s %s conflicted, retrying (attempt %d): %s", action, kind, attempt, exc)
            except StorageUnavailable:
                logger.error("%s %s failed in the storage layer", action, kind, exc_info=True)
                raise
            except EngineError as exc:
                logger.info("%s %s rejected: %s", action, kind, exc)
                raise
            finally:
                self.store.rollback(handle)

    # ---------------------------------------------------------------------
    # HELPERS
    # ---------------------------------------------------------------------

    def _load(self, handle, kind, row_id) -> dict:
        rows = self.store.read_snapshot(handle, kind, {"id": row_id})
        if not rows:
            raise NotFound(kind, row_id)
        return rows[0]

    @staticmethod
    def _with_defaults(schema: EntitySchema, fields, now) -> dict:
        row = {}
        for definition in schema.fields:
            if definition.generated:
                continue
            if definition.name in fields:
                row[definition.name] = _plain(fields[definition.name])
            else:
                row[definition.name] = definition.default_for(now)
        # unknown names are kept so the validator reports them
        for name, value in fields.items():
            row.setdefault(name, _plain(value))
        return row

    @staticmethod
    def _raise_if_invalid(kind, violations: List[Violation]):
        if violations:
            raise ValidationFailed(kind, violations)

    def _check_references(self, handle, schema: EntitySchema, row, ref_fields):
        for definition in ref_fields:
            parent_id = row.get(definition.name)
            if parent_id is None:
                continue
            parent = definition.reference.parent
            if not self.store.read_snapshot(handle, parent, {"id": parent_id}):
                raise ReferentialViolation(schema.kind, definition.name, parent, parent_id)

    def _propagate_rekey(self, handle, kind, old_id, new_id, now, updates: Dict[RowKey, RowUpdate]):
        blockers: Dict[EntityKind, List[int]] = {}
        for edge in self.graph.edges_to(kind):
            children = self.store.read_snapshot(handle, edge.child, {edge.field: old_id})
            if not children:
                continue
            if edge.on_update is Policy.restrict:
                blockers.setdefault(edge.child, []).extend(c["id"] for c in children)
                continue
            value = new_id if edge.on_update is Policy.cascade else None
            for child in children:
                key = (edge.child, child["id"])
                row = dict(updates[key].row) if key in updates else child
                row[edge.field] = value
                self._raise_if_invalid(edge.child, self.validator.validate(
                    edge.child, row, (), now, changed=[edge.field], exclude_id=child["id"],
                ))
                updates[key] = RowUpdate(edge.child, child["id"], row)
        if blockers:
            raise RestrictedUpdate(kind, old_id, blockers)

    def _plan_delete(self, handle, kind, row_id) -> "_DeletePlan":
        plan = _DeletePlan()
        root = (kind, row_id)
        plan.order.append(root)
        visited = {root}
        queue = deque([root])
        blockers: Dict[RowKey, None] = {}

        while queue:
            parent_kind, parent_id = queue.popleft()
            for edge in self.graph.edges_to(parent_kind):
                for child in self.store.read_snapshot(handle, edge.child, {edge.field: parent_id}):
                    key = (edge.child, child["id"])
                    if edge.on_delete is Policy.restrict:
                        blockers[key] = None
                    elif edge.on_delete is Policy.cascade:
                        if key not in visited:
                            visited.add(key)
                            plan.order.append(key)
                            queue.append(key)
                    else:
                        plan.rows.setdefault(key, child)
                        plan.nullify.setdefault(key, []).append(edge.field)

        # a blocker the same delete removes anyway does not block it
        remaining: Dict[EntityKind, List[int]] = {}
        for child_kind, child_id in blockers:
            if (child_kind, child_id) not in visited:
                remaining.setdefault(child_kind, []).append(child_id)
        if remaining:
            raise RestrictedDelete(kind, row_id, remaining)

        for key in list(plan.nullify):
            if key in visited:
                del plan.nullify[key]
        return plan


@dataclass
class _DeletePlan:
    order: List[RowKey] = field(default_factory=list)
    nullify: Dict[RowKey, List[str]] = field(default_factory=dict)
    rows: Dict[RowKey, dict] = field(default_factory=dict)
