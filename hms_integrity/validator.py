"""
validator.py
============
Constraint Validator. Checks a candidate row against its catalog schema and a
snapshot of the existing rows of the same kind.

Checks run in a fixed order and every violation is collected:
 1. required fields present, no unknown fields
 2. types, lengths, ranges, cross-field and time-relative rules
 3. uniqueness (single field and composite) against the snapshot
 4. enumerated-value membership

The validator never mutates anything and never reads a clock; the caller
passes the ``now`` captured for the whole operation.
"""

import datetime
import decimal
import operator
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Set

from .catalog import Catalog, EntitySchema, FieldComparison, FieldType, NowComparison


@dataclass(frozen=True)
class Violation:
    """One reason a candidate row was rejected."""
    field: str
    code: str
    message: str

    def __str__(self):
        return f"{self.field}: {self.message}"


_OPS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _is_type(field_type: FieldType, value) -> bool:
    if field_type is FieldType.text:
        return isinstance(value, str)
    if field_type is FieldType.integer:
        return isinstance(value, int) and not isinstance(value, bool)
    if field_type is FieldType.decimal:
        return isinstance(value, (int, float, decimal.Decimal)) and not isinstance(value, bool)
    if field_type is FieldType.date:
        # datetime is a date subclass but loses the date-only meaning
        return isinstance(value, datetime.date) and not isinstance(value, datetime.datetime)
    if field_type is FieldType.datetime:
        return isinstance(value, datetime.datetime)
    if field_type is FieldType.time:
        return isinstance(value, datetime.time)
    return False


class Validator:
    """Stateless checker bound to a catalog."""

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    def validate(
        self,
        kind,
        candidate: Mapping[str, object],
        snapshot: Iterable[Mapping[str, object]] = (),
        now: Optional[datetime.datetime] = None,
        changed: Optional[Iterable[str]] = None,
        exclude_id=None,
    ) -> List[Violation]:
        """
        Return every violation found in ``candidate`` (empty list means ok).

        ``changed`` is None for an insert; for an update it names the fields
        the caller touched, which limits time-relative rules to those fields.
        ``exclude_id`` is the stored id of the row being replaced so it does
        not collide with itself in uniqueness checks.
        """
        schema = self.catalog.describe(kind)
        changed_fields = None if changed is None else set(changed)
        snapshot = list(snapshot)

        violations = self._check_presence(schema, candidate, inserting=changed_fields is None)
        bad: Set[str] = set()
        violations += self._check_domains(schema, candidate, bad)
        violations += self._check_rules(schema, candidate, bad, now, changed_fields)
        violations += self._check_unique(schema, candidate, bad, snapshot, exclude_id)
        violations += self._check_choices(schema, candidate, bad)
        return violations

    # ---------------------------------------------------------------------
    # 1. presence
    # ---------------------------------------------------------------------

    def _check_presence(self, schema: EntitySchema, row, inserting: bool) -> List[Violation]:
        found = []
        for name in row:
            if not schema.has_field(name):
                found.append(Violation(name, "unknown", f"unknown field for {schema.kind}"))
        for field in schema.fields:
            if field.generated:
                # generated values only exist once the row is stored
                if not inserting and row.get(field.name) is None:
                    found.append(Violation(field.name, "required", "is required"))
                continue
            if field.required and row.get(field.name) is None:
                found.append(Violation(field.name, "required", "is required"))
        return found

    # ---------------------------------------------------------------------
    # 2. domains and rules
    # ---------------------------------------------------------------------

    def _check_domains(self, schema: EntitySchema, row, bad: Set[str]) -> List[Violation]:
        found = []
        for field in schema.fields:
            value = row.get(field.name)
            if value is None:
                continue
            if not _is_type(field.type, value):
                bad.add(field.name)
                found.append(Violation(
                    field.name, "type", f"expected {field.type.value}, got {type(value).__name__}"
                ))
                continue
            if field.max_length is not None and len(value) > field.max_length:
                found.append(Violation(
                    field.name, "max_length", f"longer than {field.max_length} characters"
                ))
            if field.gt is not None and not value > field.gt:
                found.append(Violation(field.name, "range", f"must be greater than {field.gt}"))
            if field.ge is not None and not value >= field.ge:
                found.append(Violation(field.name, "range", f"must be at least {field.ge}"))
        return found

    def _check_rules(self, schema: EntitySchema, row, bad, now, changed) -> List[Violation]:
        found = []
        for rule in schema.rules:
            value = row.get(rule.field)
            if value is None or rule.field in bad:
                continue

            if isinstance(rule, FieldComparison):
                other = row.get(rule.other)
                if other is None or rule.other in bad:
                    continue
            elif isinstance(rule, NowComparison):
                if changed is not None and rule.field not in changed:
                    continue
                if now is None:
                    raise ValueError(f"{schema.kind} has time-relative rules; now is required")
                other = now if isinstance(value, datetime.datetime) else now.date()
            else:
                raise TypeError(f"unsupported rule {rule!r}")

            try:
                ok = _OPS[rule.op](value, other)
            except TypeError:
                ok = False
            if not ok:
                found.append(Violation(rule.field, "rule", rule.message))
        return found

    # ---------------------------------------------------------------------
    # 3. uniqueness
    # ---------------------------------------------------------------------

    def _check_unique(self, schema: EntitySchema, row, bad, snapshot, exclude_id) -> List[Violation]:
        found = []
        others = [r for r in snapshot if exclude_id is None or r.get("id") != exclude_id]

        for field in schema.fields:
            if not field.unique:
                continue
            value = row.get(field.name)
            if value is None or field.name in bad:
                continue
            if any(r.get(field.name) == value for r in others):
                found.append(Violation(field.name, "unique", f"{value!r} is already in use"))

        for names in schema.unique_together:
            values = tuple(row.get(n) for n in names)
            if any(v is None for v in values) or bad.intersection(names):
                continue
            if any(tuple(r.get(n) for n in names) == values for r in others):
                found.append(Violation(
                    ",".join(names), "unique", f"combination {values!r} is already in use"
                ))
        return found

    # ---------------------------------------------------------------------
    # 4. enumerations
    # ---------------------------------------------------------------------

    def _check_choices(self, schema: EntitySchema, row, bad) -> List[Violation]:
        found = []
        for field in schema.fields:
            value = row.get(field.name)
            if not field.choices or value is None or field.name in bad:
                continue
            if value not in field.choices:
                allowed = ", ".join(field.choices)
                found.append(Violation(field.name, "choice", f"{value!r} is not one of: {allowed}"))
        return found
