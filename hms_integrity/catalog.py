"""
catalog.py
==========
Entity Catalog: a declarative description of every entity kind, its fields,
uniqueness constraints and business rules.

The catalog is pure data. The validator interprets it, the relationship graph
is built from the ``Reference`` entries on its fields, and the enforcer never
branches on a specific entity kind.
"""

import datetime
import enum
from dataclasses import dataclass, field as dc_field
from typing import Any, Dict, Iterable, Optional, Tuple


# ---------------------------------------------------------------------------
# ENUM DEFINITIONS
# ---------------------------------------------------------------------------

class EntityKind(str, enum.Enum):
    """The thirteen record categories managed by the engine."""
    department = "Department"
    doctor = "Doctor"
    patient = "Patient"
    emergency_contact = "EmergencyContact"
    appointment = "Appointment"
    medical_record = "MedicalRecord"
    medication = "Medication"
    prescription = "Prescription"
    prescription_detail = "PrescriptionDetail"
    billing = "Billing"
    staff = "Staff"
    room = "Room"
    patient_admission = "PatientAdmission"

    def __str__(self):
        return self.value


class FieldType(str, enum.Enum):
    integer = "integer"
    text = "text"
    decimal = "decimal"
    date = "date"
    datetime = "datetime"
    time = "time"


class Policy(str, enum.Enum):
    """What happens to a child row when its parent is deleted or re-keyed."""
    cascade = "cascade"
    restrict = "restrict"
    set_null = "set-null"


class EmploymentStatus(str, enum.Enum):
    active = "Active"
    on_leave = "On Leave"
    resigned = "Resigned"


class Gender(str, enum.Enum):
    male = "Male"
    female = "Female"
    other = "Other"


class AppointmentStatus(str, enum.Enum):
    scheduled = "Scheduled"
    completed = "Completed"
    cancelled = "Cancelled"
    no_show = "No-Show"


class PaymentStatus(str, enum.Enum):
    pending = "Pending"
    partial = "Partial"
    paid = "Paid"


class PaymentMethod(str, enum.Enum):
    cash = "Cash"
    card = "Card"
    insurance = "Insurance"
    mobile_money = "Mobile Money"


class RoomType(str, enum.Enum):
    general = "General"
    private = "Private"
    icu = "ICU"
    emergency = "Emergency"


class RoomStatus(str, enum.Enum):
    available = "Available"
    occupied = "Occupied"
    maintenance = "Maintenance"


class AdmissionStatus(str, enum.Enum):
    admitted = "Admitted"
    discharged = "Discharged"
    transferred = "Transferred"


def today(now: datetime.datetime) -> datetime.date:
    """Default factory for date columns that start at the current date."""
    return now.date()


# ---------------------------------------------------------------------------
# SCHEMA DESCRIPTORS
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Reference:
    """Foreign reference from a field to the ``id`` of a parent kind."""
    parent: EntityKind
    on_delete: Policy = Policy.restrict
    on_update: Policy = Policy.cascade


@dataclass(frozen=True)
class Field:
    name: str
    type: FieldType
    required: bool = False
    unique: bool = False
    choices: Tuple[str, ...] = ()
    default: Any = None
    gt: Any = None
    ge: Any = None
    max_length: Optional[int] = None
    reference: Optional[Reference] = None
    generated: bool = False    # assigned by the engine/store, never by callers
    read_only: bool = False    # fixed after insert

    def default_for(self, now: datetime.datetime):
        if callable(self.default):
            return self.default(now)
        return self.default


@dataclass(frozen=True)
class FieldComparison:
    """Cross-field rule: ``row[field] <op> row[other]`` when both are set."""
    field: str
    op: str
    other: str
    message: str


@dataclass(frozen=True)
class NowComparison:
    """Time-relative rule: ``row[field] <op> now`` evaluated at write time."""
    field: str
    op: str
    message: str


@dataclass(frozen=True)
class EntitySchema:
    kind: EntityKind
    fields: Tuple[Field, ...]
    unique_together: Tuple[Tuple[str, ...], ...] = ()
    rules: Tuple[Any, ...] = ()
    _by_name: Dict[str, Field] = dc_field(default_factory=dict, init=False, compare=False, repr=False)

    def __post_init__(self):
        self._by_name.update({f.name: f for f in self.fields})

    def field(self, name: str) -> Field:
        return self._by_name[name]

    def has_field(self, name: str) -> bool:
        return name in self._by_name

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    @property
    def references(self) -> Tuple[Field, ...]:
        return tuple(f for f in self.fields if f.reference is not None)


class Catalog:
    """Read-only registry of entity schemas."""

    def __init__(self, schemas: Iterable[EntitySchema]):
        self._schemas = {}
        for schema in schemas:
            self._schemas[schema.kind] = schema

    def describe(self, kind) -> EntitySchema:
        """Return the schema for ``kind``; an unknown kind is a programming error."""
        return self._schemas[EntityKind(kind)]

    def kinds(self) -> Tuple[EntityKind, ...]:
        return tuple(self._schemas)

    def __iter__(self):
        return iter(self._schemas.values())

    def __contains__(self, kind) -> bool:
        try:
            return EntityKind(kind) in self._schemas
        except ValueError:
            return False


# ---------------------------------------------------------------------------
# FIELD HELPERS
# ---------------------------------------------------------------------------

def _managed() -> Tuple[Field, ...]:
    return (
        Field("id", FieldType.integer, unique=True, generated=True),
        Field("created_at", FieldType.datetime, generated=True, read_only=True),
    )


def _text(name, max_length=None, **kw) -> Field:
    return Field(name, FieldType.text, max_length=max_length, **kw)


def _money(name, **kw) -> Field:
    return Field(name, FieldType.decimal, **kw)


def _ref(name, parent, on_delete=Policy.restrict, on_update=Policy.cascade, **kw) -> Field:
    kw.setdefault("required", True)
    return Field(name, FieldType.integer, reference=Reference(parent, on_delete, on_update), **kw)


def _choice(name, enum_cls, **kw) -> Field:
    return Field(name, FieldType.text, choices=tuple(e.value for e in enum_cls), **kw)


def _schema(kind, *fields, unique_together=(), rules=()) -> EntitySchema:
    return EntitySchema(kind, _managed() + tuple(fields), tuple(unique_together), tuple(rules))


K = EntityKind


# ---------------------------------------------------------------------------
# HOSPITAL CATALOG
# ---------------------------------------------------------------------------

HOSPITAL_SCHEMAS = (
    _schema(
        K.department,
        _text("name", 100, required=True, unique=True),
        _text("location", 100, required=True),
        _text("head_of_department", 100),
        _text("phone_number", 15, unique=True),
    ),
    _schema(
        K.doctor,
        _text("first_name", 50, required=True),
        _text("last_name", 50, required=True),
        _text("specialization", 100, required=True),
        _text("email", 100, required=True, unique=True),
        _text("phone_number", 15, required=True, unique=True),
        _text("license_number", 50, required=True, unique=True),
        _ref("department_id", K.department),
        Field("hire_date", FieldType.date, required=True),
        _money("salary"),
        _choice("status", EmploymentStatus, default=EmploymentStatus.active.value),
    ),
    _schema(
        K.patient,
        _text("first_name", 50, required=True),
        _text("last_name", 50, required=True),
        Field("date_of_birth", FieldType.date, required=True),
        _choice("gender", Gender, required=True),
        _text("email", 100, unique=True),
        _text("phone_number", 15, required=True),
        _text("address", required=True),
        _text("blood_group", 5),
        _text("insurance_number", 50, unique=True),
        Field("registered_date", FieldType.date, default=today),
        rules=(NowComparison("date_of_birth", "<", "date of birth must be before today"),),
    ),
    _schema(
        K.emergency_contact,
        _ref("patient_id", K.patient, on_delete=Policy.cascade, unique=True),
        _text("contact_name", 100, required=True),
        _text("relationship", 50, required=True),
        _text("phone_number", 15, required=True),
        _text("alternate_phone", 15),
    ),
    _schema(
        K.appointment,
        _ref("patient_id", K.patient, on_delete=Policy.cascade),
        _ref("doctor_id", K.doctor),
        Field("appointment_date", FieldType.date, required=True),
        Field("appointment_time", FieldType.time, required=True),
        _text("reason", required=True),
        _choice("status", AppointmentStatus, default=AppointmentStatus.scheduled.value),
        _text("notes"),
        rules=(NowComparison("appointment_date", ">=", "appointment date cannot be in the past"),),
    ),
    _schema(
        K.medical_record,
        _ref("patient_id", K.patient, on_delete=Policy.cascade),
        _ref("appointment_id", K.appointment, on_delete=Policy.set_null, required=False),
        _text("diagnosis", required=True),
        _text("symptoms"),
        _text("treatment"),
        _text("tests_recommended"),
        Field("record_date", FieldType.date, default=today),
    ),
    _schema(
        K.medication,
        _text("name", 100, required=True, unique=True),
        _text("description"),
        _text("manufacturer", 100),
        _money("unit_price", required=True, gt=0),
        Field("stock_quantity", FieldType.integer, required=True, default=0, ge=0),
        Field("expiry_date", FieldType.date, required=True),
        rules=(NowComparison("expiry_date", ">", "expiry date must be in the future"),),
    ),
    _schema(
        K.prescription,
        _ref("record_id", K.medical_record, on_delete=Policy.cascade),
        Field("prescription_date", FieldType.date, default=today),
        _text("instructions"),
    ),
    _schema(
        K.prescription_detail,
        _ref("prescription_id", K.prescription, on_delete=Policy.cascade),
        _ref("medication_id", K.medication),
        _text("dosage", 50, required=True),
        _text("frequency", 50, required=True),
        _text("duration", 50, required=True),
        Field("quantity", FieldType.integer, required=True, gt=0),
        unique_together=(("prescription_id", "medication_id"),),
    ),
    _schema(
        K.billing,
        _ref("patient_id", K.patient, on_delete=Policy.cascade),
        _ref("appointment_id", K.appointment, on_delete=Policy.set_null, required=False),
        Field("bill_date", FieldType.date, default=today),
        _money("consultation_fee", default=0, ge=0),
        _money("medication_cost", default=0, ge=0),
        _money("test_cost", default=0, ge=0),
        _money("total_amount", required=True, ge=0),
        _money("amount_paid", default=0, ge=0),
        _choice("payment_status", PaymentStatus, default=PaymentStatus.pending.value),
        _choice("payment_method", PaymentMethod),
        rules=(FieldComparison("amount_paid", "<=", "total_amount",
                               "amount paid cannot exceed total amount"),),
    ),
    _schema(
        K.staff,
        _text("first_name", 50, required=True),
        _text("last_name", 50, required=True),
        _text("role", 50, required=True),
        _text("email", 100, required=True, unique=True),
        _text("phone_number", 15, required=True, unique=True),
        _ref("department_id", K.department),
        Field("hire_date", FieldType.date, required=True),
        _money("salary"),
        _choice("status", EmploymentStatus, default=EmploymentStatus.active.value),
    ),
    _schema(
        K.room,
        _text("room_number", 10, required=True, unique=True),
        _choice("room_type", RoomType, required=True),
        Field("capacity", FieldType.integer, required=True, gt=0),
        Field("current_occupancy", FieldType.integer, default=0, ge=0),
        _money("daily_rate", required=True, gt=0),
        _choice("status", RoomStatus, default=RoomStatus.available.value),
        rules=(FieldComparison("current_occupancy", "<=", "capacity",
                               "occupancy cannot exceed capacity"),),
    ),
    _schema(
        K.patient_admission,
        _ref("patient_id", K.patient),
        _ref("room_id", K.room),
        _ref("doctor_id", K.doctor),
        Field("admission_date", FieldType.datetime, required=True),
        Field("discharge_date", FieldType.datetime),
        _text("reason", required=True),
        _choice("status", AdmissionStatus, default=AdmissionStatus.admitted.value),
        rules=(FieldComparison("discharge_date", ">", "admission_date",
                               "discharge must be after admission"),),
    ),
)

HOSPITAL_CATALOG = Catalog(HOSPITAL_SCHEMAS)
