"""
test_enforcer.py
================
Integrity Enforcer over the in-memory store.
Tests cover:
 - insert validation and referential checks
 - delete cascade / restrict / set-null propagation
 - update re-validation and key re-keying
 - conflict translation and retry
"""

import datetime
from decimal import Decimal

import pytest

import factories as f
from factories import count_rows
from hms_integrity.catalog import (
    Catalog,
    EmploymentStatus,
    EntityKind as K,
    EntitySchema,
    Field,
    FieldType,
    Policy,
    Reference,
)
from hms_integrity.enforcer import IntegrityEnforcer
from hms_integrity.errors import (
    ConcurrentModification,
    NotFound,
    ReferentialViolation,
    RestrictedDelete,
    RestrictedUpdate,
    StorageUnavailable,
    ValidationFailed,
)
from hms_integrity.store import MemoryStore, RowInsert


# --------------------------------------------------------------------------
# INSERT
# --------------------------------------------------------------------------

@pytest.mark.parametrize("kind, make", [
    (K.medication, lambda ids: f.medication(stock_quantity=-1)),
    (K.billing, lambda ids: f.billing(ids["patient"], amount_paid=Decimal("200.00"))),
    (K.patient_admission, lambda ids: f.admission(
        ids["patient"], ids["room"], ids["doctor"],
        admission_date=datetime.datetime(2030, 1, 10, 8, 0),
        discharge_date=datetime.datetime(2030, 1, 10, 8, 0),
    )),
    (K.room, lambda ids: f.room(room_number="102", capacity=1, current_occupancy=2)),
])
def test_domain_violation_commits_nothing(enforcer, kind, make):
    """
    Expected: ValidationFailed and the kind's row count is unchanged.
    """
    ids = {"department": enforcer.insert(K.department, f.department())}
    ids["doctor"] = enforcer.insert(K.doctor, f.doctor(ids["department"]))
    ids["patient"] = enforcer.insert(K.patient, f.patient())
    ids["room"] = enforcer.insert(K.room, f.room())
    before = count_rows(enforcer, kind)

    with pytest.raises(ValidationFailed):
        enforcer.insert(kind, make(ids))

    assert count_rows(enforcer, kind) == before


def test_duplicate_unique_value_rejected(enforcer):
    first = enforcer.insert(K.medication, f.medication())
    with pytest.raises(ValidationFailed) as info:
        enforcer.insert(K.medication, f.medication(unit_price=Decimal("9.99")))

    assert [r.field for r in info.value.reasons] == ["name"]
    assert count_rows(enforcer, K.medication) == 1
    assert enforcer.get(K.medication, first)["unit_price"] == Decimal("2.50")


def test_second_emergency_contact_rejected(enforcer):
    pid = enforcer.insert(K.patient, f.patient())
    enforcer.insert(K.emergency_contact, f.emergency_contact(pid))
    with pytest.raises(ValidationFailed):
        enforcer.insert(K.emergency_contact, f.emergency_contact(pid, contact_name="Bob Doe"))


def test_missing_parent_is_referential_violation(enforcer):
    with pytest.raises(ReferentialViolation) as info:
        enforcer.insert(K.doctor, f.doctor(999))

    assert info.value.parent_kind == K.department
    assert info.value.parent_id == 999
    assert count_rows(enforcer, K.doctor) == 0


def test_optional_reference_may_be_absent(enforcer):
    pid = enforcer.insert(K.patient, f.patient())
    rid = enforcer.insert(K.medical_record, f.medical_record(pid, appointment_id=None))
    assert enforcer.get(K.medical_record, rid)["appointment_id"] is None


def test_get_after_insert_returns_fields_plus_generated_values(enforcer):
    fields = f.patient()
    pid = enforcer.insert(K.patient, fields)

    expected = dict(
        fields,
        id=pid,
        created_at=f.NOW,
        email=None,
        blood_group=None,
        registered_date=f.NOW.date(),
    )
    assert enforcer.get(K.patient, pid) == expected


def test_defaults_and_enum_values(enforcer):
    dept = enforcer.insert(K.department, f.department())
    doc = enforcer.insert(K.doctor, f.doctor(dept, status=EmploymentStatus.on_leave))
    room = enforcer.insert(K.room, f.room())

    assert enforcer.get(K.doctor, doc)["status"] == "On Leave"
    assert type(enforcer.get(K.doctor, doc)["status"]) is str
    assert enforcer.get(K.room, room)["status"] == "Available"


def test_generated_fields_cannot_be_supplied(enforcer):
    with pytest.raises(ValidationFailed) as info:
        enforcer.insert(K.department, f.department(id=5))
    assert info.value.reasons[0].code == "generated"


def test_now_captured_once_per_operation(store):
    calls = []

    def clock():
        calls.append(1)
        return f.NOW

    enforcer = IntegrityEnforcer(store, clock=clock)
    pid = enforcer.insert(K.patient, f.patient())
    assert len(calls) == 1
    enforcer.get(K.patient, pid)
    assert len(calls) == 1


# --------------------------------------------------------------------------
# DELETE
# --------------------------------------------------------------------------

def test_department_delete_scenario(enforcer):
    """
    Cardiology with a doctor cannot be deleted; after removing the doctor it can.
    """
    dept = enforcer.insert(K.department, f.department(name="Cardiology"))
    doc = enforcer.insert(K.doctor, f.doctor(dept))

    with pytest.raises(RestrictedDelete) as info:
        enforcer.delete(K.department, dept)
    assert info.value.blocking_kind == K.doctor
    assert info.value.blocking_ids == [doc]
    assert enforcer.get(K.department, dept)["name"] == "Cardiology"
    assert enforcer.get(K.doctor, doc)["department_id"] == dept

    result = enforcer.delete(K.doctor, doc)
    assert result.deleted == [(K.doctor, doc)]

    enforcer.delete(K.department, dept)
    with pytest.raises(NotFound):
        enforcer.get(K.department, dept)


def test_staff_also_blocks_department_delete(enforcer):
    dept = enforcer.insert(K.department, f.department())
    enforcer.insert(K.staff, f.staff(dept))
    with pytest.raises(RestrictedDelete) as info:
        enforcer.delete(K.department, dept)
    assert info.value.blocking_kind == K.staff


def test_patient_delete_cascades_through_clinical_history(enforcer, hospital):
    result = enforcer.delete(K.patient, hospital["patient"])

    for kind in (K.patient, K.emergency_contact, K.appointment, K.medical_record,
                 K.prescription, K.prescription_detail, K.billing):
        assert count_rows(enforcer, kind) == 0, kind

    assert enforcer.get(K.medication, hospital["medication"])["name"] == "Aspirin"
    assert count_rows(enforcer, K.doctor) == 1
    assert count_rows(enforcer, K.department) == 1

    assert result.deleted[0] == (K.patient, hospital["patient"])
    assert set(result.deleted) == {
        (K.patient, hospital["patient"]),
        (K.emergency_contact, hospital["contact"]),
        (K.appointment, hospital["appointment"]),
        (K.medical_record, hospital["record"]),
        (K.prescription, hospital["prescription"]),
        (K.prescription_detail, hospital["detail"]),
        (K.billing, hospital["bill"]),
    }
    # record and bill point at the deleted appointment but are deleted, not nullified
    assert result.nullified == []


def test_patient_delete_blocked_by_admission_removes_nothing(enforcer, hospital):
    room = enforcer.insert(K.room, f.room())
    adm = enforcer.insert(K.patient_admission, f.admission(hospital["patient"], room, hospital["doctor"]))
    counts = {kind: count_rows(enforcer, kind) for kind in K}

    with pytest.raises(RestrictedDelete) as info:
        enforcer.delete(K.patient, hospital["patient"])

    assert info.value.blockers == {K.patient_admission: [adm]}
    assert {kind: count_rows(enforcer, kind) for kind in K} == counts


def test_appointment_delete_nullifies_records_and_bills(enforcer, hospital):
    result = enforcer.delete(K.appointment, hospital["appointment"])

    record = enforcer.get(K.medical_record, hospital["record"])
    bill = enforcer.get(K.billing, hospital["bill"])
    assert record["appointment_id"] is None
    assert record["diagnosis"] == "Stable angina"
    assert bill["appointment_id"] is None
    assert count_rows(enforcer, K.prescription) == 1

    assert result.deleted == [(K.appointment, hospital["appointment"])]
    assert set(result.nullified) == {
        (K.medical_record, hospital["record"]),
        (K.billing, hospital["bill"]),
    }


def test_medication_in_use_cannot_be_deleted(enforcer, hospital):
    with pytest.raises(RestrictedDelete) as info:
        enforcer.delete(K.medication, hospital["medication"])
    assert info.value.blocking_kind == K.prescription_detail


def test_doctor_with_appointments_cannot_be_deleted(enforcer, hospital):
    with pytest.raises(RestrictedDelete) as info:
        enforcer.delete(K.doctor, hospital["doctor"])
    assert info.value.blocking_ids == [hospital["appointment"]]


def test_delete_missing_row(enforcer):
    with pytest.raises(NotFound):
        enforcer.delete(K.patient, 42)


# --------------------------------------------------------------------------
# GENERIC GRAPHS
# --------------------------------------------------------------------------

def _managed():
    return (
        Field("id", FieldType.integer, unique=True, generated=True),
        Field("created_at", FieldType.datetime, generated=True, read_only=True),
    )


def _clinic_catalog(bill_on_appointment=Policy.restrict, bill_on_patient=None,
                    appointment_on_update=Policy.cascade):
    """Patient <- Appointment <- Billing, with configurable policies."""
    billing_fields = _managed() + (
        Field("appointment_id", FieldType.integer,
              reference=Reference(K.appointment, on_delete=bill_on_appointment)),
    )
    if bill_on_patient is not None:
        billing_fields += (
            Field("patient_id", FieldType.integer,
                  reference=Reference(K.patient, on_delete=bill_on_patient)),
        )
    return Catalog([
        EntitySchema(K.patient, _managed()),
        EntitySchema(K.appointment, _managed() + (
            Field("patient_id", FieldType.integer, required=True,
                  reference=Reference(K.patient, Policy.cascade, appointment_on_update)),
        )),
        EntitySchema(K.billing, billing_fields),
    ])


def test_restrict_below_a_cascade_aborts_whole_delete(store):
    enforcer = IntegrityEnforcer(store, catalog=_clinic_catalog(), clock=lambda: f.NOW)
    pid = enforcer.insert(K.patient, {})
    first = enforcer.insert(K.appointment, {"patient_id": pid})
    second = enforcer.insert(K.appointment, {"patient_id": pid})
    bill = enforcer.insert(K.billing, {"appointment_id": second})

    with pytest.raises(RestrictedDelete) as info:
        enforcer.delete(K.patient, pid)

    assert info.value.blockers == {K.billing: [bill]}
    assert enforcer.get(K.patient, pid)["id"] == pid
    assert enforcer.get(K.appointment, first)["patient_id"] == pid
    assert enforcer.get(K.appointment, second)["patient_id"] == pid


def test_blocker_removed_by_same_delete_does_not_block(store):
    catalog = _clinic_catalog(bill_on_patient=Policy.cascade)
    enforcer = IntegrityEnforcer(store, catalog=catalog, clock=lambda: f.NOW)
    pid = enforcer.insert(K.patient, {})
    appt = enforcer.insert(K.appointment, {"patient_id": pid})
    bill = enforcer.insert(K.billing, {"appointment_id": appt, "patient_id": pid})

    result = enforcer.delete(K.patient, pid)

    assert set(result.deleted) == {(K.patient, pid), (K.appointment, appt), (K.billing, bill)}
    assert count_rows(enforcer, K.billing) == 0


def test_row_reachable_twice_is_deleted_once(store):
    catalog = _clinic_catalog(bill_on_appointment=Policy.cascade, bill_on_patient=Policy.cascade)
    enforcer = IntegrityEnforcer(store, catalog=catalog, clock=lambda: f.NOW)
    pid = enforcer.insert(K.patient, {})
    appt = enforcer.insert(K.appointment, {"patient_id": pid})
    enforcer.insert(K.billing, {"appointment_id": appt, "patient_id": pid})

    result = enforcer.delete(K.patient, pid)

    assert len(result.deleted) == 3
    assert len(set(result.deleted)) == 3


# --------------------------------------------------------------------------
# UPDATE
# --------------------------------------------------------------------------

def test_update_revalidates_whole_row(enforcer, hospital):
    with pytest.raises(ValidationFailed) as info:
        enforcer.update(K.billing, hospital["bill"], {"total_amount": Decimal("10.00")})
    assert [(r.field, r.code) for r in info.value.reasons] == [("amount_paid", "rule")]
    assert enforcer.get(K.billing, hospital["bill"])["total_amount"] == Decimal("150.00")

    enforcer.update(K.billing, hospital["bill"], {
        "amount_paid": Decimal("150.00"), "payment_status": "Paid",
    })
    assert enforcer.get(K.billing, hospital["bill"])["payment_status"] == "Paid"


def test_update_missing_row(enforcer):
    with pytest.raises(NotFound):
        enforcer.update(K.room, 3, {"capacity": 4})


def test_update_reference_to_missing_parent(enforcer, hospital):
    with pytest.raises(ReferentialViolation):
        enforcer.update(K.appointment, hospital["appointment"], {"doctor_id": 404})
    assert enforcer.get(K.appointment, hospital["appointment"])["doctor_id"] == hospital["doctor"]


def test_required_reference_cannot_be_cleared(enforcer, hospital):
    with pytest.raises(ValidationFailed):
        enforcer.update(K.doctor, hospital["doctor"], {"department_id": None})


def test_created_at_is_read_only(enforcer, hospital):
    with pytest.raises(ValidationFailed) as info:
        enforcer.update(K.patient, hospital["patient"], {"created_at": datetime.datetime(2000, 1, 1)})
    assert info.value.reasons[0].code == "read_only"


def test_past_appointment_can_still_be_completed(store):
    now = {"value": f.NOW}
    enforcer = IntegrityEnforcer(store, clock=lambda: now["value"])
    dept = enforcer.insert(K.department, f.department())
    doc = enforcer.insert(K.doctor, f.doctor(dept))
    pid = enforcer.insert(K.patient, f.patient())
    appt = enforcer.insert(K.appointment, f.appointment(pid, doc))

    now["value"] = datetime.datetime(2030, 3, 1, 9, 0)
    enforcer.update(K.appointment, appt, {"status": "Completed"})
    assert enforcer.get(K.appointment, appt)["status"] == "Completed"

    with pytest.raises(ValidationFailed):
        enforcer.update(K.appointment, appt, {"appointment_date": datetime.date(2030, 2, 15)})


def test_resending_stored_past_date_is_not_a_change(store):
    now = {"value": f.NOW}
    enforcer = IntegrityEnforcer(store, clock=lambda: now["value"])
    dept = enforcer.insert(K.department, f.department())
    doc = enforcer.insert(K.doctor, f.doctor(dept))
    pid = enforcer.insert(K.patient, f.patient())
    appt = enforcer.insert(K.appointment, f.appointment(pid, doc))
    stored = enforcer.get(K.appointment, appt)

    now["value"] = datetime.datetime(2030, 3, 1, 9, 0)
    enforcer.update(K.appointment, appt, {
        "status": "Completed", "appointment_date": stored["appointment_date"],
    })

    assert enforcer.get(K.appointment, appt)["status"] == "Completed"


def test_rekey_cascades_to_children(enforcer):
    dept = enforcer.insert(K.department, f.department())
    doc = enforcer.insert(K.doctor, f.doctor(dept))
    nurse = enforcer.insert(K.staff, f.staff(dept))

    enforcer.update(K.department, dept, {"id": 50})

    assert enforcer.get(K.department, 50)["name"] == "Cardiology"
    assert enforcer.get(K.doctor, doc)["department_id"] == 50
    assert enforcer.get(K.staff, nurse)["department_id"] == 50
    with pytest.raises(NotFound):
        enforcer.get(K.department, dept)
    assert enforcer.insert(K.department, f.department(name="ENT", phone_number="555-0111")) == 51


def test_rekey_onto_existing_id_rejected(enforcer):
    first = enforcer.insert(K.department, f.department())
    second = enforcer.insert(K.department, f.department(name="ENT", phone_number="555-0111"))
    with pytest.raises(ValidationFailed):
        enforcer.update(K.department, first, {"id": second})
    assert enforcer.get(K.department, first)["name"] == "Cardiology"


def test_rekey_blocked_by_restrict_update_policy(store):
    catalog = _clinic_catalog(appointment_on_update=Policy.restrict)
    enforcer = IntegrityEnforcer(store, catalog=catalog, clock=lambda: f.NOW)
    pid = enforcer.insert(K.patient, {})
    appt = enforcer.insert(K.appointment, {"patient_id": pid})

    with pytest.raises(RestrictedUpdate) as info:
        enforcer.update(K.patient, pid, {"id": 10})

    assert info.value.blockers == {K.appointment: [appt]}
    assert enforcer.get(K.patient, pid)["id"] == pid


# --------------------------------------------------------------------------
# CONCURRENCY AND STORAGE FAILURES
# --------------------------------------------------------------------------

class InterleavedStore(MemoryStore):
    """Commits a competing department insert just before the next N commits."""

    def __init__(self, interleave=1):
        super().__init__(lock_timeout=1.0)
        self.interleave = interleave
        self.counter = 0

    def write_all(self, handle, inserts=(), updates=(), deletes=()):
        if self.interleave:
            self.interleave -= 1
            self.counter += 1
            other = self.begin_unit_of_work()
            row = f.department(name=f"Intruder {self.counter}", phone_number=f"555-09{self.counter:02d}")
            super().write_all(other, inserts=[RowInsert(K.department, row)])
        return super().write_all(handle, inserts, updates, deletes)


def test_conflict_becomes_concurrent_modification():
    store = InterleavedStore()
    enforcer = IntegrityEnforcer(store, clock=lambda: f.NOW)

    with pytest.raises(ConcurrentModification) as info:
        enforcer.insert(K.department, f.department())

    assert info.value.transient
    names = [row["name"] for row in _all(store, K.department)]
    assert names == ["Intruder 1"]


def test_conflict_retried_when_configured():
    store = InterleavedStore()
    enforcer = IntegrityEnforcer(store, clock=lambda: f.NOW, conflict_retries=1)

    dept = enforcer.insert(K.department, f.department())

    assert enforcer.get(K.department, dept)["name"] == "Cardiology"
    assert len(_all(store, K.department)) == 2


class BrokenStore(MemoryStore):
    def write_all(self, handle, inserts=(), updates=(), deletes=()):
        raise StorageUnavailable("disk offline")


def test_storage_failure_propagates_unchanged():
    enforcer = IntegrityEnforcer(BrokenStore(), clock=lambda: f.NOW)
    with pytest.raises(StorageUnavailable, match="disk offline") as info:
        enforcer.insert(K.department, f.department())
    assert not isinstance(info.value, ConcurrentModification)


def _all(store, kind):
    handle = store.begin_unit_of_work()
    try:
        return store.read_snapshot(handle, kind)
    finally:
        store.rollback(handle)
