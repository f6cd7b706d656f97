"""
conftest.py
===========
Shared fixtures: an enforcer over a fresh in-memory store with a fixed clock,
and a small populated hospital built through the enforcer itself.
"""

import pytest

import factories as f
from hms_integrity.catalog import EntityKind as K
from hms_integrity.enforcer import IntegrityEnforcer
from hms_integrity.store import MemoryStore


@pytest.fixture
def store():
    return MemoryStore(lock_timeout=1.0)


@pytest.fixture
def enforcer(store):
    return IntegrityEnforcer(store, clock=lambda: f.NOW)


@pytest.fixture
def hospital(enforcer):
    """
    One of each clinical row, all linked to a single patient:
    department <- doctor; patient <- contact, appointment, record,
    prescription, detail (-> medication), bill.
    """
    ids = {}
    ids["department"] = enforcer.insert(K.department, f.department())
    ids["doctor"] = enforcer.insert(K.doctor, f.doctor(ids["department"]))
    ids["patient"] = enforcer.insert(K.patient, f.patient())
    ids["contact"] = enforcer.insert(K.emergency_contact, f.emergency_contact(ids["patient"]))
    ids["appointment"] = enforcer.insert(K.appointment, f.appointment(ids["patient"], ids["doctor"]))
    ids["record"] = enforcer.insert(
        K.medical_record, f.medical_record(ids["patient"], ids["appointment"])
    )
    ids["prescription"] = enforcer.insert(K.prescription, f.prescription(ids["record"]))
    ids["medication"] = enforcer.insert(K.medication, f.medication())
    ids["detail"] = enforcer.insert(
        K.prescription_detail, f.prescription_detail(ids["prescription"], ids["medication"])
    )
    ids["bill"] = enforcer.insert(K.billing, f.billing(ids["patient"], ids["appointment"]))
    return ids
