"""
models.py
=========
SQLAlchemy ORM models backing the SQL storage adapter.

One table per entity kind, column names identical to the catalog field
names. Every table carries a ``version`` column used as the mapper's
``version_id_col`` so stale updates and deletes are detected at flush.
"""

import datetime

from sqlalchemy import (
    Column, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Time,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .catalog import EntityKind

# SQLAlchemy Base class
Base = declarative_base()


def _fk(target: str, ondelete: str = "RESTRICT"):
    return ForeignKey(target, ondelete=ondelete, onupdate="CASCADE")


class RowMixin:
    """Surrogate key and creation timestamp shared by every table."""
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, default=datetime.datetime.now, nullable=False)


# ---------------------------------------------------------------------------
# TABLE DEFINITIONS
# ---------------------------------------------------------------------------

class Department(RowMixin, Base):
    __tablename__ = "departments"

    name = Column(String(100), nullable=False, unique=True)
    location = Column(String(100), nullable=False)
    head_of_department = Column(String(100))
    phone_number = Column(String(15), unique=True)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}


class Doctor(RowMixin, Base):
    __tablename__ = "doctors"
    __table_args__ = (
        Index("idx_doctor_name", "last_name", "first_name"),
        Index("idx_doctor_email", "email"),
    )

    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    specialization = Column(String(100), nullable=False)
    email = Column(String(100), nullable=False, unique=True)
    phone_number = Column(String(15), nullable=False, unique=True)
    license_number = Column(String(50), nullable=False, unique=True)
    department_id = Column(Integer, _fk("departments.id"), nullable=False)
    hire_date = Column(Date, nullable=False)
    salary = Column(Numeric(10, 2))
    status = Column(String(20), nullable=False)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    department = relationship("Department", viewonly=True)


class Patient(RowMixin, Base):
    """Stores patient demographic and insurance data."""
    __tablename__ = "patients"
    __table_args__ = (
        Index("idx_patient_name", "last_name", "first_name"),
        Index("idx_patient_email", "email"),
    )

    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    date_of_birth = Column(Date, nullable=False)
    gender = Column(String(10), nullable=False)
    email = Column(String(100), unique=True)
    phone_number = Column(String(15), nullable=False)
    address = Column(Text, nullable=False)
    blood_group = Column(String(5))
    insurance_number = Column(String(50), unique=True)
    registered_date = Column(Date)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}


class EmergencyContact(RowMixin, Base):
    __tablename__ = "emergency_contacts"

    patient_id = Column(Integer, _fk("patients.id", "CASCADE"), nullable=False, unique=True)
    contact_name = Column(String(100), nullable=False)
    relationship = Column(String(50), nullable=False)
    phone_number = Column(String(15), nullable=False)
    alternate_phone = Column(String(15))

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}


class Appointment(RowMixin, Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointment_date", "appointment_date"),
        Index("idx_appointment_status", "status"),
    )

    patient_id = Column(Integer, _fk("patients.id", "CASCADE"), nullable=False)
    doctor_id = Column(Integer, _fk("doctors.id"), nullable=False)
    appointment_date = Column(Date, nullable=False)
    appointment_time = Column(Time, nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(20), nullable=False)
    notes = Column(Text)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    # Relationships
    patient = relationship("Patient", viewonly=True)
    doctor = relationship("Doctor", viewonly=True)


class MedicalRecord(RowMixin, Base):
    __tablename__ = "medical_records"

    patient_id = Column(Integer, _fk("patients.id", "CASCADE"), nullable=False)
    appointment_id = Column(Integer, _fk("appointments.id", "SET NULL"), nullable=True)
    diagnosis = Column(Text, nullable=False)
    symptoms = Column(Text)
    treatment = Column(Text)
    tests_recommended = Column(Text)
    record_date = Column(Date)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}


class Medication(RowMixin, Base):
    """Pharmacy inventory."""
    __tablename__ = "medications"
    __table_args__ = (
        Index("idx_medication_expiry", "expiry_date"),
    )

    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text)
    manufacturer = Column(String(100))
    unit_price = Column(Numeric(8, 2), nullable=False)
    stock_quantity = Column(Integer, nullable=False)
    expiry_date = Column(Date, nullable=False)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}


class Prescription(RowMixin, Base):
    __tablename__ = "prescriptions"

    record_id = Column(Integer, _fk("medical_records.id", "CASCADE"), nullable=False)
    prescription_date = Column(Date)
    instructions = Column(Text)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}


class PrescriptionDetail(RowMixin, Base):
    """Junction between prescriptions and medications."""
    __tablename__ = "prescription_details"
    __table_args__ = (
        UniqueConstraint("prescription_id", "medication_id", name="unique_prescription_medication"),
    )

    prescription_id = Column(Integer, _fk("prescriptions.id", "CASCADE"), nullable=False)
    medication_id = Column(Integer, _fk("medications.id"), nullable=False)
    dosage = Column(String(50), nullable=False)
    frequency = Column(String(50), nullable=False)
    duration = Column(String(50), nullable=False)
    quantity = Column(Integer, nullable=False)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    medication = relationship("Medication", viewonly=True)


class Billing(RowMixin, Base):
    __tablename__ = "billing"
    __table_args__ = (
        Index("idx_billing_status", "payment_status"),
    )

    patient_id = Column(Integer, _fk("patients.id", "CASCADE"), nullable=False)
    appointment_id = Column(Integer, _fk("appointments.id", "SET NULL"), nullable=True)
    bill_date = Column(Date)
    consultation_fee = Column(Numeric(10, 2))
    medication_cost = Column(Numeric(10, 2))
    test_cost = Column(Numeric(10, 2))
    total_amount = Column(Numeric(10, 2), nullable=False)
    amount_paid = Column(Numeric(10, 2))
    payment_status = Column(String(20), nullable=False)
    payment_method = Column(String(20))

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}


class Staff(RowMixin, Base):
    """Non-doctor staff (nurses, admin, ...)."""
    __tablename__ = "staff"

    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    role = Column(String(50), nullable=False)
    email = Column(String(100), nullable=False, unique=True)
    phone_number = Column(String(15), nullable=False, unique=True)
    department_id = Column(Integer, _fk("departments.id"), nullable=False)
    hire_date = Column(Date, nullable=False)
    salary = Column(Numeric(10, 2))
    status = Column(String(20), nullable=False)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}


class Room(RowMixin, Base):
    __tablename__ = "rooms"

    room_number = Column(String(10), nullable=False, unique=True)
    room_type = Column(String(20), nullable=False)
    capacity = Column(Integer, nullable=False)
    current_occupancy = Column(Integer)
    daily_rate = Column(Numeric(8, 2), nullable=False)
    status = Column(String(20), nullable=False)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}


class PatientAdmission(RowMixin, Base):
    __tablename__ = "patient_admissions"

    patient_id = Column(Integer, _fk("patients.id"), nullable=False)
    room_id = Column(Integer, _fk("rooms.id"), nullable=False)
    doctor_id = Column(Integer, _fk("doctors.id"), nullable=False)
    admission_date = Column(DateTime, nullable=False)
    discharge_date = Column(DateTime)
    reason = Column(Text, nullable=False)
    status = Column(String(20), nullable=False)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    # Relationships
    patient = relationship("Patient", viewonly=True)
    room = relationship("Room", viewonly=True)


MODELS_BY_KIND = {
    EntityKind.department: Department,
    EntityKind.doctor: Doctor,
    EntityKind.patient: Patient,
    EntityKind.emergency_contact: EmergencyContact,
    EntityKind.appointment: Appointment,
    EntityKind.medical_record: MedicalRecord,
    EntityKind.medication: Medication,
    EntityKind.prescription: Prescription,
    EntityKind.prescription_detail: PrescriptionDetail,
    EntityKind.billing: Billing,
    EntityKind.staff: Staff,
    EntityKind.room: Room,
    EntityKind.patient_admission: PatientAdmission,
}
