from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    UniqueConstraint,
    text,
    true,
)
from sqlalchemy.dialects import mysql
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

# Column types that render as UNSIGNED / TIMESTAMP on MySQL and stay generic elsewhere
Id = Integer().with_variant(mysql.INTEGER(unsigned=True), "mysql")
SmallCount = SmallInteger().with_variant(mysql.SMALLINT(unsigned=True), "mysql")
TinyCount = SmallInteger().with_variant(mysql.TINYINT(unsigned=True), "mysql")
CreatedAt = DateTime().with_variant(mysql.TIMESTAMP(), "mysql")

MYSQL_TABLE_ARGS = {"mysql_engine": "InnoDB"}


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    # stores the lowercase values ('scheduled'), not the member names
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        create_constraint=True,
        validate_strings=True,
    )


def _fk(target: str, name: str, ondelete: str) -> ForeignKey:
    return ForeignKey(target, name=name, onupdate="CASCADE", ondelete=ondelete)


class MedicationForm(enum.Enum):
    TABLET = "tablet"
    CAPSULE = "capsule"
    SYRUP = "syrup"
    INJECTION = "injection"
    CREAM = "cream"
    OTHER = "other"


class RoomType(enum.Enum):
    CONSULT = "consult"
    SURGERY = "surgery"
    LAB = "lab"
    OTHER = "other"


class Sex(enum.Enum):
    MALE = "M"
    FEMALE = "F"
    OTHER = "X"


class AppointmentStatus(enum.Enum):
    SCHEDULED = "scheduled"
    CHECKED_IN = "checked_in"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]

    def can_become(self, target: "AppointmentStatus") -> bool:
        return target in ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset(
        {AppointmentStatus.CHECKED_IN, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
    ),
    AppointmentStatus.CHECKED_IN: frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.NO_SHOW: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.COMPLETED: frozenset(),
}


class InvoiceStatus(enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    VOID = "void"


class PaymentMethod(enum.Enum):
    CASH = "cash"
    CARD = "card"
    MPESA = "mpesa"
    INSURANCE = "insurance"
    BANK = "bank"


# =========================
# Reference tables
# =========================
class Specialization(Base):
    __tablename__ = "specializations"
    __table_args__ = MYSQL_TABLE_ARGS

    spec_id: Mapped[int] = mapped_column(Id, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        CreatedAt, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )

    doctor_links: Mapped[list["DoctorSpecialization"]] = relationship(
        back_populates="specialization", passive_deletes="all"
    )

    def __repr__(self) -> str:
        return f"Specialization({self.name})"


class Medication(Base):
    __tablename__ = "medications"
    __table_args__ = MYSQL_TABLE_ARGS

    med_id: Mapped[int] = mapped_column(Id, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    form: Mapped[MedicationForm] = mapped_column(
        _enum_column(MedicationForm, "medication_form"),
        nullable=False,
        default=MedicationForm.TABLET,
        server_default=MedicationForm.TABLET.value,
    )
    created_at: Mapped[datetime] = mapped_column(
        CreatedAt, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )

    prescription_items: Mapped[list["PrescriptionItem"]] = relationship(
        back_populates="medication", passive_deletes="all"
    )

    def __repr__(self) -> str:
        return f"Medication({self.name}, {self.form.value})"


class InsuranceProvider(Base):
    __tablename__ = "insurance_providers"
    __table_args__ = MYSQL_TABLE_ARGS

    provider_id: Mapped[int] = mapped_column(Id, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)
    contact_email: Mapped[str | None] = mapped_column(String(150), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        CreatedAt, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )

    members: Mapped[list["PatientInsurance"]] = relationship(back_populates="provider", passive_deletes="all")


class Room(Base):
    __tablename__ = "rooms"
    __table_args__ = MYSQL_TABLE_ARGS

    room_id: Mapped[int] = mapped_column(Id, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    type: Mapped[RoomType] = mapped_column(
        _enum_column(RoomType, "room_type"),
        nullable=False,
        default=RoomType.CONSULT,
        server_default=RoomType.CONSULT.value,
    )
    capacity: Mapped[int] = mapped_column(TinyCount, nullable=False, default=1, server_default=text("1"))
    created_at: Mapped[datetime] = mapped_column(
        CreatedAt, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )

    # rooms.delete -> appointments.room_id = NULL, done by the database
    appointments: Mapped[list["Appointment"]] = relationship(back_populates="room", passive_deletes=True)

    def __repr__(self) -> str:
        return f"Room({self.name}, {self.type.value})"


# =========================
# Core entities
# =========================
class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = MYSQL_TABLE_ARGS

    patient_id: Mapped[int] = mapped_column(Id, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(60), nullable=False)
    last_name: Mapped[str] = mapped_column(String(60), nullable=False)
    date_of_birth: Mapped[date] = mapped_column(Date, nullable=False)
    sex: Mapped[Sex] = mapped_column(_enum_column(Sex, "patient_sex"), nullable=False)
    phone: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String(150), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        CreatedAt, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )

    insurance_links: Mapped[list["PatientInsurance"]] = relationship(
        back_populates="patient", cascade="all, delete-orphan", passive_deletes=True
    )
    appointments: Mapped[list["Appointment"]] = relationship(back_populates="patient", passive_deletes="all")
    invoices: Mapped[list["Invoice"]] = relationship(back_populates="patient", passive_deletes="all")

    def __repr__(self) -> str:
        return f"Patient({self.first_name} {self.last_name})"


class Doctor(Base):
    __tablename__ = "doctors"
    __table_args__ = MYSQL_TABLE_ARGS

    doctor_id: Mapped[int] = mapped_column(Id, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(60), nullable=False)
    last_name: Mapped[str] = mapped_column(String(60), nullable=False)
    phone: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)
    hire_date: Mapped[date] = mapped_column(Date, nullable=False)
    license_number: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    created_at: Mapped[datetime] = mapped_column(
        CreatedAt, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )

    specialization_links: Mapped[list["DoctorSpecialization"]] = relationship(
        back_populates="doctor", cascade="all, delete-orphan", passive_deletes=True
    )
    appointments: Mapped[list["Appointment"]] = relationship(back_populates="doctor", passive_deletes="all")

    def __repr__(self) -> str:
        return f"Doctor({self.first_name} {self.last_name}, {self.license_number})"


class DoctorSpecialization(Base):
    """M-N doctors <-> specializations."""
    __tablename__ = "doctor_specializations"
    __table_args__ = MYSQL_TABLE_ARGS

    doctor_id: Mapped[int] = mapped_column(
        Id, _fk("doctors.doctor_id", "fk_docspec_doctor", "CASCADE"), primary_key=True
    )
    spec_id: Mapped[int] = mapped_column(
        Id, _fk("specializations.spec_id", "fk_docspec_spec", "RESTRICT"), primary_key=True
    )

    doctor: Mapped["Doctor"] = relationship(back_populates="specialization_links")
    specialization: Mapped["Specialization"] = relationship(back_populates="doctor_links")


class PatientInsurance(Base):
    """M-N patients <-> insurance providers, carrying the member number."""
    __tablename__ = "patient_insurance"
    __table_args__ = MYSQL_TABLE_ARGS

    patient_id: Mapped[int] = mapped_column(
        Id, _fk("patients.patient_id", "fk_pins_patient", "CASCADE"), primary_key=True
    )
    provider_id: Mapped[int] = mapped_column(
        Id, _fk("insurance_providers.provider_id", "fk_pins_provider", "RESTRICT"), primary_key=True
    )
    member_number: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    patient: Mapped["Patient"] = relationship(back_populates="insurance_links")
    provider: Mapped["InsuranceProvider"] = relationship(back_populates="members")


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # a doctor cannot hold two appointments at the same instant
        UniqueConstraint("doctor_id", "scheduled_at", name="uq_doctor_time"),
        Index("idx_patient_time", "patient_id", "scheduled_at"),
        MYSQL_TABLE_ARGS,
    )

    appointment_id: Mapped[int] = mapped_column(Id, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(
        Id, _fk("patients.patient_id", "fk_appt_patient", "RESTRICT"), nullable=False
    )
    doctor_id: Mapped[int] = mapped_column(
        Id, _fk("doctors.doctor_id", "fk_appt_doctor", "RESTRICT"), nullable=False
    )
    room_id: Mapped[int | None] = mapped_column(
        Id, _fk("rooms.room_id", "fk_appt_room", "SET NULL"), nullable=True
    )
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        _enum_column(AppointmentStatus, "appointment_status"),
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
        server_default=AppointmentStatus.SCHEDULED.value,
    )
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        CreatedAt, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )

    patient: Mapped["Patient"] = relationship(back_populates="appointments")
    doctor: Mapped["Doctor"] = relationship(back_populates="appointments")
    room: Mapped[Optional["Room"]] = relationship(back_populates="appointments")
    prescriptions: Mapped[list["Prescription"]] = relationship(
        back_populates="appointment", cascade="all, delete-orphan", passive_deletes=True
    )
    invoice: Mapped[Optional["Invoice"]] = relationship(back_populates="appointment", passive_deletes="all")

    def __repr__(self) -> str:
        return f"Appointment(doctor={self.doctor_id}, at={self.scheduled_at}, {self.status.value})"


class Prescription(Base):
    __tablename__ = "prescriptions"
    __table_args__ = (
        Index("idx_presc_appt", "appointment_id"),
        MYSQL_TABLE_ARGS,
    )

    prescription_id: Mapped[int] = mapped_column(Id, primary_key=True, autoincrement=True)
    appointment_id: Mapped[int] = mapped_column(
        Id, _fk("appointments.appointment_id", "fk_presc_appt", "CASCADE"), nullable=False
    )
    issued_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    appointment: Mapped["Appointment"] = relationship(back_populates="prescriptions")
    items: Mapped[list["PrescriptionItem"]] = relationship(
        back_populates="prescription", cascade="all, delete-orphan", passive_deletes=True
    )


class PrescriptionItem(Base):
    """M-N prescriptions <-> medications with dosage, frequency and duration."""
    __tablename__ = "prescription_items"
    __table_args__ = (
        CheckConstraint("duration_days > 0", name="ck_pitem_duration_positive"),
        MYSQL_TABLE_ARGS,
    )

    prescription_id: Mapped[int] = mapped_column(
        Id, _fk("prescriptions.prescription_id", "fk_pitem_presc", "CASCADE"), primary_key=True
    )
    med_id: Mapped[int] = mapped_column(
        Id, _fk("medications.med_id", "fk_pitem_med", "RESTRICT"), primary_key=True
    )
    dosage: Mapped[str] = mapped_column(String(60), nullable=False)  # 500mg
    frequency: Mapped[str] = mapped_column(String(60), nullable=False)  # twice daily
    duration_days: Mapped[int] = mapped_column(SmallCount, nullable=False)

    prescription: Mapped["Prescription"] = relationship(back_populates="items")
    medication: Mapped["Medication"] = relationship(back_populates="prescription_items")


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        # at most one invoice per appointment
        UniqueConstraint("appointment_id", name="uq_inv_appointment"),
        Index("idx_inv_patient", "patient_id"),
        CheckConstraint("total_amount >= 0", name="ck_inv_total_nonnegative"),
        MYSQL_TABLE_ARGS,
    )

    invoice_id: Mapped[int] = mapped_column(Id, primary_key=True, autoincrement=True)
    appointment_id: Mapped[int] = mapped_column(
        Id, _fk("appointments.appointment_id", "fk_inv_appt", "RESTRICT"), nullable=False
    )
    patient_id: Mapped[int] = mapped_column(
        Id, _fk("patients.patient_id", "fk_inv_patient", "RESTRICT"), nullable=False
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        _enum_column(InvoiceStatus, "invoice_status"),
        nullable=False,
        default=InvoiceStatus.UNPAID,
        server_default=InvoiceStatus.UNPAID.value,
    )
    issued_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )

    appointment: Mapped["Appointment"] = relationship(back_populates="invoice")
    patient: Mapped["Patient"] = relationship(back_populates="invoices")
    payments: Mapped[list["Payment"]] = relationship(
        back_populates="invoice", cascade="all, delete-orphan", passive_deletes=True
    )


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("idx_pay_invoice", "invoice_id"),
        CheckConstraint("amount > 0", name="ck_pay_amount_positive"),
        MYSQL_TABLE_ARGS,
    )

    payment_id: Mapped[int] = mapped_column(Id, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(
        Id, _fk("invoices.invoice_id", "fk_pay_invoice", "CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(_enum_column(PaymentMethod, "payment_method"), nullable=False)
    paid_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )

    invoice: Mapped["Invoice"] = relationship(back_populates="payments")
