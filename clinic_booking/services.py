from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, TypeVar

from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import db
from .db import Base, db_session
from .errors import (
    DoubleBookingError,
    InvalidTransitionError,
    NotFoundError,
    RuleViolationError,
    translate_integrity_error,
)
from .models import (
    Appointment,
    AppointmentStatus,
    Doctor,
    DoctorSpecialization,
    InsuranceProvider,
    Invoice,
    InvoiceStatus,
    Medication,
    MedicationForm,
    Patient,
    PatientInsurance,
    Payment,
    PaymentMethod,
    Prescription,
    PrescriptionItem,
    Room,
    RoomType,
    Sex,
    Specialization,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=enum.Enum)

CENT = Decimal("0.01")


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Create the tables that do not exist yet."""
    Base.metadata.create_all(bind=db.get_engine())


def drop_db() -> None:
    Base.metadata.drop_all(bind=db.get_engine())


# =========================
# Helpers / DTO
# =========================
@dataclass(frozen=True)
class PrescriptionLine:
    med_id: int
    dosage: str
    frequency: str
    duration_days: int


@dataclass(frozen=True)
class InvoiceBalance:
    invoice_id: int
    total_amount: Decimal
    paid: Decimal
    status: InvoiceStatus

    @property
    def outstanding(self) -> Decimal:
        return self.total_amount - self.paid


def _flush(s: Session) -> None:
    """Flush pending writes, turning constraint violations into domain errors."""
    try:
        s.flush()
    except IntegrityError as exc:
        raise translate_integrity_error(exc) from exc


def _get(s: Session, model: type, key: Any, label: str, lock: bool = False) -> Any:
    obj = s.get(model, key, with_for_update=True if lock else None)
    if obj is None:
        raise NotFoundError(label, key)
    return obj


def _coerce(enum_cls: type[E], value: E | str, label: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise RuleViolationError(f"Invalid {label} '{value}' (allowed: {allowed}).") from None


def _money(value: Decimal | int | float | str) -> Decimal:
    """Amounts are exact to the cent; anything finer is rejected, never rounded."""
    try:
        amount = Decimal(str(value).strip())
        cents = amount.quantize(CENT)
    except InvalidOperation:
        raise RuleViolationError(f"Invalid amount '{value}'.") from None
    if cents.is_nan():
        raise RuleViolationError(f"Invalid amount '{value}'.")
    if cents != amount:
        raise RuleViolationError(f"Amount {value} has more than two decimal places.")
    return cents


def _cents(value: Any) -> Decimal:
    # stored values; SQLite hands back sums as floats
    return Decimal(str(value or 0)).quantize(CENT)


def normalize_timestamp(value: datetime) -> datetime:
    """
    Timestamps are stored as naive UTC: an aware datetime is converted,
    a naive one is taken as already being UTC. The exact instant is the
    double-booking key, so nothing is rounded.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _delete_row(model: type, key_column: Any, key: Any, label: str) -> None:
    # Core DELETE: cascade / restrict / set-null are decided by the foreign keys
    with db_session() as s:
        try:
            result = s.execute(delete(model).where(key_column == key))
        except IntegrityError as exc:
            logger.warning("Delete of %s %s rejected by the database", label, key)
            raise translate_integrity_error(exc) from exc
        if result.rowcount == 0:
            raise NotFoundError(label, key)
        logger.info("%s %s deleted", label, key)


# =========================
# Reference data
# =========================
def create_specialization(name: str) -> int:
    with db_session() as s:
        spec = Specialization(name=name.strip())
        s.add(spec)
        _flush(s)
        return spec.spec_id


def create_medication(name: str, form: MedicationForm | str = MedicationForm.TABLET) -> int:
    with db_session() as s:
        med = Medication(name=name.strip(), form=_coerce(MedicationForm, form, "medication form"))
        s.add(med)
        _flush(s)
        return med.med_id


def create_insurance_provider(name: str, contact_email: str | None = None) -> int:
    with db_session() as s:
        provider = InsuranceProvider(name=name.strip(), contact_email=contact_email)
        s.add(provider)
        _flush(s)
        return provider.provider_id


def create_room(name: str, room_type: RoomType | str = RoomType.CONSULT, capacity: int = 1) -> int:
    with db_session() as s:
        room = Room(name=name.strip(), type=_coerce(RoomType, room_type, "room type"), capacity=capacity)
        s.add(room)
        _flush(s)
        return room.room_id


def delete_specialization(spec_id: int) -> None:
    """Rejected while any doctor still holds the specialization."""
    _delete_row(Specialization, Specialization.spec_id, spec_id, "Specialization")


def delete_medication(med_id: int) -> None:
    _delete_row(Medication, Medication.med_id, med_id, "Medication")


def delete_insurance_provider(provider_id: int) -> None:
    _delete_row(InsuranceProvider, InsuranceProvider.provider_id, provider_id, "Insurance provider")


def delete_room(room_id: int) -> None:
    """Appointments held in the room keep existing with no room."""
    _delete_row(Room, Room.room_id, room_id, "Room")


# =========================
# Patients / doctors
# =========================
def create_patient(
    first_name: str,
    last_name: str,
    date_of_birth: date,
    sex: Sex | str,
    phone: str,
    email: str | None = None,
) -> int:
    with db_session() as s:
        p = Patient(
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            date_of_birth=date_of_birth,
            sex=_coerce(Sex, sex, "sex"),
            phone=phone.strip(),
            email=email.strip() if email else None,
        )
        s.add(p)
        _flush(s)
        logger.info("Patient created: id=%s", p.patient_id)
        return p.patient_id


def create_doctor(
    first_name: str,
    last_name: str,
    phone: str,
    email: str,
    hire_date: date,
    license_number: str,
    specialization_ids: Iterable[int] = (),
) -> int:
    with db_session() as s:
        d = Doctor(
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            phone=phone.strip(),
            email=email.strip(),
            hire_date=hire_date,
            license_number=license_number.strip(),
        )
        s.add(d)
        _flush(s)

        for spec_id in dict.fromkeys(specialization_ids):
            s.add(DoctorSpecialization(doctor_id=d.doctor_id, spec_id=spec_id))
        _flush(s)

        logger.info("Doctor created: id=%s license=%s", d.doctor_id, d.license_number)
        return d.doctor_id


def assign_specialization(doctor_id: int, spec_id: int) -> None:
    with db_session() as s:
        s.add(DoctorSpecialization(doctor_id=doctor_id, spec_id=spec_id))
        _flush(s)


def remove_specialization(doctor_id: int, spec_id: int) -> None:
    with db_session() as s:
        result = s.execute(
            delete(DoctorSpecialization).where(
                DoctorSpecialization.doctor_id == doctor_id, DoctorSpecialization.spec_id == spec_id
            )
        )
        if result.rowcount == 0:
            raise NotFoundError("Doctor specialization", (doctor_id, spec_id))


def set_doctor_active(doctor_id: int, active: bool) -> None:
    with db_session() as s:
        d = _get(s, Doctor, doctor_id, "Doctor")
        d.active = active
        logger.info("Doctor %s active=%s", doctor_id, active)


def enroll_insurance(patient_id: int, provider_id: int, member_number: str) -> None:
    with db_session() as s:
        s.add(PatientInsurance(patient_id=patient_id, provider_id=provider_id, member_number=member_number.strip()))
        _flush(s)


def delete_patient(patient_id: int) -> None:
    """Removes insurance links; rejected while the patient has appointments or invoices."""
    _delete_row(Patient, Patient.patient_id, patient_id, "Patient")


def delete_doctor(doctor_id: int) -> None:
    """Removes specialization links; rejected while the doctor has appointments."""
    _delete_row(Doctor, Doctor.doctor_id, doctor_id, "Doctor")


# =========================
# Booking (core use case)
# =========================
def book_appointment(
    patient_id: int,
    doctor_id: int,
    scheduled_at: datetime,
    room_id: int | None = None,
    reason: str | None = None,
) -> int:
    """
    Book a slot for a patient.
    - the doctor must be active
    - (doctor, scheduled_at) must be free: the unique key uq_doctor_time
      decides, a duplicate raises DoubleBookingError
    - missing patient / doctor / room surface as ReferentialIntegrityError
    """
    scheduled_at = normalize_timestamp(scheduled_at)

    with db_session() as s:
        active = s.scalar(select(Doctor.active).where(Doctor.doctor_id == doctor_id))
        if active is False:
            raise RuleViolationError(f"Doctor {doctor_id} is not active.")

        app = Appointment(
            patient_id=patient_id,
            doctor_id=doctor_id,
            room_id=room_id,
            scheduled_at=scheduled_at,
            status=AppointmentStatus.SCHEDULED,
            reason=reason,
        )
        s.add(app)
        try:
            _flush(s)
        except DoubleBookingError:
            logger.warning("Double booking rejected: doctor=%s at=%s", doctor_id, scheduled_at.isoformat())
            raise

        logger.info(
            "Appointment %s booked: doctor=%s patient=%s at=%s",
            app.appointment_id,
            doctor_id,
            patient_id,
            scheduled_at.isoformat(),
        )
        return app.appointment_id


def reschedule_appointment(appointment_id: int, new_time: datetime) -> None:
    new_time = normalize_timestamp(new_time)

    with db_session() as s:
        app = _get(s, Appointment, appointment_id, "Appointment")
        if app.status != AppointmentStatus.SCHEDULED:
            raise RuleViolationError(
                f"Only scheduled appointments can be rescheduled (current: {app.status.value})."
            )
        old_time, doctor_id = app.scheduled_at, app.doctor_id
        app.scheduled_at = new_time
        try:
            _flush(s)
        except DoubleBookingError:
            # the failed flush expired `app`
            logger.warning(
                "Reschedule of %s rejected: doctor=%s at=%s", appointment_id, doctor_id, new_time.isoformat()
            )
            raise
        logger.info("Appointment %s moved %s -> %s", appointment_id, old_time.isoformat(), new_time.isoformat())


def change_appointment_status(appointment_id: int, status: AppointmentStatus | str) -> AppointmentStatus:
    target = _coerce(AppointmentStatus, status, "appointment status")
    with db_session() as s:
        app = _get(s, Appointment, appointment_id, "Appointment")
        if not app.status.can_become(target):
            raise InvalidTransitionError(app.status.value, target.value)
        app.status = target
        logger.info("Appointment %s is now %s", appointment_id, target.value)
        return target


def check_in(appointment_id: int) -> AppointmentStatus:
    return change_appointment_status(appointment_id, AppointmentStatus.CHECKED_IN)


def complete_appointment(appointment_id: int) -> AppointmentStatus:
    return change_appointment_status(appointment_id, AppointmentStatus.COMPLETED)


def cancel_appointment(appointment_id: int) -> AppointmentStatus:
    """The slot stays taken: a cancelled row still holds (doctor, scheduled_at)."""
    return change_appointment_status(appointment_id, AppointmentStatus.CANCELLED)


def mark_no_show(appointment_id: int) -> AppointmentStatus:
    return change_appointment_status(appointment_id, AppointmentStatus.NO_SHOW)


def delete_appointment(appointment_id: int) -> None:
    """Drops prescriptions with it; rejected once an invoice exists."""
    _delete_row(Appointment, Appointment.appointment_id, appointment_id, "Appointment")


# =========================
# Prescriptions
# =========================
PRESCRIBABLE = frozenset({AppointmentStatus.CHECKED_IN, AppointmentStatus.COMPLETED})


def issue_prescription(
    appointment_id: int,
    items: Iterable[PrescriptionLine | tuple[int, str, str, int]],
    notes: str | None = None,
) -> int:
    lines = [i if isinstance(i, PrescriptionLine) else PrescriptionLine(*i) for i in items]
    if not lines:
        raise RuleViolationError("A prescription needs at least one item.")
    med_ids = [line.med_id for line in lines]
    if len(set(med_ids)) != len(med_ids):
        raise RuleViolationError("A medication can appear only once per prescription.")

    with db_session() as s:
        app = _get(s, Appointment, appointment_id, "Appointment")
        if app.status not in PRESCRIBABLE:
            raise RuleViolationError(
                f"Prescriptions need a checked-in or completed appointment (current: {app.status.value})."
            )

        presc = Prescription(appointment_id=appointment_id, notes=notes)
        s.add(presc)
        _flush(s)

        for line in lines:
            s.add(
                PrescriptionItem(
                    prescription_id=presc.prescription_id,
                    med_id=line.med_id,
                    dosage=line.dosage.strip(),
                    frequency=line.frequency.strip(),
                    duration_days=line.duration_days,
                )
            )
        _flush(s)

        logger.info("Prescription %s issued for appointment %s (%d items)", presc.prescription_id, appointment_id, len(lines))
        return presc.prescription_id


# =========================
# Billing
# =========================
def issue_invoice(appointment_id: int, total_amount: Decimal | int | float | str) -> int:
    """One invoice per appointment; the patient is taken from the appointment."""
    total = _money(total_amount)
    with db_session() as s:
        app = _get(s, Appointment, appointment_id, "Appointment")
        if app.status == AppointmentStatus.CANCELLED:
            raise RuleViolationError("Cancelled appointments are not invoiced.")

        inv = Invoice(
            appointment_id=appointment_id,
            patient_id=app.patient_id,
            total_amount=total,
            # nothing to collect on a zero invoice
            status=InvoiceStatus.PAID if total == 0 else InvoiceStatus.UNPAID,
        )
        s.add(inv)
        _flush(s)
        logger.info("Invoice %s issued for appointment %s: %s", inv.invoice_id, appointment_id, total)
        return inv.invoice_id


def _paid_amount(s: Session, invoice_id: int) -> Decimal:
    paid = s.scalar(select(func.coalesce(func.sum(Payment.amount), 0)).where(Payment.invoice_id == invoice_id))
    return _cents(paid)


def record_payment(
    invoice_id: int,
    amount: Decimal | int | float | str,
    method: PaymentMethod | str,
) -> int:
    """
    Record a payment against an invoice.
    - void or settled invoices take no payments
    - a payment cannot exceed the outstanding balance
    - the invoice becomes 'paid' when the balance reaches zero
    Non-positive amounts are left to the amount > 0 check constraint.

    The invoice row is read with SELECT ... FOR UPDATE so payments on one
    invoice serialize. SQLite has no row locks, so the sum is checked
    again after the insert.
    """
    value = _money(amount)
    pay_method = _coerce(PaymentMethod, method, "payment method")

    with db_session() as s:
        inv = _get(s, Invoice, invoice_id, "Invoice", lock=True)
        if inv.status == InvoiceStatus.VOID:
            raise RuleViolationError(f"Invoice {invoice_id} is void.")
        if inv.status == InvoiceStatus.PAID:
            raise RuleViolationError(f"Invoice {invoice_id} is already paid.")

        paid = _paid_amount(s, invoice_id)
        total = _cents(inv.total_amount)
        if value > 0 and paid + value > total:
            raise RuleViolationError(f"Payment of {value} exceeds the outstanding balance {total - paid}.")

        pay = Payment(invoice_id=invoice_id, amount=value, method=pay_method)
        s.add(pay)
        _flush(s)

        paid = _paid_amount(s, invoice_id)
        if paid > total:
            logger.warning("Concurrent payment overpaid invoice %s, rolling back", invoice_id)
            raise RuleViolationError(f"Payment of {value} exceeds the outstanding balance.")
        if paid == total:
            inv.status = InvoiceStatus.PAID
            logger.info("Invoice %s settled", invoice_id)

        logger.info("Payment %s recorded on invoice %s: %s via %s", pay.payment_id, invoice_id, value, pay_method.value)
        return pay.payment_id


def void_invoice(invoice_id: int) -> None:
    with db_session() as s:
        inv = _get(s, Invoice, invoice_id, "Invoice", lock=True)
        if inv.status == InvoiceStatus.VOID:
            return
        if _paid_amount(s, invoice_id) > 0:
            raise RuleViolationError(f"Invoice {invoice_id} has payments and cannot be voided.")
        inv.status = InvoiceStatus.VOID
        logger.info("Invoice %s voided", invoice_id)


def invoice_balance(invoice_id: int) -> InvoiceBalance:
    with db_session() as s:
        inv = _get(s, Invoice, invoice_id, "Invoice")
        return InvoiceBalance(
            invoice_id=invoice_id,
            total_amount=_cents(inv.total_amount),
            paid=_paid_amount(s, invoice_id),
            status=inv.status,
        )


# =========================
# Queries ('flat' dicts, no lazy loading after the session closes)
# =========================
def _appointment_query():
    return (
        select(
            Appointment.appointment_id,
            Appointment.patient_id,
            Appointment.doctor_id,
            Appointment.room_id,
            Appointment.scheduled_at,
            Appointment.status,
            Appointment.reason,
            Patient.first_name.label("patient_first_name"),
            Patient.last_name.label("patient_last_name"),
            Doctor.first_name.label("doctor_first_name"),
            Doctor.last_name.label("doctor_last_name"),
            Room.name.label("room_name"),
        )
        .join(Patient, Patient.patient_id == Appointment.patient_id)
        .join(Doctor, Doctor.doctor_id == Appointment.doctor_id)
        .outerjoin(Room, Room.room_id == Appointment.room_id)
    )


def _appointment_row(r) -> dict:
    return {
        "appointment_id": r.appointment_id,
        "patient_id": r.patient_id,
        "patient": f"{r.patient_last_name} {r.patient_first_name}",
        "doctor_id": r.doctor_id,
        "doctor": f"{r.doctor_last_name} {r.doctor_first_name}",
        "room_id": r.room_id,
        "room": r.room_name,
        "scheduled_at": r.scheduled_at.isoformat(),
        "status": r.status.value,
        "reason": r.reason,
    }


def get_appointment(appointment_id: int) -> dict:
    with db_session() as s:
        r = s.execute(_appointment_query().where(Appointment.appointment_id == appointment_id)).first()
        if r is None:
            raise NotFoundError("Appointment", appointment_id)
        return _appointment_row(r)


def doctor_schedule(doctor_id: int, day: date, include_cancelled: bool = False) -> list[dict]:
    start_day = datetime.combine(day, datetime.min.time())
    end_day = start_day + timedelta(days=1)

    conditions = [
        Appointment.doctor_id == doctor_id,
        Appointment.scheduled_at >= start_day,
        Appointment.scheduled_at < end_day,
    ]
    if not include_cancelled:
        conditions.append(Appointment.status != AppointmentStatus.CANCELLED)

    with db_session() as s:
        q = _appointment_query().where(and_(*conditions)).order_by(Appointment.scheduled_at.asc())
        return [_appointment_row(r) for r in s.execute(q).all()]


def patient_appointments(patient_id: int) -> list[dict]:
    with db_session() as s:
        q = (
            _appointment_query()
            .where(Appointment.patient_id == patient_id)
            .order_by(Appointment.scheduled_at.asc())
        )
        return [_appointment_row(r) for r in s.execute(q).all()]


def prescription_detail(prescription_id: int) -> dict:
    with db_session() as s:
        presc = _get(s, Prescription, prescription_id, "Prescription")
        rows = s.execute(
            select(
                PrescriptionItem.med_id,
                Medication.name,
                Medication.form,
                PrescriptionItem.dosage,
                PrescriptionItem.frequency,
                PrescriptionItem.duration_days,
            )
            .join(Medication, Medication.med_id == PrescriptionItem.med_id)
            .where(PrescriptionItem.prescription_id == prescription_id)
            .order_by(Medication.name)
        ).all()
        return {
            "prescription_id": presc.prescription_id,
            "appointment_id": presc.appointment_id,
            "issued_at": presc.issued_at.isoformat(),
            "notes": presc.notes,
            "items": [
                {
                    "med_id": r.med_id,
                    "medication": r.name,
                    "form": r.form.value,
                    "dosage": r.dosage,
                    "frequency": r.frequency,
                    "duration_days": r.duration_days,
                }
                for r in rows
            ],
        }


def list_doctors(active_only: bool = True) -> list[dict]:
    with db_session() as s:
        q = select(Doctor).order_by(Doctor.last_name, Doctor.first_name)
        if active_only:
            q = q.where(Doctor.active.is_(True))
        doctors = list(s.scalars(q))

        specs: dict[int, list[str]] = {}
        for doctor_id, name in s.execute(
            select(DoctorSpecialization.doctor_id, Specialization.name)
            .join(Specialization, Specialization.spec_id == DoctorSpecialization.spec_id)
            .order_by(Specialization.name)
        ):
            specs.setdefault(doctor_id, []).append(name)

        return [
            {
                "doctor_id": d.doctor_id,
                "first_name": d.first_name,
                "last_name": d.last_name,
                "email": d.email,
                "license_number": d.license_number,
                "active": d.active,
                "specializations": specs.get(d.doctor_id, []),
            }
            for d in doctors
        ]


def list_patients() -> list[dict]:
    with db_session() as s:
        rows = s.execute(
            select(Patient.patient_id, Patient.first_name, Patient.last_name, Patient.phone, Patient.email)
            .order_by(Patient.last_name, Patient.first_name)
        ).all()
        return [
            {
                "patient_id": r.patient_id,
                "first_name": r.first_name,
                "last_name": r.last_name,
                "phone": r.phone,
                "email": r.email,
            }
            for r in rows
        ]


def list_rooms() -> list[dict]:
    with db_session() as s:
        rows = s.execute(select(Room.room_id, Room.name, Room.type, Room.capacity).order_by(Room.name)).all()
        return [{"room_id": r.room_id, "name": r.name, "type": r.type.value, "capacity": r.capacity} for r in rows]


def list_specializations() -> list[dict]:
    with db_session() as s:
        rows = s.execute(select(Specialization.spec_id, Specialization.name).order_by(Specialization.name)).all()
        return [{"spec_id": r.spec_id, "name": r.name} for r in rows]


def list_medications() -> list[dict]:
    with db_session() as s:
        rows = s.execute(select(Medication.med_id, Medication.name, Medication.form).order_by(Medication.name)).all()
        return [{"med_id": r.med_id, "name": r.name, "form": r.form.value} for r in rows]


def list_insurance_providers() -> list[dict]:
    with db_session() as s:
        rows = s.execute(
            select(InsuranceProvider.provider_id, InsuranceProvider.name, InsuranceProvider.contact_email)
            .order_by(InsuranceProvider.name)
        ).all()
        return [{"provider_id": r.provider_id, "name": r.name, "contact_email": r.contact_email} for r in rows]
