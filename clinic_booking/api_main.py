from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fastapi import FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from clinic_booking.errors import ClinicError, ConstraintViolation, NotFoundError, RuleViolationError
from clinic_booking.models import AppointmentStatus, PaymentMethod, Sex
from clinic_booking.seed import seed_base
from clinic_booking.services import (
    PrescriptionLine,
    book_appointment,
    change_appointment_status,
    create_doctor,
    create_patient,
    delete_appointment,
    delete_doctor,
    delete_patient,
    delete_specialization,
    doctor_schedule,
    get_appointment,
    init_db,
    invoice_balance,
    issue_invoice,
    issue_prescription,
    list_doctors,
    list_medications,
    list_patients,
    list_rooms,
    list_specializations,
    patient_appointments,
    prescription_detail,
    record_payment,
    reschedule_appointment,
    void_invoice,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # tables and reference data (idempotent)
    init_db()
    seed_base()
    yield


app = FastAPI(title="Clinic Booking API", version="1.0.0", lifespan=lifespan)


# Error mapping

def _error_body(exc: ClinicError) -> dict[str, Any]:
    body: dict[str, Any] = {"ok": False, "error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, ConstraintViolation):
        body["constraint"] = exc.constraint
    return body


async def clinic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConstraintViolation):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, RuleViolationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        code = status.HTTP_400_BAD_REQUEST
    logger.info("%s %s -> %s %s", request.method, request.url.path, code, type(exc).__name__)
    return JSONResponse(status_code=code, content=_error_body(exc))


app.add_exception_handler(ClinicError, clinic_error_handler)


# Schemas

class PatientCreateIn(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    date_of_birth: date
    sex: Sex
    phone: str = Field(..., min_length=1)
    email: str | None = None


class DoctorCreateIn(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)
    hire_date: date
    license_number: str = Field(..., min_length=1)
    specialization_ids: list[int] = []


class AppointmentCreateIn(BaseModel):
    patient_id: int
    doctor_id: int
    scheduled_at: datetime
    room_id: int | None = None
    reason: str | None = None


class RescheduleIn(BaseModel):
    scheduled_at: datetime


class StatusIn(BaseModel):
    status: AppointmentStatus


class PrescriptionItemIn(BaseModel):
    med_id: int
    dosage: str
    frequency: str
    duration_days: int


class PrescriptionIn(BaseModel):
    items: list[PrescriptionItemIn]
    notes: str | None = None


class InvoiceIn(BaseModel):
    total_amount: Decimal


class PaymentIn(BaseModel):
    amount: Decimal
    method: PaymentMethod


def _balance_out(invoice_id: int) -> dict[str, Any]:
    bal = invoice_balance(invoice_id)
    return {
        "invoice_id": bal.invoice_id,
        "total_amount": str(bal.total_amount),
        "paid": str(bal.paid),
        "outstanding": str(bal.outstanding),
        "status": bal.status.value,
    }


# Reference data

@app.get("/api/doctors")
def api_doctors(include_inactive: bool = False) -> list[dict]:
    return list_doctors(active_only=not include_inactive)


@app.get("/api/rooms")
def api_rooms() -> list[dict]:
    return list_rooms()


@app.get("/api/specializations")
def api_specializations() -> list[dict]:
    return list_specializations()


@app.delete("/api/specializations/{spec_id}")
def api_delete_specialization(spec_id: int) -> dict[str, Any]:
    delete_specialization(spec_id)
    return {"ok": True}


@app.get("/api/medications")
def api_medications() -> list[dict]:
    return list_medications()


# Patients / doctors

@app.get("/api/patients")
def api_patients() -> list[dict]:
    return list_patients()


@app.post("/api/patients", status_code=status.HTTP_201_CREATED)
def api_create_patient(payload: PatientCreateIn) -> dict[str, Any]:
    pid = create_patient(
        payload.first_name,
        payload.last_name,
        payload.date_of_birth,
        payload.sex,
        payload.phone,
        payload.email,
    )
    return {"ok": True, "patient_id": pid}


@app.delete("/api/patients/{patient_id}")
def api_delete_patient(patient_id: int) -> dict[str, Any]:
    delete_patient(patient_id)
    return {"ok": True}


@app.get("/api/patients/{patient_id}/appointments")
def api_patient_appointments(patient_id: int) -> list[dict]:
    return patient_appointments(patient_id)


@app.post("/api/doctors", status_code=status.HTTP_201_CREATED)
def api_create_doctor(payload: DoctorCreateIn) -> dict[str, Any]:
    did = create_doctor(
        payload.first_name,
        payload.last_name,
        payload.phone,
        payload.email,
        payload.hire_date,
        payload.license_number,
        specialization_ids=payload.specialization_ids,
    )
    return {"ok": True, "doctor_id": did}


@app.delete("/api/doctors/{doctor_id}")
def api_delete_doctor(doctor_id: int) -> dict[str, Any]:
    delete_doctor(doctor_id)
    return {"ok": True}


# Appointments

@app.post("/api/appointments", status_code=status.HTTP_201_CREATED)
def api_book(payload: AppointmentCreateIn) -> dict[str, Any]:
    aid = book_appointment(
        patient_id=payload.patient_id,
        doctor_id=payload.doctor_id,
        scheduled_at=payload.scheduled_at,
        room_id=payload.room_id,
        reason=payload.reason,
    )
    return {"ok": True, "appointment_id": aid}


@app.get("/api/appointments/{appointment_id}")
def api_get_appointment(appointment_id: int) -> dict:
    return get_appointment(appointment_id)


@app.patch("/api/appointments/{appointment_id}/schedule")
def api_reschedule(appointment_id: int, payload: RescheduleIn) -> dict:
    reschedule_appointment(appointment_id, payload.scheduled_at)
    return get_appointment(appointment_id)


@app.post("/api/appointments/{appointment_id}/status")
def api_status(appointment_id: int, payload: StatusIn) -> dict[str, Any]:
    new_status = change_appointment_status(appointment_id, payload.status)
    return {"ok": True, "appointment_id": appointment_id, "status": new_status.value}


@app.delete("/api/appointments/{appointment_id}")
def api_delete_appointment(appointment_id: int) -> dict[str, Any]:
    delete_appointment(appointment_id)
    return {"ok": True}


@app.get("/api/schedule")
def api_schedule(
    doctor_id: int = Query(...),
    day: date = Query(...),
    include_cancelled: bool = False,
) -> list[dict]:
    return doctor_schedule(doctor_id, day, include_cancelled=include_cancelled)


# Prescriptions

@app.post("/api/appointments/{appointment_id}/prescriptions", status_code=status.HTTP_201_CREATED)
def api_prescribe(appointment_id: int, payload: PrescriptionIn) -> dict[str, Any]:
    pid = issue_prescription(
        appointment_id,
        [PrescriptionLine(i.med_id, i.dosage, i.frequency, i.duration_days) for i in payload.items],
        notes=payload.notes,
    )
    return {"ok": True, "prescription_id": pid}


@app.get("/api/prescriptions/{prescription_id}")
def api_prescription(prescription_id: int) -> dict:
    return prescription_detail(prescription_id)


# Billing

@app.post("/api/appointments/{appointment_id}/invoice", status_code=status.HTTP_201_CREATED)
def api_invoice(appointment_id: int, payload: InvoiceIn) -> dict[str, Any]:
    iid = issue_invoice(appointment_id, payload.total_amount)
    return {"ok": True, **_balance_out(iid)}


@app.get("/api/invoices/{invoice_id}")
def api_get_invoice(invoice_id: int) -> dict[str, Any]:
    return _balance_out(invoice_id)


@app.post("/api/invoices/{invoice_id}/payments", status_code=status.HTTP_201_CREATED)
def api_pay(invoice_id: int, payload: PaymentIn) -> dict[str, Any]:
    pid = record_payment(invoice_id, payload.amount, payload.method)
    return {"ok": True, "payment_id": pid, **_balance_out(invoice_id)}


@app.post("/api/invoices/{invoice_id}/void")
def api_void(invoice_id: int) -> dict[str, Any]:
    void_invoice(invoice_id)
    return {"ok": True, **_balance_out(invoice_id)}
