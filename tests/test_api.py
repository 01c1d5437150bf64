import pytest
from fastapi.testclient import TestClient

from clinic_booking.api_main import app


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _patient(client, phone="+254700000001", **extra) -> int:
    payload = {
        "first_name": "Amina",
        "last_name": "Otieno",
        "date_of_birth": "1990-05-17",
        "sex": "F",
        "phone": phone,
        **extra,
    }
    r = client.post("/api/patients", json=payload)
    assert r.status_code == 201, r.text
    return r.json()["patient_id"]


def _doctor(client, n: int, specialization_ids=()) -> int:
    r = client.post(
        "/api/doctors",
        json={
            "first_name": "Brian",
            "last_name": f"Kamau{n}",
            "phone": f"+25471100000{n}",
            "email": f"doc{n}@clinic.example",
            "hire_date": "2020-01-06",
            "license_number": f"LIC-{n}",
            "specialization_ids": list(specialization_ids),
        },
    )
    assert r.status_code == 201, r.text
    return r.json()["doctor_id"]


def test_reference_data_is_seeded_on_startup(client):
    names = [s["name"] for s in client.get("/api/specializations").json()]
    assert "Cardiology" in names
    assert client.get("/api/rooms").json()
    assert client.get("/api/medications").json()


def test_double_booking_over_http(client):
    patient = _patient(client)
    d1 = _doctor(client, 1)
    d2 = _doctor(client, 2)
    slot = "2026-01-14T10:30:00"

    r = client.post("/api/appointments", json={"patient_id": patient, "doctor_id": d1, "scheduled_at": slot})
    assert r.status_code == 201

    r = client.post("/api/appointments", json={"patient_id": patient, "doctor_id": d1, "scheduled_at": slot})
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "DoubleBookingError"
    assert body["constraint"] == "uq_doctor_time"

    r = client.post("/api/appointments", json={"patient_id": patient, "doctor_id": d2, "scheduled_at": slot})
    assert r.status_code == 201

    day = client.get("/api/schedule", params={"doctor_id": d1, "day": "2026-01-14"}).json()
    assert len(day) == 1


def test_duplicate_phone_is_a_conflict(client):
    _patient(client)
    r = client.post(
        "/api/patients",
        json={"first_name": "X", "last_name": "Y", "date_of_birth": "2000-01-01", "sex": "X", "phone": "+254700000001"},
    )
    assert r.status_code == 409
    assert r.json()["error"] == "DuplicateKeyError"


def test_visit_prescription_and_billing_flow(client):
    patient = _patient(client)
    doctor = _doctor(client, 3)
    aid = client.post(
        "/api/appointments",
        json={"patient_id": patient, "doctor_id": doctor, "scheduled_at": "2026-02-01T09:00:00", "reason": "fever"},
    ).json()["appointment_id"]

    r = client.post(f"/api/appointments/{aid}/status", json={"status": "completed"})
    assert r.status_code == 422

    assert client.post(f"/api/appointments/{aid}/status", json={"status": "checked_in"}).json()["status"] == "checked_in"

    med = client.get("/api/medications").json()[0]["med_id"]
    r = client.post(
        f"/api/appointments/{aid}/prescriptions",
        json={"items": [{"med_id": med, "dosage": "500mg", "frequency": "twice daily", "duration_days": 0}]},
    )
    assert r.status_code == 409
    assert r.json()["error"] == "CheckViolationError"

    r = client.post(
        f"/api/appointments/{aid}/prescriptions",
        json={"items": [{"med_id": med, "dosage": "500mg", "frequency": "twice daily", "duration_days": 5}]},
    )
    assert r.status_code == 201
    detail = client.get(f"/api/prescriptions/{r.json()['prescription_id']}").json()
    assert detail["items"][0]["duration_days"] == 5

    inv = client.post(f"/api/appointments/{aid}/invoice", json={"total_amount": "80.00"}).json()
    assert inv["status"] == "unpaid"
    assert client.post(f"/api/appointments/{aid}/invoice", json={"total_amount": "80.00"}).status_code == 409

    r = client.post(f"/api/invoices/{inv['invoice_id']}/payments", json={"amount": "80.00", "method": "mpesa"})
    assert r.status_code == 201
    assert r.json()["status"] == "paid"
    assert r.json()["outstanding"] == "0.00"

    # invoiced appointment is protected
    assert client.delete(f"/api/appointments/{aid}").status_code == 409


def test_reschedule_and_patient_history(client):
    patient = _patient(client)
    doctor = _doctor(client, 4)
    first = client.post(
        "/api/appointments", json={"patient_id": patient, "doctor_id": doctor, "scheduled_at": "2026-03-01T08:00:00"}
    ).json()["appointment_id"]
    second = client.post(
        "/api/appointments", json={"patient_id": patient, "doctor_id": doctor, "scheduled_at": "2026-03-01T09:00:00"}
    ).json()["appointment_id"]

    r = client.patch(f"/api/appointments/{second}/schedule", json={"scheduled_at": "2026-03-01T08:00:00"})
    assert r.status_code == 409

    r = client.patch(f"/api/appointments/{second}/schedule", json={"scheduled_at": "2026-03-02T08:00:00"})
    assert r.status_code == 200
    assert r.json()["scheduled_at"] == "2026-03-02T08:00:00"

    history = client.get(f"/api/patients/{patient}/appointments").json()
    assert [h["appointment_id"] for h in history] == [first, second]


def test_restricted_deletes_over_http(client):
    spec = client.get("/api/specializations").json()[0]["spec_id"]
    doctor = _doctor(client, 5, specialization_ids=[spec])

    r = client.delete(f"/api/specializations/{spec}")
    assert r.status_code == 409
    assert r.json()["error"] == "ReferentialIntegrityError"

    assert client.delete(f"/api/doctors/{doctor}").status_code == 200
    assert client.delete(f"/api/specializations/{spec}").status_code == 200


def test_missing_rows_are_404(client):
    assert client.get("/api/appointments/999").status_code == 404
    assert client.get("/api/invoices/999").status_code == 404
    assert client.delete("/api/patients/999").status_code == 404


def test_sub_cent_payment_is_unprocessable(client):
    patient = _patient(client)
    doctor = _doctor(client, 6)
    aid = client.post(
        "/api/appointments", json={"patient_id": patient, "doctor_id": doctor, "scheduled_at": "2026-04-01T09:00:00"}
    ).json()["appointment_id"]
    iid = client.post(f"/api/appointments/{aid}/invoice", json={"total_amount": "20.00"}).json()["invoice_id"]

    r = client.post(f"/api/invoices/{iid}/payments", json={"amount": "10.005", "method": "cash"})
    assert r.status_code == 422
    assert r.json()["error"] == "RuleViolationError"
