from __future__ import annotations

import itertools
from datetime import date

import pytest

from clinic_booking import db
from clinic_booking.services import (
    create_doctor,
    create_medication,
    create_patient,
    create_room,
    create_specialization,
    drop_db,
    init_db,
)

_seq = itertools.count(1)


@pytest.fixture(autouse=True)
def database():
    """Fresh in-memory SQLite database for every test."""
    engine = db.configure_engine("sqlite://")
    init_db()
    yield engine
    drop_db()


@pytest.fixture
def make_patient():
    def _make(first_name: str = "Amina", last_name: str = "Otieno", **kw) -> int:
        n = next(_seq)
        kw.setdefault("phone", f"+254700{n:06d}")
        kw.setdefault("email", f"patient{n}@example.com")
        return create_patient(first_name, last_name, kw.pop("date_of_birth", date(1990, 5, 17)), kw.pop("sex", "F"), **kw)

    return _make


@pytest.fixture
def make_doctor():
    def _make(first_name: str = "Brian", last_name: str = "Kamau", specialization_ids=(), **kw) -> int:
        n = next(_seq)
        return create_doctor(
            first_name,
            last_name,
            kw.get("phone", f"+254711{n:06d}"),
            kw.get("email", f"doctor{n}@clinic.example"),
            kw.get("hire_date", date(2020, 1, 6)),
            kw.get("license_number", f"LIC-{n:05d}"),
            specialization_ids=specialization_ids,
        )

    return _make


@pytest.fixture
def patient(make_patient) -> int:
    return make_patient()


@pytest.fixture
def doctor(make_doctor) -> int:
    return make_doctor()


@pytest.fixture
def cardiology() -> int:
    return create_specialization("Cardiology")


@pytest.fixture
def room() -> int:
    return create_room("Consult 1")


@pytest.fixture
def paracetamol() -> int:
    return create_medication("Paracetamol", "tablet")
