from datetime import datetime

import pytest
from sqlalchemy import func, select

from clinic_booking.db import db_session
from clinic_booking.errors import CheckViolationError, ReferentialIntegrityError, RuleViolationError
from clinic_booking.models import Prescription
from clinic_booking.services import (
    PrescriptionLine,
    book_appointment,
    check_in,
    complete_appointment,
    create_medication,
    issue_prescription,
    prescription_detail,
)

T = datetime(2026, 5, 4, 10, 0)


@pytest.fixture
def visit(patient, doctor) -> int:
    aid = book_appointment(patient, doctor, T)
    check_in(aid)
    return aid


def _prescriptions() -> int:
    with db_session() as s:
        return s.scalar(select(func.count()).select_from(Prescription))


def test_prescription_with_items(visit, paracetamol):
    amoxicillin = create_medication("Amoxicillin", "capsule")
    pid = issue_prescription(
        visit,
        [
            PrescriptionLine(paracetamol, "500mg", "three times daily", 5),
            (amoxicillin, "250mg", "twice daily", 7),
        ],
        notes="after meals",
    )

    detail = prescription_detail(pid)
    assert detail["appointment_id"] == visit
    assert detail["notes"] == "after meals"
    assert [(i["medication"], i["form"], i["duration_days"]) for i in detail["items"]] == [
        ("Amoxicillin", "capsule", 7),
        ("Paracetamol", "tablet", 5),
    ]


def test_completed_visit_can_still_be_prescribed(visit, paracetamol):
    complete_appointment(visit)
    assert issue_prescription(visit, [(paracetamol, "1g", "once daily", 3)])


@pytest.mark.parametrize("days", [0, -2])
def test_duration_must_be_positive(visit, paracetamol, days):
    with pytest.raises(CheckViolationError):
        issue_prescription(visit, [(paracetamol, "500mg", "daily", days)])
    assert _prescriptions() == 0


def test_scheduled_visit_cannot_be_prescribed(patient, doctor, paracetamol):
    aid = book_appointment(patient, doctor, T)
    with pytest.raises(RuleViolationError):
        issue_prescription(aid, [(paracetamol, "500mg", "daily", 2)])


def test_items_are_required_and_unique(visit, paracetamol):
    with pytest.raises(RuleViolationError):
        issue_prescription(visit, [])
    with pytest.raises(RuleViolationError):
        issue_prescription(visit, [(paracetamol, "500mg", "daily", 2), (paracetamol, "1g", "daily", 2)])


def test_unknown_medication(visit):
    with pytest.raises(ReferentialIntegrityError):
        issue_prescription(visit, [(777, "5ml", "daily", 2)])
    assert _prescriptions() == 0
