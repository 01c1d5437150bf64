from __future__ import annotations

from sqlalchemy import select

from .db import db_session
from .models import InsuranceProvider, Medication, MedicationForm, Room, RoomType, Specialization

SPECIALIZATIONS = ["General Practice", "Cardiology", "Pediatrics", "Dermatology"]

MEDICATIONS = [
    ("Paracetamol", MedicationForm.TABLET),
    ("Amoxicillin", MedicationForm.CAPSULE),
    ("Ibuprofen Syrup", MedicationForm.SYRUP),
    ("Hydrocortisone", MedicationForm.CREAM),
]

INSURANCE_PROVIDERS = [
    ("National Health Fund", "claims@nhf.example"),
    ("CarePlus Insurance", "support@careplus.example"),
]

ROOMS = [
    ("Consult 1", RoomType.CONSULT, 1),
    ("Consult 2", RoomType.CONSULT, 1),
    ("Lab", RoomType.LAB, 2),
]


def seed_base() -> None:
    """
    Insert the minimal reference data (idempotent):
    - specializations
    - medications
    - insurance providers
    - rooms
    """
    with db_session() as s:
        for name in SPECIALIZATIONS:
            if s.execute(select(Specialization).where(Specialization.name == name)).scalar_one_or_none() is None:
                s.add(Specialization(name=name))

        for name, form in MEDICATIONS:
            if s.execute(select(Medication).where(Medication.name == name)).scalar_one_or_none() is None:
                s.add(Medication(name=name, form=form))

        for name, email in INSURANCE_PROVIDERS:
            if s.execute(select(InsuranceProvider).where(InsuranceProvider.name == name)).scalar_one_or_none() is None:
                s.add(InsuranceProvider(name=name, contact_email=email))

        for name, room_type, capacity in ROOMS:
            if s.execute(select(Room).where(Room.name == name)).scalar_one_or_none() is None:
                s.add(Room(name=name, type=room_type, capacity=capacity))
