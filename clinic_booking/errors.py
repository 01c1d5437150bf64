"""
Domain errors for the clinic booking backend.

Constraint violations are raised by the database and translated here from
``sqlalchemy.exc.IntegrityError``; nothing is retried, the caller decides.
"""
from __future__ import annotations

import re

from sqlalchemy.exc import IntegrityError


class ClinicError(Exception):
    """Root of every error raised by the services."""


class NotFoundError(ClinicError):
    def __init__(self, entity: str, key: object) -> None:
        super().__init__(f"{entity} {key} not found.")
        self.entity = entity
        self.key = key


class RuleViolationError(ClinicError):
    """A booking or billing rule checked by the services themselves."""


class InvalidTransitionError(RuleViolationError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Appointment cannot go from '{current}' to '{target}'.")
        self.current = current
        self.target = target


class ConstraintViolation(ClinicError):
    """A write rejected by the storage engine."""

    def __init__(self, message: str, constraint: str | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.constraint = constraint
        self.detail = detail


class DoubleBookingError(ConstraintViolation):
    pass


class DuplicateKeyError(ConstraintViolation):
    pass


class ReferentialIntegrityError(ConstraintViolation):
    pass


class CheckViolationError(ConstraintViolation):
    pass


DOUBLE_BOOKING_CONSTRAINT = "uq_doctor_time"

# sqlite:   UNIQUE constraint failed: appointments.doctor_id, appointments.scheduled_at
# mysql:    (1062, "Duplicate entry '1-2026-01-14 10:30:00' for key 'appointments.uq_doctor_time'")
# postgres: duplicate key value violates unique constraint "uq_doctor_time"
_SQLITE_DETAIL = re.compile(r"constraint failed: (?P<detail>[^\n]+)", re.IGNORECASE)
_QUOTED_NAME = re.compile(r"""(?:key|constraint)\s+['"`](?P<name>[\w.]+)['"`]""", re.IGNORECASE)


def _constraint_name(message: str) -> str | None:
    m = _QUOTED_NAME.search(message)
    if m:
        # mysql 8 prefixes the table: 'appointments.uq_doctor_time'
        return m.group("name").rsplit(".", 1)[-1]
    m = _SQLITE_DETAIL.search(message)
    if m:
        return m.group("detail").strip()
    return None


def translate_integrity_error(exc: IntegrityError) -> ConstraintViolation:
    """Map an ``IntegrityError`` from SQLite, MySQL or PostgreSQL to a domain error."""
    message = str(exc.orig) if exc.orig is not None else str(exc)
    lowered = message.lower()
    name = _constraint_name(message)

    if DOUBLE_BOOKING_CONSTRAINT in lowered or (
        "appointments.doctor_id" in lowered and "appointments.scheduled_at" in lowered
    ):
        return DoubleBookingError(
            "The doctor already has an appointment at that time.", constraint=DOUBLE_BOOKING_CONSTRAINT, detail=message
        )

    if "foreign key" in lowered:
        return ReferentialIntegrityError(
            "The row references a missing parent or is still referenced by other rows.",
            constraint=name,
            detail=message,
        )

    if "check constraint" in lowered:
        return CheckViolationError(
            f"Value rejected by check constraint {name or '(unnamed)'}.", constraint=name, detail=message
        )

    if "unique" in lowered or "duplicate" in lowered:
        return DuplicateKeyError(f"Duplicate value for {name or 'a unique key'}.", constraint=name, detail=message)

    return ConstraintViolation("Write rejected by the database.", constraint=name, detail=message)
