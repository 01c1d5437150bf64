from __future__ import annotations

import sys

from sqlalchemy import text
from sqlalchemy.engine import Connection

from clinic_booking.db import get_engine

# Every query counts the rows breaking one rule; a healthy database returns 0 everywhere.
CHECKS: dict[str, str] = {
    "double_booked_slots": """
        SELECT COUNT(*) FROM (
            SELECT doctor_id, scheduled_at FROM appointments
            GROUP BY doctor_id, scheduled_at HAVING COUNT(*) > 1
        ) dup
    """,
    "appointments_with_many_invoices": """
        SELECT COUNT(*) FROM (
            SELECT appointment_id FROM invoices
            GROUP BY appointment_id HAVING COUNT(*) > 1
        ) dup
    """,
    "non_positive_durations": "SELECT COUNT(*) FROM prescription_items WHERE duration_days <= 0",
    "negative_invoice_totals": "SELECT COUNT(*) FROM invoices WHERE total_amount < 0",
    "non_positive_payments": "SELECT COUNT(*) FROM payments WHERE amount <= 0",
    "orphan_appointments": """
        SELECT COUNT(*) FROM appointments a
        LEFT JOIN patients p ON p.patient_id = a.patient_id
        LEFT JOIN doctors d ON d.doctor_id = a.doctor_id
        WHERE p.patient_id IS NULL OR d.doctor_id IS NULL
    """,
    "orphan_prescription_items": """
        SELECT COUNT(*) FROM prescription_items i
        LEFT JOIN prescriptions p ON p.prescription_id = i.prescription_id
        LEFT JOIN medications m ON m.med_id = i.med_id
        WHERE p.prescription_id IS NULL OR m.med_id IS NULL
    """,
    "orphan_payments": """
        SELECT COUNT(*) FROM payments pay
        LEFT JOIN invoices i ON i.invoice_id = pay.invoice_id
        WHERE i.invoice_id IS NULL
    """,
    "invoice_patient_mismatch": """
        SELECT COUNT(*) FROM invoices i
        JOIN appointments a ON a.appointment_id = i.appointment_id
        WHERE a.patient_id <> i.patient_id
    """,
    "overpaid_invoices": """
        SELECT COUNT(*) FROM invoices i
        JOIN (SELECT invoice_id, SUM(amount) AS paid FROM payments GROUP BY invoice_id) p
          ON p.invoice_id = i.invoice_id
        WHERE p.paid > i.total_amount
    """,
}


def run_audit(conn: Connection) -> dict[str, int]:
    return {name: int(conn.execute(text(sql)).scalar_one()) for name, sql in CHECKS.items()}


def report(results: dict[str, int]) -> bool:
    """Print one line per check; True when every count is zero."""
    for name, count in results.items():
        print(f"{'OK ' if count == 0 else 'ERR'} {name}: {count}")
    return not any(results.values())


def main() -> None:
    engine = get_engine()
    print("DB:", engine.url.render_as_string(hide_password=True))

    with engine.connect() as conn:
        results = run_audit(conn)

    if not report(results):
        sys.exit(1)


if __name__ == "__main__":
    main()
