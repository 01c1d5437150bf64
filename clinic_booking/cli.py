from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import date, datetime

from clinic_booking.db import configure_engine, get_engine
from clinic_booking.errors import ClinicError
from clinic_booking.schema import SUPPORTED_DIALECTS, render_ddl, write_ddl
from clinic_booking.seed import seed_base
from clinic_booking.services import (
    book_appointment,
    change_appointment_status,
    create_doctor,
    create_patient,
    doctor_schedule,
    init_db,
    invoice_balance,
    issue_invoice,
    list_doctors,
    list_medications,
    list_patients,
    list_rooms,
    list_specializations,
    record_payment,
    reschedule_appointment,
)
from clinic_booking.tools.audit_integrity import report, run_audit

LOG_LEVEL = os.getenv("CLINIC_LOG_LEVEL", "INFO").upper()


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    seed_base()
    print("Database initialized and reference data seeded.")


def cmd_ddl(args: argparse.Namespace) -> None:
    if args.output:
        path = write_ddl(args.output, args.dialect)
        print(f"DDL written to {path}")
    else:
        print(render_ddl(args.dialect), end="")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "doctors":
        for d in list_doctors(active_only=not args.all):
            specs = ", ".join(d["specializations"]) or "-"
            print(f"{d['doctor_id']} | {d['last_name']} {d['first_name']} | {d['license_number']} | {specs}")
    elif args.entity == "patients":
        for p in list_patients():
            print(f"{p['patient_id']} | {p['last_name']} {p['first_name']} | {p['phone']} | {p['email'] or '-'}")
    elif args.entity == "rooms":
        for r in list_rooms():
            print(f"{r['room_id']} | {r['name']} ({r['type']}, capacity {r['capacity']})")
    elif args.entity == "specializations":
        for sp in list_specializations():
            print(f"{sp['spec_id']} | {sp['name']}")
    elif args.entity == "medications":
        for m in list_medications():
            print(f"{m['med_id']} | {m['name']} ({m['form']})")


def cmd_add_patient(args: argparse.Namespace) -> None:
    pid = create_patient(
        args.first_name,
        args.last_name,
        date.fromisoformat(args.dob),
        args.sex,
        args.phone,
        args.email,
    )
    print(f"Patient created: {pid}")


def cmd_add_doctor(args: argparse.Namespace) -> None:
    did = create_doctor(
        args.first_name,
        args.last_name,
        args.phone,
        args.email,
        date.fromisoformat(args.hire_date),
        args.license,
        specialization_ids=args.spec_id or (),
    )
    print(f"Doctor created: {did}")


def cmd_book(args: argparse.Namespace) -> None:
    start = datetime.fromisoformat(args.at)  # e.g. 2026-01-14T10:30
    aid = book_appointment(
        patient_id=args.patient_id,
        doctor_id=args.doctor_id,
        scheduled_at=start,
        room_id=args.room_id,
        reason=args.reason,
    )
    print(f"Appointment booked: {aid}")


def cmd_reschedule(args: argparse.Namespace) -> None:
    reschedule_appointment(args.appointment_id, datetime.fromisoformat(args.at))
    print("Rescheduled.")


def cmd_status(args: argparse.Namespace) -> None:
    status = change_appointment_status(args.appointment_id, args.status)
    print(f"Appointment {args.appointment_id}: {status.value}")


def cmd_schedule(args: argparse.Namespace) -> None:
    day = date.fromisoformat(args.day)
    rows = doctor_schedule(args.doctor_id, day, include_cancelled=args.include_cancelled)
    if not rows:
        print("No appointments.")
        return
    for r in rows:
        print(f"{r['scheduled_at']} | {r['status']} | {r['patient']} | {r['room'] or '-'} | {r['reason'] or ''}")


def cmd_invoice(args: argparse.Namespace) -> None:
    iid = issue_invoice(args.appointment_id, args.total)
    print(f"Invoice issued: {iid}")


def cmd_pay(args: argparse.Namespace) -> None:
    pid = record_payment(args.invoice_id, args.amount, args.method)
    bal = invoice_balance(args.invoice_id)
    print(f"Payment recorded: {pid} (invoice {bal.status.value}, outstanding {bal.outstanding})")


def cmd_audit(args: argparse.Namespace) -> None:
    with get_engine().connect() as conn:
        results = run_audit(conn)
    if not report(results):
        raise SystemExit(1)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clinic-booking", description="Clinic booking CLI")
    p.add_argument("--database-url", default=None, help="Overrides CLINIC_DATABASE_URL")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Create tables and seed reference data")
    p_init.set_defaults(func=cmd_init)

    p_ddl = sub.add_parser("ddl", help="Print the CREATE TABLE statements")
    p_ddl.add_argument("--dialect", choices=SUPPORTED_DIALECTS, default="mysql")
    p_ddl.add_argument("--output", default=None, help="Write to a file instead of stdout")
    p_ddl.set_defaults(func=cmd_ddl, skip_init=True)

    p_list = sub.add_parser("list", help="List entities")
    p_list.add_argument("entity", choices=["doctors", "patients", "rooms", "specializations", "medications"])
    p_list.add_argument("--all", action="store_true", help="Include inactive doctors")
    p_list.set_defaults(func=cmd_list)

    p_addp = sub.add_parser("add-patient", help="Create a patient")
    p_addp.add_argument("--first-name", required=True)
    p_addp.add_argument("--last-name", required=True)
    p_addp.add_argument("--dob", required=True, help="ISO date, e.g. 1990-05-17")
    p_addp.add_argument("--sex", choices=["M", "F", "X"], required=True)
    p_addp.add_argument("--phone", required=True)
    p_addp.add_argument("--email", default=None)
    p_addp.set_defaults(func=cmd_add_patient)

    p_addd = sub.add_parser("add-doctor", help="Create a doctor")
    p_addd.add_argument("--first-name", required=True)
    p_addd.add_argument("--last-name", required=True)
    p_addd.add_argument("--phone", required=True)
    p_addd.add_argument("--email", required=True)
    p_addd.add_argument("--hire-date", required=True)
    p_addd.add_argument("--license", required=True)
    p_addd.add_argument("--spec-id", type=int, action="append", help="Repeatable")
    p_addd.set_defaults(func=cmd_add_doctor)

    p_book = sub.add_parser("book", help="Book an appointment")
    p_book.add_argument("--patient-id", type=int, required=True)
    p_book.add_argument("--doctor-id", type=int, required=True)
    p_book.add_argument("--at", required=True, help="ISO datetime, e.g. 2026-01-14T10:30")
    p_book.add_argument("--room-id", type=int, default=None)
    p_book.add_argument("--reason", default=None)
    p_book.set_defaults(func=cmd_book)

    p_res = sub.add_parser("reschedule", help="Move a scheduled appointment")
    p_res.add_argument("--appointment-id", type=int, required=True)
    p_res.add_argument("--at", required=True)
    p_res.set_defaults(func=cmd_reschedule)

    p_status = sub.add_parser("status", help="Change appointment status")
    p_status.add_argument("--appointment-id", type=int, required=True)
    p_status.add_argument("status", choices=["checked_in", "completed", "cancelled", "no_show"])
    p_status.set_defaults(func=cmd_status)

    p_sched = sub.add_parser("schedule", help="Doctor's appointments for one day")
    p_sched.add_argument("--doctor-id", type=int, required=True)
    p_sched.add_argument("--day", required=True)
    p_sched.add_argument("--include-cancelled", action="store_true")
    p_sched.set_defaults(func=cmd_schedule)

    p_inv = sub.add_parser("invoice", help="Issue the invoice of an appointment")
    p_inv.add_argument("--appointment-id", type=int, required=True)
    p_inv.add_argument("--total", required=True)
    p_inv.set_defaults(func=cmd_invoice)

    p_pay = sub.add_parser("pay", help="Record a payment")
    p_pay.add_argument("--invoice-id", type=int, required=True)
    p_pay.add_argument("--amount", required=True)
    p_pay.add_argument("--method", choices=["cash", "card", "mpesa", "insurance", "bank"], required=True)
    p_pay.set_defaults(func=cmd_pay)

    p_audit = sub.add_parser("audit", help="Count rows breaking the integrity rules")
    p_audit.set_defaults(func=cmd_audit)

    return p


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.database_url:
        configure_engine(args.database_url)
    if not getattr(args, "skip_init", False):
        init_db()  # tables must exist

    try:
        args.func(args)
    except ClinicError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
