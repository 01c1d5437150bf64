from datetime import datetime
from decimal import Decimal

import pytest

from clinic_booking import services
from clinic_booking.errors import CheckViolationError, DuplicateKeyError, NotFoundError, RuleViolationError
from clinic_booking.models import InvoiceStatus
from clinic_booking.services import (
    book_appointment,
    cancel_appointment,
    invoice_balance,
    issue_invoice,
    record_payment,
    void_invoice,
)

T = datetime(2026, 4, 6, 14, 0)


@pytest.fixture
def appointment(patient, doctor) -> int:
    return book_appointment(patient, doctor, T)


@pytest.fixture
def invoice(appointment) -> int:
    return issue_invoice(appointment, Decimal("100.00"))


def test_one_invoice_per_appointment(appointment):
    issue_invoice(appointment, "40")
    with pytest.raises(DuplicateKeyError):
        issue_invoice(appointment, "40")


def test_negative_total_is_rejected(appointment):
    with pytest.raises(CheckViolationError) as err:
        issue_invoice(appointment, "-1")
    assert err.value.constraint == "ck_inv_total_nonnegative"

    # rolled back: the appointment can still be invoiced
    assert issue_invoice(appointment, "0.00")


def test_zero_invoice_is_born_paid(appointment):
    iid = issue_invoice(appointment, 0)
    assert invoice_balance(iid).status is InvoiceStatus.PAID


def test_cancelled_appointment_is_not_invoiced(appointment):
    cancel_appointment(appointment)
    with pytest.raises(RuleViolationError):
        issue_invoice(appointment, "10")


def test_invoice_for_missing_appointment():
    with pytest.raises(NotFoundError):
        issue_invoice(404, "10")


@pytest.mark.parametrize("amount", ["0", "-5.00"])
def test_non_positive_payment_is_rejected(invoice, amount):
    with pytest.raises(CheckViolationError) as err:
        record_payment(invoice, amount, "cash")
    assert err.value.constraint == "ck_pay_amount_positive"
    assert invoice_balance(invoice).paid == Decimal("0.00")


def test_partial_payments_settle_the_invoice(invoice):
    record_payment(invoice, "60.00", "card")
    bal = invoice_balance(invoice)
    assert bal.status is InvoiceStatus.UNPAID
    assert bal.outstanding == Decimal("40.00")

    record_payment(invoice, Decimal("40"), "mpesa")
    bal = invoice_balance(invoice)
    assert bal.status is InvoiceStatus.PAID
    assert bal.paid == Decimal("100.00")
    assert bal.outstanding == Decimal("0.00")

    with pytest.raises(RuleViolationError):
        record_payment(invoice, "1", "cash")


def test_overpayment_is_rejected(invoice):
    record_payment(invoice, "60.00", "insurance")
    with pytest.raises(RuleViolationError):
        record_payment(invoice, "50.00", "cash")
    assert invoice_balance(invoice).paid == Decimal("60.00")


def test_unknown_payment_method(invoice):
    with pytest.raises(RuleViolationError):
        record_payment(invoice, "10", "cheque")


def test_void_invoice(invoice):
    void_invoice(invoice)
    assert invoice_balance(invoice).status is InvoiceStatus.VOID
    with pytest.raises(RuleViolationError):
        record_payment(invoice, "10", "cash")


def test_paid_invoice_cannot_be_voided(invoice):
    record_payment(invoice, "10", "bank")
    with pytest.raises(RuleViolationError):
        void_invoice(invoice)


@pytest.mark.parametrize("amount", ["abc", "", "NaN", "Infinity"])
def test_amount_that_is_not_a_number(appointment, invoice, amount):
    with pytest.raises(RuleViolationError, match="Invalid amount"):
        issue_invoice(appointment, amount)
    with pytest.raises(RuleViolationError, match="Invalid amount"):
        record_payment(invoice, amount, "cash")


@pytest.mark.parametrize("amount", ["10.005", "0.004"])
def test_sub_cent_amounts_are_not_rounded(invoice, amount):
    with pytest.raises(RuleViolationError, match="two decimal places"):
        record_payment(invoice, amount, "cash")
    assert invoice_balance(invoice).paid == Decimal("0.00")


def test_trailing_zeros_are_whole_cents(invoice):
    record_payment(invoice, "10.000", "cash")
    assert invoice_balance(invoice).paid == Decimal("10.00")


def test_payment_racing_another_is_rolled_back(invoice, monkeypatch):
    record_payment(invoice, "80.00", "cash")

    # the first read of the paid sum misses the payment above
    real_paid_amount = services._paid_amount
    calls = []

    def stale_paid_amount(s, invoice_id):
        calls.append(invoice_id)
        if len(calls) == 1:
            return Decimal("0.00")
        return real_paid_amount(s, invoice_id)

    monkeypatch.setattr(services, "_paid_amount", stale_paid_amount)

    with pytest.raises(RuleViolationError):
        record_payment(invoice, "80.00", "card")

    bal = invoice_balance(invoice)
    assert bal.paid == Decimal("80.00")
    assert bal.status is InvoiceStatus.UNPAID
