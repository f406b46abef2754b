from datetime import date
from decimal import Decimal

import pytest

from invomaker.models.invoice import InvoiceStatus
from invomaker.services.errors import InvalidStatusTransition
from invomaker.services.status import apply_transition, derive_status

TODAY = date(2024, 6, 15)
FUTURE = date(2024, 7, 1)
PAST = date(2024, 6, 1)


def _derive(current, paid, balance, due=FUTURE):
    return derive_status(current, Decimal(str(paid)), Decimal(str(balance)), due, TODAY)


def test_fully_paid():
    assert _derive(InvoiceStatus.SENT, 297, 0) == InvoiceStatus.PAID


def test_overpaid_is_paid():
    assert _derive(InvoiceStatus.PARTIAL, 300, -3) == InvoiceStatus.PAID


def test_partial_payment():
    assert _derive(InvoiceStatus.SENT, 100, 197) == InvoiceStatus.PARTIAL


def test_partial_wins_over_overdue():
    """Un paiement partiel prime sur l echeance depassee."""
    assert _derive(InvoiceStatus.SENT, 100, 197, due=PAST) == InvoiceStatus.PARTIAL


def test_sent_past_due_becomes_overdue():
    assert _derive(InvoiceStatus.SENT, 0, 297, due=PAST) == InvoiceStatus.OVERDUE


def test_due_today_is_not_overdue():
    assert _derive(InvoiceStatus.SENT, 0, 297, due=TODAY) == InvoiceStatus.SENT


def test_draft_past_due_stays_draft():
    """Seule une facture envoyee peut passer en retard."""
    assert _derive(InvoiceStatus.DRAFT, 0, 297, due=PAST) == InvoiceStatus.DRAFT


def test_overdue_is_left_unchanged():
    assert _derive(InvoiceStatus.OVERDUE, 0, 297, due=FUTURE) == InvoiceStatus.OVERDUE


def test_paid_reverts_when_payments_removed():
    """Sans paiement, paid repasse en sent (puis overdue si l echeance est passee)."""
    assert _derive(InvoiceStatus.PAID, 0, 297) == InvoiceStatus.SENT
    assert _derive(InvoiceStatus.PARTIAL, 0, 297, due=PAST) == InvoiceStatus.OVERDUE


@pytest.mark.parametrize("paid,balance,due", [(297, 0, FUTURE), (100, 197, PAST), (0, 297, PAST), (0, 0, FUTURE)])
def test_cancelled_is_never_overwritten(paid, balance, due):
    """Une facture annulee le reste quel que soit son solde."""
    assert _derive(InvoiceStatus.CANCELLED, paid, balance, due=due) == InvoiceStatus.CANCELLED


def test_send_from_draft():
    assert apply_transition(InvoiceStatus.DRAFT, InvoiceStatus.SENT) == InvoiceStatus.SENT


def test_send_twice_is_refused():
    with pytest.raises(InvalidStatusTransition):
        apply_transition(InvoiceStatus.SENT, InvoiceStatus.SENT)


@pytest.mark.parametrize("current", [s for s in InvoiceStatus if s != InvoiceStatus.CANCELLED])
def test_cancel_from_any_state(current):
    assert apply_transition(current, InvoiceStatus.CANCELLED) == InvoiceStatus.CANCELLED


def test_cancel_twice_is_refused():
    with pytest.raises(InvalidStatusTransition):
        apply_transition(InvoiceStatus.CANCELLED, InvoiceStatus.CANCELLED)


def test_paid_cannot_be_set_by_hand():
    with pytest.raises(InvalidStatusTransition):
        apply_transition(InvoiceStatus.SENT, InvoiceStatus.PAID)
