# invomaker/services/reports.py
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from pydantic import BaseModel

from invomaker.models.invoice import Invoice, InvoiceStatus
from invomaker.services.calculator import ZERO


class ReportTotals(BaseModel):
    total_invoiced: Decimal = ZERO
    total_paid: Decimal = ZERO
    total_outstanding: Decimal = ZERO
    invoice_count: int = 0
    paid_count: int = 0
    overdue_count: int = 0


def report_totals(
    invoices: Iterable[Invoice],
    today: date,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
) -> ReportTotals:
    """
    Totaux du tableau de bord sur la periode d emission [from_date, to_date].

    Une facture compte comme en retard des que son echeance est passee et
    qu elle n est ni payee ni annulee, quel que soit son statut stocke.
    """
    selected = [
        inv for inv in invoices
        if (from_date is None or inv.issue_date >= from_date)
        and (to_date is None or inv.issue_date <= to_date)
    ]
    return ReportTotals(
        total_invoiced=sum((inv.total for inv in selected), ZERO),
        total_paid=sum((inv.paid_amount for inv in selected), ZERO),
        total_outstanding=sum((inv.balance for inv in selected), ZERO),
        invoice_count=len(selected),
        paid_count=sum(1 for inv in selected if inv.status == InvoiceStatus.PAID),
        overdue_count=sum(
            1 for inv in selected
            if inv.status not in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)
            and inv.due_date < today
        ),
    )
