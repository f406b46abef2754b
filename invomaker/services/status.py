# invomaker/services/status.py
from datetime import date
from decimal import Decimal

from invomaker.models.invoice import InvoiceStatus
from invomaker.services.errors import InvalidStatusTransition


def derive_status(
    current: InvoiceStatus,
    paid_amount: Decimal,
    balance: Decimal,
    due_date: date,
    today: date,
) -> InvoiceStatus:
    """
    Statut derive des paiements et de l echeance.

    `cancelled` n est jamais ecrase. `paid` et `partial` ne sont pas figes : si
    tous les paiements disparaissent la facture repasse en `sent`. Aucun retour
    automatique vers `draft`.
    """
    if current == InvoiceStatus.CANCELLED:
        return current

    if balance <= 0 and paid_amount > 0:
        return InvoiceStatus.PAID
    if paid_amount > 0 and balance > 0:
        return InvoiceStatus.PARTIAL

    status = current
    if status in (InvoiceStatus.PAID, InvoiceStatus.PARTIAL):
        status = InvoiceStatus.SENT
    if status == InvoiceStatus.SENT and due_date < today:
        return InvoiceStatus.OVERDUE
    return status


def apply_transition(current: InvoiceStatus, target: InvoiceStatus) -> InvoiceStatus:
    """Transitions declenchees par l utilisateur : envoi et annulation."""
    if target == InvoiceStatus.SENT and current == InvoiceStatus.DRAFT:
        return target
    if target == InvoiceStatus.CANCELLED and current != InvoiceStatus.CANCELLED:
        return target
    raise InvalidStatusTransition(f"{current.value} -> {target.value}")
