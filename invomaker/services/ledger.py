# invomaker/services/ledger.py
"""
Registre des factures : montants, paiements et statut.

Toute modification d une facture (lignes, frais, paiements, statut) passe par
un verrou asyncio propre a la facture, puis par `_reconcile` qui recalcule les
montants derives depuis les lignes et la totalite des paiements et les ecrit
en une seule transaction. Deux factures differentes avancent en parallele.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set

from invomaker.models.catalog import ProductType
from invomaker.models.invoice import (
    Invoice, InvoiceCreate, InvoiceDetail, InvoiceLineItem, InvoiceStatus,
    InvoiceUpdate, LineItemInput, Payment, PaymentCreate, PaymentUpdate,
)
from invomaker.services.calculator import ZERO, InvoiceTotals, calculate_totals
from invomaker.services.errors import (
    InconsistentState, InvalidInput, InvalidStatusTransition, NotFound,
)
from invomaker.services.status import apply_transition, derive_status

logger = logging.getLogger(__name__)

DEFAULT_QUANTITY = Decimal("1")


def _new_id() -> str:
    return uuid.uuid4().hex


class _InvoiceLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class InvoiceLedger:

    def __init__(self, store, today: Callable[[], date] = date.today):
        self.store = store
        self._today = today
        self._locks: Dict[str, _InvoiceLock] = {}
        self._in_flight: Set[str] = set()
        self._numbering_lock = asyncio.Lock()

    @asynccontextmanager
    async def _lock(self, invoice_id: str):
        """Verrou de la facture, retire du registre des que plus personne ne le tient ni ne l attend."""
        entry = self._locks.get(invoice_id)
        if entry is None:
            entry = self._locks[invoice_id] = _InvoiceLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[invoice_id]

    # Recalcul

    async def _reconcile(self, invoice_id: str) -> Invoice:
        """
        Recalcule totaux, montant paye, solde et statut puis les ecrit ensemble.

        Le montant paye est toujours resomme depuis tous les paiements, jamais
        incremente. Doit etre appele sous le verrou de la facture.
        """
        if invoice_id in self._in_flight:
            raise InconsistentState(f"Recalcul deja en cours pour la facture {invoice_id}")
        self._in_flight.add(invoice_id)
        try:
            invoice = await self.store.load_invoice(invoice_id)
            items = await self.store.load_invoice_items(invoice_id)
            payments = await self.store.load_payments(invoice_id)

            totals = calculate_totals(items, invoice.shipping_fee, invoice.extra_fees)
            paid_amount = sum((p.amount for p in payments), ZERO)
            balance = totals.total - paid_amount
            status = derive_status(invoice.status, paid_amount, balance, invoice.due_date, self._today())

            async with self.store.atomic():
                updated = await self.store.persist_invoice_totals(invoice_id, totals, paid_amount, balance)
                if status != invoice.status:
                    updated = await self.store.persist_invoice_status(invoice_id, status)
                    logger.info("Changement de statut", extra={"extra": {
                        "invoice_id": invoice_id,
                        "from": invoice.status.value,
                        "to": status.value,
                    }})

            logger.info("Facture recalculee", extra={"extra": {
                "invoice_id": invoice_id,
                "total": str(totals.total),
                "paid_amount": str(paid_amount),
                "balance": str(balance),
                "status": status.value,
            }})
            return updated
        finally:
            self._in_flight.discard(invoice_id)

    async def recalculate(self, invoice_id: str) -> Invoice:
        async with self._lock(invoice_id):
            return await self._reconcile(invoice_id)

    async def refresh_overdue(self) -> List[Invoice]:
        """Repasse toutes les factures dans la derivation de statut ; retourne celles qui ont change."""
        changed = []
        for invoice in await self.store.list_invoices():
            async with self._lock(invoice.id):
                try:
                    updated = await self._reconcile(invoice.id)
                except NotFound:
                    # supprimee entre la liste et le verrou
                    continue
            if updated.status != invoice.status:
                changed.append(updated)
        return changed

    # Lignes

    async def _snapshot_items(self, invoice_id: str, entries: List[LineItemInput]) -> List[InvoiceLineItem]:
        """Copie le nom, le prix et la TVA du produit au moment de l ajout."""
        items = []
        for index, entry in enumerate(entries):
            name, unit_price, tax_rate = entry.name, entry.unit_price, entry.tax_rate
            if entry.product_id and None in (name, unit_price, tax_rate):
                product = await self.store.find_product(entry.product_id)
                if product is None:
                    raise NotFound(f"Produit {entry.product_id} non trouve")
                name = product.name if name is None else name
                unit_price = product.unit_price if unit_price is None else unit_price
                tax_rate = product.tax_rate if tax_rate is None else tax_rate

            items.append(InvoiceLineItem(
                id=_new_id(),
                invoice_id=invoice_id,
                product_id=entry.product_id,
                name=name or "",
                description=entry.description,
                quantity=DEFAULT_QUANTITY if entry.quantity is None else entry.quantity,
                unit_price=ZERO if unit_price is None else unit_price,
                discount=ZERO if entry.discount is None else entry.discount,
                tax_rate=ZERO if tax_rate is None else tax_rate,
                sort_order=index,
            ))
        return items

    async def preview_totals(self, entries: List[LineItemInput], shipping_fee=ZERO, extra_fees=ZERO) -> InvoiceTotals:
        items = await self._snapshot_items("preview", entries)
        return calculate_totals(items, shipping_fee, extra_fees)

    # Factures

    async def _next_invoice_number(self) -> str:
        business = await self.store.load_business()
        prefix = business.invoice_prefix or "INV"
        if business.auto_numbering and business.next_invoice_number:
            number = f"{prefix}-{business.next_invoice_number:04d}"
            await self.store.save_business(
                business.model_copy(update={"next_invoice_number": business.next_invoice_number + 1})
            )
            return number
        count = await self.store.count_invoices()
        return f"{prefix}-{count + 1:04d}"

    async def _check_customer(self, customer_id: Optional[str]) -> None:
        if customer_id is not None:
            await self.store.load_customer(customer_id)

    async def create_invoice(self, data: InvoiceCreate) -> Invoice:
        business = await self.store.load_business()
        await self._check_customer(data.customer_id)
        issue_date = data.issue_date or self._today()
        due_date = data.due_date or issue_date + timedelta(days=business.default_payment_terms)
        invoice_id = _new_id()

        async with self._numbering_lock, self._lock(invoice_id):
            async with self.store.atomic():
                invoice = Invoice(
                    id=invoice_id,
                    invoice_number=await self._next_invoice_number(),
                    customer_id=data.customer_id,
                    status=InvoiceStatus.DRAFT,
                    issue_date=issue_date,
                    due_date=due_date,
                    currency=data.currency or business.currency,
                    shipping_fee=data.shipping_fee or ZERO,
                    extra_fees=data.extra_fees or ZERO,
                    notes=data.notes,
                    terms=data.terms,
                )
                await self.store.insert_invoice(invoice)
                items = await self._snapshot_items(invoice_id, data.items)
                await self.store.replace_invoice_items(invoice_id, items)
                created = await self._reconcile(invoice_id)

        logger.info("Facture creee", extra={"extra": {
            "invoice_id": invoice_id,
            "invoice_number": created.invoice_number,
            "items": len(data.items),
            "total": str(created.total),
        }})
        return created

    async def update_invoice(self, invoice_id: str, changes: InvoiceUpdate) -> Invoice:
        fields = changes.model_dump(exclude_unset=True, exclude={"items"})
        touches_amounts = (
            changes.items is not None or "shipping_fee" in fields or "extra_fees" in fields
        )
        for fee in ("shipping_fee", "extra_fees"):
            if fee in fields and fields[fee] is None:
                fields[fee] = ZERO
        for required in ("issue_date", "due_date", "currency"):
            if required in fields and fields[required] is None:
                del fields[required]
        if fields.get("customer_id") is not None:
            await self._check_customer(fields["customer_id"])

        async with self._lock(invoice_id):
            async with self.store.atomic():
                invoice = await self.store.load_invoice(invoice_id)
                if touches_amounts and invoice.status == InvoiceStatus.CANCELLED:
                    raise InvalidStatusTransition(f"Facture {invoice.invoice_number} annulee")
                if fields:
                    await self.store.update_invoice_fields(invoice_id, **fields)
                if changes.items is not None:
                    items = await self._snapshot_items(invoice_id, changes.items)
                    await self.store.replace_invoice_items(invoice_id, items)
                return await self._reconcile(invoice_id)

    async def _transition(self, invoice_id: str, target: InvoiceStatus) -> Invoice:
        async with self._lock(invoice_id):
            async with self.store.atomic():
                invoice = await self.store.load_invoice(invoice_id)
                status = apply_transition(invoice.status, target)
                await self.store.persist_invoice_status(invoice_id, status)
                logger.info("Changement de statut", extra={"extra": {
                    "invoice_id": invoice_id,
                    "from": invoice.status.value,
                    "to": status.value,
                }})
                if invoice.status == InvoiceStatus.DRAFT and status == InvoiceStatus.SENT:
                    await self._release_stock(invoice_id)
                return await self._reconcile(invoice_id)

    async def _release_stock(self, invoice_id: str) -> None:
        """Sortie de stock des lignes produit quand la facture quitte le brouillon. Jamais sous zero."""
        for item in await self.store.load_invoice_items(invoice_id):
            if not item.product_id:
                continue
            product = await self.store.find_product(item.product_id)
            if product is None:
                logger.warning("Produit introuvable, stock non decremente", extra={"extra": {
                    "invoice_id": invoice_id,
                    "product_id": item.product_id,
                }})
                continue
            if product.type != ProductType.PRODUCT or product.stock_qty is None:
                continue
            stock_qty = max(ZERO, product.stock_qty - item.quantity)
            await self.store.save_product(product.model_copy(update={"stock_qty": stock_qty}))
            logger.info("Stock decremente", extra={"extra": {
                "product_id": product.id,
                "quantity": str(item.quantity),
                "stock_qty": str(stock_qty),
            }})

    async def send_invoice(self, invoice_id: str) -> Invoice:
        return await self._transition(invoice_id, InvoiceStatus.SENT)

    async def cancel_invoice(self, invoice_id: str) -> Invoice:
        return await self._transition(invoice_id, InvoiceStatus.CANCELLED)

    async def delete_invoice(self, invoice_id: str) -> None:
        async with self._lock(invoice_id):
            async with self.store.atomic():
                await self.store.delete_invoice(invoice_id)
        logger.info("Facture supprimee", extra={"extra": {"invoice_id": invoice_id}})

    async def duplicate_invoice(self, invoice_id: str) -> Invoice:
        """Nouveau brouillon avec les memes lignes, emis aujourd hui, meme delai de paiement."""
        source = await self.store.load_invoice(invoice_id)
        items = await self.store.load_invoice_items(invoice_id)
        issue_date = self._today()
        customer_id = source.customer_id
        if customer_id and await self.store.find_customer(customer_id) is None:
            customer_id = None
        return await self.create_invoice(InvoiceCreate(
            customer_id=customer_id,
            issue_date=issue_date,
            due_date=issue_date + (source.due_date - source.issue_date),
            currency=source.currency,
            notes=source.notes,
            terms=source.terms,
            shipping_fee=source.shipping_fee,
            extra_fees=source.extra_fees,
            items=[
                LineItemInput(
                    product_id=item.product_id,
                    name=item.name,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    discount=item.discount,
                    tax_rate=item.tax_rate,
                )
                for item in items
            ],
        ))

    async def get_invoice(self, invoice_id: str) -> InvoiceDetail:
        invoice = await self.store.load_invoice(invoice_id)
        customer = None
        if invoice.customer_id:
            customer = await self.store.find_customer(invoice.customer_id)
        return InvoiceDetail(
            **invoice.model_dump(),
            items=await self.store.load_invoice_items(invoice_id),
            payments=await self.list_payments(invoice_id),
            customer=customer,
        )

    async def list_invoices(
        self,
        status: Optional[InvoiceStatus] = None,
        customer_id: Optional[str] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> List[Invoice]:
        return await self.store.list_invoices(status, customer_id, from_date, to_date)

    # Paiements

    async def list_payments(self, invoice_id: str) -> List[Payment]:
        await self.store.load_invoice(invoice_id)
        return await self.store.load_payments(invoice_id)

    async def add_payment(self, invoice_id: str, data: PaymentCreate) -> Payment:
        if data.amount <= 0:
            raise InvalidInput("Le montant du paiement doit etre positif")
        payment = Payment(
            id=_new_id(),
            invoice_id=invoice_id,
            amount=data.amount,
            payment_date=data.payment_date or self._today(),
            payment_method=data.payment_method,
            reference=data.reference,
            notes=data.notes,
        )
        async with self._lock(invoice_id):
            async with self.store.atomic():
                await self.store.insert_payment(payment)
                await self._reconcile(invoice_id)

        logger.info("Paiement enregistre", extra={"extra": {
            "invoice_id": invoice_id,
            "payment_id": payment.id,
            "amount": str(payment.amount),
            "method": payment.payment_method.value,
        }})
        return payment

    async def update_payment(self, payment_id: str, changes: PaymentUpdate) -> Payment:
        fields = changes.model_dump(exclude_unset=True)
        for required in ("amount", "payment_date", "payment_method"):
            if required in fields and fields[required] is None:
                del fields[required]
        if "amount" in fields and fields["amount"] <= 0:
            raise InvalidInput("Le montant du paiement doit etre positif")

        invoice_id = (await self.store.load_payment(payment_id)).invoice_id
        async with self._lock(invoice_id):
            async with self.store.atomic():
                payment = await self.store.load_payment(payment_id)
                fields["updated_at"] = datetime.now(timezone.utc)
                updated = payment.model_copy(update=fields)
                await self.store.save_payment(updated)
                await self._reconcile(invoice_id)
        return updated

    async def delete_payment(self, payment_id: str) -> None:
        invoice_id = (await self.store.load_payment(payment_id)).invoice_id
        async with self._lock(invoice_id):
            async with self.store.atomic():
                await self.store.delete_payment(payment_id)
                await self._reconcile(invoice_id)
        logger.info("Paiement supprime", extra={"extra": {
            "invoice_id": invoice_id,
            "payment_id": payment_id,
        }})
