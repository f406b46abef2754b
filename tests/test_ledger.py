import asyncio
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import delete

from invomaker.database import create_engine
from invomaker.models.catalog import BusinessProfile, CustomerData, ProductData, ProductType, ProductUpdate
from invomaker.models.invoice import (
    InvoiceCreate, InvoiceStatus, InvoiceUpdate, LineItemInput, PaymentCreate, PaymentUpdate,
)
from invomaker.models.tables import InvoiceRow
from invomaker.services.catalog import Catalog
from invomaker.services.errors import (
    InconsistentState, InvalidInput, InvalidStatusTransition, NotFound,
)
from invomaker.services.ledger import InvoiceLedger
from invomaker.services.store import LedgerStore


class Clock:
    def __init__(self, today):
        self.today = today

    def __call__(self):
        return self.today


class SlowStore(LedgerStore):
    """Rend la main a la boucle pendant la lecture des paiements."""

    async def load_payments(self, invoice_id):
        payments = await super().load_payments(invoice_id)
        await asyncio.sleep(0.01)
        return payments


class FailingStore(LedgerStore):
    fail_status = False

    async def persist_invoice_status(self, invoice_id, status):
        if self.fail_status:
            raise RuntimeError("base indisponible")
        return await super().persist_invoice_status(invoice_id, status)


def run(coro):
    return asyncio.run(coro)


def items_with_tax():
    return [
        LineItemInput(name="Conseil", quantity=3, unit_price=80, tax_rate=10),
        LineItemInput(name="Deplacement", quantity=1, unit_price=30, tax_rate=10),
    ]


@pytest.fixture
def clock():
    return Clock(date(2024, 6, 15))


def make_ledger(engine, clock, store_class=LedgerStore):
    store = store_class(engine)
    run(store.create_all())
    return InvoiceLedger(store, today=clock)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    yield engine
    run(engine.dispose())


@pytest.fixture
def ledger(engine, clock):
    return make_ledger(engine, clock)


async def _sent_invoice(ledger, due_date=date(2024, 7, 1)):
    invoice = await ledger.create_invoice(InvoiceCreate(
        issue_date=date(2024, 6, 1), due_date=due_date, items=items_with_tax(),
    ))
    return await ledger.send_invoice(invoice.id)


def test_create_invoice_starts_as_draft(ledger):
    """Creation : brouillon, totaux calcules, aucun paiement."""
    invoice = run(ledger.create_invoice(InvoiceCreate(items=items_with_tax())))
    assert invoice.status == InvoiceStatus.DRAFT
    assert invoice.subtotal == Decimal("270")
    assert invoice.tax_total == Decimal("27")
    assert invoice.total == Decimal("297")
    assert invoice.paid_amount == Decimal("0")
    assert invoice.balance == Decimal("297")
    assert invoice.issue_date == date(2024, 6, 15)
    assert invoice.due_date == date(2024, 7, 15)
    assert invoice.currency == "USD"


def test_payment_lifecycle(ledger):
    """Paiement partiel, solde, puis suppression du second paiement."""
    async def scenario():
        invoice = await _sent_invoice(ledger)
        assert invoice.status == InvoiceStatus.SENT

        await ledger.add_payment(invoice.id, PaymentCreate(amount=100))
        partial = await ledger.store.load_invoice(invoice.id)
        assert partial.paid_amount == Decimal("100")
        assert partial.balance == Decimal("197")
        assert partial.status == InvoiceStatus.PARTIAL

        second = await ledger.add_payment(invoice.id, PaymentCreate(amount=197, payment_method="bank_transfer"))
        paid = await ledger.store.load_invoice(invoice.id)
        assert paid.paid_amount == Decimal("297")
        assert paid.balance == Decimal("0")
        assert paid.status == InvoiceStatus.PAID

        await ledger.delete_payment(second.id)
        reverted = await ledger.store.load_invoice(invoice.id)
        assert reverted.paid_amount == Decimal("100")
        assert reverted.balance == Decimal("197")
        assert reverted.status == InvoiceStatus.PARTIAL

    run(scenario())


def test_recalculate_marks_overdue(ledger, clock):
    """Echeance depassee, facture envoyee et non soldee : overdue."""
    async def scenario():
        invoice = await _sent_invoice(ledger, due_date=date(2024, 6, 20))
        assert invoice.status == InvoiceStatus.SENT
        clock.today = date(2024, 6, 25)
        return await ledger.recalculate(invoice.id)

    assert run(scenario()).status == InvoiceStatus.OVERDUE


def test_refresh_overdue_reports_changes(ledger, clock):
    async def scenario():
        late = await _sent_invoice(ledger, due_date=date(2024, 6, 20))
        await _sent_invoice(ledger, due_date=date(2024, 8, 1))
        await ledger.create_invoice(InvoiceCreate(due_date=date(2024, 6, 1)))
        clock.today = date(2024, 6, 25)
        return late, await ledger.refresh_overdue()

    late, changed = run(scenario())
    assert [inv.id for inv in changed] == [late.id]


def test_paid_amount_matches_payment_records(ledger):
    """Apres chaque ecriture, paid_amount est la somme des paiements enregistres."""
    async def scenario():
        invoice = await _sent_invoice(ledger)
        first = await ledger.add_payment(invoice.id, PaymentCreate(amount="10.10"))
        await ledger.add_payment(invoice.id, PaymentCreate(amount="20.20"))
        await ledger.update_payment(first.id, PaymentUpdate(amount="50.05"))
        stored = await ledger.store.load_invoice(invoice.id)
        payments = await ledger.store.load_payments(invoice.id)
        return stored, payments

    stored, payments = run(scenario())
    assert stored.paid_amount == sum(p.amount for p in payments) == Decimal("70.25")
    assert stored.balance == stored.total - stored.paid_amount


def test_item_edit_keeps_paid_amount(ledger):
    """Modifier les lignes change total et solde, jamais le montant paye."""
    async def scenario():
        invoice = await _sent_invoice(ledger)
        await ledger.add_payment(invoice.id, PaymentCreate(amount=100))
        return await ledger.update_invoice(invoice.id, InvoiceUpdate(
            items=[LineItemInput(name="Conseil", quantity=5, unit_price=80)],
            shipping_fee=15,
        ))

    updated = run(scenario())
    assert updated.paid_amount == Decimal("100")
    assert updated.total == Decimal("415")
    assert updated.balance == Decimal("315")
    assert updated.status == InvoiceStatus.PARTIAL


def test_fee_edit_recomputes_total(ledger):
    async def scenario():
        invoice = await ledger.create_invoice(InvoiceCreate(items=items_with_tax(), shipping_fee=10))
        assert invoice.total == Decimal("307")
        return await ledger.update_invoice(invoice.id, InvoiceUpdate(shipping_fee=None, extra_fees=3))

    updated = run(scenario())
    assert updated.shipping_fee == Decimal("0")
    assert updated.total == Decimal("300")


def test_missing_item_values_are_defaulted(ledger):
    """Quantite absente = 1, prix, remise et taxe absents = 0."""
    async def scenario():
        invoice = await ledger.create_invoice(InvoiceCreate(items=[LineItemInput(unit_price=12), LineItemInput()]))
        return await ledger.get_invoice(invoice.id)

    detail = run(scenario())
    assert [item.quantity for item in detail.items] == [Decimal("1"), Decimal("1")]
    assert detail.items[1].unit_price == Decimal("0")
    assert detail.total == Decimal("12")


def test_items_keep_insertion_order(ledger):
    async def scenario():
        names = ["c", "a", "b"]
        invoice = await ledger.create_invoice(InvoiceCreate(items=[LineItemInput(name=n) for n in names]))
        return await ledger.get_invoice(invoice.id)

    detail = run(scenario())
    assert [item.name for item in detail.items] == ["c", "a", "b"]
    assert [item.sort_order for item in detail.items] == [0, 1, 2]


def test_items_are_catalog_snapshots(ledger):
    """Changer le prix du produit ne modifie pas les factures existantes."""
    catalog = Catalog(ledger.store)

    async def scenario():
        product = await catalog.create_product(ProductData(name="Licence", unit_price=50, tax_rate=20))
        invoice = await ledger.create_invoice(InvoiceCreate(items=[LineItemInput(product_id=product.id, quantity=2)]))
        await catalog.update_product(product.id, ProductUpdate(unit_price=99, tax_rate=0))
        await ledger.recalculate(invoice.id)
        return await ledger.get_invoice(invoice.id)

    detail = run(scenario())
    item = detail.items[0]
    assert item.name == "Licence"
    assert item.unit_price == Decimal("50")
    assert item.tax_rate == Decimal("20")
    assert detail.total == Decimal("120")


def test_unknown_product_is_not_found(ledger):
    with pytest.raises(NotFound):
        run(ledger.create_invoice(InvoiceCreate(items=[LineItemInput(product_id="nope")])))


def test_unknown_customer_is_not_found(ledger):
    with pytest.raises(NotFound):
        run(ledger.create_invoice(InvoiceCreate(customer_id="nope")))


def test_payment_on_missing_invoice_is_refused(ledger):
    """Pas de paiement orphelin : rien n est enregistre."""
    with pytest.raises(NotFound):
        run(ledger.add_payment("missing", PaymentCreate(amount=10)))
    assert run(ledger.store.load_payments("missing")) == []


def test_non_positive_payment_is_invalid(ledger):
    invoice = run(ledger.create_invoice(InvoiceCreate(items=items_with_tax())))
    with pytest.raises(InvalidInput):
        run(ledger.add_payment(invoice.id, PaymentCreate.model_construct(amount=Decimal("0"))))


def test_delete_invoice_removes_payments(ledger):
    async def scenario():
        invoice = await _sent_invoice(ledger)
        payment = await ledger.add_payment(invoice.id, PaymentCreate(amount=50))
        await ledger.delete_invoice(invoice.id)
        return invoice, payment

    invoice, payment = run(scenario())
    with pytest.raises(NotFound):
        run(ledger.store.load_invoice(invoice.id))
    with pytest.raises(NotFound):
        run(ledger.store.load_payment(payment.id))


def test_delete_invoice_keeps_customer(ledger):
    catalog = Catalog(ledger.store)

    async def scenario():
        customer = await catalog.create_customer(CustomerData(name="ACME"))
        invoice = await ledger.create_invoice(InvoiceCreate(customer_id=customer.id))
        await ledger.delete_invoice(invoice.id)
        return await catalog.get_customer(customer.id)

    assert run(scenario()).name == "ACME"


def test_cancelled_invoice_stays_cancelled(ledger):
    """Un paiement sur une facture annulee ne change pas son statut."""
    async def scenario():
        invoice = await _sent_invoice(ledger)
        await ledger.cancel_invoice(invoice.id)
        await ledger.add_payment(invoice.id, PaymentCreate(amount=297))
        return await ledger.recalculate(invoice.id)

    cancelled = run(scenario())
    assert cancelled.status == InvoiceStatus.CANCELLED
    assert cancelled.paid_amount == Decimal("297")


def test_cancelled_invoice_rejects_item_edits(ledger):
    async def scenario():
        invoice = await ledger.create_invoice(InvoiceCreate(items=items_with_tax()))
        await ledger.cancel_invoice(invoice.id)
        await ledger.update_invoice(invoice.id, InvoiceUpdate(items=[]))

    with pytest.raises(InvalidStatusTransition):
        run(scenario())


def test_cancelled_invoice_accepts_notes(ledger):
    async def scenario():
        invoice = await ledger.create_invoice(InvoiceCreate(items=items_with_tax()))
        await ledger.cancel_invoice(invoice.id)
        return await ledger.update_invoice(invoice.id, InvoiceUpdate(notes="doublon"))

    assert run(scenario()).notes == "doublon"


def test_send_past_due_goes_straight_to_overdue(ledger):
    invoice = run(_sent_invoice(ledger, due_date=date(2024, 6, 1)))
    assert invoice.status == InvoiceStatus.OVERDUE


def test_send_twice_is_refused(ledger):
    async def scenario():
        invoice = await _sent_invoice(ledger)
        await ledger.send_invoice(invoice.id)

    with pytest.raises(InvalidStatusTransition):
        run(scenario())


def test_invoice_numbers_follow_business_counter(ledger):
    async def scenario():
        await ledger.store.save_business(BusinessProfile(invoice_prefix="FAC", next_invoice_number=41))
        first = await ledger.create_invoice(InvoiceCreate())
        second = await ledger.create_invoice(InvoiceCreate())
        return first, second, await ledger.store.load_business()

    first, second, business = run(scenario())
    assert first.invoice_number == "FAC-0041"
    assert second.invoice_number == "FAC-0042"
    assert business.next_invoice_number == 43


def test_invoice_numbers_without_auto_numbering(ledger):
    async def scenario():
        await ledger.store.save_business(BusinessProfile(auto_numbering=False, currency="EUR"))
        await ledger.create_invoice(InvoiceCreate())
        return await ledger.create_invoice(InvoiceCreate())

    second = run(scenario())
    assert second.invoice_number == "INV-0002"
    assert second.currency == "EUR"


def test_duplicate_invoice(ledger, clock):
    """La copie est un brouillon emis aujourd hui avec les memes lignes et frais."""
    async def scenario():
        source = await _sent_invoice(ledger)
        await ledger.add_payment(source.id, PaymentCreate(amount=100))
        clock.today = date(2024, 9, 1)
        copy = await ledger.duplicate_invoice(source.id)
        return source, await ledger.get_invoice(copy.id)

    source, copy = run(scenario())
    assert copy.id != source.id
    assert copy.invoice_number != source.invoice_number
    assert copy.status == InvoiceStatus.DRAFT
    assert copy.issue_date == date(2024, 9, 1)
    assert copy.due_date == date(2024, 10, 1)
    assert copy.total == source.total
    assert copy.paid_amount == Decimal("0")
    assert copy.payments == []
    assert [item.name for item in copy.items] == ["Conseil", "Deplacement"]


def test_list_invoices_filters(ledger):
    async def scenario():
        sent = await _sent_invoice(ledger)
        await ledger.create_invoice(InvoiceCreate(issue_date=date(2024, 1, 1)))
        by_status = await ledger.list_invoices(status=InvoiceStatus.SENT)
        by_date = await ledger.list_invoices(from_date=date(2024, 5, 1))
        return sent, by_status, by_date

    sent, by_status, by_date = run(scenario())
    assert [inv.id for inv in by_status] == [sent.id]
    assert [inv.id for inv in by_date] == [sent.id]


def test_concurrent_payments_are_serialized(engine, clock):
    """Les ecritures paralleles sur une meme facture passent l une apres l autre."""
    ledger = make_ledger(engine, clock, SlowStore)

    async def scenario():
        invoice = await _sent_invoice(ledger)
        await asyncio.gather(*[
            ledger.add_payment(invoice.id, PaymentCreate(amount=10)) for _ in range(5)
        ])
        return await ledger.store.load_invoice(invoice.id)

    stored = run(scenario())
    assert stored.paid_amount == Decimal("50")
    assert stored.balance == Decimal("247")


def test_overlapping_recalculation_is_rejected(engine, clock):
    """Un second recalcul hors verrou sur la meme facture leve InconsistentState."""
    ledger = make_ledger(engine, clock, SlowStore)

    async def scenario():
        invoice = await _sent_invoice(ledger)
        return await asyncio.gather(
            ledger._reconcile(invoice.id), ledger._reconcile(invoice.id), return_exceptions=True,
        )

    results = run(scenario())
    assert sum(isinstance(r, InconsistentState) for r in results) == 1


def test_failed_reconciliation_leaves_previous_state(engine, clock):
    """Si l ecriture du statut echoue, ni le paiement ni les totaux ne sont ecrits."""
    ledger = make_ledger(engine, clock, FailingStore)
    store = ledger.store

    async def scenario():
        invoice = await _sent_invoice(ledger)
        store.fail_status = True
        with pytest.raises(RuntimeError):
            await ledger.add_payment(invoice.id, PaymentCreate(amount=100))
        return await store.load_invoice(invoice.id), await store.load_payments(invoice.id)

    stored, payments = run(scenario())
    assert payments == []
    assert stored.paid_amount == Decimal("0")
    assert stored.balance == Decimal("297")
    assert stored.status == InvoiceStatus.SENT


def test_lock_registry_is_emptied(ledger):
    """Les verrous ne survivent pas aux appels, meme sur des factures inconnues."""
    async def scenario():
        for _ in range(20):
            with pytest.raises(NotFound):
                await ledger.recalculate("inconnue")
            with pytest.raises(NotFound):
                await ledger.add_payment("supprimee", PaymentCreate(amount=10))
        invoice = await _sent_invoice(ledger)
        await asyncio.gather(*[
            ledger.add_payment(invoice.id, PaymentCreate(amount=1)) for _ in range(3)
        ])
        await ledger.delete_invoice(invoice.id)

    run(scenario())
    assert ledger._locks == {}


def test_data_survives_store_restart(tmp_path, clock):
    """Factures et paiements sont relus par un nouveau store sur la meme base."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'restart.db'}"

    async def write():
        engine = create_engine(url)
        ledger = InvoiceLedger(LedgerStore(engine), today=clock)
        await ledger.store.create_all()
        invoice = await _sent_invoice(ledger)
        await ledger.add_payment(invoice.id, PaymentCreate(amount="100.005"))
        await engine.dispose()
        return invoice.id

    async def read(invoice_id):
        engine = create_engine(url)
        ledger = InvoiceLedger(LedgerStore(engine), today=clock)
        detail = await ledger.get_invoice(invoice_id)
        await engine.dispose()
        return detail

    detail = run(read(run(write())))
    assert detail.status == InvoiceStatus.PARTIAL
    assert detail.paid_amount == Decimal("100.005")
    assert detail.balance == Decimal("196.995")
    assert [item.name for item in detail.items] == ["Conseil", "Deplacement"]


def test_payments_follow_invoice_row_deletion(ledger):
    """La cle etrangere des paiements supprime en cascade."""
    async def scenario():
        invoice = await _sent_invoice(ledger)
        await ledger.add_payment(invoice.id, PaymentCreate(amount=50))
        async with ledger.store.engine.begin() as conn:
            await conn.execute(delete(InvoiceRow).where(InvoiceRow.id == invoice.id))
        return await ledger.store.load_payments(invoice.id)

    assert run(scenario()) == []


def test_send_decrements_stock(ledger):
    """L envoi sort du stock les quantites des lignes produit, sans descendre sous zero."""
    catalog = Catalog(ledger.store)

    async def scenario():
        stocked = await catalog.create_product(ProductData(name="Cable", unit_price=5, stock_qty=10))
        short = await catalog.create_product(ProductData(name="Ecran", unit_price=200, stock_qty=1))
        service = await catalog.create_product(ProductData(name="Pose", type=ProductType.SERVICE, stock_qty=4))
        untracked = await catalog.create_product(ProductData(name="Divers", unit_price=1))
        invoice = await ledger.create_invoice(InvoiceCreate(items=[
            LineItemInput(product_id=stocked.id, quantity=3),
            LineItemInput(product_id=short.id, quantity=2),
            LineItemInput(product_id=service.id, quantity=1),
            LineItemInput(product_id=untracked.id, quantity=7),
            LineItemInput(name="Libre", quantity=1, unit_price=10),
        ]))
        draft_stock = (await catalog.get_product(stocked.id)).stock_qty
        await ledger.send_invoice(invoice.id)
        return draft_stock, [await catalog.get_product(p.id) for p in (stocked, short, service, untracked)]

    draft_stock, (stocked, short, service, untracked) = run(scenario())
    assert draft_stock == Decimal("10")
    assert stocked.stock_qty == Decimal("7")
    assert short.stock_qty == Decimal("0")
    assert service.stock_qty == Decimal("4")
    assert untracked.stock_qty is None


def test_send_with_deleted_product_still_succeeds(ledger):
    catalog = Catalog(ledger.store)

    async def scenario():
        product = await catalog.create_product(ProductData(name="Cable", unit_price=5, stock_qty=10))
        invoice = await ledger.create_invoice(InvoiceCreate(items=[LineItemInput(product_id=product.id)]))
        await catalog.delete_product(product.id)
        return await ledger.send_invoice(invoice.id)

    assert run(scenario()).status == InvoiceStatus.SENT


def test_removing_every_payment_reverts_to_sent(ledger):
    """Une facture payee dont tous les paiements sont supprimes repasse en sent."""
    async def scenario():
        invoice = await _sent_invoice(ledger)
        payment = await ledger.add_payment(invoice.id, PaymentCreate(amount=297))
        assert (await ledger.store.load_invoice(invoice.id)).status == InvoiceStatus.PAID
        await ledger.delete_payment(payment.id)
        return await ledger.store.load_invoice(invoice.id)

    reverted = run(scenario())
    assert reverted.status == InvoiceStatus.SENT
    assert reverted.paid_amount == Decimal("0")
    assert reverted.balance == Decimal("297")
