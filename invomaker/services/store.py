# invomaker/services/store.py
"""
Stockage SQLAlchemy des factures, lignes, paiements et du catalogue.

`atomic()` ouvre une session et une transaction (`session.begin()`) : tout ce
qui est ecrit dans le bloc, y compris par les appels imbriques, est valide ou
annule ensemble. Hors d un bloc `atomic()`, chaque appel a sa propre transaction.
"""
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional
import logging

from pydantic import BaseModel
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from invomaker.database import Base, create_session_factory
from invomaker.models.catalog import BusinessProfile, Customer, Product, ProductType
from invomaker.models.invoice import Invoice, InvoiceLineItem, InvoiceStatus, Payment
from invomaker.models.tables import (
    BusinessProfileRow, CustomerRow, InvoiceItemRow, InvoiceRow, PaymentRow, ProductRow,
)
from invomaker.services.calculator import InvoiceTotals
from invomaker.services.errors import NotFound

logger = logging.getLogger(__name__)

BUSINESS_ROW_ID = 1


def _columns(model: BaseModel, exclude=None) -> dict:
    """Valeurs d un modele pydantic pretes pour une ligne SQLAlchemy."""
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in model.model_dump(exclude=exclude).items()
    }


class LedgerStore:

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = create_session_factory(engine)
        self._current: ContextVar[Optional[AsyncSession]] = ContextVar(
            f"ledger_session_{id(self)}", default=None
        )

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    # Transactions

    @asynccontextmanager
    async def atomic(self):
        if self._current.get() is not None:
            # bloc imbrique : le bloc externe decide du commit
            yield self
            return
        async with self._session_factory() as session:
            token = self._current.set(session)
            try:
                async with session.begin():
                    yield self
            except BaseException as exc:
                logger.warning("Rollback de la transaction", extra={"extra": {
                    "error": type(exc).__name__,
                }})
                raise
            finally:
                self._current.reset(token)

    @asynccontextmanager
    async def _session(self):
        session = self._current.get()
        if session is not None:
            yield session
            return
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    # Factures

    async def _invoice_row(self, session: AsyncSession, invoice_id: str) -> InvoiceRow:
        row = await session.get(InvoiceRow, invoice_id)
        if row is None:
            raise NotFound(f"Facture {invoice_id} non trouvee")
        return row

    async def load_invoice(self, invoice_id: str) -> Invoice:
        async with self._session() as session:
            row = await self._invoice_row(session, invoice_id)
            return Invoice.model_validate(row, from_attributes=True)

    async def list_invoices(
        self,
        status: Optional[InvoiceStatus] = None,
        customer_id: Optional[str] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> List[Invoice]:
        query = select(InvoiceRow)
        if status is not None:
            query = query.where(InvoiceRow.status == status.value)
        if customer_id is not None:
            query = query.where(InvoiceRow.customer_id == customer_id)
        if from_date is not None:
            query = query.where(InvoiceRow.issue_date >= from_date)
        if to_date is not None:
            query = query.where(InvoiceRow.issue_date <= to_date)
        query = query.order_by(InvoiceRow.created_at.desc())
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [Invoice.model_validate(row, from_attributes=True) for row in rows]

    async def count_invoices(self) -> int:
        async with self._session() as session:
            return await session.scalar(select(func.count()).select_from(InvoiceRow))

    async def insert_invoice(self, invoice: Invoice) -> None:
        async with self._session() as session:
            session.add(InvoiceRow(**_columns(invoice)))
            await session.flush()

    async def update_invoice_fields(self, invoice_id: str, **fields) -> Invoice:
        fields["updated_at"] = datetime.now(timezone.utc)
        async with self._session() as session:
            row = await self._invoice_row(session, invoice_id)
            for key, value in fields.items():
                setattr(row, key, value.value if isinstance(value, Enum) else value)
            await session.flush()
            return Invoice.model_validate(row, from_attributes=True)

    async def delete_invoice(self, invoice_id: str) -> None:
        async with self._session() as session:
            row = await self._invoice_row(session, invoice_id)
            # les cles etrangeres portent aussi ON DELETE CASCADE
            await session.execute(delete(PaymentRow).where(PaymentRow.invoice_id == invoice_id))
            await session.execute(delete(InvoiceItemRow).where(InvoiceItemRow.invoice_id == invoice_id))
            await session.delete(row)
            await session.flush()

    async def persist_invoice_totals(
        self, invoice_id: str, totals: InvoiceTotals, paid_amount: Decimal, balance: Decimal
    ) -> Invoice:
        return await self.update_invoice_fields(
            invoice_id,
            subtotal=totals.subtotal,
            discount_total=totals.discount_total,
            tax_total=totals.tax_total,
            shipping_fee=totals.shipping_fee,
            extra_fees=totals.extra_fees,
            total=totals.total,
            paid_amount=paid_amount,
            balance=balance,
        )

    async def persist_invoice_status(self, invoice_id: str, status: InvoiceStatus) -> Invoice:
        return await self.update_invoice_fields(invoice_id, status=status)

    # Lignes

    async def load_invoice_items(self, invoice_id: str) -> List[InvoiceLineItem]:
        query = (
            select(InvoiceItemRow)
            .where(InvoiceItemRow.invoice_id == invoice_id)
            .order_by(InvoiceItemRow.sort_order)
        )
        async with self._session() as session:
            await self._invoice_row(session, invoice_id)
            rows = (await session.execute(query)).scalars().all()
            return [InvoiceLineItem.model_validate(row, from_attributes=True) for row in rows]

    async def replace_invoice_items(self, invoice_id: str, items: List[InvoiceLineItem]) -> None:
        async with self._session() as session:
            await self._invoice_row(session, invoice_id)
            await session.execute(delete(InvoiceItemRow).where(InvoiceItemRow.invoice_id == invoice_id))
            session.add_all([InvoiceItemRow(**_columns(item, exclude={"line_total"})) for item in items])
            await session.flush()

    # Paiements

    async def load_payments(self, invoice_id: str) -> List[Payment]:
        query = (
            select(PaymentRow)
            .where(PaymentRow.invoice_id == invoice_id)
            .order_by(PaymentRow.payment_date.desc(), PaymentRow.created_at.desc())
        )
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [Payment.model_validate(row, from_attributes=True) for row in rows]

    async def load_payment(self, payment_id: str) -> Payment:
        async with self._session() as session:
            row = await session.get(PaymentRow, payment_id)
            if row is None:
                raise NotFound(f"Paiement {payment_id} non trouve")
            return Payment.model_validate(row, from_attributes=True)

    async def insert_payment(self, payment: Payment) -> None:
        async with self._session() as session:
            # pas de paiement orphelin, meme sans PRAGMA foreign_keys
            await self._invoice_row(session, payment.invoice_id)
            session.add(PaymentRow(**_columns(payment)))
            await session.flush()

    async def save_payment(self, payment: Payment) -> None:
        async with self._session() as session:
            row = await session.get(PaymentRow, payment.id)
            if row is None:
                raise NotFound(f"Paiement {payment.id} non trouve")
            await self._invoice_row(session, payment.invoice_id)
            for key, value in _columns(payment, exclude={"id"}).items():
                setattr(row, key, value)
            await session.flush()

    async def delete_payment(self, payment_id: str) -> None:
        async with self._session() as session:
            row = await session.get(PaymentRow, payment_id)
            if row is None:
                raise NotFound(f"Paiement {payment_id} non trouve")
            await session.delete(row)
            await session.flush()

    # Clients

    async def list_customers(self, query: str = "") -> List[Customer]:
        statement = select(CustomerRow)
        if query:
            pattern = f"%{query}%"
            statement = statement.where(or_(
                CustomerRow.name.ilike(pattern),
                CustomerRow.email.ilike(pattern),
                CustomerRow.phone.ilike(pattern),
            ))
        statement = statement.order_by(CustomerRow.name)
        async with self._session() as session:
            rows = (await session.execute(statement)).scalars().all()
            return [Customer.model_validate(row, from_attributes=True) for row in rows]

    async def find_customer(self, customer_id: str) -> Optional[Customer]:
        async with self._session() as session:
            row = await session.get(CustomerRow, customer_id)
            return None if row is None else Customer.model_validate(row, from_attributes=True)

    async def load_customer(self, customer_id: str) -> Customer:
        customer = await self.find_customer(customer_id)
        if customer is None:
            raise NotFound(f"Client {customer_id} non trouve")
        return customer

    async def save_customer(self, customer: Customer) -> None:
        async with self._session() as session:
            await session.merge(CustomerRow(**_columns(customer)))
            await session.flush()

    async def delete_customer(self, customer_id: str) -> None:
        async with self._session() as session:
            row = await session.get(CustomerRow, customer_id)
            if row is None:
                raise NotFound(f"Client {customer_id} non trouve")
            await session.delete(row)
            await session.flush()

    # Produits

    async def _products(self, statement) -> List[Product]:
        async with self._session() as session:
            rows = (await session.execute(statement)).scalars().all()
            return [Product.model_validate(row, from_attributes=True) for row in rows]

    async def list_products(self, include_inactive: bool = False) -> List[Product]:
        statement = select(ProductRow)
        if not include_inactive:
            statement = statement.where(ProductRow.active.is_(True))
        return await self._products(statement.order_by(ProductRow.name))

    async def search_products(self, query: str) -> List[Product]:
        pattern = f"%{query}%"
        statement = (
            select(ProductRow)
            .where(ProductRow.active.is_(True))
            .where(or_(
                ProductRow.name.ilike(pattern),
                ProductRow.sku.ilike(pattern),
                ProductRow.barcode.ilike(pattern),
            ))
            .order_by(ProductRow.name)
        )
        return await self._products(statement)

    async def find_product_by_barcode(self, barcode: str) -> Optional[Product]:
        statement = (
            select(ProductRow)
            .where(ProductRow.active.is_(True))
            .where(ProductRow.barcode == barcode)
            .limit(1)
        )
        products = await self._products(statement)
        return products[0] if products else None

    async def low_stock_products(self, threshold: Decimal) -> List[Product]:
        """
        Produits actifs dont le stock suivi est au plus `threshold`.

        Le filtre de seuil est fait ici : les quantites sont stockees en texte
        et une comparaison SQL serait lexicographique.
        """
        statement = (
            select(ProductRow)
            .where(ProductRow.active.is_(True))
            .where(ProductRow.type == ProductType.PRODUCT.value)
            .where(ProductRow.stock_qty.is_not(None))
        )
        products = [p for p in await self._products(statement) if p.stock_qty <= threshold]
        return sorted(products, key=lambda p: (p.stock_qty, p.name))

    async def find_product(self, product_id: str) -> Optional[Product]:
        async with self._session() as session:
            row = await session.get(ProductRow, product_id)
            return None if row is None else Product.model_validate(row, from_attributes=True)

    async def load_product(self, product_id: str) -> Product:
        product = await self.find_product(product_id)
        if product is None:
            raise NotFound(f"Produit {product_id} non trouve")
        return product

    async def save_product(self, product: Product) -> None:
        async with self._session() as session:
            await session.merge(ProductRow(**_columns(product)))
            await session.flush()

    async def delete_product(self, product_id: str) -> None:
        async with self._session() as session:
            row = await session.get(ProductRow, product_id)
            if row is None:
                raise NotFound(f"Produit {product_id} non trouve")
            await session.delete(row)
            await session.flush()

    # Entreprise

    async def load_business(self) -> BusinessProfile:
        async with self._session() as session:
            row = await session.get(BusinessProfileRow, BUSINESS_ROW_ID)
            if row is None:
                return BusinessProfile()
            return BusinessProfile.model_validate(row, from_attributes=True)

    async def save_business(self, business: BusinessProfile) -> None:
        async with self._session() as session:
            await session.merge(BusinessProfileRow(id=BUSINESS_ROW_ID, **_columns(business)))
            await session.flush()
