"""Tables SQLAlchemy du registre de factures.

Les montants sont des `DecimalString` : jamais de flottant entre le calcul et la base.
`customer_id` et `product_id` sont des references faibles : supprimer un client
ou un produit ne touche pas aux factures deja emises.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from invomaker.database import Base
from invomaker.db_types import DecimalString


class InvoiceRow(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft", index=True)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USD")

    subtotal: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    tax_total: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    discount_total: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    shipping_fee: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    extra_fees: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    total: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    balance: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    terms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class InvoiceItemRow(Base):
    __tablename__ = "invoice_items"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quantity: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    discount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class PaymentRow(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="cash")
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CustomerRow(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    company: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    zip_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tax_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ProductRow(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="product")
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    barcode: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    cost_price: Mapped[Optional[Decimal]] = mapped_column(DecimalString, nullable=True)
    tax_rate: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False, default="EA")
    stock_qty: Mapped[Optional[Decimal]] = mapped_column(DecimalString, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class BusinessProfileRow(Base):
    """Une seule ligne, id = 1."""
    __tablename__ = "business_profile"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    country: Mapped[str] = mapped_column(String(100), nullable=False)
    tax_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    invoice_prefix: Mapped[str] = mapped_column(String(20), nullable=False)
    auto_numbering: Mapped[bool] = mapped_column(Boolean, nullable=False)
    next_invoice_number: Mapped[int] = mapped_column(Integer, nullable=False)
    default_payment_terms: Mapped[int] = mapped_column(Integer, nullable=False)
