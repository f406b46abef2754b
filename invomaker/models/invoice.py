# invomaker/models/invoice.py
from pydantic import BaseModel, Field, computed_field
from typing import List, Optional
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum

from invomaker.models.catalog import Customer
from invomaker.services.calculator import ZERO, line_amounts


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    PARTIAL = "partial"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    OTHER = "other"


class LineItemInput(BaseModel):
    """Ligne telle que saisie : tout champ absent est complete depuis le catalogue ou par defaut."""
    product_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[Decimal] = Field(default=None, gt=0)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    discount: Optional[Decimal] = Field(default=None, ge=0)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)


class InvoiceLineItem(BaseModel):
    """Ligne stockee : copie figee du prix et de la TVA au moment de l ajout."""
    id: str
    invoice_id: str
    product_id: Optional[str] = None
    name: str = ""
    description: Optional[str] = None
    quantity: Decimal = Decimal("1")
    unit_price: Decimal = ZERO
    discount: Decimal = ZERO
    tax_rate: Decimal = ZERO
    sort_order: int = 0

    @property
    def gross(self) -> Decimal:
        return line_amounts(self.quantity, self.unit_price, self.discount, self.tax_rate)[0]

    @property
    def tax_amount(self) -> Decimal:
        return line_amounts(self.quantity, self.unit_price, self.discount, self.tax_rate)[1]

    @computed_field
    @property
    def line_total(self) -> Decimal:
        return line_amounts(self.quantity, self.unit_price, self.discount, self.tax_rate)[2]


class Payment(BaseModel):
    id: str
    invoice_id: str
    amount: Decimal
    payment_date: date
    payment_method: PaymentMethod = PaymentMethod.CASH
    reference: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class PaymentCreate(BaseModel):
    amount: Decimal = Field(gt=0)
    payment_date: Optional[date] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    reference: Optional[str] = None
    notes: Optional[str] = None


class PaymentUpdate(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    payment_date: Optional[date] = None
    payment_method: Optional[PaymentMethod] = None
    reference: Optional[str] = None
    notes: Optional[str] = None


class Invoice(BaseModel):
    id: str
    invoice_number: str
    customer_id: Optional[str] = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    issue_date: date
    due_date: date
    currency: str = "USD"
    subtotal: Decimal = ZERO
    tax_total: Decimal = ZERO
    discount_total: Decimal = ZERO
    shipping_fee: Decimal = ZERO
    extra_fees: Decimal = ZERO
    total: Decimal = ZERO
    paid_amount: Decimal = ZERO
    balance: Decimal = ZERO
    notes: Optional[str] = None
    terms: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class InvoiceDetail(Invoice):
    items: List[InvoiceLineItem] = Field(default_factory=list)
    payments: List[Payment] = Field(default_factory=list)
    customer: Optional[Customer] = None


class InvoiceCreate(BaseModel):
    customer_id: Optional[str] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: Optional[str] = None
    notes: Optional[str] = None
    terms: Optional[str] = None
    shipping_fee: Optional[Decimal] = Field(default=None, ge=0)
    extra_fees: Optional[Decimal] = Field(default=None, ge=0)
    items: List[LineItemInput] = Field(default_factory=list)


class InvoiceUpdate(BaseModel):
    customer_id: Optional[str] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: Optional[str] = None
    notes: Optional[str] = None
    terms: Optional[str] = None
    shipping_fee: Optional[Decimal] = Field(default=None, ge=0)
    extra_fees: Optional[Decimal] = Field(default=None, ge=0)
    items: Optional[List[LineItemInput]] = None


class TotalsPreview(BaseModel):
    items: List[LineItemInput] = Field(default_factory=list)
    shipping_fee: Decimal = Field(default=ZERO, ge=0)
    extra_fees: Decimal = Field(default=ZERO, ge=0)
