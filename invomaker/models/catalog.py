# invomaker/models/catalog.py
from pydantic import BaseModel, Field
from typing import Optional
from decimal import Decimal
from enum import Enum


class ProductType(str, Enum):
    PRODUCT = "product"
    SERVICE = "service"


class CustomerData(BaseModel):
    name: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    tax_id: Optional[str] = None
    notes: Optional[str] = None


class Customer(CustomerData):
    id: str


class CustomerUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    tax_id: Optional[str] = None
    notes: Optional[str] = None


class ProductData(BaseModel):
    """Article du catalogue. Sans stock_qty, le stock n est pas suivi."""
    name: str = Field(min_length=1)
    type: ProductType = ProductType.PRODUCT
    sku: Optional[str] = None
    barcode: Optional[str] = None
    description: Optional[str] = None
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0)
    unit: str = "EA"
    stock_qty: Optional[Decimal] = Field(default=None, ge=0)
    active: bool = True


class Product(ProductData):
    id: str


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    type: Optional[ProductType] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    description: Optional[str] = None
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)
    unit: Optional[str] = None
    stock_qty: Optional[Decimal] = Field(default=None, ge=0)
    active: Optional[bool] = None


class BusinessProfile(BaseModel):
    """Parametres de l entreprise : devise, numerotation et conditions par defaut."""
    name: str = "My Business"
    email: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: str = "US"
    tax_id: Optional[str] = None
    currency: str = "USD"
    # sert aussi dans le nom du fichier d export
    invoice_prefix: str = Field(default="INV", min_length=1, max_length=20, pattern=r"^[A-Za-z0-9_-]+$")
    auto_numbering: bool = True
    next_invoice_number: int = Field(default=1, ge=1)
    default_payment_terms: int = Field(default=30, ge=0)  # jours
