# invomaker/services/calculator.py
"""
Calculs monetaires d une facture.

Aucun arrondi intermediaire : les montants gardent toute la precision Decimal,
l arrondi a 2 decimales est fait uniquement a l affichage / a l export.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Tuple

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    discount_total: Decimal
    tax_total: Decimal
    shipping_fee: Decimal
    extra_fees: Decimal
    total: Decimal


def line_amounts(
    quantity: Decimal, unit_price: Decimal, discount: Decimal, tax_rate: Decimal
) -> Tuple[Decimal, Decimal, Decimal]:
    """
    Retourne (brut, taxe, total ligne).

    L ordre des operations est fixe : brut, net = brut - remise, taxe sur le net,
    total = net + taxe. Une remise superieure au brut donne un net negatif
    (pas de plancher a zero).
    """
    gross = quantity * unit_price
    net = gross - discount
    tax = net * tax_rate / HUNDRED
    return gross, tax, net + tax


def line_total(
    quantity: Decimal, unit_price: Decimal, discount: Decimal, tax_rate: Decimal
) -> Decimal:
    return line_amounts(quantity, unit_price, discount, tax_rate)[2]


def calculate_totals(
    items: Iterable, shipping_fee: Decimal = ZERO, extra_fees: Decimal = ZERO
) -> InvoiceTotals:
    """Agrege les lignes. La TVA est calculee ligne par ligne puis sommee."""
    subtotal = ZERO
    discount_total = ZERO
    tax_total = ZERO
    for item in items:
        gross, tax, _ = line_amounts(item.quantity, item.unit_price, item.discount, item.tax_rate)
        subtotal += gross
        discount_total += item.discount
        tax_total += tax

    shipping_fee = shipping_fee or ZERO
    extra_fees = extra_fees or ZERO
    total = subtotal - discount_total + tax_total + shipping_fee + extra_fees
    return InvoiceTotals(
        subtotal=subtotal,
        discount_total=discount_total,
        tax_total=tax_total,
        shipping_fee=shipping_fee,
        extra_fees=extra_fees,
        total=total,
    )
