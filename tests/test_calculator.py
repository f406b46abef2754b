from decimal import Decimal

from invomaker.models.invoice import InvoiceLineItem
from invomaker.services.calculator import calculate_totals, line_amounts, line_total


def _item(quantity, unit_price, discount="0", tax_rate="0", sort_order=0):
    return InvoiceLineItem(
        id=f"item-{sort_order}",
        invoice_id="inv",
        quantity=Decimal(str(quantity)),
        unit_price=Decimal(str(unit_price)),
        discount=Decimal(str(discount)),
        tax_rate=Decimal(str(tax_rate)),
        sort_order=sort_order,
    )


def test_line_total_formula():
    """Total ligne = net + net * taux / 100, sans arrondi."""
    q, p, d, t = Decimal("2.5"), Decimal("19.99"), Decimal("3.10"), Decimal("7.5")
    assert line_total(q, p, d, t) == (q * p - d) + (q * p - d) * t / 100
    assert line_total(q, p, d, t) == Decimal("50.390625")


def test_line_amounts_order():
    """Brut, taxe et total sont calcules dans cet ordre."""
    gross, tax, total = line_amounts(Decimal("3"), Decimal("80"), Decimal("0"), Decimal("10"))
    assert gross == Decimal("240")
    assert tax == Decimal("24")
    assert total == Decimal("264")


def test_discount_larger_than_gross_is_not_clamped():
    """Une remise superieure au brut donne un net et une taxe negatifs."""
    assert line_total(Decimal("1"), Decimal("10"), Decimal("15"), Decimal("10")) == Decimal("-5.5")


def test_scenario_without_tax():
    """Deux lignes sans taxe : sous-total et total a 270."""
    totals = calculate_totals([_item(3, 80), _item(1, 30, sort_order=1)])
    assert totals.subtotal == Decimal("270")
    assert totals.tax_total == Decimal("0")
    assert totals.discount_total == Decimal("0")
    assert totals.total == Decimal("270")


def test_scenario_with_tax():
    """TVA 10 % sur les deux lignes : 24 + 3 = 27, total 297."""
    totals = calculate_totals([_item(3, 80, tax_rate=10), _item(1, 30, tax_rate=10, sort_order=1)])
    assert totals.tax_total == Decimal("27")
    assert totals.total == Decimal("297")


def test_tax_is_computed_per_line():
    """La TVA est calculee sur le net de chaque ligne, pas sur le net global."""
    items = [_item(1, 100, discount=20, tax_rate=20), _item(1, 100, tax_rate=0, sort_order=1)]
    totals = calculate_totals(items)
    assert totals.subtotal == Decimal("200")
    assert totals.discount_total == Decimal("20")
    assert totals.tax_total == Decimal("16")
    assert totals.total == Decimal("196")


def test_fees_are_added_to_total():
    totals = calculate_totals([_item(2, 50)], shipping_fee=Decimal("7.50"), extra_fees=Decimal("2.50"))
    assert totals.shipping_fee == Decimal("7.50")
    assert totals.extra_fees == Decimal("2.50")
    assert totals.total == Decimal("110.00")


def test_calculate_totals_is_idempotent():
    """Deux appels avec les memes entrees donnent exactement le meme resultat."""
    items = [_item("1.333", "9.99", "0.5", "19.6"), _item("7", "0.01", tax_rate="5.5", sort_order=1)]
    first = calculate_totals(items, Decimal("4.2"), Decimal("0"))
    second = calculate_totals(items, Decimal("4.2"), Decimal("0"))
    assert first == second


def test_empty_invoice():
    totals = calculate_totals([])
    assert totals.total == Decimal("0")


def test_stored_item_exposes_line_total():
    item = _item(3, 80, discount=40, tax_rate=10)
    assert item.gross == Decimal("240")
    assert item.tax_amount == Decimal("20")
    assert item.line_total == Decimal("220")
    assert "line_total" in item.model_dump()
