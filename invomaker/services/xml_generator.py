from lxml import etree
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from invomaker.models.catalog import BusinessProfile, Customer
from invomaker.models.invoice import InvoiceDetail, InvoiceLineItem, PaymentMethod

NAMESPACES = {
    "rsm": "urn:un:unece:uncefact:data:standard:CrossIndustryInvoice:100",
    "ram": "urn:un:unece:uncefact:data:standard:ReusableAggregateBusinessInformationEntity:100",
    "udt": "urn:un:unece:uncefact:data:standard:UnqualifiedDataType:100",
}

TYPE_CODE_INVOICE = "380"

# UNTDID 4461
PAYMENT_MEANS_CODES = {
    PaymentMethod.CASH: "10",
    PaymentMethod.CHECK: "20",
    PaymentMethod.BANK_TRANSFER: "30",
    PaymentMethod.CARD: "48",
    PaymentMethod.OTHER: "1",
}


def _e(parent, tag, text=None, ns="ram", **attribs):
    elem = etree.SubElement(parent, f"{{{NAMESPACES[ns]}}}{tag}", **attribs)
    if text is not None:
        elem.text = str(text)
    return elem


def _fmt(value: Decimal, decimals=2):
    q = Decimal("0." + "0" * decimals)
    return str(value.quantize(q, rounding=ROUND_HALF_UP))


def _add_date(parent, tag, day: date):
    container = _e(parent, tag)
    _e(container, "DateTimeString", day.strftime("%Y%m%d"), ns="udt", format="102")
    return container


def generate_xml(invoice: InvoiceDetail, business: BusinessProfile) -> bytes:
    """Export XML d une facture du registre. Montants arrondis a 2 decimales."""
    root = etree.Element(f"{{{NAMESPACES['rsm']}}}CrossIndustryInvoice", nsmap=NAMESPACES)

    doc = _e(root, "ExchangedDocument", ns="rsm")
    _e(doc, "ID", invoice.invoice_number)
    _e(doc, "TypeCode", TYPE_CODE_INVOICE)
    _add_date(doc, "IssueDateTime", invoice.issue_date)
    if invoice.notes:
        note = _e(doc, "IncludedNote")
        _e(note, "Content", invoice.notes)

    tx = _e(root, "SupplyChainTradeTransaction", ns="rsm")

    for item in invoice.items:
        _build_line(tx, item, invoice.currency)

    agreement = _e(tx, "ApplicableHeaderTradeAgreement")
    _build_seller(agreement, business)
    _build_buyer(agreement, invoice.customer)

    settlement = _e(tx, "ApplicableHeaderTradeSettlement")
    _e(settlement, "InvoiceCurrencyCode", invoice.currency)
    terms = _e(settlement, "SpecifiedTradePaymentTerms")
    if invoice.terms:
        _e(terms, "Description", invoice.terms)
    _add_date(terms, "DueDateDateTime", invoice.due_date)

    for payment in invoice.payments:
        pm = _e(settlement, "SpecifiedTradeSettlementPaymentMeans")
        _e(pm, "TypeCode", PAYMENT_MEANS_CODES[payment.payment_method])
        _e(pm, "Information", payment.reference or "")
        _e(pm, "PaidAmount", _fmt(payment.amount), currencyID=invoice.currency)

    _build_totals(settlement, invoice)

    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True)


def _build_seller(parent, business: BusinessProfile):
    p = _e(parent, "SellerTradeParty")
    _e(p, "Name", business.name)
    addr = _e(p, "PostalTradeAddress")
    if business.address:
        _e(addr, "LineOne", business.address)
    if business.city:
        _e(addr, "CityName", business.city)
    _e(addr, "CountryID", business.country)
    if business.tax_id:
        tax_reg = _e(p, "SpecifiedTaxRegistration")
        _e(tax_reg, "ID", business.tax_id, schemeID="VA")


def _build_buyer(parent, customer: Optional[Customer]):
    p = _e(parent, "BuyerTradeParty")
    if customer is None:
        return
    _e(p, "Name", customer.company or customer.name)
    addr = _e(p, "PostalTradeAddress")
    if customer.zip_code:
        _e(addr, "PostcodeCode", customer.zip_code)
    if customer.address:
        _e(addr, "LineOne", customer.address)
    if customer.city:
        _e(addr, "CityName", customer.city)
    if customer.country:
        _e(addr, "CountryID", customer.country)
    if customer.tax_id:
        tax_reg = _e(p, "SpecifiedTaxRegistration")
        _e(tax_reg, "ID", customer.tax_id, schemeID="VA")


def _build_line(parent, item: InvoiceLineItem, currency):
    li = _e(parent, "IncludedSupplyChainTradeLineItem")
    doc = _e(li, "AssociatedDocumentLineDocument")
    _e(doc, "LineID", item.sort_order + 1)
    product = _e(li, "SpecifiedTradeProduct")
    if item.product_id:
        _e(product, "SellerAssignedID", item.product_id)
    _e(product, "Name", item.name)
    if item.description:
        _e(product, "Description", item.description)
    agreement = _e(li, "SpecifiedLineTradeAgreement")
    gross = _e(agreement, "GrossPriceProductTradePrice")
    _e(gross, "ChargeAmount", _fmt(item.unit_price), currencyID=currency)
    delivery = _e(li, "SpecifiedLineTradeDelivery")
    _e(delivery, "BilledQuantity", _fmt(item.quantity, decimals=4), unitCode="EA")
    settlement = _e(li, "SpecifiedLineTradeSettlement")
    tax = _e(settlement, "ApplicableTradeTax")
    _e(tax, "TypeCode", "VAT")
    _e(tax, "CalculatedAmount", _fmt(item.tax_amount), currencyID=currency)
    _e(tax, "RateApplicablePercent", _fmt(item.tax_rate))
    if item.discount:
        allowance = _e(settlement, "SpecifiedTradeAllowanceCharge")
        indicator = _e(allowance, "ChargeIndicator")
        _e(indicator, "Indicator", "false", ns="udt")
        _e(allowance, "ActualAmount", _fmt(item.discount), currencyID=currency)
    sum_elem = _e(settlement, "SpecifiedTradeSettlementLineMonetarySummation")
    _e(sum_elem, "LineTotalAmount", _fmt(item.line_total), currencyID=currency)


def _build_totals(parent, invoice: InvoiceDetail):
    cur = invoice.currency
    sums = _e(parent, "SpecifiedTradeSettlementHeaderMonetarySummation")
    _e(sums, "LineTotalAmount",      _fmt(invoice.subtotal),       currencyID=cur)
    _e(sums, "AllowanceTotalAmount", _fmt(invoice.discount_total), currencyID=cur)
    _e(sums, "ChargeTotalAmount",    _fmt(invoice.shipping_fee + invoice.extra_fees), currencyID=cur)
    _e(sums, "TaxBasisTotalAmount",  _fmt(invoice.subtotal - invoice.discount_total), currencyID=cur)
    _e(sums, "TaxTotalAmount",       _fmt(invoice.tax_total),      currencyID=cur)
    _e(sums, "GrandTotalAmount",     _fmt(invoice.total),          currencyID=cur)
    _e(sums, "TotalPrepaidAmount",   _fmt(invoice.paid_amount),    currencyID=cur)
    _e(sums, "DuePayableAmount",     _fmt(invoice.balance),        currencyID=cur)
