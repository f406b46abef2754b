from fastapi import FastAPI, HTTPException, Security, APIRouter
from fastapi.responses import Response, JSONResponse
from fastapi.security import APIKeyHeader
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import List, Optional
import logging
import os
import json
import time

from invomaker.models.catalog import (
    BusinessProfile, Customer, CustomerData, CustomerUpdate,
    Product, ProductData, ProductUpdate,
)
from invomaker.models.invoice import (
    Invoice, InvoiceCreate, InvoiceDetail, InvoiceStatus, InvoiceUpdate,
    Payment, PaymentCreate, PaymentUpdate, TotalsPreview,
)
from invomaker.database import create_engine
from invomaker.services.catalog import LOW_STOCK_THRESHOLD, Catalog
from invomaker.services.errors import LedgerError
from invomaker.services.ledger import InvoiceLedger
from invomaker.services.reports import ReportTotals, report_totals
from invomaker.services.store import LedgerStore
from invomaker.services.xml_generator import generate_xml


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "extra") and isinstance(record.extra, dict):
            log_data.update(record.extra)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)

# Supprime les handlers existants et applique le notre
root_logger = logging.getLogger()
root_logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
for h in root_logger.handlers[:]:
    root_logger.removeHandler(h)
handler = logging.StreamHandler()
handler.setFormatter(JSONFormatter())
root_logger.addHandler(handler)
logger = logging.getLogger(__name__)

# Dossier des exports XML
STORAGE_DIR = Path(os.getenv("STORAGE_DIR", "/app/storage"))
STORAGE_DIR.mkdir(parents=True, exist_ok=True)

# Base de donnees (SQLite par defaut)
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./invomaker.db")

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

store = LedgerStore(create_engine(DATABASE_URL))
ledger = InvoiceLedger(store)
catalog = Catalog(store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await store.create_all()
    logger.info("Base de donnees prete", extra={"extra": {"database": store.engine.url.render_as_string(hide_password=True)}})
    yield
    await store.dispose()


app = FastAPI(
    title="Invomaker",
    description="Factures, paiements et soldes pour petites entreprises",
    version="1.0.0",
    lifespan=lifespan,
)


# Gestionnaire erreurs de validation JSON (422)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    return JSONResponse(
        status_code=422,
        content={
            "error": "Données invalides",
            "detail": str(exc.errors())
        }
    )


@app.exception_handler(LedgerError)
async def ledger_exception_handler(request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error(f"Erreur registre : {exc}")
    else:
        logger.warning(f"{exc.error} : {exc}", extra={"extra": {"path": request.url.path}})
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": str(exc)}
    )


def _load_api_keys() -> dict:
    clients_json = os.getenv("CLIENTS", "{}")
    try:
        return json.loads(clients_json)
    except ValueError:
        api_key = os.getenv("API_KEY", "dev-secret-key")
        return {"default": api_key}


def verify_api_key(api_key: str = Security(api_key_header)) -> str:
    clients = _load_api_keys()
    for client_name, client_key in clients.items():
        if api_key == client_key:
            return client_name
    raise HTTPException(
        status_code=403,
        detail={"error": "Clé API invalide ou manquante"}
    )


v1 = APIRouter(prefix="/v1", dependencies=[Security(verify_api_key)])


@app.get("/health")
def health_check():
    return {"status": "ok", "version": "1.0.0"}


# Factures

@v1.post("/invoices", response_model=InvoiceDetail, status_code=201)
async def create_invoice(data: InvoiceCreate):
    start = time.time()
    invoice = await ledger.create_invoice(data)
    duration = round((time.time() - start) * 1000)
    logger.info("Facture générée", extra={"extra": {"invoice_number": invoice.invoice_number, "total": str(invoice.total), "duration_ms": duration}})
    return await ledger.get_invoice(invoice.id)


@v1.get("/invoices", response_model=List[Invoice])
async def list_invoices(
    status: Optional[InvoiceStatus] = None,
    customer_id: Optional[str] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
):
    return await ledger.list_invoices(status, customer_id, from_date, to_date)


@v1.post("/invoices/preview-totals")
async def preview_totals(data: TotalsPreview):
    """Calcule les totaux sans rien enregistrer."""
    totals = await ledger.preview_totals(data.items, data.shipping_fee, data.extra_fees)
    return {key: str(value) for key, value in asdict(totals).items()}


@v1.post("/invoices/refresh-overdue")
async def refresh_overdue():
    changed = await ledger.refresh_overdue()
    return {"count": len(changed), "invoices": [inv.invoice_number for inv in changed]}


@v1.get("/invoices/{invoice_id}", response_model=InvoiceDetail)
async def get_invoice(invoice_id: str):
    return await ledger.get_invoice(invoice_id)


@v1.patch("/invoices/{invoice_id}", response_model=InvoiceDetail)
async def update_invoice(invoice_id: str, changes: InvoiceUpdate):
    await ledger.update_invoice(invoice_id, changes)
    return await ledger.get_invoice(invoice_id)


@v1.delete("/invoices/{invoice_id}", status_code=204)
async def delete_invoice(invoice_id: str):
    await ledger.delete_invoice(invoice_id)
    return Response(status_code=204)


@v1.post("/invoices/{invoice_id}/send", response_model=InvoiceDetail)
async def send_invoice(invoice_id: str):
    await ledger.send_invoice(invoice_id)
    return await ledger.get_invoice(invoice_id)


@v1.post("/invoices/{invoice_id}/cancel", response_model=InvoiceDetail)
async def cancel_invoice(invoice_id: str):
    await ledger.cancel_invoice(invoice_id)
    return await ledger.get_invoice(invoice_id)


@v1.post("/invoices/{invoice_id}/duplicate", response_model=InvoiceDetail, status_code=201)
async def duplicate_invoice(invoice_id: str):
    copy = await ledger.duplicate_invoice(invoice_id)
    return await ledger.get_invoice(copy.id)


@v1.post("/invoices/{invoice_id}/recalculate", response_model=InvoiceDetail)
async def recalculate_invoice(invoice_id: str):
    await ledger.recalculate(invoice_id)
    return await ledger.get_invoice(invoice_id)


@v1.get("/invoices/{invoice_id}/xml")
async def export_invoice_xml(invoice_id: str):
    invoice = await ledger.get_invoice(invoice_id)
    business = await catalog.get_business()
    xml_bytes = generate_xml(invoice, business)

    filename = f"facture_{invoice.invoice_number}.xml"
    try:
        with open(STORAGE_DIR / filename, "wb") as f:
            f.write(xml_bytes)
    except OSError as e:
        logger.error(f"Erreur écriture export : {e}")
        raise HTTPException(status_code=500, detail={"error": "Erreur écriture stockage", "message": str(e)})
    logger.info("Export XML", extra={"extra": {"invoice_number": invoice.invoice_number, "filename": filename}})

    return Response(
        content=xml_bytes,
        media_type="application/xml",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


# Paiements

@v1.get("/invoices/{invoice_id}/payments", response_model=List[Payment])
async def list_payments(invoice_id: str):
    return await ledger.list_payments(invoice_id)


@v1.post("/invoices/{invoice_id}/payments", response_model=Payment, status_code=201)
async def add_payment(invoice_id: str, data: PaymentCreate):
    return await ledger.add_payment(invoice_id, data)


@v1.patch("/payments/{payment_id}", response_model=Payment)
async def update_payment(payment_id: str, changes: PaymentUpdate):
    return await ledger.update_payment(payment_id, changes)


@v1.delete("/payments/{payment_id}", status_code=204)
async def delete_payment(payment_id: str):
    await ledger.delete_payment(payment_id)
    return Response(status_code=204)


# Clients

@v1.get("/customers", response_model=List[Customer])
async def list_customers(q: str = ""):
    return await catalog.list_customers(q)


@v1.post("/customers", response_model=Customer, status_code=201)
async def create_customer(data: CustomerData):
    return await catalog.create_customer(data)


@v1.get("/customers/{customer_id}", response_model=Customer)
async def get_customer(customer_id: str):
    return await catalog.get_customer(customer_id)


@v1.patch("/customers/{customer_id}", response_model=Customer)
async def update_customer(customer_id: str, changes: CustomerUpdate):
    return await catalog.update_customer(customer_id, changes)


@v1.delete("/customers/{customer_id}", status_code=204)
async def delete_customer(customer_id: str):
    await catalog.delete_customer(customer_id)
    return Response(status_code=204)


# Produits

@v1.get("/products", response_model=List[Product])
async def list_products(include_inactive: bool = False, q: str = ""):
    return await catalog.list_products(include_inactive, q)


@v1.get("/products/low-stock", response_model=List[Product])
async def low_stock_products(threshold: Decimal = LOW_STOCK_THRESHOLD):
    return await catalog.low_stock_products(threshold)


@v1.get("/products/barcode/{barcode}", response_model=Product)
async def get_product_by_barcode(barcode: str):
    return await catalog.get_product_by_barcode(barcode)


@v1.post("/products", response_model=Product, status_code=201)
async def create_product(data: ProductData):
    return await catalog.create_product(data)


@v1.get("/products/{product_id}", response_model=Product)
async def get_product(product_id: str):
    return await catalog.get_product(product_id)


@v1.patch("/products/{product_id}", response_model=Product)
async def update_product(product_id: str, changes: ProductUpdate):
    return await catalog.update_product(product_id, changes)


@v1.delete("/products/{product_id}", status_code=204)
async def delete_product(product_id: str):
    await catalog.delete_product(product_id)
    return Response(status_code=204)


# Entreprise et rapports

@v1.get("/business", response_model=BusinessProfile)
async def get_business():
    return await catalog.get_business()


@v1.put("/business", response_model=BusinessProfile)
async def update_business(profile: BusinessProfile):
    return await catalog.update_business(profile)


@v1.get("/reports/totals", response_model=ReportTotals)
async def get_report_totals(from_date: Optional[date] = None, to_date: Optional[date] = None):
    invoices = await ledger.list_invoices()
    return report_totals(invoices, date.today(), from_date, to_date)


# Enregistrement du router v1
app.include_router(v1)
