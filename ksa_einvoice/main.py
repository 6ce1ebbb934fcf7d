"""
KSA E-INVOICE — Main API Application
FastAPI backend for ZATCA simplified (B2C) tax invoices in Saudi Arabia.

Complete flow:
  1. POST /invoices/simplified        → Build unsigned UBL invoice + computed totals
  2. POST /invoices/simplified/sign   → Build + sign (invoice hash, XAdES block, QR)
  3. POST /invoices/simplified/parse  → Load an existing invoice as-is
  4. POST /invoices/qr                → Render a QR payload as PNG

Architecture:
  - Tax amounts follow ZATCA truncation rules (never rounded mid-way)
  - Certificates and private keys are used in memory per request, never stored
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from ksa_einvoice.core.config import settings, get_zatca_url
from ksa_einvoice.modules.sign_engine import SignEngineError
from ksa_einvoice.modules.zatca_api import ZatcaAPIError
from ksa_einvoice.schemas.models import (
    BuildInvoiceRequest, BuildInvoiceResponse,
    SignInvoiceRequest, SignInvoiceResponse,
    ParseInvoiceRequest, ParseInvoiceResponse,
    QRRequest,
    ErrorResponse, HealthResponse,
)
from ksa_einvoice.utils.zatca_helpers import generate_qr_image
from ksa_einvoice.zatca.errors import (
    ArithmeticFormattingError,
    ConstructionError,
    DocumentMutationError,
    ZatcaError,
)
from ksa_einvoice.zatca.simplified_invoice import ZATCASimplifiedTaxInvoice

# ─────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("ksa-einvoice")


# ─────────────────────────────────────────────────────────────
# APP LIFECYCLE
# ─────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"KSA-EINVOICE v{settings.app_version} starting...")
    logger.info(f"   Environment: {settings.zatca_environment.value}")
    logger.info(f"   Reporting URL: {get_zatca_url('reporting')}")
    yield
    logger.info("KSA-EINVOICE shutdown complete.")


# ─────────────────────────────────────────────────────────────
# FASTAPI APP
# ─────────────────────────────────────────────────────────────

app = FastAPI(
    title="KSA E-INVOICE API",
    description=(
        "Backend API for ZATCA simplified tax invoices. Computes line and "
        "invoice tax totals, assembles the UBL 2.1 document and signs it."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────────────────────
# GLOBAL EXCEPTION HANDLERS
# ─────────────────────────────────────────────────────────────

def _error(status_code: int, error: str, exc, zatca_messages: list = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=error, detail=exc.message, code=exc.code, zatca_messages=zatca_messages,
        ).model_dump(),
    )


@app.exception_handler(ConstructionError)
async def construction_error_handler(request: Request, exc: ConstructionError):
    return _error(422, "CONSTRUCTION_ERROR", exc)


@app.exception_handler(ArithmeticFormattingError)
async def arithmetic_error_handler(request: Request, exc: ArithmeticFormattingError):
    return _error(422, "AMOUNT_ERROR", exc)


@app.exception_handler(DocumentMutationError)
async def mutation_error_handler(request: Request, exc: DocumentMutationError):
    # template/engine mismatch, not a client problem
    logger.error(f"Document mutation failed at '{exc.path}': {exc.message}")
    return _error(500, "DOCUMENT_ERROR", exc)


@app.exception_handler(ZatcaError)
async def zatca_error_handler(request: Request, exc: ZatcaError):
    return _error(500, "INVOICE_ERROR", exc)


@app.exception_handler(SignEngineError)
async def sign_error_handler(request: Request, exc: SignEngineError):
    return _error(422, "SIGN_ERROR", exc)


@app.exception_handler(ZatcaAPIError)
async def zatca_api_error_handler(request: Request, exc: ZatcaAPIError):
    return _error(exc.status_code, "ZATCA_API_ERROR", exc, zatca_messages=exc.messages)


# ─────────────────────────────────────────────────────────────
# HEALTH
# ─────────────────────────────────────────────────────────────

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """Service status."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.zatca_environment.value,
        "reporting_url": get_zatca_url("reporting"),
    }


# ─────────────────────────────────────────────────────────────
# INVOICES
# ─────────────────────────────────────────────────────────────

def _build(request: BuildInvoiceRequest) -> ZATCASimplifiedTaxInvoice:
    return ZATCASimplifiedTaxInvoice(
        props=request,
        emit_per_line_tax_subtotals=request.emit_per_line_tax_subtotals,
    )


@app.post(
    "/invoices/simplified",
    response_model=BuildInvoiceResponse,
    responses={422: {"model": ErrorResponse}},
    tags=["Invoices"],
)
async def build_invoice(request: BuildInvoiceRequest):
    """Build an unsigned simplified invoice and return it with its totals."""
    invoice = _build(request)
    return BuildInvoiceResponse(invoice_xml=invoice.get_xml().serialize(), totals=invoice.totals)


@app.post(
    "/invoices/simplified/sign",
    response_model=SignInvoiceResponse,
    responses={422: {"model": ErrorResponse}},
    tags=["Invoices"],
)
async def sign_invoice(request: SignInvoiceRequest):
    """Build and sign a simplified invoice with the EGS certificate and key."""
    invoice = _build(request.invoice)
    signed = invoice.sign(request.certificate, request.private_key)
    return SignInvoiceResponse(signed_xml=signed.signed_xml, invoice_hash=signed.invoice_hash, qr=signed.qr)


@app.post(
    "/invoices/simplified/parse",
    response_model=ParseInvoiceResponse,
    responses={422: {"model": ErrorResponse}},
    tags=["Invoices"],
)
async def parse_invoice(request: ParseInvoiceRequest):
    """Load an existing invoice without recomputing anything."""
    invoice = ZATCASimplifiedTaxInvoice(invoice_xml_str=request.invoice_xml)
    return ParseInvoiceResponse(invoice_xml=invoice.get_xml().serialize())


@app.post("/invoices/qr", tags=["Invoices"])
async def qr_image(request: QRRequest):
    """Render a QR payload (base64 TLV) as PNG."""
    return Response(content=generate_qr_image(request.qr), media_type="image/png")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("ksa_einvoice.main:app", host=settings.host, port=settings.port, reload=settings.debug)
