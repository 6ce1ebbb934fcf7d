"""
KSA E-INVOICE Pydantic Schemas
Invoice input models and request/response models for the API.
"""

from __future__ import annotations
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ksa_einvoice.utils.zatca_helpers import to_decimal


# ─────────────────────────────────────────────────────────────
# ENUMS
# ─────────────────────────────────────────────────────────────

class ZATCAInvoiceTypes(str, Enum):
    """UNTDID 1001 document type codes accepted by ZATCA."""
    INVOICE = "388"
    DEBIT_NOTE = "383"
    CREDIT_NOTE = "381"


class ZATCAPaymentMethods(str, Enum):
    """UNTDID 4461 payment means codes."""
    CASH = "10"
    CREDIT = "30"
    BANK_ACCOUNT = "42"
    BANK_CARD = "48"


# ─────────────────────────────────────────────────────────────
# LINE ITEMS
# ─────────────────────────────────────────────────────────────

class Discount(BaseModel):
    """Absolute discount on a line item. Several discounts add up."""
    amount: Decimal = Field(..., ge=0)
    reason: str

    @field_validator("amount", mode="before")
    @classmethod
    def _as_decimal(cls, value):
        return to_decimal(value)


class OtherTax(BaseModel):
    """Extra tax stacked on top of VAT, as a fraction (0.05 = 5%)."""
    percent_amount: Decimal = Field(..., ge=0)

    @field_validator("percent_amount", mode="before")
    @classmethod
    def _as_decimal(cls, value):
        return to_decimal(value)


class LineItem(BaseModel):
    id: str
    name: str
    quantity: Decimal = Field(..., gt=0)
    tax_exclusive_price: Decimal = Field(..., ge=0)
    vat_percent: Decimal = Field(..., ge=0, le=1, description="Fraction, e.g. 0.15")
    discounts: list[Discount] = Field(default_factory=list)
    other_taxes: list[OtherTax] = Field(default_factory=list)

    model_config = {"frozen": True}

    @field_validator("quantity", "tax_exclusive_price", "vat_percent", mode="before")
    @classmethod
    def _as_decimal(cls, value):
        return to_decimal(value)

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, value):
        return str(value) if isinstance(value, int) else value


# ─────────────────────────────────────────────────────────────
# HEADER PROPERTIES
# ─────────────────────────────────────────────────────────────

class EGSLocation(BaseModel):
    city: str
    city_subdivision: str
    street: str
    plot_identification: str
    building: str
    postal_zone: str


class EGSInfo(BaseModel):
    """E-invoice Generation Solution unit that issues the invoice."""
    uuid: str
    custom_id: str
    model: str
    CRN_number: str
    VAT_name: str
    VAT_number: str
    branch_name: str
    branch_industry: str
    location: EGSLocation


class Cancellation(BaseModel):
    """Turns the invoice into a credit/debit note (BR-KSA-17)."""
    payment_method: ZATCAPaymentMethods
    reason: Optional[str] = None
    canceled_invoice_number: Optional[str] = None
    cancelation_type: ZATCAInvoiceTypes = ZATCAInvoiceTypes.CREDIT_NOTE


class SimplifiedInvoiceProps(BaseModel):
    egs_info: EGSInfo
    invoice_counter_number: int = Field(..., ge=1, description="ICV")
    invoice_serial_number: str
    issue_date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    issue_time: str = Field(..., pattern=r"^\d{2}:\d{2}:\d{2}$")
    previous_invoice_hash: str = Field(..., description="PIH, base64 SHA-256 of the previous invoice")
    line_items: list[LineItem] = Field(default_factory=list)
    cancelation: Optional[Cancellation] = None


# ─────────────────────────────────────────────────────────────
# API
# ─────────────────────────────────────────────────────────────

class InvoiceTotals(BaseModel):
    line_count: int
    tax_exclusive_amount: str
    tax_amount: str
    tax_inclusive_amount: str
    payable_amount: str


class BuildInvoiceRequest(SimplifiedInvoiceProps):
    emit_per_line_tax_subtotals: Optional[bool] = None


class BuildInvoiceResponse(BaseModel):
    invoice_xml: str
    totals: InvoiceTotals


class SignInvoiceRequest(BaseModel):
    invoice: BuildInvoiceRequest
    certificate: str = Field(..., description="EC certificate, PEM or bare base64")
    private_key: str = Field(..., description="EC private key, PEM or bare base64")


class SignInvoiceResponse(BaseModel):
    signed_xml: str
    invoice_hash: str
    qr: str


class ParseInvoiceRequest(BaseModel):
    invoice_xml: str


class ParseInvoiceResponse(BaseModel):
    invoice_xml: str


class QRRequest(BaseModel):
    qr: str = Field(..., min_length=1)


class IssuedCertificate(BaseModel):
    """CSID returned by the compliance / production endpoints."""
    issued_certificate: str
    api_secret: str
    request_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: str
    code: Optional[str] = None
    zatca_messages: Optional[list] = None


class HealthResponse(BaseModel):
    """Health check."""
    status: str = "ok"
    version: str
    environment: str
    reporting_url: str
