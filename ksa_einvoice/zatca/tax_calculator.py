"""
KSA E-INVOICE: Tax calculator
=============================
Line item taxes, invoice tax totals and the legal monetary total, produced as
document values ready for ``XMLDocument.set``.

RULES:
- Every amount is truncated to 2 decimals at each step (BR-KSA-DEC-02/03,
  BR-DEC-01/19/23). Truncation happens on Decimal values, never floats.
- Category "S" when the VAT percent is non-zero, "O" otherwise. Percent is
  written as a human percent (0.15 -> "15.00") and omitted on zero-rated lines.
- RoundingAmount (line) and TaxInclusive/PayableAmount (invoice) use ordinary
  half-up rounding; they are check values computed from truncated parts.
- Invoice level: one VAT TaxSubtotal using the first line's VAT percent as the
  representative rate, unless per-line subtotals are requested.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from ksa_einvoice.schemas.models import LineItem
from ksa_einvoice.utils.zatca_helpers import (
    format_amount,
    format_plain,
    truncate,
    truncate_decimal,
)
from ksa_einvoice.zatca.errors import ConstructionError

logger = logging.getLogger(__name__)

HUNDRED = Decimal(100)
ZERO = Decimal("0.00")

NOT_SUBJECT_TO_VAT = "Not subject to VAT"
UNIT_CODE = "PCE"


def tax_category_code(percent: Decimal) -> str:
    return "S" if percent else "O"


def format_percent(fraction: Decimal) -> str:
    """0.15 -> '15.00', truncated."""
    return truncate_decimal(fraction * HUNDRED, 2)


def _amount(value, currency: str) -> dict:
    return {"@currencyID": currency, "#text": truncate_decimal(value, 2)}


# ─────────────────────────────────────────────────────────────
# LINE ITEMS
# ─────────────────────────────────────────────────────────────

@dataclass
class LineItemComputationResult:
    """Per-line result. Lives only until it is folded into the invoice."""
    line_item: LineItem
    subtotal: Decimal
    total_taxes: Decimal
    total_discounts: Decimal
    vat_amount: Decimal
    other_tax_amounts: list[Decimal] = field(default_factory=list)
    allowance_charges: list[dict] = field(default_factory=list)
    classified_tax_categories: list[dict] = field(default_factory=list)
    tax_total: dict = field(default_factory=dict)

    @property
    def rounding_amount(self) -> str:
        return format_amount(self.subtotal + self.total_taxes, 2)


def compute_line_item(line_item: LineItem, currency: str = "SAR") -> LineItemComputationResult:
    """Compute taxes, discounts and subtotal for one line item."""
    vat_percent = line_item.vat_percent

    classified_tax_categories = [{
        "cbc:ID": tax_category_code(vat_percent),
        "cbc:Percent": format_percent(vat_percent) if vat_percent else None,
        "cac:TaxScheme": {"cbc:ID": "VAT"},
    }]

    total_discounts = Decimal(0)
    allowance_charges = []
    for discount in line_item.discounts:
        total_discounts += discount.amount
        allowance_charges.append({
            "cbc:ChargeIndicator": "false",
            "cbc:AllowanceChargeReason": discount.reason,
            "cbc:Amount": _amount(discount.amount, currency),
        })

    subtotal = truncate(line_item.tax_exclusive_price * line_item.quantity - total_discounts, 2)

    vat_amount = truncate(subtotal * vat_percent, 2)
    total_taxes = vat_amount

    other_tax_amounts = []
    for tax in line_item.other_taxes:
        amount = truncate(subtotal * tax.percent_amount, 2)
        other_tax_amounts.append(amount)
        total_taxes = truncate(total_taxes + amount, 2)
        classified_tax_categories.append({
            "cbc:ID": "S",
            "cbc:Percent": format_percent(tax.percent_amount),
            "cac:TaxScheme": {"cbc:ID": "VAT"},
        })

    result = LineItemComputationResult(
        line_item=line_item,
        subtotal=subtotal,
        total_taxes=total_taxes,
        total_discounts=total_discounts,
        vat_amount=vat_amount,
        other_tax_amounts=other_tax_amounts,
        allowance_charges=allowance_charges,
        classified_tax_categories=classified_tax_categories,
    )
    result.tax_total = {
        "cbc:TaxAmount": _amount(total_taxes, currency),
        "cbc:RoundingAmount": {"@currencyID": currency, "#text": result.rounding_amount},
    }
    logger.debug(
        f"Line {line_item.id}: subtotal={subtotal} taxes={total_taxes} discounts={total_discounts}"
    )
    return result


def construct_line_item(result: LineItemComputationResult, currency: str = "SAR") -> dict:
    """``cac:InvoiceLine`` value for a computed line item."""
    line_item = result.line_item
    return {
        "cbc:ID": line_item.id,
        "cbc:InvoicedQuantity": {"@unitCode": UNIT_CODE, "#text": format_plain(line_item.quantity)},
        "cbc:LineExtensionAmount": _amount(result.subtotal, currency),
        "cac:TaxTotal": result.tax_total,
        "cac:Item": {
            "cbc:Name": line_item.name,
            "cac:ClassifiedTaxCategory": result.classified_tax_categories,
        },
        "cac:Price": {
            "cbc:PriceAmount": {"@currencyID": currency, "#text": format_plain(line_item.tax_exclusive_price)},
            "cac:AllowanceCharge": result.allowance_charges,
        },
    }


# ─────────────────────────────────────────────────────────────
# INVOICE TOTALS
# ─────────────────────────────────────────────────────────────

@dataclass
class AggregatedTotals:
    """Invoice taxable-amount and tax totals, both truncated step by step."""
    tax_exclusive_amount: Decimal = ZERO
    taxes_total: Decimal = ZERO
    line_count: int = 0

    @property
    def tax_inclusive_amount(self) -> str:
        return format_amount(self.tax_exclusive_amount + self.taxes_total, 2)


def tax_subtotal(taxable_amount: Decimal, tax_amount: Decimal, percent: Decimal, currency: str = "SAR") -> dict:
    """One ``cac:TaxSubtotal`` entry with the UN/ECE scheme identifiers."""
    return {
        "cbc:TaxableAmount": _amount(taxable_amount, currency),
        "cbc:TaxAmount": _amount(tax_amount, currency),
        "cac:TaxCategory": {
            "cbc:ID": {
                "@schemeAgencyID": "6",
                "@schemeID": "UN/ECE 5305",
                "#text": tax_category_code(percent),
            },
            "cbc:Percent": format_percent(percent),
            # BR-O-10
            "cbc:TaxExemptionReason": None if percent else NOT_SUBJECT_TO_VAT,
            "cac:TaxScheme": {
                "cbc:ID": {
                    "@schemeAgencyID": "6",
                    "@schemeID": "UN/ECE 5153",
                    "#text": "VAT",
                },
            },
        },
    }


class InvoiceAggregator:
    """
    Folds line results into invoice totals and builds the ``cac:TaxTotal`` pair.

    Usage:
        aggregator = InvoiceAggregator(currency="SAR")
        for item in line_items:
            aggregator.add(compute_line_item(item))
        tax_total = aggregator.construct_tax_total()
    """

    def __init__(self, currency: str = "SAR", emit_per_line_tax_subtotals: bool = False):
        self.currency = currency
        self.emit_per_line_tax_subtotals = emit_per_line_tax_subtotals
        self.totals = AggregatedTotals()
        self.results: list[LineItemComputationResult] = []

    def add(self, result: LineItemComputationResult) -> None:
        self.results.append(result)
        self.totals.tax_exclusive_amount = truncate(self.totals.tax_exclusive_amount + result.subtotal, 2)
        self.totals.taxes_total = truncate(self.totals.taxes_total + result.total_taxes, 2)
        self.totals.line_count += 1

    def _tax_subtotals(self) -> list[dict]:
        if not self.emit_per_line_tax_subtotals:
            representative = self.results[0].line_item.vat_percent
            return [tax_subtotal(self.totals.tax_exclusive_amount, self.totals.taxes_total,
                                 representative, self.currency)]

        subtotals = []
        for result in self.results:
            subtotals.append(tax_subtotal(result.subtotal, result.vat_amount,
                                          result.line_item.vat_percent, self.currency))
            for tax, amount in zip(result.line_item.other_taxes, result.other_tax_amounts):
                subtotals.append(tax_subtotal(result.subtotal, amount, tax.percent_amount, self.currency))
        return subtotals

    def construct_tax_total(self) -> list[dict]:
        """
        Two TaxTotal entries: the full total with its subtotals, then the
        bare VAT total KSA requires alongside it.

        Raises:
            ConstructionError: no line items were added
        """
        if not self.results:
            raise ConstructionError("An invoice needs at least one line item.")

        tax_amount = _amount(self.totals.taxes_total, self.currency)
        return [
            {"cbc:TaxAmount": tax_amount, "cac:TaxSubtotal": self._tax_subtotals()},
            {"cbc:TaxAmount": dict(tax_amount)},
        ]


def construct_legal_monetary_total(tax_exclusive_subtotal: Decimal, taxes_total: Decimal,
                                   currency: str = "SAR") -> dict:
    """``cac:LegalMonetaryTotal`` value. No prepayments or invoice-level allowances."""
    tax_inclusive = format_amount(tax_exclusive_subtotal + taxes_total, 2)
    return {
        # BR-DEC-09
        "cbc:LineExtensionAmount": _amount(tax_exclusive_subtotal, currency),
        # BR-DEC-12
        "cbc:TaxExclusiveAmount": _amount(tax_exclusive_subtotal, currency),
        # BR-DEC-14
        "cbc:TaxInclusiveAmount": {"@currencyID": currency, "#text": tax_inclusive},
        "cbc:AllowanceTotalAmount": _amount(0, currency),
        "cbc:PrepaidAmount": _amount(0, currency),
        # BR-DEC-18
        "cbc:PayableAmount": {"@currencyID": currency, "#text": tax_inclusive},
    }
