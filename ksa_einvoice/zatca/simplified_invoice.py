"""
KSA E-INVOICE: Simplified tax invoice
=====================================
Two ways in:
- ``ZATCASimplifiedTaxInvoice(invoice_xml_str=...)`` parses an existing
  document as-is. Nothing is recomputed.
- ``ZATCASimplifiedTaxInvoice(props=...)`` renders the base template and
  writes the computed tax data into it.

Build mode writes into the document in a fixed order:
1. cac:PaymentMeans (only for cancellations, BR-KSA-17)
2. cac:TaxTotal (replaced, two entries)
3. cac:LegalMonetaryTotal (replaced)
4. cac:InvoiceLine, appended once per line item in input order
"""

import logging
from typing import Optional, Union

from ksa_einvoice.core.config import settings
from ksa_einvoice.modules.sign_engine import SignedInvoice, sign_engine
from ksa_einvoice.schemas.models import (
    InvoiceTotals,
    SimplifiedInvoiceProps,
    ZATCAInvoiceTypes,
    ZATCAPaymentMethods,
)
from ksa_einvoice.utils.zatca_helpers import truncate_decimal
from ksa_einvoice.zatca.errors import ConstructionError
from ksa_einvoice.zatca.invoice_template import simplified_tax_invoice_template
from ksa_einvoice.zatca.tax_calculator import (
    InvoiceAggregator,
    compute_line_item,
    construct_legal_monetary_total,
    construct_line_item,
)
from ksa_einvoice.zatca.xml_document import XMLDocument

__all__ = ["ZATCASimplifiedTaxInvoice", "ZATCAInvoiceTypes", "ZATCAPaymentMethods"]

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTION_NOTE = "No note Specified"


class ZATCASimplifiedTaxInvoice:
    """
    Usage:
        invoice = ZATCASimplifiedTaxInvoice(props=props)
        xml_text = invoice.get_xml().serialize()
        signed = invoice.sign(certificate_pem, private_key_pem)
    """

    def __init__(
        self,
        invoice_xml_str: Optional[str] = None,
        props: Optional[Union[SimplifiedInvoiceProps, dict]] = None,
        emit_per_line_tax_subtotals: Optional[bool] = None,
        currency: Optional[str] = None,
    ):
        self.currency = currency or settings.invoice_currency
        self.emit_per_line_tax_subtotals = (
            settings.emit_per_line_tax_subtotals
            if emit_per_line_tax_subtotals is None
            else emit_per_line_tax_subtotals
        )
        self.totals: Optional[InvoiceTotals] = None

        if invoice_xml_str:
            self.invoice_xml = XMLDocument.parse(invoice_xml_str)
            return

        if props is None:
            raise ConstructionError("Unable to create new XML invoice: no invoice text or properties given.")
        if isinstance(props, dict):
            props = SimplifiedInvoiceProps.model_validate(props)

        self.invoice_xml = XMLDocument.parse(simplified_tax_invoice_template(props, self.currency))
        self._parse_line_items(props)
        self.invoice_xml.indent()

    def _parse_line_items(self, props: SimplifiedInvoiceProps) -> None:
        if not props.line_items:
            raise ConstructionError("An invoice needs at least one line item.")

        aggregator = InvoiceAggregator(self.currency, self.emit_per_line_tax_subtotals)
        invoice_lines = []
        for line_item in props.line_items:
            result = compute_line_item(line_item, self.currency)
            aggregator.add(result)
            invoice_lines.append(construct_line_item(result, self.currency))

        totals = aggregator.totals

        if props.cancelation:
            # Credit/debit note: PaymentMeans is mandatory
            self.invoice_xml.set("Invoice/cac:PaymentMeans", False, {
                "cbc:PaymentMeansCode": props.cancelation.payment_method.value,
                "cbc:InstructionNote": props.cancelation.reason or DEFAULT_INSTRUCTION_NOTE,
            })

        self.invoice_xml.set("Invoice/cac:TaxTotal", False, aggregator.construct_tax_total())
        self.invoice_xml.set(
            "Invoice/cac:LegalMonetaryTotal", False,
            construct_legal_monetary_total(totals.tax_exclusive_amount, totals.taxes_total, self.currency),
        )
        for invoice_line in invoice_lines:
            self.invoice_xml.set("Invoice/cac:InvoiceLine", True, invoice_line)

        self.totals = InvoiceTotals(
            line_count=totals.line_count,
            tax_exclusive_amount=truncate_decimal(totals.tax_exclusive_amount, 2),
            tax_amount=truncate_decimal(totals.taxes_total, 2),
            tax_inclusive_amount=totals.tax_inclusive_amount,
            payable_amount=totals.tax_inclusive_amount,
        )
        logger.info(
            f"Built invoice {props.invoice_serial_number}: {totals.line_count} line(s), "
            f"exclusive={self.totals.tax_exclusive_amount} tax={self.totals.tax_amount} "
            f"payable={self.totals.payable_amount}"
        )

    def get_xml(self) -> XMLDocument:
        return self.invoice_xml

    def sign(self, certificate_string: str, private_key_string: str) -> SignedInvoice:
        """
        Signs the invoice.

        Args:
            certificate_string: signed EC certificate, PEM or bare base64
            private_key_string: ec-secp256k1 private key

        Returns:
            SignedInvoice with the signed XML (QR included), invoice hash and QR payload
        """
        return sign_engine.sign_invoice(self.invoice_xml, certificate_string, private_key_string)
