"""
KSA E-INVOICE: Simplified tax invoice template
==============================================
Base unsigned UBL 2.1 document for a simplified (B2C) invoice, before any
tax data is written into it.

Rules carried by the template:
- ProfileID reporting:1.0 (simplified invoices are reported, not cleared)
- InvoiceTypeCode name="0211010": simplified invoice, no special flags
- ICV and PIH references are mandatory (BR-KSA-33, BR-KSA-61)
- Credit/debit notes carry a BillingReference to the cancelled invoice (BR-KSA-56)
- Ends at AccountingCustomerParty so PaymentMeans, TaxTotal,
  LegalMonetaryTotal and InvoiceLine can be appended in schema order
"""
from xml.sax.saxutils import escape

from ksa_einvoice.schemas.models import (
    SimplifiedInvoiceProps,
    ZATCAInvoiceTypes,
    ZATCAPaymentMethods,
)

__all__ = ["simplified_tax_invoice_template", "ZATCAInvoiceTypes", "ZATCAPaymentMethods"]

SIMPLIFIED_INVOICE_SUBTYPE = "0211010"

_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<Invoice xmlns="urn:oasis:names:specification:ubl:schema:xsd:Invoice-2" xmlns:cac="urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2" xmlns:cbc="urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2" xmlns:ext="urn:oasis:names:specification:ubl:schema:xsd:CommonExtensionComponents-2">
    <cbc:ProfileID>reporting:1.0</cbc:ProfileID>
    <cbc:ID>{invoice_serial_number}</cbc:ID>
    <cbc:UUID>{egs_uuid}</cbc:UUID>
    <cbc:IssueDate>{issue_date}</cbc:IssueDate>
    <cbc:IssueTime>{issue_time}</cbc:IssueTime>
    <cbc:InvoiceTypeCode name="{subtype}">{invoice_type}</cbc:InvoiceTypeCode>
    <cbc:DocumentCurrencyCode>{currency}</cbc:DocumentCurrencyCode>
    <cbc:TaxCurrencyCode>{currency}</cbc:TaxCurrencyCode>{billing_reference}
    <cac:AdditionalDocumentReference>
        <cbc:ID>ICV</cbc:ID>
        <cbc:UUID>{invoice_counter_number}</cbc:UUID>
    </cac:AdditionalDocumentReference>
    <cac:AdditionalDocumentReference>
        <cbc:ID>PIH</cbc:ID>
        <cac:Attachment>
            <cbc:EmbeddedDocumentBinaryObject mimeCode="text/plain">{previous_invoice_hash}</cbc:EmbeddedDocumentBinaryObject>
        </cac:Attachment>
    </cac:AdditionalDocumentReference>
    <cac:AccountingSupplierParty>
        <cac:Party>
            <cac:PartyIdentification>
                <cbc:ID schemeID="CRN">{crn_number}</cbc:ID>
            </cac:PartyIdentification>
            <cac:PostalAddress>
                <cbc:StreetName>{street}</cbc:StreetName>
                <cbc:BuildingNumber>{building}</cbc:BuildingNumber>
                <cbc:PlotIdentification>{plot_identification}</cbc:PlotIdentification>
                <cbc:CitySubdivisionName>{city_subdivision}</cbc:CitySubdivisionName>
                <cbc:CityName>{city}</cbc:CityName>
                <cbc:PostalZone>{postal_zone}</cbc:PostalZone>
                <cac:Country>
                    <cbc:IdentificationCode>SA</cbc:IdentificationCode>
                </cac:Country>
            </cac:PostalAddress>
            <cac:PartyTaxScheme>
                <cbc:CompanyID>{vat_number}</cbc:CompanyID>
                <cac:TaxScheme>
                    <cbc:ID>VAT</cbc:ID>
                </cac:TaxScheme>
            </cac:PartyTaxScheme>
            <cac:PartyLegalEntity>
                <cbc:RegistrationName>{vat_name}</cbc:RegistrationName>
            </cac:PartyLegalEntity>
        </cac:Party>
    </cac:AccountingSupplierParty>
    <cac:AccountingCustomerParty/>
</Invoice>
"""

_BILLING_REFERENCE = """
    <cac:BillingReference>
        <cac:InvoiceDocumentReference>
            <cbc:ID>{canceled_invoice_number}</cbc:ID>
        </cac:InvoiceDocumentReference>
    </cac:BillingReference>"""


def simplified_tax_invoice_template(props: SimplifiedInvoiceProps, currency: str = "SAR") -> str:
    """Render the unsigned base document for ``props`` (line items are not used here)."""
    egs = props.egs_info
    location = egs.location

    invoice_type = ZATCAInvoiceTypes.INVOICE.value
    billing_reference = ""
    if props.cancelation:
        invoice_type = props.cancelation.cancelation_type.value
        if props.cancelation.canceled_invoice_number:
            billing_reference = _BILLING_REFERENCE.format(
                canceled_invoice_number=escape(props.cancelation.canceled_invoice_number),
            )

    return _TEMPLATE.format(
        invoice_serial_number=escape(props.invoice_serial_number),
        egs_uuid=escape(egs.uuid),
        issue_date=escape(props.issue_date),
        issue_time=escape(props.issue_time),
        subtype=SIMPLIFIED_INVOICE_SUBTYPE,
        invoice_type=invoice_type,
        currency=escape(currency),
        billing_reference=billing_reference,
        invoice_counter_number=props.invoice_counter_number,
        previous_invoice_hash=escape(props.previous_invoice_hash),
        crn_number=escape(egs.CRN_number),
        street=escape(location.street),
        building=escape(location.building),
        plot_identification=escape(location.plot_identification),
        city_subdivision=escape(location.city_subdivision),
        city=escape(location.city),
        postal_zone=escape(location.postal_zone),
        vat_number=escape(egs.VAT_number),
        vat_name=escape(egs.VAT_name),
    )
