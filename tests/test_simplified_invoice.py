"""
KSA E-INVOICE — Simplified invoice tests
Build mode (template + tax data), parse mode, cancellations and round trips.
"""

import pytest
from lxml import etree
from pydantic import ValidationError

from ksa_einvoice.schemas.models import SimplifiedInvoiceProps, ZATCAInvoiceTypes, ZATCAPaymentMethods
from ksa_einvoice.zatca.errors import ConstructionError, ParseError
from ksa_einvoice.zatca.simplified_invoice import ZATCASimplifiedTaxInvoice
from ksa_einvoice.zatca.xml_document import NSMAP

from conftest import make_props

NS = {k: v for k, v in NSMAP.items() if k}
NS["inv"] = NSMAP[None]


def _tree(invoice: ZATCASimplifiedTaxInvoice) -> etree._Element:
    return etree.fromstring(invoice.get_xml().serialize().split("?>", 1)[1].encode())


def _text(root, xpath: str) -> list[str]:
    return [el.text for el in root.xpath(xpath, namespaces=NS)]


class TestBuild:
    def test_basic_scenario(self):
        root = _tree(ZATCASimplifiedTaxInvoice(props=make_props()))
        assert _text(root, "cac:InvoiceLine/cbc:LineExtensionAmount") == ["200.00"]
        assert _text(root, "cac:InvoiceLine/cac:TaxTotal/cbc:TaxAmount") == ["30.00"]
        assert _text(root, "cac:TaxTotal/cbc:TaxAmount") == ["30.00", "30.00"]
        assert _text(root, "cac:TaxTotal/cac:TaxSubtotal/cbc:TaxableAmount") == ["200.00"]
        assert _text(root, "cac:LegalMonetaryTotal/cbc:TaxExclusiveAmount") == ["200.00"]
        assert _text(root, "cac:LegalMonetaryTotal/cbc:TaxInclusiveAmount") == ["230.00"]
        assert _text(root, "cac:LegalMonetaryTotal/cbc:PayableAmount") == ["230.00"]

    def test_discount_scenario(self):
        props = make_props(line_items=[{
            "id": "1", "name": "TEST NAME", "quantity": 2, "tax_exclusive_price": "100.00",
            "vat_percent": "0.15", "discounts": [{"amount": "50.00", "reason": "A discount"}],
        }])
        invoice = ZATCASimplifiedTaxInvoice(props=props)
        root = _tree(invoice)
        assert _text(root, "cac:InvoiceLine/cbc:LineExtensionAmount") == ["150.00"]
        assert _text(root, "cac:InvoiceLine/cac:TaxTotal/cbc:TaxAmount") == ["22.50"]
        assert _text(root, "cac:LegalMonetaryTotal/cbc:PayableAmount") == ["172.50"]
        assert _text(root, "cac:InvoiceLine/cac:Price/cac:AllowanceCharge/cbc:ChargeIndicator") == ["false"]
        assert invoice.totals.payable_amount == "172.50"
        assert invoice.totals.tax_amount == "22.50"

    def test_zero_vat(self):
        props = make_props(line_items=[
            {"id": "1", "name": "Exempt", "quantity": 1, "tax_exclusive_price": "10", "vat_percent": 0},
        ])
        root = _tree(ZATCASimplifiedTaxInvoice(props=props))
        assert _text(root, "cac:InvoiceLine/cac:Item/cac:ClassifiedTaxCategory/cbc:ID") == ["O"]
        assert _text(root, "cac:InvoiceLine/cac:Item/cac:ClassifiedTaxCategory/cbc:Percent") == []
        assert _text(root, "cac:TaxTotal/cac:TaxSubtotal/cac:TaxCategory/cbc:ID") == ["O"]
        assert _text(root, "cac:TaxTotal/cac:TaxSubtotal/cac:TaxCategory/cbc:TaxExemptionReason") == [
            "Not subject to VAT",
        ]

    def test_element_order(self):
        props = make_props(
            cancelation={"payment_method": "10", "reason": "Returned goods", "canceled_invoice_number": "EGS1-1"},
        )
        root = _tree(ZATCASimplifiedTaxInvoice(props=props))
        names = [etree.QName(child).localname for child in root]
        assert names[-6:] == [
            "AccountingCustomerParty", "PaymentMeans", "TaxTotal", "TaxTotal",
            "LegalMonetaryTotal", "InvoiceLine",
        ]
        assert names.index("BillingReference") < names.index("AdditionalDocumentReference")

    def test_lines_keep_input_order(self):
        items = [
            {"id": str(i), "name": f"Item {i}", "quantity": 1, "tax_exclusive_price": "1", "vat_percent": "0.15"}
            for i in (3, 1, 2)
        ]
        root = _tree(ZATCASimplifiedTaxInvoice(props=make_props(line_items=items)))
        assert _text(root, "cac:InvoiceLine/cbc:ID") == ["3", "1", "2"]

    def test_header_fields(self):
        root = _tree(ZATCASimplifiedTaxInvoice(props=make_props()))
        assert _text(root, "cbc:ProfileID") == ["reporting:1.0"]
        assert _text(root, "cbc:ID") == ["EGS1-886431145-1"]
        assert _text(root, "cbc:InvoiceTypeCode") == ["388"]
        assert root.find("cbc:InvoiceTypeCode", NS).get("name") == "0211010"
        assert _text(root, "cbc:DocumentCurrencyCode") == ["SAR"]
        assert _text(root, "cac:AdditionalDocumentReference/cbc:UUID") == ["1"]
        assert _text(root, "cac:AccountingSupplierParty/cac:Party/cac:PartyTaxScheme/cbc:CompanyID") == [
            "301121971500003",
        ]

    def test_text_is_escaped(self):
        egs = dict(make_props()["egs_info"], VAT_name="Tom & Jerry <Co>")
        invoice = ZATCASimplifiedTaxInvoice(props=make_props(egs_info=egs))
        assert "Tom &amp; Jerry &lt;Co&gt;" in invoice.get_xml().serialize()
        assert _text(_tree(invoice), "//cbc:RegistrationName") == ["Tom & Jerry <Co>"]

    def test_accepts_model(self):
        invoice = ZATCASimplifiedTaxInvoice(props=SimplifiedInvoiceProps.model_validate(make_props()))
        assert invoice.totals.tax_inclusive_amount == "230.00"

    def test_per_line_flag(self):
        items = [
            {"id": "1", "name": "A", "quantity": 1, "tax_exclusive_price": "100", "vat_percent": "0.15"},
            {"id": "2", "name": "B", "quantity": 1, "tax_exclusive_price": "50", "vat_percent": "0.15"},
        ]
        default = _tree(ZATCASimplifiedTaxInvoice(props=make_props(line_items=items)))
        per_line = _tree(ZATCASimplifiedTaxInvoice(props=make_props(line_items=items),
                                                   emit_per_line_tax_subtotals=True))
        assert len(default.xpath("cac:TaxTotal/cac:TaxSubtotal", namespaces=NS)) == 1
        assert _text(per_line, "cac:TaxTotal/cac:TaxSubtotal/cbc:TaxAmount") == ["15.00", "7.50"]


class TestCancellation:
    def test_payment_means(self):
        props = make_props(cancelation={"payment_method": "10", "reason": "Returned goods"})
        root = _tree(ZATCASimplifiedTaxInvoice(props=props))
        assert _text(root, "cac:PaymentMeans/cbc:PaymentMeansCode") == ["10"]
        assert _text(root, "cac:PaymentMeans/cbc:InstructionNote") == ["Returned goods"]

    def test_default_note(self):
        props = make_props(cancelation={"payment_method": ZATCAPaymentMethods.BANK_CARD})
        root = _tree(ZATCASimplifiedTaxInvoice(props=props))
        assert _text(root, "cac:PaymentMeans/cbc:PaymentMeansCode") == ["48"]
        assert _text(root, "cac:PaymentMeans/cbc:InstructionNote") == ["No note Specified"]

    @pytest.mark.parametrize("cancelation_type,code", [
        (None, "381"),
        (ZATCAInvoiceTypes.DEBIT_NOTE, "383"),
        (ZATCAInvoiceTypes.CREDIT_NOTE, "381"),
    ])
    def test_invoice_type_code(self, cancelation_type, code):
        cancelation = {"payment_method": "10", "canceled_invoice_number": "EGS1-886431145-0"}
        if cancelation_type:
            cancelation["cancelation_type"] = cancelation_type
        root = _tree(ZATCASimplifiedTaxInvoice(props=make_props(cancelation=cancelation)))
        assert _text(root, "cbc:InvoiceTypeCode") == [code]
        assert _text(root, "cac:BillingReference/cac:InvoiceDocumentReference/cbc:ID") == ["EGS1-886431145-0"]

    def test_no_cancellation_no_payment_means(self):
        root = _tree(ZATCASimplifiedTaxInvoice(props=make_props()))
        assert root.find("cac:PaymentMeans", NS) is None
        assert root.find("cac:BillingReference", NS) is None


class TestParseMode:
    def test_round_trip(self):
        built = ZATCASimplifiedTaxInvoice(props=make_props()).get_xml().serialize()
        parsed = ZATCASimplifiedTaxInvoice(invoice_xml_str=built)
        assert parsed.get_xml().serialize() == built
        assert parsed.totals is None

    def test_no_recomputation(self):
        built = ZATCASimplifiedTaxInvoice(props=make_props()).get_xml().serialize()
        tampered = built.replace(">230.00<", ">999.99<")
        parsed = ZATCASimplifiedTaxInvoice(invoice_xml_str=tampered)
        assert parsed.get_xml().serialize() == tampered

    def test_malformed(self):
        with pytest.raises(ParseError):
            ZATCASimplifiedTaxInvoice(invoice_xml_str="<Invoice><unclosed></Invoice>")


class TestConstructionErrors:
    def test_nothing_given(self):
        with pytest.raises(ConstructionError):
            ZATCASimplifiedTaxInvoice()

    def test_empty_line_items(self):
        with pytest.raises(ConstructionError):
            ZATCASimplifiedTaxInvoice(props=make_props(line_items=[]))

    @pytest.mark.parametrize("bad", ["", "abc", None, "NaN"])
    def test_bad_amount_rejected(self, bad):
        props = make_props(line_items=[
            {"id": "1", "name": "X", "quantity": 1, "tax_exclusive_price": bad, "vat_percent": "0.15"},
        ])
        with pytest.raises(ValidationError):
            ZATCASimplifiedTaxInvoice(props=props)
