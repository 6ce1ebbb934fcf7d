"""
KSA E-INVOICE — Module 2: SignEngine
Signs simplified invoices with the EGS unit's EC (secp256k1) key and certificate.

Flow:
1. Invoice hash: drop UBLExtensions, the QR reference and cac:Signature, C14N, SHA-256
2. Digital signature: ECDSA-SHA256 over the raw invoice hash bytes
3. Certificate hash + XAdES signed properties, signed properties hash
4. UBL extension block inserted as the first child of Invoice
5. QR payload (TLV, base64) added after the PIH reference, then cac:Signature

ZATCA signing rules:
- Certificate and signed-properties digests are base64(hex(sha256(...)))
- The invoice digest is base64(sha256(...))
- Private key is processed ONLY in memory, never written to disk or logged
"""

import base64
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from lxml import etree

from ksa_einvoice.utils.zatca_helpers import (
    clean_up_certificate_string,
    clean_up_private_key_string,
)
from ksa_einvoice.zatca.xml_document import NSMAP, XMLDocument

logger = logging.getLogger(__name__)

SIGNATURE_ID = "urn:oasis:names:specification:ubl:signature:Invoice"
SIGNATURE_METHOD = "urn:oasis:names:specification:ubl:dsig:enveloped:xades"

_NS = {prefix: uri for prefix, uri in NSMAP.items() if prefix}

_QR_FIELDS = {
    1: "Invoice/cac:AccountingSupplierParty/cac:Party/cac:PartyLegalEntity/cbc:RegistrationName",
    2: "Invoice/cac:AccountingSupplierParty/cac:Party/cac:PartyTaxScheme/cbc:CompanyID",
    4: "Invoice/cac:LegalMonetaryTotal/cbc:TaxInclusiveAmount",
    5: "Invoice/cac:TaxTotal/cbc:TaxAmount",
}


class SignEngineError(Exception):
    """Raised when signing operations fail."""
    def __init__(self, message: str, code: str = "SIGN_ERROR"):
        self.message = message
        self.code = code
        super().__init__(self.message)


@dataclass
class SignedInvoice:
    signed_xml: str
    invoice_hash: str
    qr: str


class CertificateInfo:
    """Parsed view of the EGS certificate used in the signature block and QR."""

    def __init__(self, certificate_string: str):
        self.certificate_string = clean_up_certificate_string(certificate_string)
        try:
            der = base64.b64decode(self.certificate_string, validate=True)
            self._certificate = x509.load_der_x509_certificate(der)
        except ValueError as e:
            raise SignEngineError(f"Invalid certificate: {e}", "CERTIFICATE_ERROR") from e

    @property
    def hash(self) -> str:
        digest = hashlib.sha256(self.certificate_string.encode("utf-8")).hexdigest()
        return base64.b64encode(digest.encode("utf-8")).decode("utf-8")

    @property
    def issuer(self) -> str:
        # most specific RDN first, ", " separated: "CN=..., DC=..."
        return ", ".join(rdn.rfc4514_string() for rdn in reversed(self._certificate.issuer.rdns))

    @property
    def serial_number(self) -> str:
        return str(self._certificate.serial_number)

    @property
    def public_key(self) -> bytes:
        return self._certificate.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )

    @property
    def signature(self) -> bytes:
        return self._certificate.signature


def load_private_key(private_key_string: str) -> ec.EllipticCurvePrivateKey:
    """Accepts PEM (SEC1 or PKCS#8) with or without armour."""
    try:
        der = base64.b64decode(clean_up_private_key_string(private_key_string), validate=True)
        key = serialization.load_der_private_key(der, password=None)
    except (ValueError, TypeError) as e:
        raise SignEngineError(f"Invalid private key: {e}", "PRIVATE_KEY_ERROR") from e
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise SignEngineError("Private key must be an EC key (secp256k1).", "PRIVATE_KEY_ERROR")
    return key


def _tlv(tag: int, value: bytes) -> bytes:
    if len(value) > 255:
        raise SignEngineError(f"QR field {tag} is too long ({len(value)} bytes).", "QR_ERROR")
    return bytes([tag, len(value)]) + value


def _sha256_hex_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.sha256(data).hexdigest().encode("utf-8")).decode("utf-8")


class SignEngine:
    """
    Usage:
        engine = SignEngine()
        signed = engine.sign_invoice(document, certificate_pem, private_key_pem)
        signed.signed_xml, signed.invoice_hash, signed.qr
    """

    # ── Hashing ──

    def get_invoice_hash(self, document: XMLDocument) -> str:
        """base64 SHA-256 of the canonical invoice without signature parts."""
        root = document.copy().root
        for node in self._signature_nodes(root):
            node.getparent().remove(node)
        canonical = etree.tostring(root, method="c14n")
        return base64.b64encode(hashlib.sha256(canonical).digest()).decode("utf-8")

    @staticmethod
    def _signature_nodes(root: etree._Element) -> list[etree._Element]:
        return (
            root.findall("ext:UBLExtensions", _NS)
            + root.xpath("cac:AdditionalDocumentReference[cbc:ID='QR']", namespaces=_NS)
            + root.findall("cac:Signature", _NS)
        )

    def create_invoice_digital_signature(self, invoice_hash: str, private_key_string: str) -> str:
        key = load_private_key(private_key_string)
        signature = key.sign(base64.b64decode(invoice_hash), ec.ECDSA(hashes.SHA256()))
        return base64.b64encode(signature).decode("utf-8")

    # ── QR ──

    def generate_qr(self, document: XMLDocument, invoice_hash: str, digital_signature: str,
                    certificate: CertificateInfo) -> str:
        """base64 TLV payload, tags 1-9."""
        values = {}
        for tag, path in _QR_FIELDS.items():
            text = document.get_text(path)
            if not text:
                raise SignEngineError(f"Missing QR field {tag} at '{path}'.", "QR_DATA_MISSING")
            values[tag] = text

        issue_date = document.get_text("Invoice/cbc:IssueDate")
        issue_time = document.get_text("Invoice/cbc:IssueTime")
        if not issue_date or not issue_time:
            raise SignEngineError("Missing invoice issue date/time.", "QR_DATA_MISSING")

        payload = b"".join([
            _tlv(1, values[1].encode("utf-8")),
            _tlv(2, values[2].encode("utf-8")),
            _tlv(3, f"{issue_date}T{issue_time}".encode("utf-8")),
            _tlv(4, values[4].encode("utf-8")),
            _tlv(5, values[5].encode("utf-8")),
            _tlv(6, invoice_hash.encode("utf-8")),
            _tlv(7, digital_signature.encode("utf-8")),
            _tlv(8, certificate.public_key),
            _tlv(9, certificate.signature),
        ])
        return base64.b64encode(payload).decode("utf-8")

    # ── Signature block ──

    def _ubl_extensions(self, invoice_hash: str, digital_signature: str,
                        certificate: CertificateInfo, signing_time: str) -> dict:
        signed_properties = {
            "@Id": "xadesSignedProperties",
            "xades:SignedSignatureProperties": {
                "xades:SigningTime": signing_time,
                "xades:SigningCertificate": {
                    "xades:Cert": {
                        "xades:CertDigest": {
                            "ds:DigestMethod": {"@Algorithm": "http://www.w3.org/2001/04/xmlenc#sha256"},
                            "ds:DigestValue": certificate.hash,
                        },
                        "xades:IssuerSerial": {
                            "ds:X509IssuerName": certificate.issuer,
                            "ds:X509SerialNumber": certificate.serial_number,
                        },
                    },
                },
            },
        }
        signed_info = {
            "ds:CanonicalizationMethod": {"@Algorithm": "http://www.w3.org/2006/12/xml-c14n11"},
            "ds:SignatureMethod": {"@Algorithm": "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256"},
            "ds:Reference": [
                {
                    "@Id": "invoiceSignedData",
                    "@URI": "",
                    "ds:Transforms": {
                        "ds:Transform": [
                            {
                                "@Algorithm": "http://www.w3.org/TR/1999/REC-xpath-19991116",
                                "ds:XPath": expression,
                            }
                            for expression in (
                                "not(//ancestor-or-self::ext:UBLExtensions)",
                                "not(//ancestor-or-self::cac:Signature)",
                                "not(//ancestor-or-self::cac:AdditionalDocumentReference[cbc:ID='QR'])",
                            )
                        ] + [{"@Algorithm": "http://www.w3.org/2006/12/xml-c14n11"}],
                    },
                    "ds:DigestMethod": {"@Algorithm": "http://www.w3.org/2001/04/xmlenc#sha256"},
                    "ds:DigestValue": invoice_hash,
                },
                {
                    "@Type": "http://www.w3.org/2000/09/xmldsig#SignatureProperties",
                    "@URI": "#xadesSignedProperties",
                    "ds:DigestMethod": {"@Algorithm": "http://www.w3.org/2001/04/xmlenc#sha256"},
                    # filled once the signed properties are in the tree
                    "ds:DigestValue": "",
                },
            ],
        }
        return {
            "ext:UBLExtension": {
                "ext:ExtensionURI": SIGNATURE_METHOD,
                "ext:ExtensionContent": {
                    "sig:UBLDocumentSignatures": {
                        "sac:SignatureInformation": {
                            "cbc:ID": "urn:oasis:names:specification:ubl:signature:1",
                            "sbc:ReferencedSignatureID": SIGNATURE_ID,
                            "ds:Signature": {
                                "@Id": "signature",
                                "ds:SignedInfo": signed_info,
                                "ds:SignatureValue": digital_signature,
                                "ds:KeyInfo": {
                                    "ds:X509Data": {"ds:X509Certificate": certificate.certificate_string},
                                },
                                "ds:Object": {
                                    "xades:QualifyingProperties": {
                                        "@Target": "signature",
                                        "xades:SignedProperties": signed_properties,
                                    },
                                },
                            },
                        },
                    },
                },
            },
        }

    @staticmethod
    def _place(element: etree._Element, after: Optional[etree._Element]) -> None:
        """Move ``element`` to follow ``after`` (or to the top), copying its whitespace."""
        parent = element.getparent()
        if after is None:
            parent.insert(0, element)
            element.tail = parent.text
        else:
            after.addnext(element)
            element.tail = after.tail
        etree.indent(element, space="    ", level=1)

    # ── Public API ──

    def sign_invoice(self, document: XMLDocument, certificate_string: str, private_key_string: str,
                     signing_time: Optional[datetime] = None) -> SignedInvoice:
        """
        Sign a copy of ``document``. The document passed in is left untouched.

        Raises:
            SignEngineError: bad certificate/key, or fields missing for the QR
        """
        certificate = CertificateInfo(certificate_string)
        signing_time = (signing_time or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%S")

        signed = document.copy()
        for node in self._signature_nodes(signed.root):
            node.getparent().remove(node)

        invoice_hash = self.get_invoice_hash(signed)
        digital_signature = self.create_invoice_digital_signature(invoice_hash, private_key_string)
        logger.info(f"Signing invoice, hash {invoice_hash[:12]}...")

        signed.set("Invoice/ext:UBLExtensions", False,
                   self._ubl_extensions(invoice_hash, digital_signature, certificate, signing_time))
        extensions = signed.get("Invoice/ext:UBLExtensions")[0]
        self._place(extensions, None)

        signed_properties = extensions.find(".//xades:SignedProperties", _NS)
        properties_hash = _sha256_hex_b64(etree.tostring(signed_properties, method="c14n", exclusive=True))
        extensions.findall(".//ds:SignedInfo/ds:Reference/ds:DigestValue", _NS)[1].text = properties_hash

        qr = self.generate_qr(signed, invoice_hash, digital_signature, certificate)

        last_reference = signed.get("Invoice/cac:AdditionalDocumentReference")
        signed.set("Invoice/cac:AdditionalDocumentReference", True, {
            "cbc:ID": "QR",
            "cac:Attachment": {
                "cbc:EmbeddedDocumentBinaryObject": {"@mimeCode": "text/plain", "#text": qr},
            },
        })
        qr_reference = signed.get("Invoice/cac:AdditionalDocumentReference")[-1]
        self._place(qr_reference, last_reference[-1] if last_reference else None)

        signed.set("Invoice/cac:Signature", False, {
            "cbc:ID": SIGNATURE_ID,
            "cbc:SignatureMethod": SIGNATURE_METHOD,
        })
        self._place(signed.get("Invoice/cac:Signature")[0], qr_reference)

        logger.info(f"Invoice signed, QR payload {len(qr)} chars")
        return SignedInvoice(signed_xml=signed.serialize(), invoice_hash=invoice_hash, qr=qr)


# Singleton instance
sign_engine = SignEngine()
