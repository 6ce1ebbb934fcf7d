"""
Shared fixtures: invoice properties and a throwaway EGS certificate.
"""

from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


EGS_INFO = {
    "uuid": "6f4d20e0-6bfe-4a80-9389-7dabe6620f12",
    "custom_id": "EGS1-886431145",
    "model": "IOS",
    "CRN_number": "454634645645654",
    "VAT_name": "Wesam Alzahir",
    "VAT_number": "301121971500003",
    "branch_name": "My Branch Name",
    "branch_industry": "Food",
    "location": {
        "city": "Khobar",
        "city_subdivision": "West",
        "street": "King Fahahd st",
        "plot_identification": "0000",
        "building": "0000",
        "postal_zone": "31952",
    },
}


def make_props(line_items=None, **overrides) -> dict:
    props = {
        "egs_info": EGS_INFO,
        "invoice_counter_number": 1,
        "invoice_serial_number": "EGS1-886431145-1",
        "issue_date": "2022-03-13",
        "issue_time": "14:40:40",
        "previous_invoice_hash": "NWZlY2ViNjZmZmM4NmYzOGQ5NTI3ODZjNmQ2OTZjNzljMmRiYzIzOWRkNGU5MWI0NjcyOWQ3M2EyN2ZiNTdlOQ==",
        "line_items": line_items if line_items is not None else [
            {"id": "1", "name": "TEST NAME", "quantity": 2, "tax_exclusive_price": "100.00", "vat_percent": "0.15"},
        ],
    }
    props.update(overrides)
    return props


@pytest.fixture
def invoice_props():
    return make_props


@pytest.fixture(scope="session")
def egs_credentials():
    """(certificate_pem, private_key_pem) for a self-signed secp256k1 EGS certificate."""
    key = ec.generate_private_key(ec.SECP256K1())
    subject = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "SA"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Wesam Alzahir"),
        x509.NameAttribute(NameOID.COMMON_NAME, "EGS1-886431145"),
    ])
    issuer = x509.Name([
        x509.NameAttribute(NameOID.DOMAIN_COMPONENT, "local"),
        x509.NameAttribute(NameOID.DOMAIN_COMPONENT, "gov"),
        x509.NameAttribute(NameOID.DOMAIN_COMPONENT, "extgazt"),
        x509.NameAttribute(NameOID.COMMON_NAME, "TSZEINVOICE-SubCA-1"),
    ])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(379112742831380471835263969587287663520528387)
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    certificate_pem = certificate.public_bytes(serialization.Encoding.PEM).decode()
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ).decode()
    return certificate_pem, key_pem
