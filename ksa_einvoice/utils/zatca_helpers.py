"""
KSA E-INVOICE — Amount & identifier helpers
Decimal formatting used by the tax engine plus small ZATCA utilities.

ZATCA business rules BR-KSA-DEC-02/03 and BR-DEC-01/19/23 require amounts that are
cut at two decimals, never rounded. Rounding would break the authority's own
cross-checks between tax amount, taxable amount and rounding amount.
"""

import re
import uuid
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from io import BytesIO

import qrcode

from ksa_einvoice.zatca.errors import ArithmeticFormattingError


def to_decimal(value) -> Decimal:
    """
    Convert an amount to Decimal without binary float noise.
    Floats go through their shortest repr, so 0.15 becomes Decimal("0.15").

    Raises:
        ArithmeticFormattingError: for None, bool, empty/non-numeric strings,
            NaN or Infinity.
    """
    if isinstance(value, bool) or value is None:
        raise ArithmeticFormattingError(f"Not a numeric amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(repr(value)) if isinstance(value, float) else Decimal(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ArithmeticFormattingError("Empty string is not a numeric amount")
        try:
            result = Decimal(text)
        except InvalidOperation as e:
            raise ArithmeticFormattingError(f"Not a numeric amount: {value!r}") from e
    else:
        raise ArithmeticFormattingError(f"Unsupported amount type: {type(value).__name__}")

    if not result.is_finite():
        raise ArithmeticFormattingError(f"Amount must be finite, got {value!r}")
    return result


def _quantum(places: int) -> Decimal:
    if not isinstance(places, int) or isinstance(places, bool) or places < 0:
        raise ArithmeticFormattingError(f"Decimal places must be a non-negative int, got {places!r}")
    return Decimal(1).scaleb(-places)


def truncate(value, places: int = 2) -> Decimal:
    """Cut ``value`` to ``places`` decimals toward zero."""
    return to_decimal(value).quantize(_quantum(places), rounding=ROUND_DOWN)


def truncate_decimal(value, places: int = 2) -> str:
    """
    Fixed-point string with exactly ``places`` fractional digits, truncated.

    >>> truncate_decimal(1.239, 2)
    '1.23'
    >>> truncate_decimal(-0.5, 2)
    '-0.50'
    """
    result = truncate(value, places)
    if result == 0:
        # -0.001 truncates to -0.00
        result = abs(result)
    return f"{result:.{places}f}"


def round_half_up(value, places: int = 2) -> Decimal:
    return to_decimal(value).quantize(_quantum(places), rounding=ROUND_HALF_UP)


def format_amount(value, places: int = 2) -> str:
    """Ordinary (half-up) fixed-point formatting."""
    return f"{round_half_up(value, places):.{places}f}"


def format_plain(value) -> str:
    """Amount as given, without exponent notation (quantities, unit prices)."""
    return f"{to_decimal(value):f}"


def generate_egs_uuid() -> str:
    """UUID v4 for an EGS unit or an invoice (lowercase, 36 chars)."""
    return str(uuid.uuid4())


_PEM_ARMOUR = re.compile(r"-----(BEGIN|END) [A-Z ]+-----")


def clean_up_certificate_string(certificate_string: str) -> str:
    """Strip PEM armour and line breaks, leaving the base64 body."""
    body = _PEM_ARMOUR.sub("", certificate_string)
    return "".join(body.split())


def clean_up_private_key_string(private_key_string: str) -> str:
    return clean_up_certificate_string(private_key_string)


def generate_qr_image(data_string: str) -> bytes:
    """Render a QR payload (base64 TLV) as a PNG image."""
    qr = qrcode.QRCode(version=None, error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=10, border=2)
    qr.add_data(data_string)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()
