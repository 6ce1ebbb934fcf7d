"""
KSA E-INVOICE — Module 3: ZATCA API client
Certificate issuance, compliance checks and reporting against the Fatoora gateway.

Flow:
1. compliance(None, None).issue_certificate(csr, otp) -> compliance CSID
2. compliance(csid, secret).check_invoice_compliance(...) for each sample invoice
3. production(csid, secret).issue_certificate(request_id) -> production CSID
4. production(pcsid, secret).report_invoice(...) for every simplified invoice

ZATCA Gateway:
- Auth: Basic base64(base64(certificate body) + ":" + secret)
- Headers: Accept-Version: V2, Accept-Language: en
- Invoice bodies: {"invoiceHash", "uuid", "invoice": base64(signed xml)}
- Certificates come back as base64 in "binarySecurityToken"
- 200 = accepted, 202 = accepted with warnings (invoice endpoints only)
"""

import asyncio
import base64
import logging
from typing import Optional

import httpx

from ksa_einvoice.core.config import ZatcaEnvironment, get_zatca_url, settings
from ksa_einvoice.schemas.models import IssuedCertificate
from ksa_einvoice.utils.zatca_helpers import clean_up_certificate_string

logger = logging.getLogger(__name__)


class ZatcaAPIError(Exception):
    """Raised when a ZATCA gateway call fails."""
    def __init__(self, message: str, status_code: int = 500,
                 zatca_response: dict = None, code: str = "ZATCA_API_ERROR"):
        self.message = message
        self.status_code = status_code
        self.zatca_response = zatca_response or {}
        self.code = code
        super().__init__(self.message)

    @property
    def messages(self) -> list:
        """Error/warning messages reported by ZATCA, flattened."""
        data = self.zatca_response
        results = data.get("validationResults") or {}
        flat = []
        for key in ("errorMessages", "warningMessages"):
            for item in results.get(key) or []:
                flat.append(item.get("message", str(item)) if isinstance(item, dict) else str(item))
        for item in data.get("errors") or []:
            flat.append(item.get("message", str(item)) if isinstance(item, dict) else str(item))
        return flat


class CertificateIssuanceError(ZatcaAPIError):
    def __init__(self, message: str, status_code: int = 500, zatca_response: dict = None):
        super().__init__(message, status_code, zatca_response, code="CERTIFICATE_ISSUANCE_ERROR")


class ComplianceCheckError(ZatcaAPIError):
    def __init__(self, message: str, status_code: int = 500, zatca_response: dict = None):
        super().__init__(message, status_code, zatca_response, code="COMPLIANCE_CHECK_ERROR")


class ReportingError(ZatcaAPIError):
    def __init__(self, message: str, status_code: int = 500, zatca_response: dict = None):
        super().__init__(message, status_code, zatca_response, code="REPORTING_ERROR")


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("utf-8")


class ZatcaAPI:
    """
    Client for the ZATCA e-invoicing gateway.

    Usage:
        api = ZatcaAPI()
        issued = await api.compliance().issue_certificate(csr_pem, otp="123345")
        result = await api.compliance(issued.issued_certificate, issued.api_secret) \
            .check_invoice_compliance(signed_xml, invoice_hash, egs_uuid)
    """

    # Retry config
    MAX_RETRIES = 3
    RETRY_DELAY_SECONDS = 2

    def __init__(
        self,
        environment: Optional[ZatcaEnvironment] = None,
        api_version: Optional[str] = None,
        timeout: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_delay: Optional[float] = None,
    ):
        self.environment = environment or settings.zatca_environment
        self.api_version = api_version or settings.zatca_api_version
        self.timeout = timeout or settings.zatca_timeout_seconds
        self.retry_delay = self.RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self._transport = transport

    def _url(self, service: str) -> str:
        return get_zatca_url(service, self.environment)

    @staticmethod
    def auth_headers(certificate: Optional[str] = None, secret: Optional[str] = None) -> dict:
        if certificate and secret:
            stripped = clean_up_certificate_string(certificate)
            basic = _b64(f"{_b64(stripped)}:{secret}")
            return {"Authorization": f"Basic {basic}"}
        return {}

    def compliance(self, certificate: Optional[str] = None, secret: Optional[str] = None) -> "ComplianceAPI":
        return ComplianceAPI(self, self.auth_headers(certificate, secret))

    def production(self, certificate: Optional[str] = None, secret: Optional[str] = None) -> "ProductionAPI":
        return ProductionAPI(self, self.auth_headers(certificate, secret))

    # ── Transport ──

    async def post(self, url: str, payload: dict, headers: dict, error_cls: type[ZatcaAPIError],
                   accepted: tuple[int, ...] = (200,)) -> dict:
        """
        POST with bounded retries on transport failures.

        Raises:
            error_cls: non-accepted status, non-JSON body, or retries exhausted
        """
        headers = {"Accept-Version": self.api_version, "Content-Type": "application/json", **headers}
        logger.info(f"ZATCA POST {url}")

        last_error = None
        for attempt in range(1, self.MAX_RETRIES + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.post(url, json=payload, headers=headers)

                return self._parse_response(response, error_cls, accepted)

            except httpx.TimeoutException:
                last_error = error_cls(
                    f"ZATCA did not respond within {self.timeout}s (attempt {attempt}/{self.MAX_RETRIES}).",
                    status_code=504,
                )
                logger.warning(f"Timeout on attempt {attempt}/{self.MAX_RETRIES}")

            except httpx.TransportError as e:
                last_error = error_cls(
                    f"Could not reach ZATCA (attempt {attempt}/{self.MAX_RETRIES}): {e}",
                    status_code=502,
                )
                logger.warning(f"Connection error on attempt {attempt}: {e}")

            if attempt < self.MAX_RETRIES:
                delay = min(60, self.retry_delay * 2 ** (attempt - 1))
                logger.info(f"Retrying in {delay}s...")
                await asyncio.sleep(delay)

        raise last_error

    def _parse_response(self, response: httpx.Response, error_cls: type[ZatcaAPIError],
                        accepted: tuple[int, ...]) -> dict:
        logger.info(f"ZATCA response HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            raise error_cls(
                f"ZATCA returned a non-JSON response (HTTP {response.status_code}): {response.text[:300]}",
                status_code=response.status_code,
            )

        if response.status_code not in accepted:
            error = error_cls(
                f"ZATCA rejected the request (HTTP {response.status_code}).",
                status_code=response.status_code,
                zatca_response=data if isinstance(data, dict) else {"errors": data},
            )
            logger.warning(f"ZATCA rejection: {error.messages}")
            raise error
        return data

    @staticmethod
    def issued_certificate(data: dict) -> IssuedCertificate:
        token = data.get("binarySecurityToken")
        secret = data.get("secret")
        if not token or not secret:
            raise CertificateIssuanceError(
                "ZATCA response is missing binarySecurityToken/secret.", status_code=502, zatca_response=data,
            )
        try:
            body = base64.b64decode(token, validate=True).decode("utf-8")
        except ValueError as e:
            raise CertificateIssuanceError(
                f"binarySecurityToken is not valid base64: {e}", status_code=502, zatca_response=data,
            ) from e
        return IssuedCertificate(
            issued_certificate=f"-----BEGIN CERTIFICATE-----\n{body}\n-----END CERTIFICATE-----",
            api_secret=secret,
            request_id=str(data["requestID"]) if data.get("requestID") is not None else None,
        )


class ComplianceAPI:
    def __init__(self, api: ZatcaAPI, auth_headers: dict):
        self._api = api
        self._auth_headers = auth_headers

    async def issue_certificate(self, csr: str, otp: str) -> IssuedCertificate:
        """Request a compliance CSID using the OTP from the Fatoora portal."""
        data = await self._api.post(
            self._api._url("compliance"),
            {"csr": _b64(csr)},
            {**self._auth_headers, "OTP": otp},
            CertificateIssuanceError,
        )
        return self._api.issued_certificate(data)

    async def check_invoice_compliance(self, signed_xml: str, invoice_hash: str, egs_uuid: str) -> dict:
        return await self._api.post(
            self._api._url("compliance_invoices"),
            {"invoiceHash": invoice_hash, "uuid": egs_uuid, "invoice": _b64(signed_xml)},
            {**self._auth_headers, "Accept-Language": "en"},
            ComplianceCheckError,
            accepted=(200, 202),
        )


class ProductionAPI:
    def __init__(self, api: ZatcaAPI, auth_headers: dict):
        self._api = api
        self._auth_headers = auth_headers

    async def issue_certificate(self, compliance_request_id: str) -> IssuedCertificate:
        """Exchange a passed compliance request for a production CSID."""
        data = await self._api.post(
            self._api._url("production_csids"),
            {"compliance_request_id": compliance_request_id},
            dict(self._auth_headers),
            CertificateIssuanceError,
        )
        return self._api.issued_certificate(data)

    async def report_invoice(self, signed_xml: str, invoice_hash: str, egs_uuid: str) -> dict:
        return await self._api.post(
            self._api._url("reporting"),
            {"invoiceHash": invoice_hash, "uuid": egs_uuid, "invoice": _b64(signed_xml)},
            {**self._auth_headers, "Accept-Language": "en", "Clearance-Status": "0"},
            ReportingError,
            accepted=(200, 202),
        )
