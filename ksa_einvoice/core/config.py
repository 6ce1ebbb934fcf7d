"""
KSA E-INVOICE Core Configuration
ZATCA API URLs and application settings.
"""

from enum import Enum

from pydantic_settings import BaseSettings, SettingsConfigDict


class ZatcaEnvironment(str, Enum):
    SANDBOX = "sandbox"
    SIMULATION = "simulation"
    PRODUCTION = "production"


class Settings(BaseSettings):
    app_name: str = "KSA-EINVOICE"
    app_version: str = "1.0.0"
    debug: bool = True
    host: str = "0.0.0.0"
    port: int = 8000

    zatca_environment: ZatcaEnvironment = ZatcaEnvironment.SANDBOX
    zatca_api_version: str = "V2"
    zatca_timeout_seconds: int = 60

    # Invoice engine
    invoice_currency: str = "SAR"
    emit_per_line_tax_subtotals: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


settings = Settings()


# ─────────────────────────────────────────────────────────────
# ZATCA API URL REGISTRY
# Source: ZATCA "Fatoora" developer portal, e-invoicing core gateway
# ─────────────────────────────────────────────────────────────

_GATEWAY = "https://gw-fatoora.zatca.gov.sa/e-invoicing"

ZATCA_URLS = {
    ZatcaEnvironment.SANDBOX: {
        "compliance":          f"{_GATEWAY}/developer-portal/compliance",
        "compliance_invoices": f"{_GATEWAY}/developer-portal/compliance/invoices",
        "production_csids":    f"{_GATEWAY}/developer-portal/production/csids",
        "reporting":           f"{_GATEWAY}/developer-portal/invoices/reporting/single",
        "clearance":           f"{_GATEWAY}/developer-portal/invoices/clearance/single",
    },
    ZatcaEnvironment.SIMULATION: {
        "compliance":          f"{_GATEWAY}/simulation/compliance",
        "compliance_invoices": f"{_GATEWAY}/simulation/compliance/invoices",
        "production_csids":    f"{_GATEWAY}/simulation/production/csids",
        "reporting":           f"{_GATEWAY}/simulation/invoices/reporting/single",
        "clearance":           f"{_GATEWAY}/simulation/invoices/clearance/single",
    },
    ZatcaEnvironment.PRODUCTION: {
        "compliance":          f"{_GATEWAY}/core/compliance",
        "compliance_invoices": f"{_GATEWAY}/core/compliance/invoices",
        "production_csids":    f"{_GATEWAY}/core/production/csids",
        "reporting":           f"{_GATEWAY}/core/invoices/reporting/single",
        "clearance":           f"{_GATEWAY}/core/invoices/clearance/single",
    },
}


def get_zatca_url(service: str, environment: ZatcaEnvironment | None = None) -> str:
    """Get the ZATCA API URL for a service based on current environment."""
    env = environment or settings.zatca_environment
    urls = ZATCA_URLS.get(env)
    if not urls:
        raise ValueError(f"Unknown ZATCA environment: {env}")
    url = urls.get(service)
    if not url:
        raise ValueError(f"Unknown ZATCA service: {service}")
    return url
