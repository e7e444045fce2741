"""
LunaChat Application Configuration
==================================

PURPOSE:
    Pydantic-Settings based configuration for the LunaChat backend.
    All settings can be overridden via environment variables (LUNACHAT_ prefix).

    The database location is the one exception: it is read from the plain
    DATABASE_URL env var by lunachat.core.database so that Alembic and the
    container platform share a single source of truth.
"""

import logging
import os
from typing import Dict, List, Literal, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

PlanName = Literal["monthly", "annual"]


class Settings(BaseSettings):
    """Runtime configuration for chat metering, billing and identity."""

    app_name: str = "LunaChat"
    debug: bool = False
    app_version: str = os.environ.get("LUNACHAT_VERSION", "dev")

    data_directory: str = "/data"
    log_directory: str = "logs"

    # Public URL of the web frontend (checkout / portal redirect targets)
    public_url: str = "http://localhost:5173"

    # Identity provider (Firebase Auth, Identity Toolkit REST API)
    identity_api_key: Optional[str] = None
    identity_base_url: str = "https://identitytoolkit.googleapis.com/v1"
    identity_timeout_s: float = 10.0
    auth_cache_ttl: int = 300  # seconds a verified token is trusted without re-lookup

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_monthly_price_id: Optional[str] = None
    stripe_annual_price_id: Optional[str] = None
    stripe_webhook_tolerance_s: int = 300

    # Energy granted once per billing cycle. Annual is deliberately larger than
    # twelve monthly grants.
    monthly_energy_grant: int = 11_111
    annual_energy_grant: int = 222_222

    # Gemini
    gemini_api_key: Optional[str] = None
    llm_model: str = "gemini-2.5-pro"
    llm_temperature: float = 0.7
    max_output_tokens: int = 8192
    llm_timeout_s: float = 120.0

    # Pricing (USD per 1M tokens). Contexts larger than the threshold switch
    # both prices to the high tier.
    pricing_threshold_tokens: int = 200_000
    input_price_low: float = 1.25
    input_price_high: float = 2.50
    output_price_low: float = 10.00
    output_price_high: float = 15.00

    # USD -> energy conversion
    energy_cost_multiplier: float = 250.0

    history_page_limit: int = 500

    # CORS
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000", "http://localhost:8888"]

    class Config:
        env_file = ".env"
        env_prefix = "LUNACHAT_"

    def plan_price_ids(self) -> Dict[str, str]:
        """Return {price_id: plan} for every configured subscription price."""
        mapping: Dict[str, str] = {}
        if self.stripe_monthly_price_id:
            mapping[self.stripe_monthly_price_id] = "monthly"
        if self.stripe_annual_price_id:
            mapping[self.stripe_annual_price_id] = "annual"
        return mapping

    def price_id_for_plan(self, plan: str) -> Optional[str]:
        if plan == "monthly":
            return self.stripe_monthly_price_id
        if plan == "annual":
            return self.stripe_annual_price_id
        return None

    def energy_grant_for_plan(self, plan: str) -> int:
        if plan == "monthly":
            return self.monthly_energy_grant
        if plan == "annual":
            return self.annual_energy_grant
        return 0


settings = Settings()

if settings.annual_energy_grant <= settings.monthly_energy_grant * 12:
    logger.warning(
        "Annual energy grant (%d) is not larger than twelve monthly grants (%d)",
        settings.annual_energy_grant,
        settings.monthly_energy_grant * 12,
    )
