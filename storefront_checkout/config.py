"""Checkout configuration."""

import os
from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError

ENV_PREFIX = "STOREFRONT_"


class PricingPolicy(BaseModel):
    """Pricing knobs applied by the pricing engine."""

    free_shipping_threshold: Decimal = Field(default=Decimal("2000"), ge=0)
    flat_shipping_fee: Decimal = Field(default=Decimal("100"), ge=0)
    prepaid_discount_rate: Decimal = Field(default=Decimal("0.05"), ge=0, le=1)
    cod_surcharge: Decimal = Field(default=Decimal("50"), ge=0)
    deduct_product_discount: bool = Field(
        default=True,
        description="Subtract product savings from the total in addition to using sale prices",
    )


class CheckoutConfig(BaseModel):
    """Runtime configuration for a checkout session."""

    api_base_url: str = Field(description="Backend REST API root, e.g. https://example.com/api")
    request_timeout: float = Field(default=30.0, gt=0)
    currency: str = "INR"
    pricing: PricingPolicy = Field(default_factory=PricingPolicy)
    gateway_key_id: Optional[str] = Field(None, description="Public key passed to the gateway UI")
    merchant_name: str = "Pashupatinath Rudraksh"
    gateway_timeout_seconds: int = Field(default=900, gt=0)
    redirect_delay_seconds: float = Field(default=5.0, ge=0)
    storage_dir: Path = Field(default_factory=lambda: Path.home() / ".storefront_checkout")

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "CheckoutConfig":
        """
        Build a configuration from ``STOREFRONT_*`` environment variables.

        Environment variable mapping:
        - STOREFRONT_API_BASE_URL → api_base_url (required)
        - STOREFRONT_REQUEST_TIMEOUT → request_timeout
        - STOREFRONT_CURRENCY → currency
        - STOREFRONT_GATEWAY_KEY_ID → gateway_key_id
        - STOREFRONT_MERCHANT_NAME → merchant_name
        - STOREFRONT_GATEWAY_TIMEOUT_SECONDS → gateway_timeout_seconds
        - STOREFRONT_REDIRECT_DELAY_SECONDS → redirect_delay_seconds
        - STOREFRONT_STORAGE_DIR → storage_dir
        - STOREFRONT_FREE_SHIPPING_THRESHOLD, STOREFRONT_FLAT_SHIPPING_FEE,
          STOREFRONT_PREPAID_DISCOUNT_RATE, STOREFRONT_COD_SURCHARGE → pricing

        Raises:
            ConfigurationError: If the base URL is missing or a value is invalid
        """
        env = os.environ if environ is None else environ

        base_url = env.get(f"{ENV_PREFIX}API_BASE_URL")
        if not base_url:
            raise ConfigurationError(f"{ENV_PREFIX}API_BASE_URL is not set")

        fields = {
            "request_timeout": "REQUEST_TIMEOUT",
            "currency": "CURRENCY",
            "gateway_key_id": "GATEWAY_KEY_ID",
            "merchant_name": "MERCHANT_NAME",
            "gateway_timeout_seconds": "GATEWAY_TIMEOUT_SECONDS",
            "redirect_delay_seconds": "REDIRECT_DELAY_SECONDS",
            "storage_dir": "STORAGE_DIR",
        }
        pricing_fields = {
            "free_shipping_threshold": "FREE_SHIPPING_THRESHOLD",
            "flat_shipping_fee": "FLAT_SHIPPING_FEE",
            "prepaid_discount_rate": "PREPAID_DISCOUNT_RATE",
            "cod_surcharge": "COD_SURCHARGE",
        }

        values: dict[str, object] = {"api_base_url": base_url.rstrip("/")}
        for field, suffix in fields.items():
            raw = env.get(f"{ENV_PREFIX}{suffix}")
            if raw:
                values[field] = raw

        pricing = {
            field: env[f"{ENV_PREFIX}{suffix}"]
            for field, suffix in pricing_fields.items()
            if env.get(f"{ENV_PREFIX}{suffix}")
        }
        if pricing:
            values["pricing"] = pricing

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid checkout configuration: {e}") from e
