import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from ..domain.errors import ConfigurationError


@dataclass(frozen=True, slots=True)
class BillingConfig:
    """Provider credentials injected into the reconciliation services."""

    provider_secret_key: str
    webhook_signing_secret: str
    platform_shared_secret: str
    bundle_id: str
    price_id_monthly: str
    price_id_yearly: str

    def price_id_for(self, billing_cycle: str) -> str:
        return self.price_id_yearly if billing_cycle == "yearly" else self.price_id_monthly


class Settings:
    """Centralised application configuration sourced from environment variables."""

    def __init__(self) -> None:
        load_dotenv()
        self.stripe_secret_key = self._get("STRIPE_SECRET_KEY")
        self.stripe_webhook_secret = self._get("STRIPE_WEBHOOK_SECRET")
        self.stripe_price_id_monthly = self._get("STRIPE_PRICE_ID_MONTHLY")
        self.stripe_price_id_yearly = self._get("STRIPE_PRICE_ID_YEARLY")
        self.stripe_webhook_tolerance = self._get_int("STRIPE_WEBHOOK_TOLERANCE", default=300)
        self.apple_shared_secret = self._get("APPLE_SHARED_SECRET")
        self.apple_bundle_id = self._get("APPLE_BUNDLE_ID")
        self.apple_verify_timeout = self._get_int("APPLE_VERIFY_TIMEOUT", default=10)
        root_cert = os.getenv("APPLE_ROOT_CERT_PATH")
        self.apple_root_cert_path = Path(root_cert).resolve() if root_cert else None
        self.auth_jwt_secret = self._get("AUTH_JWT_SECRET")
        self.auth_jwt_algorithm = os.getenv("AUTH_JWT_ALGORITHM", "HS256")
        self.auth_jwt_audience = os.getenv("AUTH_JWT_AUDIENCE")
        self.database_path = Path(os.getenv("DATABASE_PATH", "data/billing.db")).resolve()
        origins = os.getenv("CORS_ALLOW_ORIGINS")
        if origins:
            self.cors_allow_origins = [item.strip() for item in origins.split(",") if item.strip()]
        else:
            self.cors_allow_origins = ["*"]

    def billing_config(self) -> BillingConfig:
        return BillingConfig(
            provider_secret_key=self.stripe_secret_key,
            webhook_signing_secret=self.stripe_webhook_secret,
            platform_shared_secret=self.apple_shared_secret,
            bundle_id=self.apple_bundle_id,
            price_id_monthly=self.stripe_price_id_monthly,
            price_id_yearly=self.stripe_price_id_yearly,
        )

    @staticmethod
    def _get(key: str) -> str:
        value = os.getenv(key)
        if not value:
            raise ConfigurationError(f"Missing required environment variable: {key}")
        return value

    @staticmethod
    def _get_int(key: str, default: Optional[int] = None) -> int:
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Missing required environment variable: {key}")
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigurationError(f"Environment variable {key} must be an integer") from exc
