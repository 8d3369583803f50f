"""
Environment configuration.

Values are read from the process environment each time ``get_config`` is
called; routes receive it as a dependency so tests can swap it out.
Missing values are only an error at the operation that needs them.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from errors import ConfigurationError


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number")


@dataclass
class Config:
    database_url: Optional[str] = None
    database_name: str = "checkout"

    secret_key: str = "secret-key-change-me"
    access_token_expire_minutes: int = 60 * 12

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    currency: str = "usd"

    docuseal_api_base: str = "https://api.docuseal.co"
    docuseal_api_key: Optional[str] = None
    docuseal_webhook_secret: Optional[str] = None
    template_ids: Dict[str, Optional[str]] = field(default_factory=dict)

    google_maps_key: Optional[str] = None

    default_tax_rate_percent: float = 6.25
    default_deposit_percent: float = 25
    default_delivery_rate_per_mile: float = 12.5
    default_delivery_minimum: float = 1500
    default_title_fee: float = 500
    default_setup_fee: float = 3000
    factory_name: str = "Firefly Tiny Homes"
    factory_address: str = "606 S 2nd Ave, Mansfield, TX 76063"

    app_url: str = "http://localhost:5173"
    external_timeout_seconds: float = 15
    idempotency_wait_seconds: float = 5
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME", "checkout"),
            secret_key=os.getenv("SECRET_KEY", "secret-key-change-me"),
            access_token_expire_minutes=int(_float_env("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 12)),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            docuseal_api_base=os.getenv("DOCUSEAL_API_BASE", "https://api.docuseal.co"),
            docuseal_api_key=os.getenv("DOCUSEAL_API_KEY"),
            docuseal_webhook_secret=os.getenv("DOCUSEAL_WEBHOOK_SECRET"),
            template_ids={
                "purchase_agreement": os.getenv("DOCUSEAL_TEMPLATE_ID_PURCHASE"),
                "delivery": os.getenv("DOCUSEAL_TEMPLATE_ID_DELIVERY"),
            },
            google_maps_key=os.getenv("GOOGLE_MAPS_KEY"),
            default_tax_rate_percent=_float_env("DEFAULT_TAX_RATE_PERCENT", 6.25),
            default_deposit_percent=_float_env("DEFAULT_DEPOSIT_PERCENT", 25),
            default_delivery_rate_per_mile=_float_env("DEFAULT_DELIVERY_RATE_PER_MILE", 12.5),
            default_delivery_minimum=_float_env("DEFAULT_DELIVERY_MINIMUM", 1500),
            default_title_fee=_float_env("DEFAULT_TITLE_FEE", 500),
            default_setup_fee=_float_env("DEFAULT_SETUP_FEE", 3000),
            factory_name=os.getenv("FACTORY_NAME", "Firefly Tiny Homes"),
            factory_address=os.getenv("FACTORY_ADDRESS", "606 S 2nd Ave, Mansfield, TX 76063"),
            app_url=os.getenv("APP_URL", "http://localhost:5173"),
            external_timeout_seconds=_float_env("EXTERNAL_TIMEOUT_SECONDS", 15),
            idempotency_wait_seconds=_float_env("IDEMPOTENCY_WAIT_SECONDS", 5),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def require(self, name: str) -> str:
        """Return a configured attribute or fail with a configuration error."""
        value = getattr(self, name, None)
        if not value:
            raise ConfigurationError(f"{name.upper()} is not configured")
        return value

    def template_id(self, template_key: str) -> str:
        if template_key not in self.template_ids:
            raise ConfigurationError(f"Unknown contract template: {template_key}")
        value = self.template_ids.get(template_key)
        if not value:
            raise ConfigurationError(f"No template id configured for {template_key}")
        return value


def get_config() -> Config:
    return Config.from_env()
