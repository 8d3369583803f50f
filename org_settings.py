import logging
import math
from typing import Any, Optional

from config import Config
from database import now_utc
from schemas import FactoryInfo, OrgSettings, PricingSettings

logger = logging.getLogger(__name__)

COLLECTION = "orgsettings"
SETTINGS_KEY = "org"
PRICING_FIELDS = tuple(PricingSettings.model_fields.keys())


def default_settings(config: Config) -> OrgSettings:
    return OrgSettings(
        key=SETTINGS_KEY,
        factory=FactoryInfo(name=config.factory_name, address=config.factory_address),
        pricing=PricingSettings(
            deposit_percent=config.default_deposit_percent,
            tax_rate_percent=config.default_tax_rate_percent,
            delivery_rate_per_mile=config.default_delivery_rate_per_mile,
            delivery_minimum=config.default_delivery_minimum,
            title_fee_default=config.default_title_fee,
            setup_fee_default=config.default_setup_fee,
        ),
    )


def get_org_settings(db, config: Config) -> dict:
    doc = db[COLLECTION].find_one({"key": SETTINGS_KEY})
    if doc:
        return doc
    now = now_utc()
    fallback = default_settings(config).model_dump()
    db[COLLECTION].update_one(
        {"key": SETTINGS_KEY},
        {"$setOnInsert": {**fallback, "created_at": now, "updated_at": now}},
        upsert=True,
    )
    logger.info("Seeded organisation settings from configuration defaults")
    return db[COLLECTION].find_one({"key": SETTINGS_KEY})


def _num_or_none(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) and n >= 0 else None


def update_org_settings(db, config: Config, factory: Optional[dict], pricing: Optional[dict], updated_by: str) -> dict:
    get_org_settings(db, config)
    changes = {"updated_at": now_utc(), "updated_by": updated_by}
    if factory:
        for field in ("name", "address"):
            value = factory.get(field)
            if value:
                changes[f"factory.{field}"] = str(value)[:500 if field == "address" else 200]
    if pricing:
        for field in PRICING_FIELDS:
            value = _num_or_none(pricing.get(field))
            if value is not None:
                changes[f"pricing.{field}"] = value
    db[COLLECTION].update_one({"key": SETTINGS_KEY}, {"$set": changes})
    logger.info(f"Organisation settings updated by {updated_by}: {sorted(changes)}")
    return db[COLLECTION].find_one({"key": SETTINGS_KEY})


def public_settings(settings: dict) -> dict:
    factory = settings.get("factory") or {}
    return {
        "factory": {"name": factory.get("name"), "address": factory.get("address")},
        "pricing": {field: (settings.get("pricing") or {}).get(field) for field in PRICING_FIELDS},
    }
