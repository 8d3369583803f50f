"""
Delivery quotes: driving distance from the factory times a per-mile rate,
never less than the configured minimum.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Optional

import requests

from config import Config
from pricing import to_money

logger = logging.getLogger(__name__)

METERS_PER_MILE = 1609.344
DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"


class DeliveryQuoteError(Exception):
    """Distance could not be determined; callers fall back to a default fee."""


@dataclass
class DeliveryQuote:
    miles: float
    rate_per_mile: float
    minimum: float
    fee: float
    origin_address: str = ""
    destination_address: str = ""
    fallback: bool = False

    def as_delivery(self) -> dict:
        return {
            "address": self.destination_address,
            "miles": self.miles,
            "rate_per_mile": self.rate_per_mile,
            "minimum": self.minimum,
            "fee": self.fee,
            "fallback": self.fallback,
        }

    def to_dict(self) -> dict:
        return asdict(self)


def delivery_fee(miles: float, rate_per_mile: float, minimum: float) -> float:
    return float(max(to_money(miles * rate_per_mile), to_money(minimum)))


def fallback_quote(settings: dict, destination: str = "") -> DeliveryQuote:
    pricing = settings.get("pricing") or {}
    minimum = float(pricing.get("delivery_minimum") or 0)
    return DeliveryQuote(
        miles=0,
        rate_per_mile=float(pricing.get("delivery_rate_per_mile") or 0),
        minimum=minimum,
        fee=float(to_money(minimum)),
        origin_address=(settings.get("factory") or {}).get("address") or "",
        destination_address=destination,
        fallback=True,
    )


class DeliveryQuoter:
    def __init__(self, api_key: Optional[str], timeout: float = 15, session=None):
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: Config) -> "DeliveryQuoter":
        return cls(config.google_maps_key, timeout=config.external_timeout_seconds)

    def distance_miles(self, origin: str, destination: str):
        if not self.api_key:
            raise DeliveryQuoteError("No distance provider configured")
        params = {
            "origins": origin,
            "destinations": destination,
            "key": self.api_key,
            "units": "imperial",
        }
        try:
            res = self.session.get(DISTANCE_MATRIX_URL, params=params, timeout=self.timeout)
            res.raise_for_status()
            data = res.json()
        except (requests.RequestException, ValueError) as e:
            raise DeliveryQuoteError(f"Distance lookup failed: {e}")

        rows = data.get("rows") or [{}]
        element = (rows[0].get("elements") or [{}])[0]
        if element.get("status") != "OK":
            raise DeliveryQuoteError(f"Could not geocode destination ({element.get('status', 'UNKNOWN')})")
        meters = (element.get("distance") or {}).get("value") or 0
        resolved = (data.get("destination_addresses") or [destination])[0]
        return meters / METERS_PER_MILE, resolved

    def quote(self, destination: str, settings: dict) -> DeliveryQuote:
        pricing = settings.get("pricing") or {}
        origin = (settings.get("factory") or {}).get("address") or ""
        rate = float(pricing.get("delivery_rate_per_mile") or 0)
        minimum = float(pricing.get("delivery_minimum") or 0)

        miles, resolved = self.distance_miles(origin, destination)
        miles = round(miles, 1)
        return DeliveryQuote(
            miles=miles,
            rate_per_mile=rate,
            minimum=minimum,
            fee=delivery_fee(miles, rate, minimum),
            origin_address=origin,
            destination_address=resolved,
        )

    def quote_or_fallback(self, destination: str, settings: dict) -> DeliveryQuote:
        try:
            return self.quote(destination, settings)
        except DeliveryQuoteError as e:
            logger.warning(f"Delivery quote for {destination!r} fell back to minimum fee: {e}")
            return fallback_quote(settings, destination)
