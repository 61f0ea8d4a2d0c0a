"""
Pricing region and currency resolution.

Precedence: billing address country > IP geolocation > GLOBAL/USD default.
Resolved per request and passed down explicitly; nothing is cached between
requests, so a user who adds an Indian billing address is priced in INR on
the very next call.
"""
import ipaddress
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from resumekit.core.config import GEOIP_API_URL, GEOIP_TIMEOUT_SECONDS
from resumekit.core.plan_tables import Region, REGION_CURRENCY, region_for_country
from resumekit.db.models.billing_details import UserBillingDetails

logger = logging.getLogger(__name__)

SOURCE_BILLING_ADDRESS = "billing_address"
SOURCE_IP_GEOLOCATION = "ip_geolocation"
SOURCE_DEFAULT = "default"


@dataclass(frozen=True)
class ResolvedRegion:
    region: str
    currency: str
    source: str

    def as_dict(self) -> dict:
        return {"region": self.region, "currency": self.currency, "source": self.source}


DEFAULT_REGION = ResolvedRegion(Region.GLOBAL.value, REGION_CURRENCY[Region.GLOBAL].value, SOURCE_DEFAULT)


def resolve_region(billing_country: Optional[str] = None, ip_country: Optional[str] = None) -> ResolvedRegion:
    """Apply the precedence rules to already-looked-up countries."""
    for country, source in ((billing_country, SOURCE_BILLING_ADDRESS), (ip_country, SOURCE_IP_GEOLOCATION)):
        if country:
            region = region_for_country(country)
            return ResolvedRegion(region.value, REGION_CURRENCY[region].value, source)
    return DEFAULT_REGION


def _is_public_ip(ip: str) -> bool:
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (address.is_private or address.is_loopback or address.is_reserved or address.is_link_local)


def geolocate_ip(ip: str) -> Optional[str]:
    """
    Two-letter country for a public IP via the configured geolocation API.

    Returns None for private addresses and on any lookup failure.
    """
    if not ip or not _is_public_ip(ip):
        return None
    try:
        response = httpx.get(GEOIP_API_URL.format(ip=ip), timeout=GEOIP_TIMEOUT_SECONDS)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"IP geolocation failed for ip={ip}: {e}")
        return None

    country = response.text.strip().upper()
    if len(country) != 2 or not country.isalpha():
        logger.warning(f"IP geolocation returned unusable country for ip={ip}: {country[:20]!r}")
        return None
    return country


class RegionResolver:
    """
    Resolves a user's pricing region. Never raises to the caller.

    Args:
        db: Database session used for the billing-address lookup
        geolocate: IP -> country lookup; defaults to the HTTP geolocation API
    """

    def __init__(self, db: Session, geolocate: Optional[Callable[[str], Optional[str]]] = None):
        self.db = db
        self.geolocate = geolocate or geolocate_ip

    def billing_country(self, user_id: Optional[int]) -> Optional[str]:
        if user_id is None:
            return None
        try:
            details = (
                self.db.query(UserBillingDetails)
                .filter(UserBillingDetails.user_id == user_id)
                .first()
            )
        except SQLAlchemyError as e:
            logger.warning(f"Billing address lookup failed for user_id={user_id}: {e}")
            return None
        return details.country if details and details.country else None

    def ip_country(self, client_ip: Optional[str]) -> Optional[str]:
        if not client_ip:
            return None
        try:
            return self.geolocate(client_ip)
        except Exception as e:
            # A broken lookup degrades to the default region, it never fails pricing
            logger.warning(f"IP geolocation raised for ip={client_ip}: {e}")
            return None

    def resolve(self, user_id: Optional[int], client_ip: Optional[str] = None) -> ResolvedRegion:
        billing_country = self.billing_country(user_id)
        ip_country = None if billing_country else self.ip_country(client_ip)
        resolved = resolve_region(billing_country, ip_country)
        if resolved.source == SOURCE_DEFAULT:
            logger.info(f"Region defaulted for user_id={user_id}: {resolved.region}/{resolved.currency}")
        else:
            logger.debug(f"Region resolved for user_id={user_id}: {resolved.as_dict()}")
        return resolved
