"""
Reverse geocoding of ride start coordinates

Rides that only carry coordinates are stored with a "Lat X, Lon Y" location.
A queued task asks Nominatim for a place name and replaces that placeholder,
unless the location was edited in the meantime. Nominatim allows one request
per second, which the task's rate limit enforces per worker.
"""
import logging
import math
from typing import Any, Dict, Optional

import requests

from ridelog.ingestion.location import derive_location
from ridelog.ingestion.normalize import NormalizedRide
from ridelog.ledger.models import Ride
from ridelog.shared.database import transaction
from ridelog.shared.errors import TransientError
from ridelog.shared.http import check_vendor_response, vendor_request
from ridelog.shared.tasks import celery_app, current_context

logger = logging.getLogger(__name__)

COORDINATE_PREFIX = "Lat "
CITY_FIELDS = ("city", "town", "village", "hamlet", "municipality")
STATE_FIELDS = ("state", "state_district")


def place_name(address: Optional[Dict[str, Any]]) -> Optional[str]:
    """Place name as "City, State" from a Nominatim address block, or whichever half exists."""
    if not address:
        return None
    city = next((address[key] for key in CITY_FIELDS if address.get(key)), None)
    state = next((address[key] for key in STATE_FIELDS if address.get(key)), None)
    return derive_location(city=city, state=state)


class GeocodeClient:
    def __init__(self, http: requests.Session, base_url: str, user_agent: str, timeout: int = 10):
        self.http = http
        self.base_url = base_url
        self.user_agent = user_agent
        self.timeout = timeout

    def reverse(self, lat: float, lon: float) -> Optional[str]:
        response = vendor_request(
            self.http, "GET", f"{self.base_url}/reverse", "Nominatim", "reverse geocode",
            timeout=self.timeout,
            params={"lat": lat, "lon": lon, "format": "json", "addressdetails": 1},
            headers={"User-Agent": self.user_agent},
        )
        check_vendor_response(response, "Nominatim", "reverse geocode")
        return place_name(response.json().get("address"))


def needs_geocoding(location: Optional[str]) -> bool:
    return not location or location.startswith(COORDINATE_PREFIX)


@celery_app.task(
    name="ridelog.geocode_ride",
    rate_limit="1/s",
    autoretry_for=(TransientError,),
    retry_backoff=2,
    retry_kwargs={"max_retries": 3},
)
def geocode_ride(ride_id: str, lat: float, lon: float) -> Optional[str]:
    ctx = current_context()
    location = ctx.geocoder.reverse(lat, lon)
    if not location:
        logger.info(f"No place found for ride {ride_id} at ({lat}, {lon})")
        return None

    with transaction(ctx.session_factory) as db:
        updated = (
            db.query(Ride)
            .filter(Ride.id == ride_id, Ride.location.startswith(COORDINATE_PREFIX))
            .update({Ride.location: location}, synchronize_session=False)
        )

    if updated:
        logger.info(f"Ride {ride_id} located at {location}")
        return location
    logger.info(f"Ride {ride_id} is gone or has a location already, keeping it")
    return None


def schedule_geocode(ctx, ride_id: str, normalized: NormalizedRide) -> bool:
    """Queue a lookup for a ride whose location is missing or only coordinates."""
    if not ctx.settings.geocoding_enabled:
        return False
    lat, lon = normalized.start_lat, normalized.start_lon
    if lat is None or lon is None or not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    if not needs_geocoding(normalized.location):
        return False

    try:
        geocode_ride.apply_async(args=(ride_id, lat, lon))
    except Exception as e:
        # Geocoding is cosmetic; a broker outage must not fail the import
        logger.warning(f"Could not queue geocoding for ride {ride_id}: {e}")
        return False
    return True
