"""
Vendor activity payload -> canonical ride fields

Both normalizers are pure: they return a NormalizedRide, return None for
activities that are not cycling (those are never stored), or raise
MalformedPayload when identity or timing fields are missing or a
measurement cannot be read.
"""
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ridelog.accounts.models import GARMIN, STRAVA
from ridelog.garmin.constants import CYCLING_ACTIVITY_TYPES
from ridelog.ingestion.location import derive_location
from ridelog.shared.errors import MalformedPayload
from ridelog.strava.constants import CYCLING_SPORT_TYPES

METERS_TO_MILES = 0.000621371
METERS_TO_FEET = 3.28084


@dataclass(frozen=True)
class NormalizedRide:
    provider: str
    external_id: str
    start_time: datetime
    duration_seconds: int
    distance_miles: float
    elevation_gain_feet: float
    ride_type: str
    average_hr: Optional[int] = None
    notes: Optional[str] = None
    location: Optional[str] = None
    gear_id: Optional[str] = None
    start_lat: Optional[float] = None
    start_lon: Optional[float] = None

    def ride_fields(self) -> Dict[str, Any]:
        """Columns written on every upsert (location, gear and coordinates handled separately)."""
        data = asdict(self)
        for key in ("provider", "external_id", "location", "gear_id", "start_lat", "start_lon"):
            data.pop(key)
        return data


def _meters(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        raise MalformedPayload(f"Expected a distance in meters, got {value!r}")


def meters_to_miles(meters) -> float:
    return _meters(meters) * METERS_TO_MILES


def meters_to_feet(meters) -> float:
    return _meters(meters) * METERS_TO_FEET


def _coordinate(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _round_hr(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def _seconds(value) -> int:
    try:
        return max(0, int(round(float(value))))
    except (TypeError, ValueError):
        return 0


def _parse_iso(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_strava_cycling(sport_type: Optional[str]) -> bool:
    return isinstance(sport_type, str) and sport_type in CYCLING_SPORT_TYPES


def garmin_type_key(activity_type: Optional[str]) -> str:
    if activity_type is None:
        return ""
    if not isinstance(activity_type, str):
        raise MalformedPayload(f"Garmin activityType must be a string, got {activity_type!r}")
    return activity_type.strip().lower().replace(" ", "_")


def is_garmin_cycling(activity_type: Optional[str]) -> bool:
    return garmin_type_key(activity_type) in CYCLING_ACTIVITY_TYPES


def normalize_strava_activity(payload: Dict[str, Any]) -> Optional[NormalizedRide]:
    if not isinstance(payload, dict):
        raise MalformedPayload("Strava activity payload must be an object")

    activity_id = payload.get("id")
    start_date = payload.get("start_date")
    if activity_id is None or not start_date:
        raise MalformedPayload("Strava activity is missing id or start_date")

    sport_type = payload.get("sport_type") or payload.get("type")
    if not is_strava_cycling(sport_type):
        return None

    try:
        start_time = _parse_iso(str(start_date))
    except ValueError:
        raise MalformedPayload(f"Strava activity {activity_id} has invalid start_date {start_date!r}")

    moving_time = payload.get("moving_time")
    if moving_time is None:
        moving_time = payload.get("elapsed_time")

    latlng = payload.get("start_latlng")
    if isinstance(latlng, (list, tuple)) and len(latlng) == 2:
        lat, lon = _coordinate(latlng[0]), _coordinate(latlng[1])
    else:
        lat, lon = None, None

    return NormalizedRide(
        provider=STRAVA,
        external_id=str(activity_id),
        start_time=start_time,
        duration_seconds=_seconds(moving_time),
        distance_miles=meters_to_miles(payload.get("distance")),
        elevation_gain_feet=meters_to_feet(payload.get("total_elevation_gain")),
        ride_type=sport_type,
        average_hr=_round_hr(payload.get("average_heartrate")),
        notes=payload.get("name") or None,
        location=derive_location(
            city=payload.get("location_city"),
            state=payload.get("location_state"),
            country=payload.get("location_country"),
            lat=lat,
            lon=lon,
        ),
        gear_id=payload.get("gear_id") or None,
        start_lat=lat,
        start_lon=lon,
    )


def normalize_garmin_activity(payload: Dict[str, Any]) -> Optional[NormalizedRide]:
    if not isinstance(payload, dict):
        raise MalformedPayload("Garmin activity payload must be an object")

    summary_id = payload.get("summaryId")
    start_seconds = payload.get("startTimeInSeconds")
    activity_type = payload.get("activityType")
    if summary_id is None or start_seconds is None or not activity_type:
        raise MalformedPayload("Garmin activity is missing summaryId, startTimeInSeconds or activityType")

    if not is_garmin_cycling(activity_type):
        return None

    try:
        start_time = datetime.fromtimestamp(int(start_seconds), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        raise MalformedPayload(f"Garmin activity {summary_id} has invalid startTimeInSeconds")

    elevation = payload.get("totalElevationGainInMeters")
    if elevation is None:
        elevation = payload.get("elevationGainInMeters")

    lat = _coordinate(payload.get("startLatitudeInDegrees", payload.get("beginLatitude")))
    lon = _coordinate(payload.get("startLongitudeInDegrees", payload.get("beginLongitude")))

    return NormalizedRide(
        provider=GARMIN,
        external_id=str(summary_id),
        start_time=start_time,
        duration_seconds=_seconds(payload.get("durationInSeconds")),
        distance_miles=meters_to_miles(payload.get("distanceInMeters")),
        elevation_gain_feet=meters_to_feet(elevation),
        ride_type=garmin_type_key(activity_type),
        average_hr=_round_hr(payload.get("averageHeartRateInBeatsPerMinute")),
        notes=payload.get("activityName") or None,
        location=derive_location(fallback=payload.get("locationName"), lat=lat, lon=lon),
        start_lat=lat,
        start_lon=lon,
    )
