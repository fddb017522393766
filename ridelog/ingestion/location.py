"""
Ride location derivation from vendor place fields
"""
from typing import Iterable, Optional


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _join(parts: Iterable[Optional[str]]) -> Optional[str]:
    cleaned = [p for p in (_clean(part) for part in parts) if p]
    return ", ".join(cleaned) if cleaned else None


def format_lat_lon(lat, lon) -> Optional[str]:
    try:
        lat_f = float(lat)
        lon_f = float(lon)
    except (TypeError, ValueError):
        return None
    return f"Lat {lat_f:.3f}, Lon {lon_f:.3f}"


def derive_location(
    city=None,
    state=None,
    country=None,
    fallback=None,
    lat=None,
    lon=None,
) -> Optional[str]:
    """
    Precedence: "city, state" > "city, country" > "state, country" >
    any single locality > formatted coordinates > None.
    """
    city, state, country = _clean(city), _clean(state), _clean(country)

    if city and state:
        return _join([city, state])
    if city and country:
        return _join([city, country])
    if state and country:
        return _join([state, country])

    single = city or state or country or _clean(fallback)
    if single:
        return single

    if lat is not None and lon is not None:
        return format_lat_lon(lat, lon)
    return None


def should_fill_location(existing: Optional[str], incoming: Optional[str]) -> bool:
    """Vendor locations only fill an empty stored location, never replace one."""
    return not _clean(existing) and bool(_clean(incoming))
