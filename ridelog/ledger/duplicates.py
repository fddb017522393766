"""
Duplicate detection and merge

When both vendors are connected the same physical ride can arrive twice. A
newly ingested ride is compared against the user's rides from the other
provider on the same UTC day; a close match flags the new ride as a duplicate
of the existing one. The user then merges the pair or dismisses the flag.
"""
import logging
from datetime import datetime, time, timedelta, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from ridelog.ledger.models import Ride
from ridelog.ledger.rides import get_owned_ride, remove_ride
from ridelog.shared.errors import ConstraintViolation

logger = logging.getLogger(__name__)

DISTANCE_TOLERANCE_RATIO = 0.05
DISTANCE_TOLERANCE_MIN_MILES = 0.1
ELEVATION_TOLERANCE_RATIO = 0.05
ELEVATION_TOLERANCE_MIN_FEET = 100.0


def _within(new: float, existing: float, ratio: float, minimum: float) -> bool:
    """Tolerance is a share of the existing ride's value, never tighter than minimum."""
    new = new or 0.0
    existing = existing or 0.0
    return abs(new - existing) <= max(existing * ratio, minimum)


def _utc_day_bounds(moment: datetime):
    # SQLite hands back naive values, which are UTC
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    start = datetime.combine(moment.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def is_duplicate_pair(a: Ride, b: Ride) -> bool:
    """Whether new ride `a` matches existing ride `b` from the other provider."""
    if not a.provider or not b.provider or a.provider == b.provider:
        return False
    if _utc_day_bounds(a.start_time)[0] != _utc_day_bounds(b.start_time)[0]:
        return False
    return (
        _within(a.distance_miles, b.distance_miles, DISTANCE_TOLERANCE_RATIO, DISTANCE_TOLERANCE_MIN_MILES)
        and _within(a.elevation_gain_feet, b.elevation_gain_feet, ELEVATION_TOLERANCE_RATIO, ELEVATION_TOLERANCE_MIN_FEET)
    )


def find_duplicate_candidate(db: Session, ride: Ride) -> Optional[Ride]:
    """First ride from another provider that looks like the same activity."""
    if not ride.provider:
        return None
    day_start, day_end = _utc_day_bounds(ride.start_time)
    candidates = (
        db.query(Ride)
        .filter(
            Ride.user_id == ride.user_id,
            Ride.id != ride.id,
            Ride.start_time >= day_start,
            Ride.start_time < day_end,
            Ride.is_duplicate.is_(False),
        )
        .order_by(Ride.start_time)
        .all()
    )
    for candidate in candidates:
        if is_duplicate_pair(ride, candidate):
            return candidate
    return None


def flag_if_duplicate(db: Session, ride: Ride) -> Optional[Ride]:
    original = find_duplicate_candidate(db, ride)
    if original:
        ride.is_duplicate = True
        ride.duplicate_of_id = original.id
        db.flush()
        logger.info(f"Ride {ride.id} ({ride.provider}) flagged as duplicate of {original.id} ({original.provider})")
    return original


def list_duplicates(db: Session, user_id: str) -> List[Ride]:
    return (
        db.query(Ride)
        .filter(Ride.user_id == user_id, Ride.is_duplicate.is_(True))
        .order_by(Ride.start_time.desc())
        .all()
    )


def merge_duplicates(db: Session, user_id: str, keep_id: str, discard_id: str) -> Ride:
    """
    Keep one ride of a duplicate pair and delete the other. The discarded
    ride's hours are reversed before it is deleted; a ride that was never
    attributed to a bike reverses to nothing.
    """
    if keep_id == discard_id:
        raise ConstraintViolation("Cannot merge a ride with itself")

    keep = get_owned_ride(db, user_id, keep_id, lock=True)
    discard = get_owned_ride(db, user_id, discard_id, lock=True)

    remove_ride(db, discard)

    keep.is_duplicate = False
    keep.duplicate_of_id = None
    db.flush()

    logger.info(f"Merged duplicate ride {discard_id} into {keep_id} for user {user_id}")
    return keep


def mark_not_duplicate(db: Session, user_id: str, ride_id: str) -> Ride:
    ride = get_owned_ride(db, user_id, ride_id)
    ride.is_duplicate = False
    ride.duplicate_of_id = None
    db.flush()
    return ride
