"""
Upsert-and-account for vendor rides

Every ingestion path (push, ping-then-fetch, backfill) ends here, inside one
transaction owned by the caller. The ride's prior (bike, duration) is read
under a row lock before it is overwritten, so the hour engine always sees the
true before/after pair and a re-sent activity applies a zero delta.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ridelog.accounts.models import GARMIN, STRAVA, User
from ridelog.ingestion.location import should_fill_location
from ridelog.ingestion.normalize import NormalizedRide
from ridelog.ledger.duplicates import flag_if_duplicate
from ridelog.ledger.gear import resolve_bike
from ridelog.ledger.hours import EMPTY_STATE, RideState, apply_delta
from ridelog.ledger.models import Ride
from ridelog.ledger.rides import remove_ride

logger = logging.getLogger(__name__)

EXTERNAL_ID_COLUMNS = {
    STRAVA: Ride.strava_activity_id,
    GARMIN: Ride.garmin_activity_id,
}


@dataclass
class IngestOutcome:
    ride: Ride
    created: bool
    duplicate_of_id: Optional[str] = None


def _external_id_column(provider: str):
    try:
        return EXTERNAL_ID_COLUMNS[provider]
    except KeyError:
        raise ValueError(f"Unknown provider {provider!r}")


def find_ingested_ride(db: Session, provider: str, external_id: str, lock: bool = False) -> Optional[Ride]:
    query = db.query(Ride).filter(_external_id_column(provider) == str(external_id))
    if lock:
        query = query.with_for_update()
    return query.first()


def external_id_exists(db: Session, provider: str, external_id: str) -> bool:
    return (
        db.query(Ride.id).filter(_external_id_column(provider) == str(external_id)).first()
        is not None
    )


def accepts_provider(db: Session, user_id: str, provider: str) -> bool:
    """False when the user picked a different provider as their active source."""
    active = db.query(User.active_data_source).filter(User.id == user_id).scalar()
    return not active or active == provider


def ingest_ride(db: Session, user_id: str, normalized: NormalizedRide) -> IngestOutcome:
    attribution = resolve_bike(db, user_id, normalized.gear_id)
    ride = find_ingested_ride(db, normalized.provider, normalized.external_id, lock=True)

    if ride is None:
        ride = Ride(
            user_id=user_id,
            bike_id=attribution.bike_id,
            gear_mapping_id=attribution.mapping_id,
            provider_gear_id=normalized.gear_id,
            location=normalized.location,
            **normalized.ride_fields(),
        )
        setattr(ride, _external_id_column(normalized.provider).key, normalized.external_id)
        db.add(ride)
        db.flush()

        apply_delta(db, user_id, EMPTY_STATE, RideState.of(ride))
        duplicate = flag_if_duplicate(db, ride)
        logger.info(
            f"Created {normalized.provider} ride {normalized.external_id} for user {user_id} "
            f"({ride.duration_seconds}s, bike {ride.bike_id})"
        )
        return IngestOutcome(ride=ride, created=True, duplicate_of_id=duplicate.id if duplicate else None)

    if ride.user_id != user_id:
        logger.warning(
            f"{normalized.provider} activity {normalized.external_id} belongs to user {ride.user_id}, "
            f"ignoring update routed to user {user_id}"
        )
        return IngestOutcome(ride=ride, created=False)

    previous = RideState.of(ride)
    for key, value in normalized.ride_fields().items():
        setattr(ride, key, value)
    ride.provider_gear_id = normalized.gear_id
    if attribution.bike_id:
        ride.bike_id = attribution.bike_id
        ride.gear_mapping_id = attribution.mapping_id
    if should_fill_location(ride.location, normalized.location):
        ride.location = normalized.location
    db.flush()

    apply_delta(db, user_id, previous, RideState.of(ride))
    logger.info(f"Updated {normalized.provider} ride {normalized.external_id} for user {user_id}")
    return IngestOutcome(ride=ride, created=False)


def delete_ingested_ride(db: Session, user_id: str, provider: str, external_id: str) -> bool:
    ride = find_ingested_ride(db, provider, external_id, lock=True)
    if ride is None or ride.user_id != user_id:
        return False
    remove_ride(db, ride)
    logger.info(f"Deleted {provider} ride {external_id} for user {user_id}")
    return True
