"""
Gear resolution and gear mappings

A vendor ride may carry an equipment id (Strava gear id). resolve_bike() turns
it into an internal bike: an explicit GearMapping wins, otherwise a user with
exactly one bike gets that bike as a default. Rides that resolve to nothing
keep their gear id and show up in list_unmapped_gears() until the user maps it.

Mapping create/delete re-attribute rides one at a time through the hour
accounting engine. A mapping only ever reverses the rides it attributed
itself (tracked on Ride.gear_mapping_id), so hours added by a mapping and
hours removed when it is deleted always match.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ridelog.ledger.hours import RideState, apply_delta
from ridelog.ledger.models import Bike, GearMapping, Ride
from ridelog.shared.errors import ConstraintViolation, NotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attribution:
    bike_id: Optional[str] = None
    mapping_id: Optional[str] = None


UNATTRIBUTED = Attribution()


def get_owned_bike(db: Session, user_id: str, bike_id: str) -> Bike:
    bike = db.query(Bike).filter(Bike.id == bike_id, Bike.user_id == user_id).first()
    if not bike:
        raise NotFound(f"Bike {bike_id} not found")
    return bike


def default_bike_id(db: Session, user_id: str) -> Optional[str]:
    """The user's bike when they own exactly one, else None."""
    bikes = db.query(Bike.id).filter(Bike.user_id == user_id).limit(2).all()
    if len(bikes) == 1:
        return bikes[0][0]
    return None


def find_gear_mapping(db: Session, user_id: str, gear_id: str) -> Optional[GearMapping]:
    return (
        db.query(GearMapping)
        .filter(GearMapping.user_id == user_id, GearMapping.provider_gear_id == gear_id)
        .first()
    )


def resolve_bike(db: Session, user_id: str, gear_id: Optional[str]) -> Attribution:
    if gear_id:
        mapping = find_gear_mapping(db, user_id, gear_id)
        if mapping:
            return Attribution(bike_id=mapping.bike_id, mapping_id=mapping.id)

    bike_id = default_bike_id(db, user_id)
    if bike_id:
        return Attribution(bike_id=bike_id)

    if gear_id:
        logger.info(f"Gear {gear_id} for user {user_id} is unmapped, ride left unattributed")
    return UNATTRIBUTED


def list_unmapped_gears(db: Session, user_id: str) -> List[Dict]:
    mapped = select(GearMapping.provider_gear_id).where(GearMapping.user_id == user_id)
    rows = (
        db.query(Ride.provider_gear_id, func.count(Ride.id))
        .filter(
            Ride.user_id == user_id,
            Ride.provider_gear_id.isnot(None),
            Ride.provider_gear_id.notin_(mapped),
        )
        .group_by(Ride.provider_gear_id)
        .order_by(func.count(Ride.id).desc(), Ride.provider_gear_id)
        .all()
    )
    return [{"gear_id": gear_id, "ride_count": count} for gear_id, count in rows]


def create_gear_mapping(db: Session, user_id: str, gear_id: str, bike_id: str) -> GearMapping:
    """
    Map gear_id to bike_id and attribute the user's unassigned rides carrying
    that gear to the bike.
    """
    get_owned_bike(db, user_id, bike_id)

    if find_gear_mapping(db, user_id, gear_id):
        raise ConstraintViolation(f"Gear {gear_id} is already mapped to a bike")

    mapping = GearMapping(user_id=user_id, provider_gear_id=gear_id, bike_id=bike_id)
    try:
        with db.begin_nested():
            db.add(mapping)
            db.flush()
    except IntegrityError:
        # A concurrent request mapped the same gear between the check and the insert
        raise ConstraintViolation(f"Gear {gear_id} is already mapped to a bike")

    rides = (
        db.query(Ride)
        .filter(Ride.user_id == user_id, Ride.provider_gear_id == gear_id, Ride.bike_id.is_(None))
        .with_for_update()
        .all()
    )
    total_seconds = 0
    for ride in rides:
        previous = RideState.of(ride)
        ride.bike_id = bike_id
        ride.gear_mapping_id = mapping.id
        db.flush()
        apply_delta(db, user_id, previous, RideState.of(ride))
        total_seconds += max(0, ride.duration_seconds or 0)

    logger.info(
        f"Mapped gear {gear_id} to bike {bike_id} for user {user_id}: "
        f"{len(rides)} ride(s), {total_seconds / 3600:.2f}h attributed"
    )
    return mapping


def delete_gear_mapping(db: Session, user_id: str, mapping_id: str) -> int:
    """
    Remove a mapping and unassign the rides it attributed that are still on
    the mapped bike. Returns the number of rides unassigned.
    """
    mapping = (
        db.query(GearMapping)
        .filter(GearMapping.id == mapping_id, GearMapping.user_id == user_id)
        .first()
    )
    if not mapping:
        raise NotFound(f"Gear mapping {mapping_id} not found")

    rides = (
        db.query(Ride)
        .filter(Ride.user_id == user_id, Ride.gear_mapping_id == mapping.id)
        .with_for_update()
        .all()
    )
    unassigned = 0
    for ride in rides:
        if ride.bike_id == mapping.bike_id:
            previous = RideState.of(ride)
            ride.bike_id = None
            db.flush()
            apply_delta(db, user_id, previous, RideState.of(ride))
            unassigned += 1
        ride.gear_mapping_id = None

    db.delete(mapping)
    db.flush()

    logger.info(
        f"Deleted gear mapping {mapping.provider_gear_id} -> {mapping.bike_id} "
        f"for user {user_id}, {unassigned} ride(s) unassigned"
    )
    return unassigned
