"""
Manual ride mutations

addRide / updateRide / deleteRide as plain service functions. They run inside
the caller's transaction and funnel every hour change through apply_delta().
"""
import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from ridelog.ledger.gear import default_bike_id, get_owned_bike
from ridelog.ledger.hours import EMPTY_STATE, RideState, apply_delta
from ridelog.ledger.models import Ride
from ridelog.ledger.updates import RideUpdate
from ridelog.shared.errors import NotFound

logger = logging.getLogger(__name__)


def get_owned_ride(db: Session, user_id: str, ride_id: str, lock: bool = False) -> Ride:
    query = db.query(Ride).filter(Ride.id == ride_id, Ride.user_id == user_id)
    if lock:
        query = query.with_for_update()
    ride = query.first()
    if not ride:
        raise NotFound(f"Ride {ride_id} not found")
    return ride


def add_ride(db: Session, user_id: str, data: Dict[str, Any]) -> Ride:
    """
    Create a manual ride. Without an explicit bike the ride goes to the user's
    only bike, if they have exactly one.
    """
    values = dict(data)
    if values.get("bike_id"):
        get_owned_bike(db, user_id, values["bike_id"])
    else:
        values["bike_id"] = default_bike_id(db, user_id)
    values["duration_seconds"] = max(0, int(values.get("duration_seconds") or 0))

    ride = Ride(user_id=user_id, **values)
    db.add(ride)
    db.flush()

    apply_delta(db, user_id, EMPTY_STATE, RideState.of(ride))
    logger.info(f"Added ride {ride.id} for user {user_id} on bike {ride.bike_id}")
    return ride


def update_ride(db: Session, user_id: str, ride_id: str, update: RideUpdate) -> Ride:
    ride = get_owned_ride(db, user_id, ride_id, lock=True)
    changes = update.changes()

    if "bike_id" in changes:
        if changes["bike_id"]:
            get_owned_bike(db, user_id, changes["bike_id"])
        if changes["bike_id"] != ride.bike_id:
            # A manual reassignment takes the ride out of its gear mapping
            ride.gear_mapping_id = None
    if "duration_seconds" in changes:
        changes["duration_seconds"] = max(0, int(changes["duration_seconds"] or 0))

    previous = RideState.of(ride)
    for key, value in changes.items():
        setattr(ride, key, value)
    db.flush()

    apply_delta(db, user_id, previous, RideState.of(ride))
    return ride


def delete_ride(db: Session, user_id: str, ride_id: str) -> None:
    ride = get_owned_ride(db, user_id, ride_id, lock=True)
    remove_ride(db, ride)
    logger.info(f"Deleted ride {ride_id} for user {user_id}")


def remove_ride(db: Session, ride: Ride) -> None:
    """Reverse a ride's hours and delete it. Shared by manual, vendor and merge deletes."""
    previous = RideState.of(ride)

    (
        db.query(Ride)
        .filter(Ride.duplicate_of_id == ride.id)
        .update({Ride.duplicate_of_id: None, Ride.is_duplicate: False}, synchronize_session="fetch")
    )
    db.delete(ride)
    db.flush()

    apply_delta(db, ride.user_id, previous, EMPTY_STATE)
