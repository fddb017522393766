"""
Ride ledger API

Ride CRUD, gear mappings and duplicate resolution for the signed-in user.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ridelog.ledger import duplicates, gear, rides
from ridelog.ledger.schemas import (
    GearMappingCreate,
    GearMappingResponse,
    MergeRequest,
    RideCreate,
    RideResponse,
    RideUpdateRequest,
    UnmappedGearResponse,
)
from ridelog.shared.auth import get_current_user_id
from ridelog.shared.context import get_db
from ridelog.shared.errors import RideLogError, log_and_sanitize_error, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ledger"])


def _commit(db: Session, context: str, operation):
    """
    Run a ledger operation and commit it. Domain errors become their HTTP
    status; anything else is logged and returned as a sanitized 500.
    """
    try:
        result = operation()
        db.commit()
        return result
    except RideLogError as e:
        db.rollback()
        raise to_http_exception(e)
    except Exception as e:
        db.rollback()
        sanitized_msg, error_id = log_and_sanitize_error(e, context)
        raise HTTPException(status_code=500, detail=sanitized_msg)


# ──────────────────────────────────────────────────────────────────────────────
# Rides
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/rides", response_model=RideResponse, status_code=201)
def add_ride(
    ride_data: RideCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Create a manual ride."""
    ride = _commit(db, "Add ride", lambda: rides.add_ride(db, user_id, ride_data.model_dump()))
    db.refresh(ride)
    return ride


@router.patch("/rides/{ride_id}", response_model=RideResponse)
def update_ride(
    ride_id: str,
    ride_data: RideUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Update only the provided fields of a ride."""
    ride = _commit(db, "Update ride", lambda: rides.update_ride(db, user_id, ride_id, ride_data.to_update()))
    db.refresh(ride)
    return ride


@router.delete("/rides/{ride_id}", status_code=204)
def delete_ride(
    ride_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Delete a ride and reverse its component hours."""
    _commit(db, "Delete ride", lambda: rides.delete_ride(db, user_id, ride_id))


# ──────────────────────────────────────────────────────────────────────────────
# Gear mappings
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/gear-mappings/unmapped", response_model=list[UnmappedGearResponse])
def list_unmapped_gears(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Vendor gear ids seen on rides that are not mapped to a bike yet."""
    return gear.list_unmapped_gears(db, user_id)


@router.post("/gear-mappings", response_model=GearMappingResponse, status_code=201)
def create_gear_mapping(
    mapping_data: GearMappingCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Map a vendor gear id to a bike and attribute its unassigned rides."""
    mapping = _commit(
        db, "Create gear mapping",
        lambda: gear.create_gear_mapping(db, user_id, mapping_data.gear_id, mapping_data.bike_id),
    )
    db.refresh(mapping)
    return mapping


@router.delete("/gear-mappings/{mapping_id}")
def delete_gear_mapping(
    mapping_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Delete a mapping and unassign the rides it attributed."""
    unassigned = _commit(db, "Delete gear mapping", lambda: gear.delete_gear_mapping(db, user_id, mapping_id))
    return {"status": "deleted", "rides_unassigned": unassigned}


# ──────────────────────────────────────────────────────────────────────────────
# Duplicates
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/duplicates", response_model=list[RideResponse])
def list_duplicates(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Rides flagged as possible duplicates."""
    return duplicates.list_duplicates(db, user_id)


@router.post("/duplicates/merge", response_model=RideResponse)
def merge_duplicates(
    merge_data: MergeRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Keep one ride of a duplicate pair and delete the other."""
    ride = _commit(
        db, "Merge duplicates",
        lambda: duplicates.merge_duplicates(db, user_id, merge_data.keep_id, merge_data.discard_id),
    )
    db.refresh(ride)
    return ride


@router.post("/duplicates/{ride_id}/not-duplicate", response_model=RideResponse)
def mark_not_duplicate(
    ride_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Dismiss a duplicate flag."""
    ride = _commit(db, "Mark not duplicate", lambda: duplicates.mark_not_duplicate(db, user_id, ride_id))
    db.refresh(ride)
    return ride
