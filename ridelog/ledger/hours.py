"""
Hour accounting engine

Keeps Component.hours_used in step with the rides attributed to each bike.
Every ride change (create, edit, delete, gear remap, merge) calls apply_delta()
with the ride's (bike_id, duration_seconds) before and after the change; no
other code writes hours_used in response to rides.

The net delta is computed per bike: the previous bike loses the previous hours
and the next bike gains the next hours. When the bike is unchanged these
collapse into one signed difference, so one UPDATE is issued per touched bike.
Any bike that received a decrement then gets a clamp pass that floors
hours_used at zero.

Callers own the transaction: the ride write and the hour write commit together.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ridelog.ledger.models import Component

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0


@dataclass(frozen=True)
class RideState:
    bike_id: Optional[str]
    duration_seconds: int = 0

    @property
    def hours(self) -> float:
        return max(0, self.duration_seconds or 0) / SECONDS_PER_HOUR

    @classmethod
    def of(cls, ride) -> "RideState":
        return cls(bike_id=ride.bike_id, duration_seconds=ride.duration_seconds or 0)


# State of a ride that does not exist yet, or no longer exists
EMPTY_STATE = RideState(bike_id=None, duration_seconds=0)


def compute_deltas(previous: RideState, next: RideState) -> Dict[str, float]:
    """Net hours to add per bike id. Zero entries are dropped."""
    deltas: Dict[str, float] = defaultdict(float)
    if previous.bike_id:
        deltas[previous.bike_id] -= previous.hours
    if next.bike_id:
        deltas[next.bike_id] += next.hours
    return {bike_id: delta for bike_id, delta in deltas.items() if delta != 0}


def apply_delta(db: Session, user_id: str, previous: RideState, next: RideState) -> Dict[str, float]:
    """
    Apply a ride's state change to the hours of the components on the
    affected bikes. Returns the applied delta per bike.
    """
    deltas = compute_deltas(previous, next)

    for bike_id, delta in deltas.items():
        updated = (
            db.query(Component)
            .filter(Component.user_id == user_id, Component.bike_id == bike_id)
            .update({Component.hours_used: Component.hours_used + delta}, synchronize_session="fetch")
        )
        logger.debug(f"Applied {delta:+.4f}h to {updated} component(s) on bike {bike_id}")

        if delta < 0:
            clamp_non_negative(db, user_id, bike_id)

    return deltas


def clamp_non_negative(db: Session, user_id: str, bike_id: str) -> int:
    clamped = (
        db.query(Component)
        .filter(
            Component.user_id == user_id,
            Component.bike_id == bike_id,
            Component.hours_used < 0,
        )
        .update({Component.hours_used: 0.0}, synchronize_session="fetch")
    )
    if clamped:
        logger.info(f"Clamped hours_used to zero on {clamped} component(s) of bike {bike_id}")
    return clamped
