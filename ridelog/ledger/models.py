"""
Ride ledger models: bikes, components, rides and gear mappings
"""
from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)

from ridelog.accounts.models import GARMIN, STRAVA, new_id
from ridelog.shared.database import Base


class Bike(Base):
    __tablename__ = "bikes"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Component(Base):
    """
    A part mounted on a bike, or a spare when bike_id is null.

    hours_used accumulates ride time while mounted and is only written by the
    hour accounting engine (ridelog.ledger.hours). It is never negative.
    """
    __tablename__ = "components"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    bike_id = Column(String(36), ForeignKey("bikes.id", ondelete="SET NULL"), nullable=True, index=True)
    type = Column(String(30), nullable=False, default="other")
    label = Column(String(200), nullable=True)
    hours_used = Column(Float, nullable=False, default=0.0)
    is_stock = Column(Boolean, nullable=False, default=True)
    service_due_at_hours = Column(Float, nullable=True)


class GearMapping(Base):
    """User-established link between a vendor gear id and an internal bike."""
    __tablename__ = "gear_mappings"
    __table_args__ = (UniqueConstraint("user_id", "provider_gear_id", name="uq_gear_mappings_user_gear"),)

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_gear_id = Column(String(100), nullable=False)
    bike_id = Column(String(36), ForeignKey("bikes.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Ride(Base):
    """
    Canonical ledger entry.

    At most one external id is set; none means a manual ride. External ids are
    globally unique and serve as the idempotency key for ingestion.
    """
    __tablename__ = "rides"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    garmin_activity_id = Column(String(100), unique=True, nullable=True)
    strava_activity_id = Column(String(100), unique=True, nullable=True)
    provider_gear_id = Column(String(100), nullable=True, index=True)
    gear_mapping_id = Column(String(36), ForeignKey("gear_mappings.id", ondelete="SET NULL"), nullable=True)

    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    duration_seconds = Column(Integer, nullable=False, default=0)
    distance_miles = Column(Float, nullable=False, default=0.0)
    elevation_gain_feet = Column(Float, nullable=False, default=0.0)
    average_hr = Column(Integer, nullable=True)
    ride_type = Column(String(50), nullable=False)
    bike_id = Column(String(36), ForeignKey("bikes.id", ondelete="SET NULL"), nullable=True, index=True)
    notes = Column(Text, nullable=True)
    trail_system = Column(String(200), nullable=True)
    location = Column(String(200), nullable=True)

    is_duplicate = Column(Boolean, nullable=False, default=False)
    duplicate_of_id = Column(String(36), ForeignKey("rides.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def provider(self):
        if self.strava_activity_id:
            return STRAVA
        if self.garmin_activity_id:
            return GARMIN
        return None
