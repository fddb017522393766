"""
Pydantic schemas for the ride ledger API.

Defines request/response models with validation.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, model_validator

from ridelog.ledger.updates import RideUpdate


class RideBase(BaseModel):
    """Common ride fields."""
    start_time: datetime
    duration_seconds: int = Field(..., ge=0)
    distance_miles: float = Field(0.0, ge=0)
    elevation_gain_feet: float = Field(0.0, ge=0)
    average_hr: Optional[int] = Field(None, ge=0, le=260)
    ride_type: str = Field(..., min_length=1, max_length=50)
    bike_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=5000)
    trail_system: Optional[str] = Field(None, max_length=200)
    location: Optional[str] = Field(None, max_length=200)


class RideCreate(RideBase):
    """Schema for creating a manual ride."""
    pass


class RideUpdateRequest(BaseModel):
    """
    Schema for updating a ride. Omitted fields are left alone; an explicit
    null clears a nullable field.
    """
    start_time: Optional[datetime] = None
    duration_seconds: Optional[int] = Field(None, ge=0)
    distance_miles: Optional[float] = Field(None, ge=0)
    elevation_gain_feet: Optional[float] = Field(None, ge=0)
    average_hr: Optional[int] = Field(None, ge=0, le=260)
    ride_type: Optional[str] = Field(None, min_length=1, max_length=50)
    bike_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=5000)
    trail_system: Optional[str] = Field(None, max_length=200)
    location: Optional[str] = Field(None, max_length=200)

    @model_validator(mode="after")
    def required_fields_not_cleared(self):
        for name in ("start_time", "duration_seconds", "distance_miles", "elevation_gain_feet", "ride_type"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be cleared")
        return self

    def to_update(self) -> RideUpdate:
        return RideUpdate.from_dict(self.model_dump(exclude_unset=True))


class RideResponse(RideBase):
    """Schema for ride responses."""
    id: str
    strava_activity_id: Optional[str] = None
    garmin_activity_id: Optional[str] = None
    provider_gear_id: Optional[str] = None
    is_duplicate: bool = False
    duplicate_of_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class GearMappingCreate(BaseModel):
    gear_id: str = Field(..., min_length=1, max_length=100)
    bike_id: str = Field(..., min_length=1, max_length=36)


class GearMappingResponse(BaseModel):
    id: str
    provider_gear_id: str
    bike_id: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UnmappedGearResponse(BaseModel):
    gear_id: str
    ride_count: int


class MergeRequest(BaseModel):
    keep_id: str
    discard_id: str
