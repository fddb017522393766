"""
Partial update values

A field in a RideUpdate is either UNCHANGED (leave the stored value alone) or
SetTo(value), where value may be None to clear a nullable field.
"""
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Dict, Generic, Optional, TypeVar, Union

T = TypeVar("T")


class _Unchanged:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNCHANGED"

    def __bool__(self) -> bool:
        return False


UNCHANGED = _Unchanged()


@dataclass(frozen=True)
class SetTo(Generic[T]):
    value: T


FieldUpdate = Union[_Unchanged, SetTo[T]]


@dataclass(frozen=True)
class RideUpdate:
    start_time: FieldUpdate[datetime] = UNCHANGED
    duration_seconds: FieldUpdate[int] = UNCHANGED
    distance_miles: FieldUpdate[float] = UNCHANGED
    elevation_gain_feet: FieldUpdate[float] = UNCHANGED
    average_hr: FieldUpdate[Optional[int]] = UNCHANGED
    ride_type: FieldUpdate[str] = UNCHANGED
    bike_id: FieldUpdate[Optional[str]] = UNCHANGED
    notes: FieldUpdate[Optional[str]] = UNCHANGED
    trail_system: FieldUpdate[Optional[str]] = UNCHANGED
    location: FieldUpdate[Optional[str]] = UNCHANGED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RideUpdate":
        """Every key present in data becomes SetTo, absent keys stay UNCHANGED."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown ride fields: {', '.join(sorted(unknown))}")
        return cls(**{key: SetTo(value) for key, value in data.items()})

    def changes(self) -> Dict[str, Any]:
        """Map of field name to new value for every SetTo field."""
        return {
            f.name: getattr(self, f.name).value
            for f in fields(self)
            if isinstance(getattr(self, f.name), SetTo)
        }
