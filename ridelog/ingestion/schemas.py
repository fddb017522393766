"""
Pydantic schemas shared by the vendor backfill endpoints.
"""
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from ridelog.ingestion.backfill import YEAR_TO_DATE

EARLIEST_BACKFILL_YEAR = 2000


class BackfillOptions(BaseModel):
    """
    Import the last `days` days of activities, or one calendar year.

    `year` is a year between 2000 and the current one, or "ytd". When given
    it takes precedence over `days`.
    """
    days: int = Field(30, ge=1, le=365)
    year: Optional[str] = None

    @field_validator("year", mode="before")
    @classmethod
    def check_year(cls, value):
        if value is None:
            return None
        text = str(value).strip().lower()
        if text == YEAR_TO_DATE:
            return text
        current_year = datetime.now(timezone.utc).year
        if not text.isdigit() or not EARLIEST_BACKFILL_YEAR <= int(text) <= current_year:
            raise ValueError(f"Year must be between {EARLIEST_BACKFILL_YEAR} and {current_year}, or 'ytd'")
        return text


class BackfillHistoryEntry(BaseModel):
    id: str
    provider: str
    year: str
    status: str
    rides_found: Optional[int] = None
    backfilled_up_to: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BackfillHistory(BaseModel):
    requests: List[BackfillHistoryEntry]
