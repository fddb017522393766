"""
Ingestion API

Backfill request history shared by both vendors.
"""
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ridelog.ingestion.backfill import list_backfill_requests
from ridelog.ingestion.schemas import BackfillHistory
from ridelog.shared.auth import get_current_user_id
from ridelog.shared.context import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ingestion"])


@router.get("/backfill/history", response_model=BackfillHistory)
def backfill_history(
    provider: Optional[Literal["strava", "garmin"]] = Query(None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Backfill requests of the signed-in user, most recently updated first."""
    return {"requests": list_backfill_requests(db, user_id, provider)}
