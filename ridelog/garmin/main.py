"""
Garmin API

Health API webhook receivers and on-demand backfill. Each webhook validates
its envelope, queues one event per entry and answers 200 straight away.
"""
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from ridelog.garmin.tasks import (
    GarminDeregistrationHandler,
    GarminPermissionsHandler,
    GarminPingHandler,
    GarminPushHandler,
    backfill_garmin,
)
from ridelog.ingestion.backfill import IN_PROGRESS
from ridelog.ingestion.schemas import BackfillOptions
from ridelog.shared.auth import get_current_user_id
from ridelog.shared.context import AppContext, get_context
from ridelog.shared.errors import RideLogError, log_and_sanitize_error, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["garmin"])


async def _read_entries(request: Request, *keys: str) -> List[Dict[str, Any]]:
    """Entries under the first of `keys` present in the body; 400 if none is."""
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    if isinstance(body, dict):
        for key in keys:
            entries = body.get(key)
            if isinstance(entries, list):
                return [entry for entry in entries if isinstance(entry, dict)]

    logger.warning(f"Garmin webhook body missing {' / '.join(keys)}")
    raise HTTPException(status_code=400, detail=f"Expected a list under {' or '.join(keys)}")


def _queue_all(ctx: AppContext, handler_name: str, entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    for entry in entries:
        ctx.queue.submit(handler_name, entry)
    logger.info(f"Queued {len(entries)} {handler_name} event(s)")
    return {"status": "EVENT_RECEIVED", "queued": len(entries)}


@router.post("/webhooks/garmin/activities")
async def receive_activities(request: Request, ctx: AppContext = Depends(get_context)):
    """Push notifications with full activity summaries."""
    entries = await _read_entries(request, "activities", "activityDetails")
    return _queue_all(ctx, GarminPushHandler.name, entries)


@router.post("/webhooks/garmin/activities-ping")
async def receive_activity_pings(request: Request, ctx: AppContext = Depends(get_context)):
    """Ping notifications: summary ids or callback URLs to pull from."""
    entries = await _read_entries(request, "activityDetails", "activities")
    return _queue_all(ctx, GarminPingHandler.name, entries)


@router.post("/webhooks/garmin/deregistration")
async def receive_deregistrations(request: Request, ctx: AppContext = Depends(get_context)):
    entries = await _read_entries(request, "deregistrations")
    return _queue_all(ctx, GarminDeregistrationHandler.name, entries)


@router.post("/webhooks/garmin/permissions")
async def receive_permission_changes(request: Request, ctx: AppContext = Depends(get_context)):
    entries = await _read_entries(request, "userPermissionsChange")
    return _queue_all(ctx, GarminPermissionsHandler.name, entries)


@router.post("/garmin/backfill")
def backfill(
    backfill_data: BackfillOptions,
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
):
    """
    Import the last N days of Garmin rides, or one calendar year. Garmin limits
    how far back data is available; an earlier start is moved to that date and
    reported in warnings. A year that was already imported answers 409.
    """
    try:
        result = backfill_garmin(ctx, user_id, backfill_data.days, backfill_data.year)
    except RideLogError as e:
        raise to_http_exception(e)
    except Exception as e:
        sanitized_msg, error_id = log_and_sanitize_error(e, "Garmin backfill")
        raise HTTPException(status_code=500, detail=sanitized_msg)

    if result.status == IN_PROGRESS:
        return JSONResponse(status_code=202, content=result.to_dict())
    return result.to_dict()
