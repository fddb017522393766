"""
Strava API

Webhook subscription endpoints and on-demand backfill. Webhook events are
acknowledged immediately and processed by the event queue.
"""
import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from ridelog.shared.auth import get_current_user_id
from ridelog.shared.context import AppContext, get_context
from ridelog.shared.errors import RideLogError, log_and_sanitize_error, to_http_exception
from ridelog.ingestion.backfill import IN_PROGRESS
from ridelog.ingestion.schemas import BackfillOptions
from ridelog.strava.tasks import backfill_strava, handler_for_event

logger = logging.getLogger(__name__)

router = APIRouter(tags=["strava"])


@router.get("/webhooks/strava")
def verify_subscription(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    ctx: AppContext = Depends(get_context),
):
    """Echo the challenge when Strava validates the push subscription."""
    expected = ctx.settings.strava_webhook_verify_token
    if (
        hub_mode == "subscribe"
        and expected
        and hub_verify_token
        and hmac.compare_digest(hub_verify_token, expected)
    ):
        logger.info("Strava webhook subscription verified")
        return {"hub.challenge": hub_challenge}

    logger.warning("Strava webhook verification failed")
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/webhooks/strava")
async def receive_event(request: Request, ctx: AppContext = Depends(get_context)):
    """
    Acknowledge a Strava push event and queue it. Strava retries anything that
    is not answered with 200 within two seconds.
    """
    try:
        event = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Event must be a JSON object")

    handler_name = handler_for_event(event)
    if handler_name is None:
        logger.info(f"Ignoring Strava {event.get('object_type')} {event.get('aspect_type')} event")
        return {"status": "ignored"}

    event_id = ctx.queue.submit(handler_name, event).id
    return {"status": "EVENT_RECEIVED", "event_id": event_id}


@router.post("/strava/backfill")
def backfill(
    backfill_data: BackfillOptions,
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
):
    """Import the last N days, or one calendar year, of Strava rides. Rides already stored are skipped."""
    try:
        result = backfill_strava(ctx, user_id, backfill_data.days, backfill_data.year)
    except RideLogError as e:
        raise to_http_exception(e)
    except Exception as e:
        sanitized_msg, error_id = log_and_sanitize_error(e, "Strava backfill")
        raise HTTPException(status_code=500, detail=sanitized_msg)

    if result.status == IN_PROGRESS:
        return JSONResponse(status_code=202, content=result.to_dict())
    return result.to_dict()
