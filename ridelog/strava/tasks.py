"""
Strava webhook event handlers and backfill
"""
import logging
from typing import Any, Dict, Optional

from ridelog.accounts.identity import disconnect_provider, resolve_user_id
from ridelog.accounts.models import STRAVA
from ridelog.accounts.tokens import WEBHOOK_SKEW_SECONDS
from ridelog.ingestion.backfill import (
    BackfillResult,
    backfill_range,
    backfill_scope,
    run_backfill,
    tracked_backfill,
    year_range,
)
from ridelog.ingestion.geocode import schedule_geocode
from ridelog.ingestion.handlers import EventHandlerBase
from ridelog.ingestion.normalize import normalize_strava_activity
from ridelog.ingestion.pipeline import delete_ingested_ride
from ridelog.shared.database import transaction
from ridelog.shared.errors import MalformedPayload, NotFound
from ridelog.shared.tasks import DROPPED, PROCESSED, SKIPPED, HandlerResult, register_handler

logger = logging.getLogger(__name__)

ASPECT_CREATE = "create"
ASPECT_UPDATE = "update"
ASPECT_DELETE = "delete"


@register_handler
class StravaActivityEventHandler(EventHandlerBase):
    """
    Strava only notifies that an activity changed. The detail is fetched with
    the owner's token and upserted; delete events remove the ride.
    """
    provider = STRAVA
    name = "strava.activity"

    def process(self, event: Dict[str, Any]) -> HandlerResult:
        owner_id = event.get("owner_id")
        activity_id = event.get("object_id")
        aspect = event.get("aspect_type")
        if owner_id is None or activity_id is None or aspect not in (ASPECT_CREATE, ASPECT_UPDATE, ASPECT_DELETE):
            raise MalformedPayload("Strava activity event needs owner_id, object_id and aspect_type")

        user_id = self.resolve_user(owner_id)
        if not user_id:
            logger.warning(f"Strava event for unknown athlete {owner_id}, dropping")
            return HandlerResult(DROPPED, f"unknown athlete {owner_id}")

        if not self.is_active_source(user_id):
            return HandlerResult(SKIPPED, "Strava is not the active data source")

        if aspect == ASPECT_DELETE:
            with transaction(self.ctx.session_factory) as db:
                deleted = delete_ingested_ride(db, user_id, STRAVA, str(activity_id))
            if deleted:
                return HandlerResult(PROCESSED, f"Strava activity {activity_id} deleted")
            return HandlerResult(SKIPPED, f"Strava activity {activity_id} not stored")

        try:
            payload = self.ctx.tokens.call_with_token(
                user_id, STRAVA,
                lambda token: self.ctx.strava.get_activity(token, activity_id),
                WEBHOOK_SKEW_SECONDS,
            )
        except NotFound:
            return HandlerResult(SKIPPED, f"Strava activity {activity_id} no longer available")

        return self.ingest_payload(user_id, payload, normalize_strava_activity)


@register_handler
class StravaDeauthorizationHandler(EventHandlerBase):
    """Athlete revoked access on Strava's side: forget credential and identity."""
    provider = STRAVA
    name = "strava.deauthorization"

    def process(self, event: Dict[str, Any]) -> HandlerResult:
        owner_id = event.get("owner_id") or event.get("object_id")
        if owner_id is None:
            raise MalformedPayload("Strava deauthorization event needs owner_id")

        with transaction(self.ctx.session_factory) as db:
            user_id = resolve_user_id(db, STRAVA, owner_id)
            if not user_id:
                return HandlerResult(DROPPED, f"unknown athlete {owner_id}")
            disconnect_provider(db, user_id, STRAVA)

        return HandlerResult(PROCESSED, f"Strava athlete {owner_id} deauthorized")


def is_deauthorization(event: Dict[str, Any]) -> bool:
    updates = event.get("updates") or {}
    return event.get("object_type") == "athlete" and str(updates.get("authorized", "")).lower() == "false"


def handler_for_event(event: Dict[str, Any]) -> Optional[str]:
    """Name of the handler for a Strava webhook event, or None for events we ignore."""
    if event.get("object_type") == "activity":
        return StravaActivityEventHandler.name
    if is_deauthorization(event):
        return StravaDeauthorizationHandler.name
    return None


def backfill_strava(ctx, user_id: str, days: int = 30, year: Optional[str] = None) -> BackfillResult:
    """
    Import Strava rides for the last `days` days or one calendar year,
    skipping ones already stored. The range is fetched as a single window.
    """
    start, end = year_range(year) if year else backfill_range(days)

    def fetch_window(window_start, window_end):
        return ctx.tokens.call_with_token(
            user_id, STRAVA,
            lambda token: list(ctx.strava.list_activities(token, window_start, window_end)),
        )

    def run():
        return run_backfill(
            ctx.session_factory, user_id, STRAVA, fetch_window, normalize_strava_activity,
            start, end, chunk=end - start,
            after_import=lambda ride_id, ride: schedule_geocode(ctx, ride_id, ride),
        )

    return tracked_backfill(ctx.session_factory, user_id, STRAVA, backfill_scope(days, year), end, run)
