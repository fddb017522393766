"""
Garmin webhook event handlers and backfill

Garmin delivers activities two ways: push (the full summary in the webhook
body) and ping (a summaryId or callbackURL to pull from). Both carry Garmin's
userId, which is routed to an internal user through ProviderIdentity.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from ridelog.accounts.identity import disconnect_provider, resolve_user_id
from ridelog.accounts.models import GARMIN
from ridelog.accounts.tokens import WEBHOOK_SKEW_SECONDS
from ridelog.garmin.constants import ACTIVITY_EXPORT_PERMISSION
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
from ridelog.ingestion.normalize import normalize_garmin_activity
from ridelog.shared.database import transaction
from ridelog.shared.errors import MalformedPayload, NotFound
from ridelog.shared.tasks import DROPPED, PROCESSED, SKIPPED, HandlerResult, register_handler

logger = logging.getLogger(__name__)


@register_handler
class GarminPushHandler(EventHandlerBase):
    """One entry of a push notification's `activities` list."""
    provider = GARMIN
    name = "garmin.push"

    def process(self, event: Dict[str, Any]) -> HandlerResult:
        garmin_user_id = event.get("userId")
        if not garmin_user_id:
            # Without a userId the activity cannot be attributed safely
            logger.warning(f"Garmin push for summary {event.get('summaryId')} has no userId, dropping")
            return HandlerResult(DROPPED, "push notification without userId")

        user_id = self.resolve_user(garmin_user_id)
        if not user_id:
            logger.warning(f"Garmin push for unknown user {garmin_user_id}, dropping")
            return HandlerResult(DROPPED, f"unknown Garmin user {garmin_user_id}")

        if not self.is_active_source(user_id):
            return HandlerResult(SKIPPED, "Garmin is not the active data source")

        return self.ingest_payload(user_id, event, normalize_garmin_activity)


@register_handler
class GarminPingHandler(EventHandlerBase):
    """One ping entry: fetch by summaryId, or pull everything behind callbackURL."""
    provider = GARMIN
    name = "garmin.ping"

    def process(self, event: Dict[str, Any]) -> HandlerResult:
        garmin_user_id = event.get("userId")
        summary_id = event.get("summaryId")
        callback_url = event.get("callbackURL")
        if not garmin_user_id or not (summary_id or callback_url):
            raise MalformedPayload("Garmin ping needs userId and a summaryId or callbackURL")

        user_id = self.resolve_user(garmin_user_id)
        if not user_id:
            logger.warning(f"Garmin ping for unknown user {garmin_user_id}, dropping")
            return HandlerResult(DROPPED, f"unknown Garmin user {garmin_user_id}")

        if not self.is_active_source(user_id):
            return HandlerResult(SKIPPED, "Garmin is not the active data source")

        if callback_url:
            return self._ingest_callback(user_id, callback_url)

        try:
            payload = self.ctx.tokens.call_with_token(
                user_id, GARMIN,
                lambda token: self.ctx.garmin.get_activity(token, summary_id),
                WEBHOOK_SKEW_SECONDS,
            )
        except NotFound:
            return HandlerResult(SKIPPED, f"Garmin activity {summary_id} not available")
        if not payload:
            return HandlerResult(SKIPPED, f"Garmin returned no detail for {summary_id}")

        return self.ingest_payload(user_id, payload, normalize_garmin_activity)

    def _ingest_callback(self, user_id: str, callback_url: str) -> HandlerResult:
        activities = self.ctx.tokens.call_with_token(
            user_id, GARMIN,
            lambda token: self.ctx.garmin.fetch_callback(token, callback_url),
            WEBHOOK_SKEW_SECONDS,
        )
        processed = dropped = failed = 0
        for index, activity in enumerate(activities):
            try:
                result = self.ingest_payload(user_id, activity, normalize_garmin_activity)
            except MalformedPayload as e:
                logger.warning(f"Dropping malformed Garmin activity from callback: {e.message}")
                dropped += 1
                continue
            except Exception as e:
                # One bad activity must not cost the rest of the batch
                logger.error(
                    f"Failed to ingest Garmin callback activity {index} for user {user_id}: {e}",
                    exc_info=True
                )
                failed += 1
                continue
            if result.status == PROCESSED:
                processed += 1

        return HandlerResult(
            PROCESSED,
            f"{processed} of {len(activities)} callback activities ingested, "
            f"{dropped} malformed, {failed} failed",
        )


@register_handler
class GarminDeregistrationHandler(EventHandlerBase):
    provider = GARMIN
    name = "garmin.deregistration"

    def process(self, event: Dict[str, Any]) -> HandlerResult:
        garmin_user_id = event.get("userId")
        if not garmin_user_id:
            raise MalformedPayload("Garmin deregistration needs userId")

        with transaction(self.ctx.session_factory) as db:
            user_id = resolve_user_id(db, GARMIN, garmin_user_id)
            if not user_id:
                return HandlerResult(DROPPED, f"unknown Garmin user {garmin_user_id}")
            disconnect_provider(db, user_id, GARMIN)

        return HandlerResult(PROCESSED, f"Garmin user {garmin_user_id} deregistered")


@register_handler
class GarminPermissionsHandler(EventHandlerBase):
    provider = GARMIN
    name = "garmin.permissions"

    def process(self, event: Dict[str, Any]) -> HandlerResult:
        garmin_user_id = event.get("userId")
        if not garmin_user_id:
            raise MalformedPayload("Garmin permission change needs userId")

        permissions = event.get("permissions") or []
        user_id = self.resolve_user(garmin_user_id)
        if not user_id:
            return HandlerResult(DROPPED, f"unknown Garmin user {garmin_user_id}")

        if ACTIVITY_EXPORT_PERMISSION not in permissions:
            logger.warning(
                f"Garmin user {garmin_user_id} (user {user_id}) no longer grants "
                f"{ACTIVITY_EXPORT_PERMISSION}, activities will stop arriving"
            )
            return HandlerResult(PROCESSED, f"{ACTIVITY_EXPORT_PERMISSION} revoked")

        return HandlerResult(PROCESSED, f"permissions: {', '.join(permissions)}")


def backfill_garmin(ctx, user_id: str, days: int = 30, year: Optional[str] = None) -> BackfillResult:
    """
    Import Garmin rides for the last `days` days, or for one calendar year
    ("ytd" for this year so far), in fixed-size windows.
    """
    start, end = year_range(year) if year else backfill_range(days)

    def fetch_window(window_start, window_end):
        return ctx.tokens.call_with_token(
            user_id, GARMIN,
            lambda token: ctx.garmin.list_activities(token, window_start, window_end),
        )

    def run():
        return run_backfill(
            ctx.session_factory, user_id, GARMIN, fetch_window, normalize_garmin_activity,
            start, end, chunk=timedelta(days=ctx.settings.garmin_backfill_chunk_days),
            after_import=lambda ride_id, ride: schedule_geocode(ctx, ride_id, ride),
        )

    return tracked_backfill(ctx.session_factory, user_id, GARMIN, backfill_scope(days, year), end, run)
