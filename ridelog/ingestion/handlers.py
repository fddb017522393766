"""
Base class for queued webhook event handlers

A handler is built around the application context and exposes
handle(event) -> HandlerResult. It does not depend on the HTTP layer, so it
can be called directly in tests or by the Celery worker, which finds it by
the name it was registered under.
"""
import logging
from typing import Any, Callable, Dict, Optional

from ridelog.accounts.identity import resolve_user_id
from ridelog.ingestion.geocode import schedule_geocode
from ridelog.ingestion.normalize import NormalizedRide
from ridelog.ingestion.pipeline import accepts_provider, ingest_ride
from ridelog.shared.database import transaction
from ridelog.shared.errors import MalformedPayload
from ridelog.shared.tasks import DROPPED, PROCESSED, SKIPPED, HandlerResult

logger = logging.getLogger(__name__)


class EventHandlerBase:
    provider: str = ""
    name: str = ""

    def __init__(self, ctx):
        self.ctx = ctx

    def handle(self, event: Dict[str, Any]) -> HandlerResult:
        try:
            return self.process(event)
        except MalformedPayload as e:
            logger.warning(f"{self.name}: dropping malformed event: {e.message}")
            return HandlerResult(DROPPED, e.message)

    def process(self, event: Dict[str, Any]) -> HandlerResult:
        raise NotImplementedError

    def resolve_user(self, provider_user_id) -> Optional[str]:
        with transaction(self.ctx.session_factory) as db:
            return resolve_user_id(db, self.provider, provider_user_id)

    def is_active_source(self, user_id: str) -> bool:
        with transaction(self.ctx.session_factory) as db:
            return accepts_provider(db, user_id, self.provider)

    def ingest_payload(
        self,
        user_id: str,
        payload: Dict[str, Any],
        normalize: Callable[[Dict[str, Any]], Optional[NormalizedRide]],
    ) -> HandlerResult:
        normalized = normalize(payload)
        if normalized is None:
            return HandlerResult(SKIPPED, "not a cycling activity")

        with transaction(self.ctx.session_factory) as db:
            outcome = ingest_ride(db, user_id, normalized)
            ride_id = outcome.ride.id

        if outcome.created:
            schedule_geocode(self.ctx, ride_id, normalized)

        action = "created" if outcome.created else "updated"
        return HandlerResult(PROCESSED, f"{self.provider} activity {normalized.external_id} {action}", ride_id)
