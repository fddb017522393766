"""
Celery event queue for webhook processing

Webhook endpoints acknowledge the vendor first and hand the event to
`process_event` by handler name. Tasks are acknowledged late, so an event is
delivered at least once even if a worker dies mid-task. Handlers must be
idempotent.

Transient failures are retried with exponential backoff until
EVENT_MAX_ATTEMPTS is reached. Anything else, or a transient failure on its
last attempt, is logged and stored as a FailedEvent row so it can be inspected
and recovered with a backfill.

Workers need an application context to build handlers; the web process binds
its own in the lifespan and ridelog.worker binds one per worker process.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Type

from celery import Celery
from celery.result import AsyncResult
from celery.utils.time import get_exponential_backoff_interval
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from ridelog.ingestion.models import FailedEvent
from ridelog.shared.config import DEFAULT_BROKER_URL, Settings
from ridelog.shared.database import transaction
from ridelog.shared.errors import TransientError

logger = logging.getLogger(__name__)

PROCESSED = "processed"
SKIPPED = "skipped"
DROPPED = "dropped"

RETRY_ON = (TransientError, OperationalError)
MAX_RETRY_BACKOFF_SECONDS = 600

celery_app = Celery("ridelog", broker=DEFAULT_BROKER_URL)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_ignore_result=True,
)


@dataclass
class HandlerResult:
    status: str
    detail: str = ""
    ride_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_handlers: Dict[str, Type] = {}
_context = None


def register_handler(handler_class: Type) -> Type:
    """Class decorator: make a handler reachable from queued events by its name."""
    _handlers[handler_class.name] = handler_class
    return handler_class


def build_handler(ctx, handler_name: str):
    handler_class = _handlers.get(handler_name)
    if handler_class is None:
        raise LookupError(f"No event handler registered as {handler_name!r}")
    return handler_class(ctx)


def configure_celery(settings: Settings) -> None:
    celery_app.conf.update(
        broker_url=settings.celery_broker_url,
        task_always_eager=settings.celery_always_eager,
        # Eager runs record failures on the result instead of raising into the webhook
        task_eager_propagates=False,
    )


def bind_context(ctx) -> None:
    global _context
    _context = ctx


def current_context():
    if _context is None:
        raise RuntimeError("No application context bound for queued tasks")
    return _context


def record_failed_event(ctx, task_id: Optional[str], handler_name: str, event: Dict[str, Any],
                        attempts: int, error: BaseException) -> None:
    """Log a dead-lettered event and keep it in failed_events."""
    description = f"{type(error).__name__}: {error}"
    logger.error(
        f"Event {task_id} ({handler_name}) failed after {attempts} attempt(s): {description}",
        exc_info=True
    )
    try:
        with transaction(ctx.session_factory) as db:
            db.add(FailedEvent(
                task_id=task_id,
                handler=handler_name,
                event=event,
                attempts=attempts,
                error=description[:2000],
            ))
    except SQLAlchemyError as e:
        logger.error(f"Could not store failed event {task_id}: {e}")


@celery_app.task(name="ridelog.process_event", bind=True)
def process_event(self, handler_name: str, event: Dict[str, Any]) -> Dict[str, Any]:
    ctx = current_context()
    attempt = self.request.retries + 1
    max_attempts = max(1, ctx.settings.event_max_attempts)

    try:
        handler = build_handler(ctx, handler_name)
        result = handler.handle(event)
    except RETRY_ON as e:
        if attempt < max_attempts:
            countdown = get_exponential_backoff_interval(
                factor=ctx.settings.event_retry_backoff_seconds,
                retries=self.request.retries,
                maximum=MAX_RETRY_BACKOFF_SECONDS,
                full_jitter=True,
            )
            logger.warning(
                f"Event {self.request.id} ({handler_name}) attempt {attempt} failed, "
                f"retrying in {countdown}s: {e}"
            )
            raise self.retry(exc=e, countdown=countdown, max_retries=max_attempts - 1)
        record_failed_event(ctx, self.request.id, handler_name, event, attempt, e)
        raise
    except Exception as e:
        record_failed_event(ctx, self.request.id, handler_name, event, attempt, e)
        raise

    logger.info(f"Event {self.request.id} ({handler_name}) {result.status}: {result.detail}")
    return result.to_dict()


class EventQueue:
    """Submits webhook events to the Celery worker."""

    def submit(self, handler_name: str, event: Dict[str, Any]) -> AsyncResult:
        queued = process_event.apply_async(args=(handler_name, event))
        logger.debug(f"Queued event {queued.id} for {handler_name}")
        return queued
