"""
Celery worker entry point

    celery -A ridelog.worker worker --loglevel=INFO

Each worker process builds its own application context after the fork, so
database connections and HTTP sessions are never shared between processes.
"""
import logging

from celery.signals import worker_process_init, worker_process_shutdown

# Importing the task modules registers their handlers and tasks
import ridelog.garmin.tasks  # noqa: F401
import ridelog.ingestion.geocode  # noqa: F401
import ridelog.strava.tasks  # noqa: F401
from ridelog.shared.config import Settings
from ridelog.shared.context import build_context
from ridelog.shared.tasks import bind_context, celery_app, configure_celery, current_context

logger = logging.getLogger(__name__)

settings = Settings.from_env()
configure_celery(settings)

app = celery_app


@worker_process_init.connect
def init_worker_context(**kwargs):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    bind_context(build_context(settings))
    logger.info(f"RideLog worker process ready ({settings.environment})")


@worker_process_shutdown.connect
def close_worker_context(**kwargs):
    try:
        ctx = current_context()
    except RuntimeError:
        return
    ctx.close()
