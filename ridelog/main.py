"""
RideLog ingestion service

Single FastAPI app assembling the ledger, accounts, ingestion, Strava and
Garmin routers. The lifespan builds the application context (database, HTTP
session, vendor clients, event queue), binds it for eagerly run tasks and
tears it down on shutdown. Queued events are processed by ridelog.worker.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ridelog.accounts.main import router as accounts_router
from ridelog.garmin.main import router as garmin_router
from ridelog.ingestion.main import router as ingestion_router
from ridelog.ingestion.models import FailedEvent
from ridelog.ledger.main import router as ledger_router
from ridelog.shared.config import Settings
from ridelog.shared.context import AppContext, build_context, get_context
from ridelog.shared.cors import setup_cors
from ridelog.shared.database import Base, check_db_connection, transaction
from ridelog.shared.errors import RideLogError
from ridelog.shared.tasks import bind_context, configure_celery
from ridelog.strava.main import router as strava_router

# Register every model on Base.metadata before create_all
import ridelog.accounts.models  # noqa: F401
import ridelog.ledger.models  # noqa: F401

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ctx: Optional[AppContext] = getattr(app.state, "ctx", None)
    owns_context = ctx is None
    if owns_context:
        settings = Settings.from_env()
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
        ctx = build_context(settings)
        app.state.ctx = ctx

    # Create database tables
    Base.metadata.create_all(bind=ctx.engine)

    configure_celery(ctx.settings)
    bind_context(ctx)
    logger.info(f"RideLog service started ({ctx.settings.environment})")

    try:
        yield
    finally:
        if owns_context:
            ctx.close()


def _count_failed_events(ctx: AppContext) -> Optional[int]:
    try:
        with transaction(ctx.session_factory) as db:
            return db.query(FailedEvent).count()
    except SQLAlchemyError as e:
        logger.warning(f"Could not count failed events: {e}")
        return None


def create_app(ctx: Optional[AppContext] = None) -> FastAPI:
    app = FastAPI(
        title="RideLog Service",
        version="1.0.0",
        description="Ride ingestion and component wear accounting",
        lifespan=lifespan,
    )
    if ctx is not None:
        app.state.ctx = ctx

    setup_cors(app, ctx.settings if ctx is not None else Settings.from_env())

    @app.exception_handler(RideLogError)
    async def ride_log_error_handler(request: Request, exc: RideLogError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.get("/health")
    def health(ctx: AppContext = Depends(get_context)):
        """Health check endpoint"""
        db_connected = check_db_connection(ctx.engine)
        return {
            "status": "ok" if db_connected else "degraded",
            "service": "ridelog",
            "database": "connected" if db_connected else "disconnected",
            "failed_events": _count_failed_events(ctx) if db_connected else None,
        }

    app.include_router(ledger_router)
    app.include_router(accounts_router)
    app.include_router(ingestion_router)
    app.include_router(strava_router)
    app.include_router(garmin_router)
    return app


app = create_app()
