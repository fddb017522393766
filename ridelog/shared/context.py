"""
Application context

Everything with a lifecycle (database engine, HTTP session, vendor clients,
token manager, event queue, geocoder) is built once at startup, stored on
app.state and handed to endpoints through FastAPI dependencies. Tests build
their own context around an in-memory database and fake vendor clients.
"""
import logging
from dataclasses import dataclass
from typing import Iterator, Optional

import requests
from fastapi import Depends, Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ridelog.accounts.tokens import TokenManager, build_refreshers
from ridelog.garmin.client import GarminClient
from ridelog.ingestion.geocode import GeocodeClient
from ridelog.shared.config import Settings
from ridelog.shared.database import build_engine, build_session_factory
from ridelog.shared.http import build_http_session
from ridelog.shared.tasks import EventQueue
from ridelog.strava.client import StravaClient

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    http: requests.Session
    tokens: TokenManager
    strava: StravaClient
    garmin: GarminClient
    queue: EventQueue
    geocoder: GeocodeClient

    def close(self) -> None:
        self.http.close()
        self.engine.dispose()
        logger.info("Application context closed")


def build_context(settings: Settings, engine: Optional[Engine] = None) -> AppContext:
    engine = engine or build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    http = build_http_session()
    return AppContext(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        http=http,
        tokens=TokenManager(session_factory, build_refreshers(http, settings)),
        strava=StravaClient(http, settings.http_timeout_seconds),
        garmin=GarminClient(http, settings.garmin_api_base, settings.http_timeout_seconds),
        queue=EventQueue(),
        geocoder=GeocodeClient(
            http, settings.nominatim_url, settings.geocode_user_agent, settings.http_timeout_seconds,
        ),
    )


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


def get_db(ctx: AppContext = Depends(get_context)) -> Iterator[Session]:
    """
    Dependency injection for database sessions
    Usage in FastAPI endpoints:

    @router.get("/endpoint")
    def endpoint(db: Session = Depends(get_db)):
        # use db here
        pass
    """
    db = ctx.session_factory()
    try:
        yield db
    finally:
        db.close()
