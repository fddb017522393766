"""
Shared pytest fixtures

Every test gets a fresh in-memory SQLite database (one shared connection via
StaticPool) and an application context wired to fake vendor clients, so no
test touches the network.
"""
import os

os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-not-for-production")

from datetime import datetime, timezone

import pytest
import requests
from sqlalchemy.pool import StaticPool

from ridelog.accounts.identity import link_identity
from ridelog.accounts.models import GARMIN, STRAVA, OAuthCredential, User
from ridelog.accounts.tokens import TokenGrant, TokenManager
from ridelog.garmin.client import parse_min_start_time
from ridelog.ledger.models import Bike, Component
from ridelog.shared.config import Settings
from ridelog.shared.context import AppContext
from ridelog.shared.database import Base, build_engine, build_session_factory, transaction
from ridelog.shared.errors import BackfillInProgress, NotFound, Unauthorized, VendorWindowRejected
from ridelog.shared.tasks import EventQueue, bind_context, configure_celery

# Importing the task modules registers their event handlers
import ridelog.garmin.tasks  # noqa: F401
import ridelog.ingestion.models  # noqa: F401
import ridelog.strava.tasks  # noqa: F401

NOW = 1_717_200_000  # 2024-06-01T00:00:00Z


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRefresher:
    """Stands in for a vendor token endpoint."""

    def __init__(self, clock, rotate_refresh_token: bool = True):
        self.clock = clock
        self.rotate_refresh_token = rotate_refresh_token
        self.calls = []
        self.error = None

    def refresh(self, refresh_token: str) -> TokenGrant:
        self.calls.append(refresh_token)
        if self.error:
            raise self.error
        n = len(self.calls)
        return TokenGrant(
            access_token=f"access-{n}",
            refresh_token=f"refresh-{n}" if self.rotate_refresh_token else None,
            expires_at=int(self.clock()) + 6 * 3600,
        )


def _start_seconds(payload) -> float:
    text = payload["start_date"].replace("Z", "+00:00")
    return datetime.fromisoformat(text).timestamp()


class FakeStravaClient:
    def __init__(self):
        self.activities = {}
        self.rejected_tokens = set()
        self.calls = []
        self.deauthorized = []

    def add(self, payload):
        self.activities[str(payload["id"])] = payload
        return payload

    def get_activity(self, access_token, activity_id):
        self.calls.append(("get_activity", access_token, str(activity_id)))
        if access_token in self.rejected_tokens:
            raise Unauthorized("Strava rejected credentials")
        if str(activity_id) not in self.activities:
            raise NotFound(f"activity {activity_id}")
        return dict(self.activities[str(activity_id)])

    def list_activities(self, access_token, after, before):
        self.calls.append(("list_activities", access_token, after, before))
        return [
            dict(a) for a in self.activities.values()
            if after.timestamp() <= _start_seconds(a) < before.timestamp()
        ]

    def deauthorize(self, access_token):
        self.deauthorized.append(access_token)


class FakeGarminClient:
    def __init__(self):
        self.activities = []
        self.callbacks = {}
        self.floor = None
        self.in_progress = False
        self.requests = []
        self.deregistered = []

    def get_activity(self, access_token, summary_id):
        for activity in self.activities:
            if str(activity["summaryId"]) == str(summary_id):
                return dict(activity)
        raise NotFound(f"summary {summary_id}")

    def fetch_callback(self, access_token, callback_url):
        return [dict(a) for a in self.callbacks.get(callback_url, [])]

    def list_activities(self, access_token, start, end):
        self.requests.append((start, end))
        if self.in_progress:
            raise BackfillInProgress("Duplicate backfill request")
        if self.floor is not None and start < self.floor:
            message = (
                "start time is before min start time of "
                f"{self.floor.strftime('%Y-%m-%dT%H:%M:%SZ')}"
            )
            raise VendorWindowRejected(message, floor=parse_min_start_time(message))
        return [
            dict(a) for a in self.activities
            if start.timestamp() <= a["startTimeInSeconds"] < end.timestamp()
        ]

    def deregister(self, access_token):
        self.deregistered.append(access_token)


class FakeGeocoder:
    """Answers reverse lookups with a fixed place (None by default)."""

    def __init__(self, place=None):
        self.place = place
        self.lookups = []

    def reverse(self, lat, lon):
        self.lookups.append((lat, lon))
        return self.place


class RecordingQueue(EventQueue):
    """Runs events eagerly like EventQueue and keeps each result for assertions."""

    def __init__(self):
        self.submitted = []

    def submit(self, handler_name, event):
        queued = super().submit(handler_name, event)
        self.submitted.append(queued)
        return queued

    def statuses(self):
        return [q.result["status"] if q.successful() else q.state for q in self.submitted]


@pytest.fixture
def engine():
    engine = build_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def refreshers(clock):
    return {STRAVA: FakeRefresher(clock), GARMIN: FakeRefresher(clock, rotate_refresh_token=False)}


@pytest.fixture
def ctx(engine, session_factory, clock, refreshers):
    settings = Settings(
        database_url="sqlite://",
        environment="test",
        strava_webhook_verify_token="verify-me",
        garmin_backfill_chunk_days=30,
        celery_always_eager=True,
        event_max_attempts=3,
        event_retry_backoff_seconds=0,
        geocoding_enabled=True,
    )
    configure_celery(settings)
    http = requests.Session()
    context = AppContext(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        http=http,
        tokens=TokenManager(session_factory, refreshers, clock=clock),
        strava=FakeStravaClient(),
        garmin=FakeGarminClient(),
        queue=RecordingQueue(),
        geocoder=FakeGeocoder(),
    )
    bind_context(context)
    yield context
    bind_context(None)
    http.close()


class Factory:
    """Creates committed rows and reads back current values."""

    def __init__(self, session_factory, clock):
        self.session_factory = session_factory
        self.clock = clock

    def user(self, active_data_source=None) -> str:
        with transaction(self.session_factory) as db:
            user = User(active_data_source=active_data_source)
            db.add(user)
            db.flush()
            return user.id

    def bike(self, user_id: str, name: str = "Trail bike") -> str:
        with transaction(self.session_factory) as db:
            bike = Bike(user_id=user_id, name=name)
            db.add(bike)
            db.flush()
            return bike.id

    def component(self, user_id: str, bike_id=None, type: str = "fork", hours: float = 0.0) -> str:
        with transaction(self.session_factory) as db:
            component = Component(user_id=user_id, bike_id=bike_id, type=type, hours_used=hours)
            db.add(component)
            db.flush()
            return component.id

    def connect(self, user_id: str, provider: str, provider_user_id, expires_in: int = 3600,
                refresh_token="stored-refresh", access_token="stored-access") -> None:
        with transaction(self.session_factory) as db:
            link_identity(db, user_id, provider, provider_user_id)
            credential = OAuthCredential(user_id=user_id, provider=provider, expires_at=int(self.clock()) + expires_in)
            credential.access_token = access_token
            credential.refresh_token = refresh_token
            db.add(credential)

    def hours(self, component_id: str) -> float:
        with transaction(self.session_factory) as db:
            return db.query(Component).filter(Component.id == component_id).one().hours_used

    def credential(self, user_id: str, provider: str):
        with transaction(self.session_factory) as db:
            credential = (
                db.query(OAuthCredential)
                .filter(OAuthCredential.user_id == user_id, OAuthCredential.provider == provider)
                .first()
            )
            if credential is None:
                return None
            return {
                "access_token": credential.access_token,
                "refresh_token": credential.refresh_token,
                "expires_at": credential.expires_at,
                "access_token_encrypted": credential.access_token_encrypted,
            }


@pytest.fixture
def factory(session_factory, clock):
    return Factory(session_factory, clock)


def strava_payload(activity_id=1001, moving_time=3600, sport_type="MountainBikeRide",
                   start_date="2024-05-20T15:00:00Z", gear_id=None, **extra):
    payload = {
        "id": activity_id,
        "name": "Evening loop",
        "sport_type": sport_type,
        "start_date": start_date,
        "moving_time": moving_time,
        "elapsed_time": moving_time + 300,
        "distance": 16093.4,
        "total_elevation_gain": 304.8,
        "average_heartrate": 141.6,
        "gear_id": gear_id,
        "location_city": "Bend",
        "location_state": "Oregon",
        "location_country": "United States",
        "start_latlng": [44.058, -121.315],
    }
    payload.update(extra)
    return payload


def garmin_payload(summary_id="g-1", duration=3600, activity_type="MOUNTAIN_BIKING",
                   start=datetime(2024, 5, 20, 15, 0, tzinfo=timezone.utc), user_id=None, **extra):
    payload = {
        "summaryId": summary_id,
        "activityId": 555,
        "activityType": activity_type,
        "activityName": "Morning ride",
        "startTimeInSeconds": int(start.timestamp()),
        "durationInSeconds": duration,
        "distanceInMeters": 16093.4,
        "totalElevationGainInMeters": 304.8,
        "averageHeartRateInBeatsPerMinute": 139,
    }
    if user_id is not None:
        payload["userId"] = user_id
    payload.update(extra)
    return payload


@pytest.fixture
def make_strava_payload():
    return strava_payload


@pytest.fixture
def make_garmin_payload():
    return garmin_payload
