"""
Tests for the Strava and Garmin webhook endpoints and their queued handlers

Webhooks are acknowledged immediately and their events handed to Celery. The
tests run Celery eagerly, so every queued event has been handled by the time
the response returns; ctx.queue keeps each result for inspection.
"""
import pytest
from fastapi.testclient import TestClient

from ridelog.accounts.identity import get_active_data_source, set_active_data_source
from ridelog.accounts.models import GARMIN, STRAVA
from ridelog.garmin.tasks import GarminPingHandler, GarminPushHandler
from ridelog.ingestion.models import FailedEvent
from ridelog.ledger.models import Ride
from ridelog.main import create_app
from ridelog.shared.database import transaction
from ridelog.shared.tasks import DROPPED, PROCESSED, SKIPPED

STRAVA_ATHLETE = 424242
GARMIN_USER = "garmin-user-abc"


@pytest.fixture
def client(ctx):
    with TestClient(create_app(ctx)) as test_client:
        yield test_client


@pytest.fixture
def rider(factory):
    user_id = factory.user()
    bike_id = factory.bike(user_id)
    fork = factory.component(user_id, bike_id, "fork")
    factory.connect(user_id, STRAVA, STRAVA_ATHLETE)
    factory.connect(user_id, GARMIN, GARMIN_USER)
    return {"user_id": user_id, "bike_id": bike_id, "fork": fork}


def _strava_event(object_id, aspect_type="create", owner_id=STRAVA_ATHLETE, **extra):
    event = {
        "object_type": "activity",
        "object_id": object_id,
        "aspect_type": aspect_type,
        "owner_id": owner_id,
        "subscription_id": 120475,
        "event_time": 1716200000,
        "updates": {},
    }
    event.update(extra)
    return event


def _rides(session_factory, user_id):
    with transaction(session_factory) as db:
        rides = db.query(Ride).filter(Ride.user_id == user_id).all()
        for ride in rides:
            db.expunge(ride)
        return rides


# ──────────────────────────────────────────────────────────────────────────────
# Strava
# ──────────────────────────────────────────────────────────────────────────────

def test_strava_subscription_verification(client):
    response = client.get("/webhooks/strava", params={
        "hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "abc123",
    })
    assert response.status_code == 200
    assert response.json() == {"hub.challenge": "abc123"}


def test_strava_verification_with_wrong_token(client):
    response = client.get("/webhooks/strava", params={
        "hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "abc123",
    })
    assert response.status_code == 403


def test_strava_create_event_is_acknowledged_then_ingested(ctx, client, rider, factory, make_strava_payload):
    ctx.strava.add(make_strava_payload(777, moving_time=5400))

    response = client.post("/webhooks/strava", json=_strava_event(777))
    assert response.status_code == 200
    assert response.json()["status"] == "EVENT_RECEIVED"
    assert response.json()["event_id"] == ctx.queue.submitted[0].id

    assert ctx.queue.statuses() == [PROCESSED]
    rides = _rides(ctx.session_factory, rider["user_id"])
    assert len(rides) == 1
    assert rides[0].strava_activity_id == "777"
    assert factory.hours(rider["fork"]) == pytest.approx(1.5)


def test_strava_update_event_reapplies_duration(ctx, client, rider, factory, make_strava_payload):
    ctx.strava.add(make_strava_payload(778, moving_time=3600))
    client.post("/webhooks/strava", json=_strava_event(778))

    ctx.strava.add(make_strava_payload(778, moving_time=1800))
    client.post("/webhooks/strava", json=_strava_event(778, "update", updates={"title": "x"}))

    assert len(_rides(ctx.session_factory, rider["user_id"])) == 1
    assert factory.hours(rider["fork"]) == pytest.approx(0.5)


def test_strava_delete_event_reverses_hours(ctx, client, rider, factory, make_strava_payload):
    ctx.strava.add(make_strava_payload(779, moving_time=3600))
    client.post("/webhooks/strava", json=_strava_event(779))

    client.post("/webhooks/strava", json=_strava_event(779, "delete"))

    assert ctx.queue.statuses() == [PROCESSED, PROCESSED]
    assert _rides(ctx.session_factory, rider["user_id"]) == []
    assert factory.hours(rider["fork"]) == pytest.approx(0.0)


def test_strava_event_uses_webhook_skew(ctx, client, factory, refreshers, make_strava_payload):
    """A token with four minutes left is refreshed before a webhook-triggered fetch"""
    user_id = factory.user()
    factory.connect(user_id, STRAVA, 5150, expires_in=240)
    ctx.strava.add(make_strava_payload(780))

    client.post("/webhooks/strava", json=_strava_event(780, owner_id=5150))

    assert refreshers[STRAVA].calls == ["stored-refresh"]
    assert ("get_activity", "access-1", "780") in ctx.strava.calls


def test_strava_rejected_token_refreshes_and_retries(ctx, client, rider, refreshers, make_strava_payload):
    ctx.strava.add(make_strava_payload(781))
    ctx.strava.rejected_tokens.add("stored-access")

    client.post("/webhooks/strava", json=_strava_event(781))

    assert ctx.queue.statuses() == [PROCESSED]
    assert len(refreshers[STRAVA].calls) == 1


def test_strava_unknown_athlete_dropped(ctx, client):
    client.post("/webhooks/strava", json=_strava_event(782, owner_id=999))
    assert ctx.queue.statuses() == [DROPPED]


def test_strava_non_cycling_activity_skipped(ctx, client, rider, make_strava_payload):
    ctx.strava.add(make_strava_payload(783, sport_type="Run"))
    client.post("/webhooks/strava", json=_strava_event(783))

    assert ctx.queue.statuses() == [SKIPPED]
    assert _rides(ctx.session_factory, rider["user_id"]) == []


def test_strava_activity_gone_is_skipped(ctx, client, rider):
    client.post("/webhooks/strava", json=_strava_event(784))
    assert ctx.queue.statuses() == [SKIPPED]


def test_strava_ignored_when_garmin_is_active_source(ctx, client, rider, make_strava_payload):
    with transaction(ctx.session_factory) as db:
        set_active_data_source(db, rider["user_id"], GARMIN)
    ctx.strava.add(make_strava_payload(785))

    client.post("/webhooks/strava", json=_strava_event(785))

    assert ctx.queue.statuses() == [SKIPPED]
    assert ctx.strava.calls == [], "No vendor call when the provider is not the active source"


def test_strava_malformed_event_dropped(ctx, client):
    client.post("/webhooks/strava", json={"object_type": "activity", "aspect_type": "create"})
    assert ctx.queue.statuses() == [DROPPED]


def test_strava_invalid_body(client):
    response = client.post("/webhooks/strava", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400


def test_strava_unrelated_event_ignored(ctx, client):
    response = client.post("/webhooks/strava", json={
        "object_type": "athlete", "object_id": 1, "aspect_type": "update", "owner_id": 1,
        "updates": {"name": "new name"},
    })
    assert response.json() == {"status": "ignored"}
    assert ctx.queue.submitted == []


def test_strava_deauthorization_forgets_credential(ctx, client, rider, factory):
    client.post("/webhooks/strava", json={
        "object_type": "athlete", "object_id": STRAVA_ATHLETE, "aspect_type": "update",
        "owner_id": STRAVA_ATHLETE, "updates": {"authorized": "false"},
    })

    assert ctx.queue.statuses() == [PROCESSED]
    assert factory.credential(rider["user_id"], STRAVA) is None
    assert factory.credential(rider["user_id"], GARMIN) is not None


# ──────────────────────────────────────────────────────────────────────────────
# Garmin
# ──────────────────────────────────────────────────────────────────────────────

def test_garmin_push_ingests_each_activity(ctx, client, rider, factory, make_garmin_payload):
    response = client.post("/webhooks/garmin/activities", json={"activities": [
        make_garmin_payload("p-1", duration=3600, user_id=GARMIN_USER),
        make_garmin_payload("p-2", duration=1800, user_id=GARMIN_USER),
    ]})
    assert response.status_code == 200
    assert response.json() == {"status": "EVENT_RECEIVED", "queued": 2}

    assert ctx.queue.statuses() == [PROCESSED, PROCESSED]
    assert factory.hours(rider["fork"]) == pytest.approx(1.5)


def test_garmin_push_without_user_id_dropped(ctx, client, rider, make_garmin_payload):
    client.post("/webhooks/garmin/activities", json={"activities": [make_garmin_payload("p-3")]})

    assert ctx.queue.statuses() == [DROPPED]
    assert _rides(ctx.session_factory, rider["user_id"]) == []


def test_garmin_push_malformed_entry_does_not_block_others(ctx, client, rider, make_garmin_payload):
    broken = make_garmin_payload("p-4", user_id=GARMIN_USER)
    del broken["startTimeInSeconds"]
    client.post("/webhooks/garmin/activities", json={"activities": [
        broken, make_garmin_payload("p-5", user_id=GARMIN_USER),
    ]})

    assert ctx.queue.statuses() == [DROPPED, PROCESSED]


def test_garmin_envelope_missing_list(client):
    response = client.post("/webhooks/garmin/activities", json={"dailies": []})
    assert response.status_code == 400


def test_garmin_ping_fetches_detail(ctx, client, rider, factory, make_garmin_payload):
    ctx.garmin.activities = [make_garmin_payload("ping-1", duration=7200)]

    client.post("/webhooks/garmin/activities-ping", json={"activityDetails": [
        {"userId": GARMIN_USER, "summaryId": "ping-1"},
    ]})

    assert ctx.queue.statuses() == [PROCESSED]
    assert factory.hours(rider["fork"]) == pytest.approx(2.0)


def test_garmin_ping_with_callback_url(ctx, client, rider, factory, make_garmin_payload):
    url = "https://apis.garmin.com/wellness-api/rest/activities?token=abc"
    ctx.garmin.callbacks[url] = [
        make_garmin_payload("cb-1", duration=3600),
        make_garmin_payload("cb-2", duration=3600, activity_type="RUNNING"),
    ]

    client.post("/webhooks/garmin/activities-ping", json={"activityDetails": [
        {"userId": GARMIN_USER, "callbackURL": url},
    ]})

    assert ctx.queue.statuses() == [PROCESSED]
    assert factory.hours(rider["fork"]) == pytest.approx(1.0)


def test_garmin_ping_unknown_summary_skipped(ctx, client, rider):
    client.post("/webhooks/garmin/activities-ping", json={"activityDetails": [
        {"userId": GARMIN_USER, "summaryId": "missing"},
    ]})
    assert ctx.queue.statuses() == [SKIPPED]


def test_garmin_deregistration(ctx, client, rider, factory):
    with transaction(ctx.session_factory) as db:
        set_active_data_source(db, rider["user_id"], GARMIN)

    client.post("/webhooks/garmin/deregistration", json={"deregistrations": [{"userId": GARMIN_USER}]})

    assert ctx.queue.statuses() == [PROCESSED]
    assert factory.credential(rider["user_id"], GARMIN) is None
    with transaction(ctx.session_factory) as db:
        assert get_active_data_source(db, rider["user_id"]) is None


def test_garmin_permissions_change(ctx, client, rider):
    client.post("/webhooks/garmin/permissions", json={"userPermissionsChange": [
        {"userId": GARMIN_USER, "permissions": ["HEALTH_EXPORT"]},
        {"userId": GARMIN_USER, "permissions": ["ACTIVITY_EXPORT", "HEALTH_EXPORT"]},
    ]})

    assert ctx.queue.statuses() == [PROCESSED, PROCESSED]
    assert "revoked" in ctx.queue.submitted[0].result["detail"]


def test_handlers_run_without_http(ctx, rider, make_garmin_payload):
    """Handlers are plain objects and can be driven directly"""
    ctx.garmin.activities = [make_garmin_payload("direct-1")]

    assert GarminPushHandler(ctx).handle(make_garmin_payload("direct-2", user_id=GARMIN_USER)).status == PROCESSED
    assert GarminPingHandler(ctx).handle({"userId": GARMIN_USER, "summaryId": "direct-1"}).status == PROCESSED
    assert GarminPingHandler(ctx).handle({"userId": GARMIN_USER}).status == DROPPED


def test_garmin_callback_survives_unreadable_activity(ctx, client, rider, factory, make_garmin_payload):
    url = "https://apis.garmin.com/wellness-api/rest/activities?token=def"
    ctx.garmin.callbacks[url] = [
        make_garmin_payload("cb-3", distanceInMeters="n/a"),
        make_garmin_payload("cb-4", duration=3600),
    ]

    client.post("/webhooks/garmin/activities-ping", json={"activityDetails": [
        {"userId": GARMIN_USER, "callbackURL": url},
    ]})

    assert ctx.queue.statuses() == [PROCESSED]
    assert "1 of 2 callback activities ingested, 1 malformed" in ctx.queue.submitted[0].result["detail"]
    assert factory.hours(rider["fork"]) == pytest.approx(1.0)
    with transaction(ctx.session_factory) as db:
        assert db.query(FailedEvent).count() == 0


def test_garmin_callback_isolates_unexpected_failure(ctx, client, rider, factory, make_garmin_payload, monkeypatch):
    url = "https://apis.garmin.com/wellness-api/rest/activities?token=ghi"
    ctx.garmin.callbacks[url] = [
        make_garmin_payload("cb-bad", duration=3600),
        make_garmin_payload("cb-5", duration=1800),
    ]
    original = GarminPingHandler.ingest_payload

    def flaky(self, user_id, payload, normalize):
        if payload["summaryId"] == "cb-bad":
            raise RuntimeError("lost the database")
        return original(self, user_id, payload, normalize)

    monkeypatch.setattr(GarminPingHandler, "ingest_payload", flaky)

    client.post("/webhooks/garmin/activities-ping", json={"activityDetails": [
        {"userId": GARMIN_USER, "callbackURL": url},
    ]})

    assert ctx.queue.statuses() == [PROCESSED]
    assert "0 malformed, 1 failed" in ctx.queue.submitted[0].result["detail"]
    assert factory.hours(rider["fork"]) == pytest.approx(0.5)


def test_garmin_push_with_coordinates_is_geocoded(ctx, client, rider, make_garmin_payload):
    ctx.geocoder.place = "Moab, Utah"
    client.post("/webhooks/garmin/activities", json={"activities": [
        make_garmin_payload("geo-1", user_id=GARMIN_USER,
                            startLatitudeInDegrees=38.573, startLongitudeInDegrees=-109.549),
    ]})

    assert ctx.queue.statuses() == [PROCESSED]
    assert ctx.geocoder.lookups == [(38.573, -109.549)]
    rides = _rides(ctx.session_factory, rider["user_id"])
    assert rides[0].location == "Moab, Utah"


def test_named_location_is_not_geocoded(ctx, client, rider, make_garmin_payload):
    ctx.geocoder.place = "Moab, Utah"
    client.post("/webhooks/garmin/activities", json={"activities": [
        make_garmin_payload("geo-2", user_id=GARMIN_USER, locationName="Slickrock",
                            startLatitudeInDegrees=38.573, startLongitudeInDegrees=-109.549),
    ]})

    assert ctx.geocoder.lookups == []
    assert _rides(ctx.session_factory, rider["user_id"])[0].location == "Slickrock"


def test_geocoding_without_a_place_keeps_coordinates(ctx, client, rider, make_garmin_payload):
    client.post("/webhooks/garmin/activities", json={"activities": [
        make_garmin_payload("geo-3", user_id=GARMIN_USER,
                            startLatitudeInDegrees=38.573, startLongitudeInDegrees=-109.549),
    ]})

    assert len(ctx.geocoder.lookups) == 1
    assert _rides(ctx.session_factory, rider["user_id"])[0].location == "Lat 38.573, Lon -109.549"
