"""
Tests for the OAuth token store and refresh manager
"""
from unittest.mock import Mock

import pytest

from ridelog.accounts.models import GARMIN, STRAVA
from ridelog.accounts.tokens import (
    DIRECT_CALL_SKEW_SECONDS,
    WEBHOOK_SKEW_SECONDS,
    GarminTokenRefresher,
    StravaTokenRefresher,
    TokenGrant,
)
from ridelog.shared.database import transaction
from ridelog.shared.errors import Unauthorized, VendorUnavailable


def _response(status_code=200, body=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = body or {}
    response.text = text
    return response


def _http(response):
    http = Mock()
    http.request.return_value = response
    return http


@pytest.fixture
def user_id(factory):
    return factory.user()


def test_fresh_token_returned_without_refresh(ctx, factory, user_id, refreshers):
    factory.connect(user_id, STRAVA, 1, expires_in=3600)

    assert ctx.tokens.get_valid_access_token(user_id, STRAVA) == "stored-access"
    assert refreshers[STRAVA].calls == []


def test_token_inside_skew_is_refreshed_and_persisted(ctx, factory, user_id, refreshers, clock):
    factory.connect(user_id, STRAVA, 1, expires_in=DIRECT_CALL_SKEW_SECONDS - 1)

    assert ctx.tokens.get_valid_access_token(user_id, STRAVA) == "access-1"
    assert refreshers[STRAVA].calls == ["stored-refresh"]

    stored = factory.credential(user_id, STRAVA)
    assert stored["access_token"] == "access-1"
    assert stored["refresh_token"] == "refresh-1"
    assert stored["expires_at"] == clock.now + 6 * 3600


def test_webhook_skew_refreshes_earlier(ctx, factory, user_id, refreshers):
    """A token with two minutes left is fine for a direct call but not for a queued webhook"""
    factory.connect(user_id, GARMIN, "g-1", expires_in=120)

    assert ctx.tokens.get_valid_access_token(user_id, GARMIN, DIRECT_CALL_SKEW_SECONDS) == "stored-access"
    assert refreshers[GARMIN].calls == []

    assert ctx.tokens.get_valid_access_token(user_id, GARMIN, WEBHOOK_SKEW_SECONDS) == "access-1"
    assert refreshers[GARMIN].calls == ["stored-refresh"]


def test_refresh_keeps_refresh_token_when_vendor_omits_it(ctx, factory, user_id):
    factory.connect(user_id, GARMIN, "g-1", expires_in=0)

    ctx.tokens.get_valid_access_token(user_id, GARMIN)

    stored = factory.credential(user_id, GARMIN)
    assert stored["access_token"] == "access-1"
    assert stored["refresh_token"] == "stored-refresh"


def test_missing_credential_is_unauthorized(ctx, user_id):
    with pytest.raises(Unauthorized):
        ctx.tokens.get_valid_access_token(user_id, STRAVA)


def test_expired_without_refresh_token_is_unauthorized(ctx, factory, user_id, refreshers):
    factory.connect(user_id, STRAVA, 1, expires_in=0, refresh_token=None)

    with pytest.raises(Unauthorized):
        ctx.tokens.get_valid_access_token(user_id, STRAVA)
    assert refreshers[STRAVA].calls == []


def test_refresh_failure_is_surfaced(ctx, factory, user_id, refreshers):
    factory.connect(user_id, STRAVA, 1, expires_in=0)
    refreshers[STRAVA].error = VendorUnavailable("Strava returned 503 during token refresh")

    with pytest.raises(VendorUnavailable):
        ctx.tokens.get_valid_access_token(user_id, STRAVA)
    assert factory.credential(user_id, STRAVA)["access_token"] == "stored-access"


def test_call_with_token_retries_once_after_rejection(ctx, factory, user_id, refreshers):
    factory.connect(user_id, STRAVA, 1)
    seen = []

    def call(token):
        seen.append(token)
        if token == "stored-access":
            raise Unauthorized("Strava rejected credentials")
        return "ok"

    assert ctx.tokens.call_with_token(user_id, STRAVA, call) == "ok"
    assert seen == ["stored-access", "access-1"]
    assert len(refreshers[STRAVA].calls) == 1


def test_call_with_token_gives_up_after_second_rejection(ctx, factory, user_id, refreshers):
    factory.connect(user_id, STRAVA, 1)
    calls = []

    def call(token):
        calls.append(token)
        raise Unauthorized("Strava rejected credentials")

    with pytest.raises(Unauthorized):
        ctx.tokens.call_with_token(user_id, STRAVA, call)
    assert len(calls) == 2
    assert len(refreshers[STRAVA].calls) == 1


def test_store_grant_upserts_and_preserves_refresh_token(ctx, factory, user_id, session_factory):
    with transaction(session_factory) as db:
        ctx.tokens.store_grant(db, user_id, GARMIN, TokenGrant("first-access", "first-refresh", 2_000_000_000))
    with transaction(session_factory) as db:
        ctx.tokens.store_grant(db, user_id, GARMIN, TokenGrant("second-access", None, 2_000_003_600))

    stored = factory.credential(user_id, GARMIN)
    assert stored["access_token"] == "second-access"
    assert stored["refresh_token"] == "first-refresh"
    assert stored["expires_at"] == 2_000_003_600


def test_tokens_encrypted_at_rest(factory, user_id):
    factory.connect(user_id, STRAVA, 1, access_token="plain-access-token")

    stored = factory.credential(user_id, STRAVA)
    assert stored["access_token"] == "plain-access-token"
    assert "plain-access-token" not in stored["access_token_encrypted"]


def test_strava_refresher_posts_refresh_grant():
    http = _http(_response(body={"access_token": "a2", "refresh_token": "r2", "expires_at": 1_800_000_000}))
    refresher = StravaTokenRefresher(http, "client-id", "client-secret")

    grant = refresher.refresh("r1")

    assert grant == TokenGrant("a2", "r2", 1_800_000_000)
    method, url = http.request.call_args[0]
    assert method == "POST"
    assert url == "https://www.strava.com/oauth/token"
    assert http.request.call_args[1]["data"]["grant_type"] == "refresh_token"
    assert http.request.call_args[1]["data"]["refresh_token"] == "r1"


def test_strava_refresher_bad_request_is_unauthorized():
    refresher = StravaTokenRefresher(_http(_response(400, text='{"message":"Bad Request"}')), "id", "secret")
    with pytest.raises(Unauthorized):
        refresher.refresh("revoked")


def test_garmin_refresher_defaults_expiry_and_omits_secret():
    http = _http(_response(body={"access_token": "g-access"}))
    refresher = GarminTokenRefresher(http, "https://garmin.test/token", "client-id", clock=lambda: 1_000)

    grant = refresher.refresh("g-refresh")

    assert grant.access_token == "g-access"
    assert grant.refresh_token is None
    assert grant.expires_at == 1_000 + 3600
    form = http.request.call_args[1]["data"]
    assert form == {"grant_type": "refresh_token", "refresh_token": "g-refresh", "client_id": "client-id"}


def test_garmin_refresher_sends_secret_when_configured():
    http = _http(_response(body={"access_token": "g", "refresh_token": "r", "expires_in": 7200}))
    refresher = GarminTokenRefresher(http, "https://garmin.test/token", "id", "secret", clock=lambda: 0)

    assert refresher.refresh("r0").expires_at == 7200
    assert http.request.call_args[1]["data"]["client_secret"] == "secret"


def test_garmin_refresher_server_error_is_transient():
    refresher = GarminTokenRefresher(_http(_response(502, text="bad gateway")), "https://garmin.test/token", "id")
    with pytest.raises(VendorUnavailable):
        refresher.refresh("r0")
