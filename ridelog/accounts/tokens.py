"""
OAuth token store and refresh

get_valid_access_token() is called before every vendor request. A token
expiring within the skew window is exchanged for a new one and persisted
before it is returned. Refreshes are not locked across requests: two
concurrent refreshes both yield a usable token and the last write wins.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, TypeVar

import requests
from sqlalchemy.orm import Session, sessionmaker

from ridelog.accounts.models import GARMIN, STRAVA, OAuthCredential, new_id
from ridelog.garmin.constants import DEFAULT_TOKEN_TTL_SECONDS
from ridelog.shared.database import transaction
from ridelog.shared.encryption import encrypt_token
from ridelog.shared.errors import Unauthorized
from ridelog.shared.http import check_vendor_response, vendor_request
from ridelog.shared.upsert import atomic_upsert
from ridelog.strava.constants import TOKEN_URL as STRAVA_TOKEN_URL

logger = logging.getLogger(__name__)

# Refresh margins: direct API calls vs. calls triggered by a webhook, which
# may sit in the queue before the vendor request is made
DIRECT_CALL_SKEW_SECONDS = 60
WEBHOOK_SKEW_SECONDS = 300

T = TypeVar("T")


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_at: int  # Unix timestamp


class TokenRefresher(Protocol):
    def refresh(self, refresh_token: str) -> TokenGrant:
        ...


class StravaTokenRefresher:
    def __init__(self, http: requests.Session, client_id: Optional[str], client_secret: Optional[str], timeout: int = 10):
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

    def refresh(self, refresh_token: str) -> TokenGrant:
        if not self.client_id or not self.client_secret:
            raise RuntimeError("Strava credentials not configured")

        response = vendor_request(
            self.http, "POST", STRAVA_TOKEN_URL, "Strava", "token refresh",
            timeout=self.timeout,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        if response.status_code == 400:
            raise Unauthorized(f"Strava refused the refresh token: {response.text[:200]}")
        check_vendor_response(response, "Strava", "token refresh")

        token_data = response.json()
        return TokenGrant(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_at=int(token_data["expires_at"]),
        )


class GarminTokenRefresher:
    def __init__(
        self,
        http: requests.Session,
        token_url: str,
        client_id: Optional[str],
        client_secret: Optional[str] = None,
        timeout: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.http = http
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.clock = clock

    def refresh(self, refresh_token: str) -> TokenGrant:
        if not self.token_url or not self.client_id:
            raise RuntimeError("Garmin credentials not configured")

        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
        }
        if self.client_secret:
            form["client_secret"] = self.client_secret

        response = vendor_request(
            self.http, "POST", self.token_url, "Garmin", "token refresh",
            timeout=self.timeout,
            data=form,
        )
        if response.status_code == 400:
            raise Unauthorized(f"Garmin refused the refresh token: {response.text[:200]}")
        check_vendor_response(response, "Garmin", "token refresh")

        token_data = response.json()
        expires_in = int(token_data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
        return TokenGrant(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_at=int(self.clock()) + expires_in,
        )


class TokenManager:
    def __init__(
        self,
        session_factory: sessionmaker,
        refreshers: Dict[str, TokenRefresher],
        clock: Callable[[], float] = time.time,
    ):
        self.session_factory = session_factory
        self.refreshers = refreshers
        self.clock = clock

    def needs_refresh(self, expires_at: int, skew_seconds: int) -> bool:
        return self.clock() + skew_seconds >= expires_at

    def get_valid_access_token(self, user_id: str, provider: str, skew_seconds: int = DIRECT_CALL_SKEW_SECONDS) -> str:
        """Return a token valid for at least skew_seconds, refreshing it first if needed."""
        with transaction(self.session_factory) as db:
            credential = self._load(db, user_id, provider)
            if not self.needs_refresh(credential.expires_at, skew_seconds):
                return credential.access_token
            return self._refresh(db, credential)

    def force_refresh(self, user_id: str, provider: str) -> str:
        with transaction(self.session_factory) as db:
            return self._refresh(db, self._load(db, user_id, provider))

    def call_with_token(
        self,
        user_id: str,
        provider: str,
        fn: Callable[[str], T],
        skew_seconds: int = DIRECT_CALL_SKEW_SECONDS,
    ) -> T:
        """
        Run fn(access_token). If the vendor rejects the token anyway, refresh
        once and retry once; a second rejection is raised to the caller.
        """
        token = self.get_valid_access_token(user_id, provider, skew_seconds)
        try:
            return fn(token)
        except Unauthorized:
            logger.info(f"{provider} rejected token for user {user_id}, refreshing and retrying once")
            return fn(self.force_refresh(user_id, provider))

    def store_grant(self, db: Session, user_id: str, provider: str, grant: TokenGrant) -> None:
        """Persist a grant from the connect flow. A missing refresh token keeps the stored one."""
        atomic_upsert(
            db,
            OAuthCredential,
            conflict_fields=["user_id", "provider"],
            values={
                "id": new_id(),
                "user_id": user_id,
                "provider": provider,
                "access_token_encrypted": encrypt_token(grant.access_token),
                "refresh_token_encrypted": encrypt_token(grant.refresh_token) if grant.refresh_token else None,
                "expires_at": grant.expires_at,
            },
            preserve_when_null=["refresh_token_encrypted"],
        )

    def _load(self, db: Session, user_id: str, provider: str) -> OAuthCredential:
        credential = (
            db.query(OAuthCredential)
            .filter(OAuthCredential.user_id == user_id, OAuthCredential.provider == provider)
            .first()
        )
        if not credential:
            raise Unauthorized(f"No {provider} connection found. Please connect your account first.")
        return credential

    def _refresh(self, db: Session, credential: OAuthCredential) -> str:
        provider = credential.provider
        refresh_token = credential.refresh_token
        if not refresh_token:
            raise Unauthorized(f"No {provider} refresh token stored, reconnect required")

        refresher = self.refreshers.get(provider)
        if refresher is None:
            raise RuntimeError(f"No token refresher configured for {provider}")

        grant = refresher.refresh(refresh_token)

        credential.access_token = grant.access_token
        if grant.refresh_token:
            credential.refresh_token = grant.refresh_token
        credential.expires_at = grant.expires_at
        db.flush()

        logger.info(f"Refreshed {provider} token for user {credential.user_id}, expires at {grant.expires_at}")
        return grant.access_token


def build_refreshers(http: requests.Session, settings) -> Dict[str, TokenRefresher]:
    return {
        STRAVA: StravaTokenRefresher(
            http, settings.strava_client_id, settings.strava_client_secret, settings.http_timeout_seconds
        ),
        GARMIN: GarminTokenRefresher(
            http, settings.garmin_token_url, settings.garmin_client_id,
            settings.garmin_client_secret, settings.http_timeout_seconds,
        ),
    }
