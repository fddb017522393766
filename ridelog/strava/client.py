"""
Strava API client

Activity reads go through stravalib; the OAuth endpoints it does not cover
(deauthorization) use the shared requests session directly. Callers pass a
valid access token (see TokenManager.call_with_token).

Activities are handed back as plain dicts in Strava's JSON field names, so
the normalizer sees the same shape whether a ride came from a webhook fetch
or a backfill.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator

import requests
from stravalib import exc
from stravalib.client import Client

from ridelog.shared.errors import NotFound, Unauthorized, VendorRateLimited, VendorUnavailable
from ridelog.shared.http import check_vendor_response, vendor_request
from ridelog.strava.constants import ACTIVITIES_PER_PAGE, DEAUTHORIZE_URL, MAX_ACTIVITY_PAGES

logger = logging.getLogger(__name__)

MAX_ACTIVITIES = ACTIVITIES_PER_PAGE * MAX_ACTIVITY_PAGES


@contextmanager
def strava_errors(context: str) -> Iterator[None]:
    """Translate stravalib and transport failures into domain errors."""
    try:
        yield
    except exc.AccessUnauthorized as e:
        raise Unauthorized(f"Strava rejected credentials during {context}") from e
    except exc.ObjectNotFound as e:
        raise NotFound(f"Strava returned 404 during {context}") from e
    except exc.RateLimitExceeded as e:
        raise VendorRateLimited(f"Strava rate limit hit during {context}") from e
    except exc.Fault as e:
        status = e.response.status_code if e.response is not None else None
        if status in (401, 403):
            raise Unauthorized(f"Strava rejected credentials during {context} ({status})") from e
        if status == 429:
            raise VendorRateLimited(f"Strava rate limit hit during {context}") from e
        raise VendorUnavailable(f"Strava returned {status} during {context}: {e}") from e
    except requests.RequestException as e:
        logger.error(f"Strava request failed during {context}: {e}")
        raise VendorUnavailable(f"Strava unreachable during {context}") from e


class StravaClient:
    def __init__(self, http: requests.Session, timeout: int = 10,
                 client_factory: Callable[..., Client] = Client):
        self.http = http
        self.timeout = timeout
        self.client_factory = client_factory

    def _client(self, access_token: str) -> Client:
        return self.client_factory(
            access_token=access_token, rate_limit_requests=False, requests_session=self.http,
        )

    def get_activity(self, access_token: str, activity_id) -> Dict[str, Any]:
        """Fetch one activity's detail."""
        with strava_errors(f"activity {activity_id} fetch"):
            activity = self._client(access_token).get_activity(int(activity_id))
            return activity.model_dump(mode="json")

    def list_activities(self, access_token: str, after: datetime, before: datetime) -> Iterator[Dict[str, Any]]:
        """
        Yield the athlete's activities between after and before. stravalib
        pages through the list; at most MAX_ACTIVITIES are returned.
        """
        count = 0
        with strava_errors("activity list"):
            activities = self._client(access_token).get_activities(
                after=after, before=before, limit=MAX_ACTIVITIES,
            )
            for activity in activities:
                count += 1
                yield activity.model_dump(mode="json")
        if count >= MAX_ACTIVITIES:
            logger.warning(f"Strava activity list stopped at the {MAX_ACTIVITIES} activity cap")

    def deauthorize(self, access_token: str) -> None:
        response = vendor_request(
            self.http, "POST", DEAUTHORIZE_URL, "Strava", "deauthorization",
            timeout=self.timeout, data={"access_token": access_token},
        )
        check_vendor_response(response, "Strava", "deauthorization")
