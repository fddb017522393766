"""
Garmin Health API client
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from ridelog.garmin.constants import (
    ACTIVITIES_PATH, ACTIVITY_DETAIL_PATH, MIN_START_TIME_PATTERN, USER_REGISTRATION_PATH,
)
from ridelog.shared.errors import BackfillInProgress, VendorWindowRejected
from ridelog.shared.http import check_vendor_response, vendor_request

logger = logging.getLogger(__name__)


def parse_min_start_time(message: str) -> Optional[datetime]:
    """Extract the floor from "... min start time of 2023-01-15T00:00:00Z"."""
    match = MIN_START_TIME_PATTERN.search(message or "")
    if not match:
        return None
    try:
        return datetime.fromisoformat(match.group(1).replace("Z", "+00:00")).astimezone(timezone.utc)
    except ValueError:
        return None


def _as_activity_list(data) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        if "activities" in data:
            return data.get("activities") or []
        return [data]
    return []


class GarminClient:
    def __init__(self, http: requests.Session, api_base: str, timeout: int = 10):
        self.http = http
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    def get_activity(self, access_token: str, summary_id) -> Dict[str, Any]:
        url = self.api_base + ACTIVITY_DETAIL_PATH.format(summary_id=summary_id)
        response = vendor_request(
            self.http, "GET", url, "Garmin", f"activity {summary_id} fetch",
            timeout=self.timeout, access_token=access_token,
        )
        check_vendor_response(response, "Garmin", f"activity {summary_id} fetch")
        activities = _as_activity_list(response.json())
        if not activities:
            return {}
        activity = activities[0]
        activity.setdefault("summaryId", summary_id)
        return activity

    def fetch_callback(self, access_token: str, callback_url: str) -> List[Dict[str, Any]]:
        """Pull the activities a ping notification points at."""
        response = vendor_request(
            self.http, "GET", callback_url, "Garmin", "ping callback fetch",
            timeout=self.timeout, access_token=access_token,
        )
        check_vendor_response(response, "Garmin", "ping callback fetch")
        return _as_activity_list(response.json())

    def list_activities(self, access_token: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """
        Activities in one window. Garmin answers 400 with its earliest
        available date when the window starts too early, and 409 when a
        request for the same data is still being processed.
        """
        params = {
            "summaryStartTimeInSeconds": int(start.timestamp()),
            "summaryEndTimeInSeconds": int(end.timestamp()),
        }
        response = vendor_request(
            self.http, "GET", self.api_base + ACTIVITIES_PATH, "Garmin", "activity window fetch",
            timeout=self.timeout, access_token=access_token, params=params,
        )
        if response.status_code == 400:
            message = self._error_message(response)
            raise VendorWindowRejected(message, floor=parse_min_start_time(message))
        if response.status_code == 409:
            raise BackfillInProgress(self._error_message(response) or "Garmin request already in progress")
        check_vendor_response(response, "Garmin", "activity window fetch")
        return _as_activity_list(response.json())

    def deregister(self, access_token: str) -> None:
        response = vendor_request(
            self.http, "DELETE", self.api_base + USER_REGISTRATION_PATH, "Garmin", "deregistration",
            timeout=self.timeout, access_token=access_token,
        )
        check_vendor_response(response, "Garmin", "deregistration")

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or ""
        if isinstance(body, dict):
            return str(body.get("errorMessage") or body.get("message") or body)
        return str(body)
