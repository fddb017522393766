"""
Outbound HTTP helpers shared by the vendor clients
"""
import logging
from typing import Any, Optional

import requests

from ridelog.shared.errors import NotFound, Unauthorized, VendorRateLimited, VendorUnavailable

logger = logging.getLogger(__name__)


def build_http_session(user_agent: str = "ridelog-backend") -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent, "Accept": "application/json"})
    return session


def check_vendor_response(response: requests.Response, vendor: str, context: str) -> None:
    """
    Translate vendor HTTP failures into domain errors.

    401/403 -> Unauthorized, 404 -> NotFound, 429 -> VendorRateLimited,
    5xx -> VendorUnavailable. Anything else falls through to raise_for_status().
    """
    status = response.status_code
    if status < 400:
        return
    body = response.text[:300] if response.text else ""
    if status in (401, 403):
        raise Unauthorized(f"{vendor} rejected credentials during {context} ({status})")
    if status == 404:
        raise NotFound(f"{vendor} returned 404 during {context}")
    if status == 429:
        raise VendorRateLimited(f"{vendor} rate limit hit during {context}")
    if status >= 500:
        raise VendorUnavailable(f"{vendor} returned {status} during {context}: {body}")
    response.raise_for_status()


def vendor_request(
    session: requests.Session,
    method: str,
    url: str,
    vendor: str,
    context: str,
    timeout: int = 10,
    access_token: Optional[str] = None,
    **kwargs: Any,
) -> requests.Response:
    """Send a request, mapping transport failures to VendorUnavailable."""
    headers = dict(kwargs.pop("headers", None) or {})
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    try:
        return session.request(method, url, headers=headers, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        logger.error(f"{vendor} request failed during {context}: {e}")
        raise VendorUnavailable(f"{vendor} unreachable during {context}") from e
