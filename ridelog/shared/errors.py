"""
Error taxonomy and secure error handling

Domain errors carry the HTTP status they map to, so routers can translate them
without knowing every subclass. Unexpected errors are logged in full and
returned to the client as a sanitized message with a correlation id.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import HTTPException

logger = logging.getLogger(__name__)


class RideLogError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(RideLogError):
    """No session, or no usable vendor credential. Never retried."""
    status_code = 401


class NotFound(RideLogError):
    status_code = 404


class ConstraintViolation(RideLogError):
    """Duplicate external id, duplicate gear mapping and similar conflicts."""
    status_code = 409


class MalformedPayload(RideLogError):
    status_code = 400


class TransientError(RideLogError):
    """Failures worth retrying later: rate limits, vendor outages."""
    status_code = 503


class VendorRateLimited(TransientError):
    status_code = 429


class VendorUnavailable(TransientError):
    status_code = 503


class VendorWindowRejected(RideLogError):
    """
    Vendor refused a date window. `floor` is the earliest start the vendor
    accepts, when it could be parsed from the response.
    """
    status_code = 400

    def __init__(self, message: str, floor: Optional[datetime] = None):
        super().__init__(message)
        self.floor = floor


class BackfillInProgress(RideLogError):
    status_code = 409


def to_http_exception(error: RideLogError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)


def log_and_sanitize_error(
    error: Exception,
    context: str,
    user_message: Optional[str] = None
) -> tuple[str, str]:
    """
    Log an unexpected failure with its traceback and build the message the
    client sees instead.

    Args:
        error: The exception that escaped
        context: Operation that failed, e.g. "Garmin backfill"
        user_message: Client-facing text; a generic retry hint when omitted

    Returns:
        (client message, error id) where the id ties the response to the log line
    """
    error_id = uuid.uuid4().hex[:8]

    logger.error(
        f"{context} failed [{error_id}]: {type(error).__name__}: {error}",
        exc_info=True
    )

    message = user_message or f"{context} failed. Please try again later."
    return f"{message} (Error ID: {error_id})", error_id
