"""
Request authentication

The session gateway in front of this service authenticates end users and
forwards their internal id in X-User-Id. The gateway itself proves its
identity with the shared X-API-Key. Webhook routes do not use these
dependencies; vendors authenticate differently.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader
from sqlalchemy.orm import Session

from ridelog.accounts.models import User
from ridelog.shared.context import AppContext, get_context, get_db

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"
USER_ID_HEADER = "X-User-Id"

gateway_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=message)


def require_gateway_key(
    presented: Optional[str] = Security(gateway_key_header),
    ctx: AppContext = Depends(get_context),
) -> Optional[str]:
    """
    Check the gateway's shared key.

    Without INTERNAL_API_KEY the check is skipped outside production, so a
    local stack works without a gateway. Production refuses to serve.
    """
    expected = ctx.settings.internal_api_key
    if not expected:
        if ctx.settings.is_production:
            raise RuntimeError("INTERNAL_API_KEY is required when ENVIRONMENT=production")
        logger.warning("INTERNAL_API_KEY not set, accepting requests without a gateway key")
        return None

    if presented is None or not hmac.compare_digest(presented.encode(), expected.encode()):
        raise _unauthorized("Invalid or missing API key")
    return presented


def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias=USER_ID_HEADER),
    _gateway: Optional[str] = Depends(require_gateway_key),
    db: Session = Depends(get_db),
) -> str:
    """Internal id of the user the gateway authenticated."""
    if not x_user_id:
        raise _unauthorized("Missing user session")

    if db.query(User.id).filter(User.id == x_user_id).first() is None:
        logger.info(f"Rejected request for unknown user {x_user_id}")
        raise _unauthorized("Unknown user")
    return x_user_id
