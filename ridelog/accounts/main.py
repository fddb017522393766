"""
Accounts API

Provider connects and disconnects, and the active data source preference.
"""
import logging
from typing import Literal, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ridelog.accounts import identity
from ridelog.accounts.models import GARMIN, STRAVA
from ridelog.accounts.tokens import TokenGrant
from ridelog.shared.auth import get_current_user_id
from ridelog.shared.context import AppContext, get_context, get_db
from ridelog.shared.errors import RideLogError, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accounts", tags=["accounts"])


class DataSourceRequest(BaseModel):
    provider: Optional[Literal["strava", "garmin"]] = None


class ConnectRequest(BaseModel):
    """Grant obtained by the session gateway from the vendor's OAuth code exchange."""
    provider_user_id: Union[int, str]
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_at: int = Field(..., gt=0)


@router.get("/data-source")
def get_data_source(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return {"provider": identity.get_active_data_source(db, user_id)}


@router.put("/data-source")
def set_data_source(
    data: DataSourceRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Choose which provider's webhooks are ingested when both are connected."""
    provider = identity.set_active_data_source(db, user_id, data.provider)
    db.commit()
    return {"provider": provider}


def _revoke_at_vendor(ctx: AppContext, user_id: str, provider: str) -> None:
    """Tell the vendor to stop sending data. Failure here does not block the disconnect."""
    try:
        token = ctx.tokens.get_valid_access_token(user_id, provider)
        if provider == STRAVA:
            ctx.strava.deauthorize(token)
        elif provider == GARMIN:
            ctx.garmin.deregister(token)
    except RideLogError as e:
        logger.warning(f"Could not revoke {provider} access for user {user_id}: {e.message}")


@router.delete("/{provider}")
def disconnect(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    """Disconnect a provider: revoke at the vendor, then forget credential and identity."""
    try:
        identity.check_provider(provider)
    except RideLogError as e:
        raise to_http_exception(e)

    _revoke_at_vendor(ctx, user_id, provider)

    try:
        removed = identity.disconnect_provider(db, user_id, provider)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if not removed:
        raise HTTPException(status_code=404, detail=f"{provider} is not connected")
    return {"status": "disconnected", "provider": provider}


@router.post("/{provider}/connect", status_code=201)
def connect(
    provider: str,
    data: ConnectRequest,
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    """
    Connect a provider: route its account id to this user and store the
    OAuth grant. Reconnecting replaces the stored tokens.
    """
    try:
        identity.check_provider(provider)
        identity.link_identity(db, user_id, provider, data.provider_user_id)
        ctx.tokens.store_grant(
            db, user_id, provider,
            TokenGrant(data.access_token, data.refresh_token, data.expires_at),
        )
        db.commit()
    except RideLogError as e:
        db.rollback()
        raise to_http_exception(e)
    except Exception:
        db.rollback()
        raise

    logger.info(f"User {user_id} connected {provider} account {data.provider_user_id}")
    return {"status": "connected", "provider": provider}
