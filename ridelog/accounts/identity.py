"""
Vendor identity routing and account disconnects
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ridelog.accounts.models import PROVIDERS, OAuthCredential, ProviderIdentity, User
from ridelog.shared.errors import ConstraintViolation, NotFound
from ridelog.shared.upsert import insert_if_absent

logger = logging.getLogger(__name__)


def check_provider(provider: str) -> str:
    if provider not in PROVIDERS:
        raise NotFound(f"Unknown provider {provider!r}")
    return provider


def resolve_user_id(db: Session, provider: str, provider_user_id) -> Optional[str]:
    if provider_user_id is None or provider_user_id == "":
        return None
    return (
        db.query(ProviderIdentity.user_id)
        .filter(
            ProviderIdentity.provider == provider,
            ProviderIdentity.provider_user_id == str(provider_user_id),
        )
        .scalar()
    )


def link_identity(db: Session, user_id: str, provider: str, provider_user_id) -> ProviderIdentity:
    """
    Record which internal user owns a vendor account. An identity already
    owned by another user must be disconnected there first.
    """
    check_provider(provider)
    insert_if_absent(
        db,
        ProviderIdentity,
        conflict_fields=["provider", "provider_user_id"],
        values={"user_id": user_id, "provider": provider, "provider_user_id": str(provider_user_id)},
    )
    identity = (
        db.query(ProviderIdentity)
        .filter(
            ProviderIdentity.provider == provider,
            ProviderIdentity.provider_user_id == str(provider_user_id),
        )
        .one()
    )
    if identity.user_id != user_id:
        raise ConstraintViolation(f"This {provider} account is already connected to another user")
    return identity


def disconnect_provider(db: Session, user_id: str, provider: str) -> bool:
    """
    Remove the stored credential and identity for a provider. Returns False
    when there was nothing to remove.
    """
    check_provider(provider)
    credentials = (
        db.query(OAuthCredential)
        .filter(OAuthCredential.user_id == user_id, OAuthCredential.provider == provider)
        .delete(synchronize_session=False)
    )
    identities = (
        db.query(ProviderIdentity)
        .filter(ProviderIdentity.user_id == user_id, ProviderIdentity.provider == provider)
        .delete(synchronize_session=False)
    )
    (
        db.query(User)
        .filter(User.id == user_id, User.active_data_source == provider)
        .update({User.active_data_source: None}, synchronize_session=False)
    )
    db.flush()

    if credentials or identities:
        logger.info(f"Disconnected {provider} for user {user_id}")
        return True
    return False


def get_active_data_source(db: Session, user_id: str) -> Optional[str]:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound(f"User {user_id} not found")
    return user.active_data_source


def set_active_data_source(db: Session, user_id: str, provider: Optional[str]) -> Optional[str]:
    if provider is not None:
        check_provider(provider)
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound(f"User {user_id} not found")
    user.active_data_source = provider
    db.flush()
    logger.info(f"Active data source for user {user_id} set to {provider}")
    return provider
