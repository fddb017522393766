"""
Account models: users, vendor OAuth credentials and vendor identities
"""
import uuid

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func

from ridelog.shared.database import Base
from ridelog.shared.encryption import encrypt_token, read_stored_token

STRAVA = "strava"
GARMIN = "garmin"
PROVIDERS = (STRAVA, GARMIN)


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """
    Identity anchor. Sessions are issued elsewhere; this service only needs
    the id and the preferred ingestion source.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=True)
    # Provider whose webhooks are ingested when both are connected (None = all)
    active_data_source = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class OAuthCredential(Base):
    """
    One row per (user, provider). Tokens are encrypted at rest using
    application-level encryption.
    """
    __tablename__ = "oauth_credentials"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_oauth_credentials_user_provider"),)

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    access_token_encrypted = Column(String(2000), nullable=False)
    refresh_token_encrypted = Column(String(2000), nullable=True)
    expires_at = Column(BigInteger, nullable=False)  # Unix timestamp
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def access_token(self) -> str:
        return read_stored_token(self.access_token_encrypted)

    @access_token.setter
    def access_token(self, value: str):
        self.access_token_encrypted = encrypt_token(value)

    @property
    def refresh_token(self):
        return read_stored_token(self.refresh_token_encrypted)

    @refresh_token.setter
    def refresh_token(self, value):
        self.refresh_token_encrypted = encrypt_token(value) if value else None


class ProviderIdentity(Base):
    """
    Maps a vendor's user id to an internal user so webhook events, which only
    carry the vendor id, can be routed.
    """
    __tablename__ = "provider_identities"
    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", name="uq_provider_identities_provider_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    provider_user_id = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
