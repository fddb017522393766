"""
Ingestion bookkeeping models: backfill requests and dead-lettered events
"""
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func

from ridelog.accounts.models import new_id
from ridelog.shared.database import Base

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
PARTIAL = "partial"
FAILED = "failed"


class BackfillRequest(Base):
    """
    One row per (user, provider, scope). The scope is a calendar year
    ("2024"), "ytd", or a trailing window such as "30d". Re-running a scope
    updates its row.
    """
    __tablename__ = "backfill_requests"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "year", name="uq_backfill_requests_user_provider_year"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    year = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default=PENDING)
    rides_found = Column(Integer, nullable=True)
    backfilled_up_to = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class FailedEvent(Base):
    """A webhook event that exhausted its retries or failed permanently."""
    __tablename__ = "failed_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String(64), nullable=True, index=True)
    handler = Column(String(100), nullable=False)
    event = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    error = Column(Text, nullable=False)
    failed_at = Column(DateTime(timezone=True), server_default=func.now())
