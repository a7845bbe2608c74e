"""
SQLAlchemy ORM models for the integration token table.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class UserIntegration(Base):
    """One user's connection to one provider.  Tokens are stored encrypted."""

    __tablename__ = "user_integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "provider_id", name="uq_user_integrations_user_provider"),
    )

    integration_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider_id = Column(String(32), nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    expires_at = Column(DateTime(timezone=True))
    scope = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    is_connected = Column(Boolean, nullable=False, default=True)
    connected_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
    last_refreshed_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
