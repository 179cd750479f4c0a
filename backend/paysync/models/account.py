"""Account model"""
from sqlalchemy import Column, String, DateTime
from datetime import datetime, timezone
from paysync.models.base import Base


class Account(Base):
    """Known account identifiers.

    Payment events may carry an account id before the account row exists;
    entitlements are keyed by the same opaque id and do not require it.
    """
    __tablename__ = "accounts"

    id = Column(String(128), primary_key=True, index=True)
    email = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
