"""
Base model class with common fields
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer

from marketplace.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseModel(Base):
    """
    Abstract base model with common fields
    """
    __abstract__ = True

    id = Column(
        Integer,
        primary_key=True,
        autoincrement=True
    )
    # Timestamps are stamped client-side so they are loaded after flush
    # without an extra round-trip (no lazy refresh under asyncio)
    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    def dict(self):
        """Convert model to dictionary"""
        return {
            attr.key: getattr(self, attr.key)
            for attr in self.__mapper__.column_attrs
        }
