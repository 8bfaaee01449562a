"""
Key-value row backing the local persistent store.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text

from clubsync.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheEntry(Base):
    """One JSON document per key (chat_<room>, offline_queue, draft_<room>, ...)."""

    __tablename__ = "cache_entries"

    key = Column(String(255), primary_key=True, nullable=False)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<CacheEntry(key={self.key}, size={len(self.value or '')})>"
