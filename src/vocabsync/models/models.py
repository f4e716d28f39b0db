"""Database models for the local store."""
from sqlalchemy import JSON, Column, String

from vocabsync.models.base import Base, TimestampMixin


class StoredRecord(Base, TimestampMixin):
    """One record of a local store collection."""

    __tablename__ = "stored_records"

    collection = Column(String, primary_key=True)
    key = Column(String, primary_key=True)
    payload = Column(JSON, nullable=False)

    def __repr__(self) -> str:
        return f"<StoredRecord {self.collection}/{self.key}>"
