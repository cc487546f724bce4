"""
Database models for the integration event log and processed client requests.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps, stored naive on every backend."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base model class for event bus tables."""

    def to_dict(self) -> dict:
        """Convert model instance to dictionary."""
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            result[column.name] = value.isoformat() if isinstance(value, datetime) else value
        return result


class OutboxEntryRecord(Base):
    """Integration event awaiting (or done with) publication."""

    __tablename__ = "integration_event_log"
    __table_args__ = {"sqlite_autoincrement": True}

    # Insertion sequence; drain order
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(64), nullable=False, unique=True)
    type_name = Column(String(255), nullable=False, index=True)
    serialized_payload = Column(Text, nullable=False)
    state = Column(String(32), nullable=False, default="CREATED", index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    publish_attempts = Column(Integer, nullable=False, default=0)
    in_progress_since = Column(UTCDateTime, nullable=True)
    terminal = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)
    published_at = Column(UTCDateTime, nullable=True)
    transaction_id = Column(String(64), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<OutboxEntryRecord(event_id={self.event_id}, state={self.state})>"


class ProcessedRequestRecord(Base):
    """A client request id whose command has been applied."""

    __tablename__ = "client_requests"

    request_id = Column(String(255), primary_key=True)
    command_name = Column(String(255), nullable=False)
    processed_at = Column(UTCDateTime, nullable=False, default=utcnow)
    result = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ProcessedRequestRecord(request_id={self.request_id}, command={self.command_name})>"
