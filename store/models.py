"""
SQLAlchemy models for the calendar mirror.
Defines the tables for connected accounts, calendars, events and per-provider sync state.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from core.clock import utcnow

Base = declarative_base()


class Account(Base):
    """Connected provider account (one Nylas grant)."""

    __tablename__ = "accounts"
    __table_args__ = (
        Index("idx_accounts_sync_due", "is_active", "last_calendar_sync_at"),
    )

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(36), nullable=False, index=True)
    provider = Column(String(50), nullable=False)  # "google" or "microsoft"
    email_address = Column(String(255), nullable=True)
    grant_id = Column(String(255), nullable=True, unique=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_calendar_sync_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    calendars = relationship("Calendar", back_populates="account", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Account(id={self.id}, provider='{self.provider}', email='{self.email_address}')>"


class Calendar(Base):
    """Logical calendar. Local-only calendars have no account."""

    __tablename__ = "calendars"
    __table_args__ = (
        UniqueConstraint("owner_id", "provider_calendar_id", name="uq_calendars_owner_provider_id"),
    )

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(36), nullable=False, index=True)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=True, index=True)
    provider = Column(String(50), nullable=False, default="local")
    provider_calendar_id = Column(String(255), nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    timezone = Column(String(100), default="UTC", nullable=False)
    color = Column(String(20), default="blue", nullable=False)
    is_primary = Column(Boolean, default=False, nullable=False)
    is_read_only = Column(Boolean, default=False, nullable=False)
    sync_enabled = Column(Boolean, default=True, nullable=False)
    last_synced_at = Column(DateTime, nullable=True)
    sync_status = Column(String(50), default="idle", nullable=False)  # idle, syncing, error
    sync_error = Column(Text, nullable=True)
    provider_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    account = relationship("Account", back_populates="calendars")

    def __repr__(self):
        return f"<Calendar(id={self.id}, name='{self.name}', provider='{self.provider}')>"


class CalendarEvent(Base):
    """Local event row: masters, instances and plain events."""

    __tablename__ = "calendar_events"
    __table_args__ = (
        Index("idx_calendar_events_owner_start", "owner_id", "start_time"),
        Index("idx_calendar_events_parent", "parent_event_id", "start_time"),
    )

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(36), nullable=False, index=True)
    calendar_id = Column(String(36), ForeignKey("calendars.id"), nullable=False, index=True)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(Text, nullable=True)

    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    is_all_day = Column(Boolean, default=False, nullable=False)
    timezone = Column(String(100), default="UTC", nullable=False)

    # Recurrence: rule lives only on the master, instances point back to it
    is_recurring = Column(Boolean, default=False, nullable=False)
    recurrence_rule = Column(Text, nullable=True)
    recurrence_end_date = Column(DateTime, nullable=True)
    parent_event_id = Column(String(36), nullable=True)
    occurrence_index = Column(Integer, nullable=True)

    calendar_type = Column(String(50), default="personal", nullable=False)
    color = Column(String(20), nullable=True)
    status = Column(String(50), default="confirmed", nullable=False)  # confirmed, tentative, cancelled
    busy = Column(Boolean, default=True, nullable=False)
    is_private = Column(Boolean, default=False, nullable=False)

    organizer_email = Column(String(255), nullable=True)
    attendees = Column(JSON, nullable=True)  # [{"email", "name", "status"}]
    reminders = Column(JSON, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)

    invitations_sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    sync_states = relationship(
        "EventSyncState",
        back_populates="event",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<CalendarEvent(id={self.id}, title='{self.title}', start={self.start_time})>"


class EventSyncState(Base):
    """Mirror state of one event against one provider."""

    __tablename__ = "event_sync_states"
    __table_args__ = (
        UniqueConstraint("event_id", "provider", name="uq_event_sync_event_provider"),
        UniqueConstraint("owner_id", "provider", "last_known_remote_id", name="uq_event_sync_remote"),
        Index("idx_event_sync_status", "owner_id", "provider", "sync_status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(36), ForeignKey("calendar_events.id"), nullable=False, index=True)
    owner_id = Column(String(36), nullable=False)
    provider = Column(String(50), nullable=False)
    # Set only while sync_status == "synced"
    remote_event_id = Column(String(255), nullable=True)
    # Survives error states so a retry updates the existing remote event
    last_known_remote_id = Column(String(255), nullable=True)
    remote_calendar_id = Column(String(255), nullable=True)
    sync_status = Column(String(20), default="unsynced", nullable=False)
    push_attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    remote_updated_at = Column(DateTime, nullable=True)

    event = relationship("CalendarEvent", back_populates="sync_states")

    def __repr__(self):
        return f"<EventSyncState(event_id={self.event_id}, provider='{self.provider}', status='{self.sync_status}')>"
