"""
Cache models for mirroring remote account data locally.

Each account gets its own SQLite database holding these tables.
"""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, Float, Enum, JSON, Index
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Timestamp(TypeDecorator):
    """
    Absolute instant stored as UTC epoch seconds.
    
    Naive datetimes are taken to be UTC. Values always come back as aware
    UTC datetimes so comparisons across the engine never mix naive and aware.
    """
    impl = Float
    cache_ok = True
    
    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.timestamp()
        raise TypeError(f"Expected datetime, got {type(value).__name__}")
    
    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return datetime.fromtimestamp(value, tz=timezone.utc)


def _enum_values(enum_class):
    return [member.value for member in enum_class]


class FolderType(enum.Enum):
    """Enumeration for mail folder roles."""
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    OTHER = "other"
    
    @classmethod
    def from_remote(cls, value: Optional[str]) -> "FolderType":
        """Map a provider's system folder name onto a folder role."""
        if not value:
            return cls.OTHER
        name = value.strip().lower()
        aliases = {
            "junk": cls.SPAM,
            "bulk": cls.SPAM,
            "deleted": cls.TRASH,
            "deleted items": cls.TRASH,
            "sent items": cls.SENT,
            "sent mail": cls.SENT,
            "draft": cls.DRAFTS,
        }
        if name in aliases:
            return aliases[name]
        try:
            return cls(name)
        except ValueError:
            return cls.OTHER


class EventStatus(enum.Enum):
    """Enumeration for event statuses."""
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"
    
    @classmethod
    def from_remote(cls, value: Optional[str]) -> "EventStatus":
        try:
            return cls((value or "confirmed").lower())
        except ValueError:
            return cls.CONFIRMED


class CachedEmail(Base):
    """Cached message with headers, flags and bodies."""
    __tablename__ = "emails"
    
    id = Column(String(255), primary_key=True)
    thread_id = Column(String(255))
    folder_id = Column(String(255))
    subject = Column(Text)
    snippet = Column(Text)
    from_name = Column(String(255))
    from_email = Column(String(255))
    to_addrs = Column(JSON, default=list)  # "Name <email>" strings
    cc_addrs = Column(JSON, default=list)
    bcc_addrs = Column(JSON, default=list)
    date = Column(Timestamp)
    
    # Flags
    unread = Column(Boolean, default=False)
    starred = Column(Boolean, default=False)
    has_attachments = Column(Boolean, default=False)
    
    # Bodies, sealed when encryption is enabled
    body_html = Column(Text)
    body_text = Column(Text)
    cached_at = Column(Timestamp)
    
    __table_args__ = (
        Index("idx_emails_folder_date", "folder_id", "date"),
        Index("idx_emails_thread", "thread_id"),
        Index("idx_emails_date", "date"),
    )
    
    def __repr__(self):
        return f"<CachedEmail(id='{self.id}', subject='{self.subject}')>"
    
    @property
    def sender(self) -> str:
        """Sender formatted for display."""
        if self.from_name and self.from_email:
            return f"{self.from_name} <{self.from_email}>"
        return self.from_name or self.from_email or ""


class CachedFolder(Base):
    """Cached mail folder with counters."""
    __tablename__ = "folders"
    
    id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    type = Column(Enum(FolderType, values_callable=_enum_values), default=FolderType.OTHER)
    unread_count = Column(Integer, default=0)
    total_count = Column(Integer, default=0)
    cached_at = Column(Timestamp)
    
    __table_args__ = (
        Index("idx_folders_type", "type"),
    )
    
    def __repr__(self):
        return f"<CachedFolder(id='{self.id}', name='{self.name}', type='{self.type}')>"


class CachedEvent(Base):
    """Cached calendar event."""
    __tablename__ = "events"
    
    id = Column(String(255), primary_key=True)
    calendar_id = Column(String(255))
    title = Column(Text)
    description = Column(Text)
    location = Column(Text)
    start_time = Column(Timestamp)
    end_time = Column(Timestamp)
    all_day = Column(Boolean, default=False)  # Stored as UTC midnight to UTC midnight
    recurring = Column(Boolean, default=False)
    rrule = Column(Text)  # RRULE lines joined with ";"
    status = Column(Enum(EventStatus, values_callable=_enum_values), default=EventStatus.CONFIRMED)
    busy = Column(Boolean, default=True)  # False for events shown as free
    participants = Column(JSON, default=list)
    cached_at = Column(Timestamp)
    
    __table_args__ = (
        Index("idx_events_calendar_start", "calendar_id", "start_time"),
        Index("idx_events_start", "start_time"),
    )
    
    def __repr__(self):
        return f"<CachedEvent(id='{self.id}', title='{self.title}', start='{self.start_time}')>"


class CachedContact(Base):
    """Cached contact; only the primary email and phone are kept."""
    __tablename__ = "contacts"
    
    id = Column(String(255), primary_key=True)
    given_name = Column(String(255))
    surname = Column(String(255))
    display_name = Column(String(255))
    email = Column(String(255))
    phone = Column(String(100))
    company = Column(String(255))
    job_title = Column(String(255))
    notes = Column(Text)  # Sealed when encryption is enabled
    photo_url = Column(Text)
    groups = Column(JSON, default=list)  # Group names
    cached_at = Column(Timestamp)
    
    __table_args__ = (
        Index("idx_contacts_email", "email"),
        Index("idx_contacts_display_name", "display_name"),
    )
    
    def __repr__(self):
        return f"<CachedContact(id='{self.id}', name='{self.full_name}')>"
    
    @property
    def full_name(self) -> str:
        """Display name, falling back to given name plus surname."""
        if self.display_name:
            return self.display_name
        return " ".join(part for part in (self.given_name, self.surname) if part)


class CachedAttachment(Base):
    """
    Index row for an attachment file stored on disk.
    
    Files are named by the SHA-256 of their content, so identical
    attachments on different emails share one file.
    """
    __tablename__ = "attachments"
    
    id = Column(String(255), primary_key=True)
    email_id = Column(String(255), nullable=False)
    filename = Column(Text, nullable=False, default="")
    content_type = Column(String(255))
    size = Column(Integer, nullable=False, default=0)
    hash = Column(String(64), nullable=False)  # SHA-256 of the plain content
    local_path = Column(Text, nullable=False)
    cached_at = Column(Timestamp, nullable=False)
    accessed_at = Column(Timestamp, nullable=False)
    
    __table_args__ = (
        Index("idx_attachments_email", "email_id"),
        Index("idx_attachments_hash", "hash"),
        Index("idx_attachments_accessed", "accessed_at"),
    )
    
    def __repr__(self):
        return f"<CachedAttachment(id='{self.id}', filename='{self.filename}', size={self.size})>"


class SyncState(Base):
    """Last successful sync per resource (emails, folders, events, contacts)."""
    __tablename__ = "sync_state"
    
    resource = Column(String(64), primary_key=True)
    last_sync = Column(Timestamp)
    cursor = Column(Text)  # Provider page token, if any
    sync_metadata = Column("metadata", JSON, default=dict)
    
    def __repr__(self):
        return f"<SyncState(resource='{self.resource}', last_sync='{self.last_sync}')>"


class CacheMeta(Base):
    """Key/value facts about the database itself."""
    __tablename__ = "cache_meta"
    
    key = Column(String(64), primary_key=True)
    value = Column(Text)
