"""
Remote provider interface consumed by the sync engine.

The provider client itself lives outside this package; anything that
implements RemoteProvider can be synced from and replayed against.
"""

from dataclasses import dataclass, field
from datetime import date as CalendarDate, datetime
from typing import Any, List, Optional, Protocol, Sequence

from ...data.models.offline import (
    SendEmailPayload, DraftPayload, EventPayload, ContactPayload
)


@dataclass
class Participant:
    """Name and address of a sender, recipient or attendee."""
    email: str
    name: str = ""


@dataclass
class RemoteMessage:
    id: str
    thread_id: str = ""
    subject: str = ""
    snippet: str = ""
    senders: List[Participant] = field(default_factory=list)
    to: List[Participant] = field(default_factory=list)
    cc: List[Participant] = field(default_factory=list)
    bcc: List[Participant] = field(default_factory=list)
    date: Optional[datetime] = None
    unread: bool = False
    starred: bool = False
    folders: List[str] = field(default_factory=list)
    attachments: List[Any] = field(default_factory=list)
    body: str = ""
    body_text: str = ""


@dataclass
class RemoteFolder:
    id: str
    name: str
    system_folder: str = ""
    unread_count: int = 0
    total_count: int = 0


@dataclass
class RemoteCalendar:
    id: str
    name: str
    description: str = ""
    is_primary: bool = False
    read_only: bool = False


@dataclass
class EventWhen:
    """
    When an event happens.
    
    Timed events set start_time/end_time. All-day events set either date
    (single day) or start_date/end_date (span).
    """
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    date: Optional[CalendarDate] = None
    start_date: Optional[CalendarDate] = None
    end_date: Optional[CalendarDate] = None
    
    @property
    def is_all_day(self) -> bool:
        return self.date is not None or self.start_date is not None


@dataclass
class RemoteEvent:
    id: str
    calendar_id: str
    title: str = ""
    description: str = ""
    location: str = ""
    when: EventWhen = field(default_factory=EventWhen)
    participants: List[Participant] = field(default_factory=list)
    status: str = "confirmed"
    busy: bool = True
    recurrence: List[str] = field(default_factory=list)


@dataclass
class RemoteContact:
    id: str
    given_name: str = ""
    surname: str = ""
    display_name: str = ""
    emails: List[str] = field(default_factory=list)
    phone_numbers: List[str] = field(default_factory=list)
    company_name: str = ""
    job_title: str = ""
    notes: str = ""
    picture_url: str = ""
    groups: List[str] = field(default_factory=list)


class RemoteProvider(Protocol):
    """
    Operations the engine needs from a remote mail/calendar provider.
    
    Every call takes the account's grant id and may raise any exception on
    failure; timeout is the number of seconds left in the sync cycle.
    """
    
    def get_messages(self, grant_id: str, limit: int, timeout: Optional[float] = None) -> Sequence[RemoteMessage]: ...
    
    def get_folders(self, grant_id: str, timeout: Optional[float] = None) -> Sequence[RemoteFolder]: ...
    
    def get_calendars(self, grant_id: str, timeout: Optional[float] = None) -> Sequence[RemoteCalendar]: ...
    
    def get_events(self, grant_id: str, calendar_id: str, timeout: Optional[float] = None) -> Sequence[RemoteEvent]: ...
    
    def get_contacts(self, grant_id: str, timeout: Optional[float] = None) -> Sequence[RemoteContact]: ...
    
    def update_message(
        self,
        grant_id: str,
        message_id: str,
        unread: Optional[bool] = None,
        starred: Optional[bool] = None,
        folders: Optional[List[str]] = None
    ) -> Any: ...
    
    def delete_message(self, grant_id: str, message_id: str) -> Any: ...
    
    def send_message(self, grant_id: str, message: SendEmailPayload) -> Any: ...
    
    def save_draft(self, grant_id: str, draft: DraftPayload) -> Any: ...
    
    def delete_draft(self, grant_id: str, draft_id: str) -> Any: ...
    
    def create_event(self, grant_id: str, event: EventPayload) -> Any: ...
    
    def update_event(self, grant_id: str, event_id: str, event: EventPayload) -> Any: ...
    
    def delete_event(self, grant_id: str, calendar_id: str, event_id: str) -> Any: ...
    
    def create_contact(self, grant_id: str, contact: ContactPayload) -> Any: ...
    
    def update_contact(self, grant_id: str, contact_id: str, contact: ContactPayload) -> Any: ...
    
    def delete_contact(self, grant_id: str, contact_id: str) -> Any: ...
