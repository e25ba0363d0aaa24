"""
Conversion from remote provider records to cached entities.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from ...data.models.cache import (
    CachedEmail, CachedFolder, CachedEvent, CachedContact, FolderType, EventStatus
)
from .remote import (
    Participant, RemoteMessage, RemoteFolder, RemoteEvent, RemoteContact, EventWhen
)


def format_participant(participant: Participant) -> str:
    """Render a participant as "Name <email>", or the bare address without a name."""
    if participant.name:
        return f"{participant.name} <{participant.email}>"
    return participant.email


def format_participants(participants: List[Participant]) -> List[str]:
    return [format_participant(p) for p in participants]


def _midnight_utc(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def event_times(when: EventWhen):
    """
    Start/end instants and all-day flag for an event's timing.
    
    Date-only events become UTC midnight intervals; a single date covers
    one day, a span runs to the start of its end date (at least one day).
    """
    # Single all-day date
    if when.date is not None:
        start = _midnight_utc(when.date)
        return start, start + timedelta(days=1), True
    
    # All-day span
    if when.start_date is not None:
        start = _midnight_utc(when.start_date)
        end = start + timedelta(days=1)
        if when.end_date is not None:
            end = max(end, _midnight_utc(when.end_date))
        return start, end, True
    
    # Timed event
    return when.start_time, when.end_time or when.start_time, False


def message_to_cached(message: RemoteMessage) -> CachedEmail:
    sender: Optional[Participant] = message.senders[0] if message.senders else None
    return CachedEmail(
        id=message.id,
        thread_id=message.thread_id,
        # A message is filed under its first folder
        folder_id=message.folders[0] if message.folders else "",
        subject=message.subject,
        snippet=message.snippet,
        from_name=sender.name if sender else "",
        from_email=sender.email if sender else "",
        to_addrs=format_participants(message.to),
        cc_addrs=format_participants(message.cc),
        bcc_addrs=format_participants(message.bcc),
        date=message.date,
        unread=message.unread,
        starred=message.starred,
        has_attachments=bool(message.attachments),
        body_html=message.body,
        # Fall back to the snippet for plain text search
        body_text=message.body_text or message.snippet,
    )


def folder_to_cached(folder: RemoteFolder) -> CachedFolder:
    return CachedFolder(
        id=folder.id,
        name=folder.name,
        # Role from the provider's system folder, else from the name
        type=FolderType.from_remote(folder.system_folder or folder.name),
        unread_count=folder.unread_count,
        total_count=folder.total_count,
    )


def event_to_cached(event: RemoteEvent) -> CachedEvent:
    start, end, all_day = event_times(event.when)
    return CachedEvent(
        id=event.id,
        calendar_id=event.calendar_id,
        title=event.title,
        description=event.description,
        location=event.location,
        start_time=start,
        end_time=end,
        all_day=all_day,
        recurring=bool(event.recurrence),
        rrule=";".join(event.recurrence) if event.recurrence else None,
        status=EventStatus.from_remote(event.status),
        busy=event.busy,
        participants=format_participants(event.participants),
    )


def contact_to_cached(contact: RemoteContact) -> CachedContact:
    display_name = contact.display_name or " ".join(
        part for part in (contact.given_name, contact.surname) if part
    )
    return CachedContact(
        id=contact.id,
        given_name=contact.given_name,
        surname=contact.surname,
        display_name=display_name,
        # Only the primary address and number are kept
        email=contact.emails[0] if contact.emails else "",
        phone=contact.phone_numbers[0] if contact.phone_numbers else "",
        company=contact.company_name,
        job_title=contact.job_title,
        notes=contact.notes,
        photo_url=contact.picture_url,
        groups=list(contact.groups),
    )
