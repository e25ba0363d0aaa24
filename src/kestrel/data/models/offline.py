"""
Offline action queue models.

A queued action carries a type tag and a JSON payload whose shape is fixed
by the tag. Payload shapes are pydantic models, looked up via PAYLOAD_TYPES.
"""

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import BaseModel, Field
from sqlalchemy import Column, Integer, String, Text, Enum, Index

from .cache import Base, Timestamp, _enum_values


class ActionType(enum.Enum):
    """Enumeration for deferred write operations."""
    MARK_READ = "mark_read"
    MARK_UNREAD = "mark_unread"
    STAR = "star"
    UNSTAR = "unstar"
    ARCHIVE = "archive"
    DELETE = "delete"
    MOVE = "move"
    SEND = "send"
    SAVE_DRAFT = "save_draft"
    DELETE_DRAFT = "delete_draft"
    CREATE_EVENT = "create_event"
    UPDATE_EVENT = "update_event"
    DELETE_EVENT = "delete_event"
    CREATE_CONTACT = "create_contact"
    UPDATE_CONTACT = "update_contact"
    DELETE_CONTACT = "delete_contact"


class FlagPayload(BaseModel):
    """Read/unread and star/unstar changes."""
    email_id: str
    unread: Optional[bool] = None
    starred: Optional[bool] = None


class MovePayload(BaseModel):
    email_id: str
    folder_id: str


class ArchivePayload(BaseModel):
    email_id: str
    archive_folder_id: Optional[str] = None


class DeleteMessagePayload(BaseModel):
    email_id: str


class SendEmailPayload(BaseModel):
    """Outgoing message composed while offline."""
    to: List[str] = Field(default_factory=list)
    cc: List[str] = Field(default_factory=list)
    bcc: List[str] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    reply_to_message_id: Optional[str] = None


class DraftPayload(BaseModel):
    draft_id: Optional[str] = None
    to: List[str] = Field(default_factory=list)
    cc: List[str] = Field(default_factory=list)
    bcc: List[str] = Field(default_factory=list)
    subject: str = ""
    body: str = ""


class DeleteDraftPayload(BaseModel):
    draft_id: str


class EventPayload(BaseModel):
    """Event fields for create/update."""
    calendar_id: str
    event_id: Optional[str] = None
    title: str = ""
    description: str = ""
    location: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    all_day: bool = False
    participants: List[str] = Field(default_factory=list)
    busy: bool = True


class DeleteEventPayload(BaseModel):
    calendar_id: str
    event_id: str


class ContactPayload(BaseModel):
    """Contact fields for create/update."""
    contact_id: Optional[str] = None
    given_name: str = ""
    surname: str = ""
    email: str = ""
    phone: str = ""
    company: str = ""
    job_title: str = ""
    notes: str = ""


class DeleteContactPayload(BaseModel):
    contact_id: str


PAYLOAD_TYPES: Dict[ActionType, Type[BaseModel]] = {
    ActionType.MARK_READ: FlagPayload,
    ActionType.MARK_UNREAD: FlagPayload,
    ActionType.STAR: FlagPayload,
    ActionType.UNSTAR: FlagPayload,
    ActionType.ARCHIVE: ArchivePayload,
    ActionType.DELETE: DeleteMessagePayload,
    ActionType.MOVE: MovePayload,
    ActionType.SEND: SendEmailPayload,
    ActionType.SAVE_DRAFT: DraftPayload,
    ActionType.DELETE_DRAFT: DeleteDraftPayload,
    ActionType.CREATE_EVENT: EventPayload,
    ActionType.UPDATE_EVENT: EventPayload,
    ActionType.DELETE_EVENT: DeleteEventPayload,
    ActionType.CREATE_CONTACT: ContactPayload,
    ActionType.UPDATE_CONTACT: ContactPayload,
    ActionType.DELETE_CONTACT: DeleteContactPayload,
}


def encode_payload(
    action_type: ActionType,
    payload: Union[BaseModel, Dict[str, Any], None]
) -> Optional[str]:
    """
    Validate a payload against its action type and serialize it to JSON.
    
    Args:
        action_type: Action the payload belongs to
        payload: Payload model, plain dict, or None
        
    Returns:
        JSON text, or None when there is no payload
        
    Raises:
        TypeError: If the payload does not match the action type
        pydantic.ValidationError: If a dict payload is missing fields
    """
    if payload is None:
        return None
    
    expected = PAYLOAD_TYPES[action_type]
    if isinstance(payload, dict):
        payload = expected.model_validate(payload)
    if not isinstance(payload, expected):
        raise TypeError(
            f"{action_type.value} expects {expected.__name__}, got {type(payload).__name__}"
        )
    return payload.model_dump_json()


class QueuedAction(Base):
    """A write waiting to be replayed against the remote provider."""
    __tablename__ = "offline_queue"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(Enum(ActionType, values_callable=_enum_values), nullable=False)
    resource_id = Column(String(255), nullable=False, default="")
    payload = Column(Text)  # JSON of the payload model for the type
    created_at = Column(Timestamp, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)  # Failed replays so far
    last_error = Column(Text)
    
    __table_args__ = (
        Index("idx_offline_queue_created", "created_at"),
        Index("idx_offline_queue_resource", "resource_id"),
        {"sqlite_autoincrement": True},
    )
    
    def __repr__(self):
        return f"<QueuedAction(id={self.id}, type='{self.type}', resource='{self.resource_id}')>"
    
    def payload_model(self) -> Optional[BaseModel]:
        """Decode the stored payload into the model for this action's type."""
        if not self.payload or self.payload == "null":
            return None
        return PAYLOAD_TYPES[self.type].model_validate_json(self.payload)
