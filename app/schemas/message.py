from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from typing import List, Literal, Optional, Union

from .user import UserSummary

Direction = Literal["sent", "received"]

# Los ids son ObjectIds serializados (str); también aceptamos enteros
MessageId = Union[int, str]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

class MessageCreate(BaseModel):
    receiver_id: str = Field(..., description="ID del usuario destinatario")
    subject: str = Field("", max_length=255)
    content: str = Field(..., min_length=1, max_length=5000)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content cannot be blank")
        return v

class MessageOut(BaseModel):
    id: MessageId
    sender_id: str
    receiver_id: str
    subject: str = ""
    content: str = ""
    created_at: datetime = EPOCH
    is_read: bool = False

    @field_validator("sender_id", "receiver_id", mode="before")
    @classmethod
    def participant_as_str(cls, v):
        return str(v) if isinstance(v, int) else v

    @field_validator("subject", "content", mode="before")
    @classmethod
    def missing_text(cls, v):
        return "" if v is None else v

    @field_validator("created_at", mode="before")
    @classmethod
    def missing_created_at(cls, v):
        return EPOCH if v is None else v

    @field_validator("created_at")
    @classmethod
    def created_at_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_validator("is_read", mode="before")
    @classmethod
    def missing_is_unread(cls, v):
        # Un mensaje sin estado de lectura cuenta como no leído
        return False if v is None else v

class ConversationOut(BaseModel):
    partner_id: str
    partner: Optional[UserSummary] = None
    messages: List[MessageOut] = []
    last_message: Optional[MessageOut] = None
    last_message_time: Optional[datetime] = None
    unread_count: int = 0

class ConversationListOut(BaseModel):
    conversations: List[ConversationOut]
    unread_total: int

class UnreadCountOut(BaseModel):
    count: int
