from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, Field

from matchchat.models.conversation import ConversationKind
from matchchat.models.message import AttachmentKind


def _as_utc(value: Any) -> Any:
    # Mongo hands back naive UTC datetimes unless the client is tz_aware
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, BeforeValidator(_as_utc)]


class ParticipantDetails(BaseModel):

    display_name: str
    avatar_address: str = ""
    role: str


class LastMessage(BaseModel):

    text: str
    sender_id: str
    timestamp: UtcDatetime


class Attachment(BaseModel):

    address: str
    kind: AttachmentKind
    original_name: str


class Conversation(BaseModel):

    id: str
    participants: List[str]
    participant_details: Dict[str, ParticipantDetails] = Field(default_factory=dict)
    initiated_by: str
    kind: ConversationKind
    created_at: UtcDatetime
    last_message: Optional[LastMessage] = None
    last_activity_at: UtcDatetime
    unread_count: Dict[str, int] = Field(default_factory=dict)
    message_count: int = 0

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Conversation":
        return cls(id=str(doc["_id"]), **{k: v for k, v in doc.items() if k not in ("_id", "pair_key")})

    def other_participant(self, participant_id: str) -> Optional[str]:
        return next((p for p in self.participants if p != participant_id), None)

    def unread_for(self, participant_id: str) -> int:
        return self.unread_count.get(participant_id, 0)


class Message(BaseModel):

    id: str
    conversation_id: str
    seq: int
    sender_id: str
    text: str = ""
    timestamp: UtcDatetime
    read: Dict[str, bool] = Field(default_factory=dict)
    attachment: Optional[Attachment] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Message":
        return cls(id=str(doc["_id"]), **{k: v for k, v in doc.items() if k != "_id"})


class CreateConversationRequest(BaseModel):

    counterpart_id: str = Field(min_length=1)
    kind: ConversationKind


class ConversationCreated(BaseModel):

    conversation_id: str


class ReadReceipt(BaseModel):

    updated: int
