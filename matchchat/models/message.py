from datetime import datetime
from typing import Dict, Literal, Optional, TypedDict


AttachmentKind = Literal["image", "pdf", "other"]


class AttachmentDocument(TypedDict):
    address: str
    kind: AttachmentKind
    original_name: str


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    seq: int
    sender_id: str
    text: str
    timestamp: datetime
    # participant_id -> has read
    read: Dict[str, bool]
    attachment: Optional[AttachmentDocument]
