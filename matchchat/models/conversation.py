from datetime import datetime
from typing import Dict, List, Literal, Optional, TypedDict


ConversationKind = Literal["supplier", "planner", "admin"]
CONVERSATION_KINDS = ("supplier", "planner", "admin")

# fixed counterpart of every support channel
SUPPORT_ID = "support"


class ParticipantDetailsDocument(TypedDict):
    display_name: str
    avatar_address: str
    role: str


class LastMessageDocument(TypedDict):
    text: str
    sender_id: str
    timestamp: datetime


class ConversationDocument(TypedDict, total=False):
    _id: str
    participants: List[str]
    # sorted "a:b", unique per participant pair
    pair_key: str
    # snapshot taken at creation time, never refreshed
    participant_details: Dict[str, ParticipantDetailsDocument]
    initiated_by: str
    kind: ConversationKind
    created_at: datetime
    last_message: Optional[LastMessageDocument]
    last_activity_at: datetime
    # per-participant unread counters (participant_id -> count)
    unread_count: Dict[str, int]
    # messages with seq <= message_count are visible to readers
    message_count: int
