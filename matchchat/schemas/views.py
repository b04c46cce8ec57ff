from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from matchchat.schemas.chat import Attachment


class CounterpartView(BaseModel):

    id: Optional[str] = None
    display_name: str
    avatar_address: str = ""
    role: str
    initials: str


class ConversationListItem(BaseModel):

    conversation_id: str
    kind: str
    counterpart: CounterpartView
    preview: str
    activity_at: datetime
    unread_count: int
    unread_badge: Optional[str] = None
    last_sent_by_viewer: bool = False
    selected: bool = False


class MessageView(BaseModel):

    id: str
    sender_id: str
    sender_name: Optional[str] = None
    sender_avatar: str = ""
    text: str
    timestamp: datetime
    attachment: Optional[Attachment] = None
    is_mine: bool
    show_avatar: bool
    seen: bool


class MessageGroup(BaseModel):

    date_label: str
    messages: List[MessageView]


class ThreadView(BaseModel):

    conversation_id: str
    kind: str
    kind_label: str
    counterpart: CounterpartView
    can_send: bool
    composer_placeholder: str
    intro: Optional[str] = None
    groups: List[MessageGroup]
