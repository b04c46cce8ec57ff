from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from matchchat.models.conversation import SUPPORT_ID
from matchchat.models.user import ParticipantRole
from matchchat.schemas.chat import Conversation


ADMIN_INBOX_CHANNEL = "inbox:kind:admin"


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def user_inbox_channel(participant_id: str) -> str:
    return f"inbox:user:{participant_id}"


def inbox_channels(conversation: Conversation) -> List[str]:
    channels = [user_inbox_channel(p) for p in conversation.participants if p != SUPPORT_ID]
    if conversation.kind == "admin":
        channels.append(ADMIN_INBOX_CHANNEL)
    return channels


@dataclass(frozen=True)
class ViewerContext:
    """Who is looking at conversations, and in which capacity."""

    role: ParticipantRole
    id: str

    def conversation_filter(self) -> Dict[str, Any]:
        return _CONVERSATION_FILTERS[self.role](self)

    def inbox_channel(self) -> str:
        if self.role == "admin":
            return ADMIN_INBOX_CHANNEL
        return user_inbox_channel(self.id)

    def acting_id(self, conversation: Conversation) -> str:
        # staff answer support channels as the shared support identity
        if self.id not in conversation.participants and self.role == "admin" and SUPPORT_ID in conversation.participants:
            return SUPPORT_ID
        return self.id


_CONVERSATION_FILTERS: Dict[str, Callable[[ViewerContext], Dict[str, Any]]] = {
    "client": lambda viewer: {"participants": viewer.id},
    "admin": lambda viewer: {"kind": "admin"},
    "supplier": lambda viewer: {"participants": viewer.id, "kind": "supplier"},
    "planner": lambda viewer: {"participants": viewer.id, "kind": "planner"},
}


def may_send(role: str, acting_id: str, conversation: Conversation) -> bool:
    """Clients can always write; everyone else only into threads they did not start."""
    if role == "client":
        return True
    return conversation.initiated_by != acting_id
