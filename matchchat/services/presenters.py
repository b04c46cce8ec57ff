"""Shape conversations and messages into what the list and thread views render."""

from datetime import datetime, timezone, tzinfo
from typing import Dict, List, Optional

from matchchat.models.conversation import SUPPORT_ID
from matchchat.schemas.chat import Conversation, Message, ParticipantDetails
from matchchat.schemas.views import ConversationListItem, CounterpartView, MessageGroup, MessageView, ThreadView
from matchchat.services.directory import IdentityDirectory
from matchchat.services.viewers import ViewerContext, may_send


UNKNOWN_CLIENT = ParticipantDetails(display_name="Client", avatar_address="", role="client")

MAX_BADGE = 99


def initials(name: str) -> str:
    return "".join(word[0] for word in name.split()).upper() or "?"


def unread_badge(count: int) -> Optional[str]:
    if count <= 0:
        return None
    return f"{MAX_BADGE}+" if count > MAX_BADGE else str(count)


def date_label(moment: datetime, tz: tzinfo = timezone.utc) -> str:
    local = moment.astimezone(tz)
    return f"{local:%B} {local.day}, {local.year}"


def counterpart_of(viewer: ViewerContext, conversation: Conversation) -> CounterpartView:
    other_id: Optional[str]
    if conversation.kind == "admin" and viewer.role != "admin":
        other_id = SUPPORT_ID
        details = conversation.participant_details.get(SUPPORT_ID) or IdentityDirectory.support_profile()
    elif conversation.kind == "admin":
        other_id = conversation.other_participant(SUPPORT_ID)
        details = conversation.participant_details.get(other_id or "", UNKNOWN_CLIENT)
    else:
        other_id = conversation.other_participant(viewer.id)
        details = conversation.participant_details.get(other_id or "")
        if details is None:
            return CounterpartView(id=other_id, display_name="Unknown", role="", initials="?")
    return CounterpartView(
        id=other_id,
        display_name=details.display_name,
        avatar_address=details.avatar_address,
        role=details.role,
        initials=initials(details.display_name),
    )


def present_conversation_list(
    viewer: ViewerContext,
    conversations: List[Conversation],
    selected_id: Optional[str] = None,
) -> List[ConversationListItem]:
    items = []
    for conversation in conversations:
        acting_id = viewer.acting_id(conversation)
        count = conversation.unread_for(acting_id)
        last = conversation.last_message
        items.append(
            ConversationListItem(
                conversation_id=conversation.id,
                kind=conversation.kind,
                counterpart=counterpart_of(viewer, conversation),
                preview=last.text if last else "No messages yet",
                activity_at=last.timestamp if last else conversation.created_at,
                unread_count=count,
                unread_badge=unread_badge(count),
                last_sent_by_viewer=bool(last and last.sender_id == acting_id),
                selected=conversation.id == selected_id,
            )
        )
    # most recent first; ties keep repository order
    return sorted(items, key=lambda item: item.activity_at, reverse=True)


def _seen_by_others(message: Message, participants: List[str]) -> bool:
    return all(message.read.get(p, False) for p in participants if p != message.sender_id)


def present_thread(
    viewer: ViewerContext,
    conversation: Conversation,
    messages: List[Message],
    tz: tzinfo = timezone.utc,
) -> ThreadView:
    acting_id = viewer.acting_id(conversation)
    counterpart = counterpart_of(viewer, conversation)
    can_send = may_send(viewer.role, acting_id, conversation)

    groups: Dict[str, List[MessageView]] = {}
    for message in messages:
        label = date_label(message.timestamp, tz)
        bucket = groups.setdefault(label, [])
        sender = conversation.participant_details.get(message.sender_id)
        bucket.append(
            MessageView(
                id=message.id,
                sender_id=message.sender_id,
                sender_name=sender.display_name if sender else None,
                sender_avatar=sender.avatar_address if sender else "",
                text=message.text,
                timestamp=message.timestamp,
                attachment=message.attachment,
                is_mine=message.sender_id == acting_id,
                show_avatar=not bucket or bucket[-1].sender_id != message.sender_id,
                seen=_seen_by_others(message, conversation.participants),
            )
        )

    intro = None
    if not messages:
        follow_up = "Type a message below to get started." if can_send else "Waiting for a message..."
        intro = f"This is the beginning of your conversation with {counterpart.display_name}. {follow_up}"

    return ThreadView(
        conversation_id=conversation.id,
        kind=conversation.kind,
        kind_label="Support" if conversation.kind == "admin" else conversation.kind,
        counterpart=counterpart,
        can_send=can_send,
        composer_placeholder="Type a message..." if can_send else "You cannot send messages in this conversation",
        intro=intro,
        groups=[MessageGroup(date_label=label, messages=views) for label, views in groups.items()],
    )
