import asyncio
import json
import logging
import weakref
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

import redis.asyncio as redis
from pymongo.errors import DuplicateKeyError, PyMongoError

from matchchat.core.exceptions import Forbidden, InvalidArgument, NotFound
from matchchat.core.settings import settings
from matchchat.models.conversation import CONVERSATION_KINDS, SUPPORT_ID
from matchchat.repositories.conversation_repository import ConversationRepository
from matchchat.repositories.message_repository import MessageRepository
from matchchat.schemas.chat import Attachment, Conversation, Message, ParticipantDetails
from matchchat.services.attachments import AttachmentUpload, preview_text, store_attachment
from matchchat.services.directory import IdentityDirectory
from matchchat.services.subscriptions import ErrorCallback, SnapshotCallback, Subscription
from matchchat.services.viewers import ViewerContext, conversation_channel, inbox_channels, may_send
from matchchat.utils.attachment_store import AttachmentStore
from matchchat.utils.clock import utcnow


logger = logging.getLogger(__name__)


class ConversationLocks:
    """One lock per conversation, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @asynccontextmanager
    async def hold(self, conversation_id: str):
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        async with lock:
            yield


def _check_participant_id(participant_id: str) -> None:
    # ids end up in dotted field paths (unread_count.<id>, read.<id>)
    if not participant_id or "." in participant_id or participant_id.startswith("$"):
        raise InvalidArgument(f"Invalid participant id: {participant_id!r}")


class ChatService:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        directory: IdentityDirectory,
        attachment_store: AttachmentStore,
        bus,
        locks: ConversationLocks,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._directory = directory
        self._attachment_store = attachment_store
        self._bus = bus
        self._locks = locks

    # -- conversation lifecycle -------------------------------------------

    async def find_or_create_direct_conversation(self, initiator_id: str, counterpart_id: str, counterpart_kind: str) -> str:
        _check_participant_id(initiator_id)
        _check_participant_id(counterpart_id)
        if counterpart_kind not in CONVERSATION_KINDS:
            raise InvalidArgument(f"Unknown conversation kind: {counterpart_kind!r}")
        if initiator_id == counterpart_id:
            raise InvalidArgument("Cannot start a conversation with yourself")

        existing = await self._conversation_repo.find_by_pair(initiator_id, counterpart_id)
        if existing:
            return existing["_id"]

        initiator = await self._directory.resolve_participant(initiator_id)
        counterpart = await self._directory.resolve_participant(counterpart_id)
        return await self._create_conversation(initiator_id, initiator, counterpart_id, counterpart, counterpart_kind)

    async def find_or_create_support_conversation(self, client_id: str) -> str:
        """Open (or reopen) the client's channel to the shared support identity.

        Whether the caller is allowed to act as a client is checked by the
        caller; this only guarantees a single support channel per client.
        """
        return await self.find_or_create_direct_conversation(client_id, SUPPORT_ID, "admin")

    async def _create_conversation(
        self,
        initiator_id: str,
        initiator: ParticipantDetails,
        counterpart_id: str,
        counterpart: ParticipantDetails,
        kind: str,
    ) -> str:
        now = utcnow()
        doc = {
            "participants": [initiator_id, counterpart_id],
            "pair_key": ConversationRepository.pair_key(initiator_id, counterpart_id),
            "participant_details": {
                initiator_id: initiator.model_dump(),
                counterpart_id: counterpart.model_dump(),
            },
            "initiated_by": initiator_id,
            "kind": kind,
            "created_at": now,
            "last_message": None,
            "last_activity_at": now,
            "unread_count": {initiator_id: 0, counterpart_id: 0},
            "message_count": 0,
        }
        try:
            conversation_id = await self._conversation_repo.insert(doc)
        except DuplicateKeyError:
            # lost a race against a concurrent create for the same pair
            existing = await self._conversation_repo.find_by_pair(initiator_id, counterpart_id)
            if existing is None:
                raise
            return existing["_id"]

        logger.info(f"Conversation {conversation_id} ({kind}) created by {initiator_id} with {counterpart_id}")
        doc["_id"] = conversation_id
        await self._publish(Conversation.from_document(doc), "conversation_created")
        return conversation_id

    # -- lookups --------------------------------------------------------------

    async def get_conversation(self, conversation_id: str) -> Conversation:
        doc = await self._conversation_repo.get(conversation_id)
        if not doc:
            raise NotFound(f"Conversation {conversation_id} not found")
        return Conversation.from_document(doc)

    async def resolve_actor(self, conversation: Conversation, participant_id: str) -> Tuple[str, str]:
        """Return the identity ``participant_id`` acts as in ``conversation`` and its role.

        The role always comes from the directory record, never from the caller.
        """
        try:
            profile = await self._directory.resolve_participant(participant_id)
        except NotFound:
            raise Forbidden("You are not a participant in this conversation") from None

        viewer = ViewerContext(role=profile.role, id=participant_id)
        acting_id = viewer.acting_id(conversation)
        if acting_id not in conversation.participants:
            raise Forbidden("You are not a participant in this conversation")
        return acting_id, profile.role

    async def list_conversations(self, viewer: ViewerContext) -> List[Conversation]:
        docs = await self._conversation_repo.list_matching(viewer.conversation_filter())
        return [Conversation.from_document(d) for d in docs]

    async def get_messages(self, conversation_id: str) -> List[Message]:
        conversation = await self.get_conversation(conversation_id)
        docs = await self._message_repo.list_visible(conversation.id, conversation.message_count)
        return [Message.from_document(d) for d in docs]

    # -- sending ------------------------------------------------------------

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        attachment: Optional[AttachmentUpload] = None,
    ) -> Message:
        text = (text or "").strip()
        if not text and attachment is None:
            raise InvalidArgument("Message must contain text or an attachment")

        conversation = await self.get_conversation(conversation_id)
        acting_id, role = await self.resolve_actor(conversation, sender_id)
        if not may_send(role, acting_id, conversation):
            raise Forbidden("Only clients can initiate conversations")

        stored: Optional[Attachment] = None
        if attachment is not None:
            stored = await store_attachment(
                self._attachment_store,
                conversation.id,
                attachment,
                at=utcnow(),
                max_bytes=settings.MAX_ATTACHMENT_BYTES,
            )

        # once the upload is done the write must finish even if the caller goes away
        commit = asyncio.ensure_future(self._commit_message(conversation.id, acting_id, text, stored))
        return await asyncio.shield(commit)

    async def _commit_message(self, conversation_id: str, sender_id: str, text: str, attachment: Optional[Attachment]) -> Message:
        async with self._locks.hold(conversation_id):
            while True:
                conversation = await self._recover_hidden_messages(await self.get_conversation(conversation_id))

                timestamp = utcnow()
                if conversation.last_message and conversation.last_message.timestamp > timestamp:
                    timestamp = conversation.last_message.timestamp
                seq = conversation.message_count + 1

                doc = {
                    "conversation_id": conversation_id,
                    "seq": seq,
                    "sender_id": sender_id,
                    "text": text,
                    "timestamp": timestamp,
                    "read": {p: p == sender_id for p in conversation.participants},
                    "attachment": attachment.model_dump() if attachment else None,
                }
                try:
                    message_id = await self._message_repo.insert(doc)
                except DuplicateKeyError:
                    # another writer took this seq; fold its row in and take the next one
                    logger.warning(f"Seq {seq} already taken in conversation {conversation_id}; retrying")
                    continue
                break

            await self._update_summary(conversation, doc, attachment)

        logger.info(f"Message {message_id} (#{seq}) sent by {sender_id} in conversation {conversation_id}")
        await self._publish(conversation, "message")
        return Message(id=message_id, **doc)

    async def _recover_hidden_messages(self, conversation: Conversation) -> Conversation:
        """Apply the summary of any stored row the watermark never reached."""
        hidden = await self._message_repo.list_hidden(conversation.id, conversation.message_count)
        if not hidden:
            return conversation
        for doc in hidden:
            if doc["seq"] != conversation.message_count + 1:
                break
            logger.warning(f"Recovering message #{doc['seq']} in conversation {conversation.id}")
            stored = Attachment(**doc["attachment"]) if doc.get("attachment") else None
            await self._update_summary(conversation, doc, stored)
            conversation = await self.get_conversation(conversation.id)
        return conversation

    async def _update_summary(self, conversation: Conversation, doc: dict, attachment: Optional[Attachment]) -> None:
        seq = doc["seq"]
        last_message = {
            "text": preview_text(doc.get("text") or "", attachment, settings.PREVIEW_MAX_LENGTH),
            "sender_id": doc["sender_id"],
            "timestamp": doc["timestamp"],
        }
        recipients = [p for p in conversation.participants if p != doc["sender_id"]]

        # the message is already stored; keep trying until the summary catches up
        delay = settings.SUMMARY_RETRY_BASE_DELAY
        attempt = 1
        while True:
            try:
                applied = await self._conversation_repo.apply_new_message(conversation.id, last_message, seq, recipients)
            except PyMongoError as e:
                logger.warning(
                    f"Summary update for conversation {conversation.id} failed (attempt {attempt}): {e}; "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, settings.SUMMARY_RETRY_MAX_DELAY)
                attempt += 1
                continue
            if not applied:
                logger.info(f"Summary of conversation {conversation.id} already at #{seq}")
            return

    # -- read state -----------------------------------------------------------

    async def mark_conversation_read(self, conversation_id: str, participant_id: str) -> int:
        conversation = await self.get_conversation(conversation_id)
        reader_id, _ = await self.resolve_actor(conversation, participant_id)

        reset = await self._conversation_repo.reset_unread(conversation.id, reader_id)
        message_ids = await self._message_repo.find_unread_ids(
            conversation.id, reader_id, conversation.message_count, settings.MARK_READ_BATCH_SIZE
        )
        updated = await self._message_repo.mark_read(message_ids, reader_id)

        if reset or updated:
            logger.debug(f"{reader_id} read {updated} message(s) in conversation {conversation.id}")
            await self._publish(conversation, "read")
        return updated

    # -- live views -----------------------------------------------------------

    async def subscribe_conversations(
        self,
        viewer: ViewerContext,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = Subscription(self._bus, viewer.inbox_channel(), lambda: self.list_conversations(viewer), on_snapshot, on_error)
        return await subscription.start()

    async def subscribe_messages(
        self,
        conversation_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        conversation = await self.get_conversation(conversation_id)
        subscription = Subscription(
            self._bus,
            conversation_channel(conversation.id),
            lambda: self.get_messages(conversation.id),
            on_snapshot,
            on_error,
        )
        return await subscription.start()

    async def _publish(self, conversation: Conversation, event: str) -> None:
        payload = json.dumps({"type": event, "conversation_id": conversation.id})
        channels = [conversation_channel(conversation.id)] + inbox_channels(conversation)
        for channel in channels:
            try:
                await self._bus.publish(channel, payload)
            except redis.RedisError as e:
                # the write is durable; live views catch up on their next change
                logger.warning(f"Could not publish '{event}' on {channel}: {e}")
