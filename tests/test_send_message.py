"""
Tests for ChatService.send_message().

Covers who may write into a conversation, attachment coordination, the
summary/unread bookkeeping that accompanies every message, and the retry of
the conversation update once a message is stored.
"""

import asyncio

import pytest
from pymongo.errors import AutoReconnect

from matchchat.core.exceptions import Forbidden, InvalidArgument, NotFound, UploadFailed
from matchchat.core.settings import settings
from matchchat.models.conversation import SUPPORT_ID
from matchchat.services.attachments import AttachmentUpload

from tests.factories import ADMIN, CLIENT, OTHER_CLIENT, PLANNER, SUPPLIER


# =============================================================================
# TestAccessRule
# =============================================================================


class TestAccessRule:

    async def test_client_initiator_can_send(self, service, supplier_conversation):
        message = await service.send_message(supplier_conversation, CLIENT, "hi")

        assert message.sender_id == CLIENT
        assert message.text == "hi"

    async def test_supplier_can_reply_to_client_thread(self, service, supplier_conversation):
        await service.send_message(supplier_conversation, CLIENT, "hi")

        reply = await service.send_message(supplier_conversation, SUPPLIER, "hi")

        assert reply.sender_id == SUPPLIER

    async def test_non_client_initiator_is_blocked(self, service):
        conversation_id = await service.find_or_create_direct_conversation(PLANNER, CLIENT, "planner")

        with pytest.raises(Forbidden):
            await service.send_message(conversation_id, PLANNER, "hello there")

        # the client side of the same thread stays open
        message = await service.send_message(conversation_id, CLIENT, "hello")
        assert message.sender_id == CLIENT

    async def test_outsider_is_forbidden(self, service, supplier_conversation, db):
        with pytest.raises(Forbidden):
            await service.send_message(supplier_conversation, OTHER_CLIENT, "let me in")
        assert await db["messages"].count_documents({}) == 0

    async def test_unknown_sender_is_forbidden(self, service, supplier_conversation):
        with pytest.raises(Forbidden):
            await service.send_message(supplier_conversation, "ghost", "boo")

    async def test_admin_is_not_a_participant_of_supplier_threads(self, service, supplier_conversation):
        with pytest.raises(Forbidden):
            await service.send_message(supplier_conversation, ADMIN, "hello")

    async def test_missing_conversation_is_not_found(self, service):
        with pytest.raises(NotFound):
            await service.send_message("64b7f0c2e4b0a1a2b3c4d5e6", CLIENT, "hi")

    async def test_admin_answers_support_channel_as_support(self, service):
        conversation_id = await service.find_or_create_support_conversation(CLIENT)
        await service.send_message(conversation_id, CLIENT, "I need help")

        reply = await service.send_message(conversation_id, ADMIN, "How can we help?")

        assert reply.sender_id == SUPPORT_ID
        conversation = await service.get_conversation(conversation_id)
        assert conversation.unread_count[CLIENT] == 1
        assert ADMIN not in conversation.unread_count


# =============================================================================
# TestMessageContent
# =============================================================================


class TestMessageContent:

    async def test_empty_message_is_rejected(self, service, supplier_conversation, db):
        with pytest.raises(InvalidArgument):
            await service.send_message(supplier_conversation, CLIENT, "", None)

        assert await db["messages"].count_documents({}) == 0
        conversation = await service.get_conversation(supplier_conversation)
        assert conversation.last_message is None

    async def test_whitespace_only_message_is_rejected(self, service, supplier_conversation):
        with pytest.raises(InvalidArgument):
            await service.send_message(supplier_conversation, CLIENT, "   \n ")

    async def test_text_is_trimmed(self, service, supplier_conversation):
        message = await service.send_message(supplier_conversation, CLIENT, "  hello  ")

        assert message.text == "hello"

    async def test_read_map_marks_only_sender(self, service, supplier_conversation):
        message = await service.send_message(supplier_conversation, CLIENT, "hi")

        assert message.read == {CLIENT: True, SUPPLIER: False}

    async def test_last_message_preview_is_truncated(self, service, supplier_conversation):
        await service.send_message(supplier_conversation, CLIENT, "x" * 500)

        conversation = await service.get_conversation(supplier_conversation)
        assert len(conversation.last_message.text) == settings.PREVIEW_MAX_LENGTH


# =============================================================================
# TestUnreadCounters
# =============================================================================


class TestUnreadCounters:

    async def test_send_increments_only_the_recipient(self, service, supplier_conversation):
        await service.send_message(supplier_conversation, CLIENT, "one")
        await service.send_message(supplier_conversation, CLIENT, "two")

        conversation = await service.get_conversation(supplier_conversation)
        assert conversation.unread_count[SUPPLIER] == 2
        assert conversation.unread_count[CLIENT] == 0

    async def test_summary_tracks_latest_message(self, service, supplier_conversation):
        first = await service.send_message(supplier_conversation, CLIENT, "first")
        second = await service.send_message(supplier_conversation, SUPPLIER, "second")

        conversation = await service.get_conversation(supplier_conversation)
        assert conversation.last_message.text == "second"
        assert conversation.last_message.sender_id == SUPPLIER
        assert conversation.last_message.timestamp >= first.timestamp
        assert conversation.last_activity_at == second.timestamp
        assert conversation.message_count == 2

    async def test_timestamps_and_sequence_never_go_backwards(self, service, supplier_conversation):
        messages = [await service.send_message(supplier_conversation, CLIENT, f"m{i}") for i in range(5)]

        assert [m.seq for m in messages] == [1, 2, 3, 4, 5]
        assert all(a.timestamp <= b.timestamp for a, b in zip(messages, messages[1:]))

    async def test_summary_update_is_retried_until_it_lands(self, service, supplier_conversation, monkeypatch):
        monkeypatch.setattr(settings, "SUMMARY_RETRY_BASE_DELAY", 0.0)
        repo = service._conversation_repo
        real_apply = repo.apply_new_message
        calls = []

        async def flaky_apply(*args, **kwargs):
            calls.append(args)
            if len(calls) < 3:
                raise AutoReconnect("primary stepped down")
            return await real_apply(*args, **kwargs)

        monkeypatch.setattr(repo, "apply_new_message", flaky_apply)

        message = await service.send_message(supplier_conversation, CLIENT, "eventually")

        assert len(calls) == 3
        conversation = await service.get_conversation(supplier_conversation)
        assert conversation.last_message.text == "eventually"
        assert conversation.unread_count[SUPPLIER] == 1
        assert [m.id for m in await service.get_messages(supplier_conversation)] == [message.id]

    async def test_summary_write_that_landed_is_not_counted_twice(self, service, supplier_conversation, monkeypatch):
        monkeypatch.setattr(settings, "SUMMARY_RETRY_BASE_DELAY", 0.0)
        repo = service._conversation_repo
        real_apply = repo.apply_new_message
        calls = []

        async def lost_reply(*args, **kwargs):
            calls.append(args)
            applied = await real_apply(*args, **kwargs)
            if len(calls) == 1:
                raise AutoReconnect("connection reset after write")
            return applied

        monkeypatch.setattr(repo, "apply_new_message", lost_reply)

        await service.send_message(supplier_conversation, CLIENT, "once")

        assert len(calls) == 2
        conversation = await service.get_conversation(supplier_conversation)
        assert conversation.unread_count == {CLIENT: 0, SUPPLIER: 1}
        assert conversation.message_count == 1

        monkeypatch.setattr(repo, "apply_new_message", real_apply)
        await service.send_message(supplier_conversation, CLIENT, "twice")
        conversation = await service.get_conversation(supplier_conversation)
        assert conversation.unread_count[SUPPLIER] == 2
        assert conversation.message_count == 2


# =============================================================================
# TestConcurrentSends
# =============================================================================


class TestConcurrentSends:

    async def test_parallel_sends_keep_sequence_and_counters_exact(self, service, supplier_conversation):
        senders = [CLIENT if i % 3 else SUPPLIER for i in range(12)]

        sent = await asyncio.gather(
            *(service.send_message(supplier_conversation, sender, f"m{i}") for i, sender in enumerate(senders))
        )

        assert sorted(m.seq for m in sent) == list(range(1, len(senders) + 1))
        by_seq = sorted(sent, key=lambda m: m.seq)
        assert all(a.timestamp <= b.timestamp for a, b in zip(by_seq, by_seq[1:]))

        conversation = await service.get_conversation(supplier_conversation)
        assert conversation.message_count == len(senders)
        assert conversation.unread_count[SUPPLIER] == senders.count(CLIENT)
        assert conversation.unread_count[CLIENT] == senders.count(SUPPLIER)
        assert conversation.last_message.sender_id == by_seq[-1].sender_id

        visible = await service.get_messages(supplier_conversation)
        assert [m.seq for m in visible] == [m.seq for m in by_seq]

    async def test_parallel_sends_in_different_conversations_do_not_interfere(self, service, supplier_conversation):
        planner_conversation = await service.find_or_create_direct_conversation(CLIENT, PLANNER, "planner")

        await asyncio.gather(
            *(service.send_message(supplier_conversation, CLIENT, f"s{i}") for i in range(5)),
            *(service.send_message(planner_conversation, CLIENT, f"p{i}") for i in range(3)),
        )

        supplier_side = await service.get_conversation(supplier_conversation)
        planner_side = await service.get_conversation(planner_conversation)
        assert (supplier_side.message_count, supplier_side.unread_count[SUPPLIER]) == (5, 5)
        assert (planner_side.message_count, planner_side.unread_count[PLANNER]) == (3, 3)


# =============================================================================
# TestAttachments
# =============================================================================


class TestAttachments:

    async def test_image_attachment_with_empty_text(self, service, supplier_conversation, attachment_store):
        upload = AttachmentUpload(filename="Venue.JPG", content=b"\xff\xd8jpeg", content_type="image/jpeg")

        message = await service.send_message(supplier_conversation, CLIENT, "", upload)

        assert message.text == ""
        assert message.attachment.kind == "image"
        assert message.attachment.original_name == "Venue.JPG"
        [path] = attachment_store.uploads
        assert path.startswith(f"chats/{supplier_conversation}/")
        assert path.endswith("_Venue.JPG")
        assert message.attachment.address == f"https://files.test/{path}"

    async def test_attachment_preview_labels_file(self, service, supplier_conversation):
        upload = AttachmentUpload(filename="contract.pdf", content=b"%PDF-1.7")

        await service.send_message(supplier_conversation, CLIENT, "", upload)
        conversation = await service.get_conversation(supplier_conversation)
        assert conversation.last_message.text == "[File] contract.pdf"

        await service.send_message(supplier_conversation, CLIENT, "look", AttachmentUpload(filename="a.png", content=b"png"))
        conversation = await service.get_conversation(supplier_conversation)
        assert conversation.last_message.text == "[Image] look"

    async def test_failed_upload_writes_nothing(self, service, supplier_conversation, attachment_store, db):
        await service.send_message(supplier_conversation, CLIENT, "before")
        before = await service.get_conversation(supplier_conversation)
        attachment_store.fail = True

        with pytest.raises(UploadFailed):
            await service.send_message(supplier_conversation, CLIENT, "with file", AttachmentUpload(filename="a.png", content=b"png"))

        after = await service.get_conversation(supplier_conversation)
        assert await db["messages"].count_documents({}) == 1
        assert after.last_message == before.last_message
        assert after.unread_count == before.unread_count
        assert after.message_count == before.message_count

    async def test_oversized_attachment_is_rejected(self, service, supplier_conversation, attachment_store, monkeypatch):
        monkeypatch.setattr(settings, "MAX_ATTACHMENT_BYTES", 10)

        with pytest.raises(InvalidArgument):
            await service.send_message(supplier_conversation, CLIENT, "", AttachmentUpload(filename="big.pdf", content=b"x" * 11))
        assert attachment_store.uploads == {}


# =============================================================================
# TestScenario
# =============================================================================


class TestScenario:

    async def test_client_supplier_exchange(self, service):
        conversation_id = await service.find_or_create_direct_conversation(CLIENT, SUPPLIER, "supplier")

        await service.send_message(conversation_id, CLIENT, "Are you available June 5?")
        conversation = await service.get_conversation(conversation_id)
        assert len(await service.get_messages(conversation_id)) == 1
        assert conversation.unread_count[SUPPLIER] == 1
        assert conversation.unread_count[CLIENT] == 0

        await service.mark_conversation_read(conversation_id, SUPPLIER)
        conversation = await service.get_conversation(conversation_id)
        assert conversation.unread_count[SUPPLIER] == 0

        await service.send_message(conversation_id, SUPPLIER, "Yes!")
        conversation = await service.get_conversation(conversation_id)
        assert len(await service.get_messages(conversation_id)) == 2
        assert conversation.unread_count[CLIENT] == 1

        photo = AttachmentUpload(filename="dress.png", content=b"png-bytes", content_type="image/png")
        await service.send_message(conversation_id, CLIENT, "", photo)
        messages = await service.get_messages(conversation_id)
        assert len(messages) == 3
        assert messages[2].text == ""
        assert messages[2].attachment.kind == "image"
