"""
Shared fixtures for the messaging tests.

Provides an in-memory MongoDB (mongomock-motor) seeded with one participant
per role, a fake attachment store, an in-process realtime bus and a wired-up
ChatService.
"""

import pytest
from mongomock_motor import AsyncMongoMockClient

from matchchat.repositories.conversation_repository import ConversationRepository
from matchchat.repositories.message_repository import MessageRepository
from matchchat.repositories.user_repository import UserRepository
from matchchat.services.chat_service import ChatService, ConversationLocks
from matchchat.services.directory import IdentityDirectory
from matchchat.utils.realtime_bus import LocalBus

from tests.factories import CLIENT, SUPPLIER, USERS, FakeAttachmentStore, SnapshotRecorder


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()["matchchat_test"]
    await ConversationRepository(database).ensure_indexes()
    await MessageRepository(database).ensure_indexes()
    await database["users"].insert_many([dict(u) for u in USERS])
    return database


@pytest.fixture
def attachment_store():
    return FakeAttachmentStore()


@pytest.fixture
def bus():
    return LocalBus()


@pytest.fixture
def directory(db):
    return IdentityDirectory(UserRepository(db))


@pytest.fixture
def service(db, directory, attachment_store, bus):
    return ChatService(
        ConversationRepository(db),
        MessageRepository(db),
        directory,
        attachment_store,
        bus,
        ConversationLocks(),
    )


@pytest.fixture
async def supplier_conversation(service):
    """Conversation opened by CLIENT towards SUPPLIER."""
    return await service.find_or_create_direct_conversation(CLIENT, SUPPLIER, "supplier")


@pytest.fixture
def recorder():
    return SnapshotRecorder()
