from typing import Any, List

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from matchchat.models.message import MessageDocument
from matchchat.utils.object_ids import stringify_ids, to_object_id


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("seq", ASCENDING)], unique=True)
        await self.collection.create_index([("conversation_id", ASCENDING), ("timestamp", ASCENDING)])

    async def insert(self, doc: MessageDocument) -> str:
        doc = dict(doc, conversation_id=to_object_id(doc["conversation_id"]))
        result = await self.collection.insert_one(doc)
        return str(result.inserted_id)

    async def list_visible(self, conversation_id: str, up_to_seq: int) -> List[MessageDocument]:
        query = {"conversation_id": to_object_id(conversation_id), "seq": {"$lte": up_to_seq}}
        sort = [("timestamp", ASCENDING), ("seq", ASCENDING)]
        items = await self.collection.find(query).sort(sort).to_list(length=None)
        return [stringify_ids(it, "conversation_id") for it in items]

    async def list_hidden(self, conversation_id: str, after_seq: int) -> List[MessageDocument]:
        """Rows stored above the conversation watermark, lowest seq first."""
        query = {"conversation_id": to_object_id(conversation_id), "seq": {"$gt": after_seq}}
        items = await self.collection.find(query).sort("seq", ASCENDING).to_list(length=None)
        return [stringify_ids(it, "conversation_id") for it in items]

    async def find_unread_ids(self, conversation_id: str, reader_id: str, up_to_seq: int, limit: int) -> List[Any]:
        query = {
            "conversation_id": to_object_id(conversation_id),
            "seq": {"$lte": up_to_seq},
            f"read.{reader_id}": False,
        }
        cursor = self.collection.find(query, {"_id": 1}).sort("seq", ASCENDING).limit(limit)
        items = await cursor.to_list(length=limit)
        return [it["_id"] for it in items]

    async def mark_read(self, message_ids: List[Any], reader_id: str) -> int:
        if not message_ids:
            return 0
        result = await self.collection.update_many(
            {"_id": {"$in": message_ids}, f"read.{reader_id}": False},
            {"$set": {f"read.{reader_id}": True}},
        )
        return result.modified_count or 0
