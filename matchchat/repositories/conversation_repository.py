from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from matchchat.models.conversation import ConversationDocument, LastMessageDocument
from matchchat.utils.object_ids import stringify_ids, to_object_id


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("pair_key", ASCENDING)], unique=True)
        await self.collection.create_index([("participants", ASCENDING), ("last_activity_at", DESCENDING)])
        await self.collection.create_index([("kind", ASCENDING), ("last_activity_at", DESCENDING)])

    @staticmethod
    def pair_key(user_a: str, user_b: str) -> str:
        return ":".join(sorted([user_a, user_b]))

    async def find_by_pair(self, user_a: str, user_b: str) -> Optional[ConversationDocument]:
        doc = await self.collection.find_one({"pair_key": self.pair_key(user_a, user_b)})
        return stringify_ids(doc) if doc else None

    async def insert(self, doc: ConversationDocument) -> str:
        # raises DuplicateKeyError when the pair already has a conversation
        result = await self.collection.insert_one(doc)
        return str(result.inserted_id)

    async def get(self, conversation_id: str) -> Optional[ConversationDocument]:
        oid = to_object_id(conversation_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        return stringify_ids(doc) if doc else None

    async def apply_new_message(
        self,
        conversation_id: str,
        last_message: LastMessageDocument,
        seq: int,
        recipients: Iterable[str],
    ) -> bool:
        update: Dict[str, Any] = {
            "$set": {
                "last_message": last_message,
                "last_activity_at": last_message["timestamp"],
                "message_count": seq,
            },
        }
        increments = {f"unread_count.{r}": 1 for r in recipients}
        if increments:
            update["$inc"] = increments
        # only moves the summary from seq - 1 to seq, so a replayed write is a no-op
        result = await self.collection.update_one(
            {"_id": to_object_id(conversation_id), "message_count": seq - 1},
            update,
        )
        return bool(result.matched_count)

    async def reset_unread(self, conversation_id: str, user_id: str) -> bool:
        result = await self.collection.update_one(
            {"_id": to_object_id(conversation_id), f"unread_count.{user_id}": {"$ne": 0}},
            {"$set": {f"unread_count.{user_id}": 0}},
        )
        return bool(result.modified_count)

    async def list_matching(self, query: Dict[str, Any], limit: int = 500) -> List[ConversationDocument]:
        sort = [("last_activity_at", DESCENDING), ("_id", DESCENDING)]
        cursor_db = self.collection.find(query).sort(sort).limit(limit)
        items = await cursor_db.to_list(length=limit)
        return [stringify_ids(it) for it in items]
