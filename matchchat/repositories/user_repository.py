from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from matchchat.models.user import UserDocument
from matchchat.utils.object_ids import to_object_id


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:
        # ids may be stored as plain strings (external auth uids) or ObjectIds
        candidates = [user_id]
        oid = to_object_id(user_id)
        if oid is not None:
            candidates.append(oid)
        user = await self._collection.find_one({"_id": {"$in": candidates}})
        if user:
            user["_id"] = str(user["_id"])  # normalize to string for API layer
        return user
