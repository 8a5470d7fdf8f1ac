from typing import Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from relaychat.models.user import UserDocument
from relaychat.utils.ids import to_object_id


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def create_user(self, email: str, full_name: Optional[str]) -> str:

        doc = {"email": email, "full_name": full_name}
        result = await self._collection.insert_one(doc)
        return str(result.inserted_id)

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:

        oid = to_object_id(user_id)
        if oid is None:
            return None
        user = await self._collection.find_one({"_id": oid})
        if user:
            user["_id"] = str(user["_id"])  # normalize to string for API layer
        return user

    async def get_users_by_ids(self, user_ids: Iterable[str]) -> Dict[str, UserDocument]:

        oids = [oid for oid in (to_object_id(u) for u in user_ids) if oid is not None]
        users: Dict[str, UserDocument] = {}
        async for user in self._collection.find({"_id": {"$in": oids}}):
            user["_id"] = str(user["_id"])
            users[user["_id"]] = user
        return users

    async def list_user_ids(self) -> List[str]:

        cursor = self._collection.find({}, {"_id": 1}).sort("_id", 1)
        return [str(doc["_id"]) async for doc in cursor]
