from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from relaychat.models.message import MessageDocument
from relaychat.utils.ids import as_utc, utcnow


def token_key(conversation_id: ObjectId, sender_id: str, client_message_id: str) -> str:
    return f"{conversation_id}:{sender_id}:{client_message_id}"


def dedupe_key_for(conversation_id: ObjectId, sender_id: str, client_message_id: Optional[str], message_id: ObjectId) -> str:
    if client_message_id:
        return token_key(conversation_id, sender_id, client_message_id)
    return f"auto:{message_id}"


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        # (conversation_id, seq) is the serialization point for append order
        await self.collection.create_index([("conversation_id", ASCENDING), ("seq", ASCENDING)], unique=True)
        await self.collection.create_index([("dedupe_key", ASCENDING)], unique=True)
        await self.collection.create_index([("conversation_id", ASCENDING), ("sender_id", ASCENDING)])

    async def latest(self, conversation_id: ObjectId) -> Optional[MessageDocument]:
        return await self.collection.find_one(
            {"conversation_id": conversation_id},
            sort=[("seq", DESCENDING)],
        )

    async def find_by_token(self, conversation_id: ObjectId, sender_id: str, client_message_id: str) -> Optional[MessageDocument]:
        return await self.collection.find_one({"dedupe_key": token_key(conversation_id, sender_id, client_message_id)})

    async def insert_next(
        self,
        conversation_id: ObjectId,
        sender_id: str,
        payload: Dict[str, str],
        client_message_id: Optional[str] = None,
    ) -> MessageDocument:
        """Insert one message at ``latest seq + 1``.

        Raises DuplicateKeyError when another writer took the same seq, or when
        the client token was already used; the caller decides which it was.
        """
        latest = await self.latest(conversation_id)
        seq = 1
        created_at = utcnow()
        if latest:
            seq = latest["seq"] + 1
            previous = as_utc(latest["created_at"])
            if previous > created_at:
                created_at = previous
        message_id = ObjectId()
        doc: MessageDocument = {
            "_id": message_id,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "seq": seq,
            "created_at": created_at,
            **payload,
            "read_by": [],
            "client_message_id": client_message_id,
            "dedupe_key": dedupe_key_for(conversation_id, sender_id, client_message_id, message_id),
        }
        await self.collection.insert_one(doc)
        return doc

    async def list_since(self, conversation_id: ObjectId, since_seq: Optional[int] = None, limit: int = 50) -> List[MessageDocument]:
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        if since_seq is not None:
            query["seq"] = {"$gt": since_seq}
        cur = self.collection.find(query).sort("seq", ASCENDING).limit(limit)
        return await cur.to_list(length=limit)

    async def list_before(self, conversation_id: ObjectId, before_seq: Optional[int] = None, limit: int = 50) -> List[MessageDocument]:
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        if before_seq is not None:
            query["seq"] = {"$lt": before_seq}
        cur = self.collection.find(query).sort("seq", DESCENDING).limit(limit)
        items = await cur.to_list(length=limit)
        # ascending chronological order for the caller
        return list(reversed(items))

    async def delete_message(self, message_id: ObjectId) -> bool:
        result = await self.collection.delete_one({"_id": message_id})
        return bool(result.deleted_count)

    async def delete_for_conversation(self, conversation_id: ObjectId) -> int:
        result = await self.collection.delete_many({"conversation_id": conversation_id})
        return result.deleted_count or 0
