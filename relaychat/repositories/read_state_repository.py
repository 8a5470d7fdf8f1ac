"""Read-state tracking.

Two interchangeable representations of "who has read what":

* ``CursorReadState`` keeps one ``read_cursors`` row per (conversation, user)
  holding the highest message ``seq`` the user acknowledged.
* ``ReadBySetState`` grows the ``read_by`` array embedded in each message.

Both are monotonic: nothing ever un-reads a message, and a user's own
messages never count as unread for them.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from relaychat.models.message import MessageDocument
from relaychat.models.read_cursor import ReadCursorDocument
from relaychat.utils.ids import utcnow


logger = logging.getLogger(__name__)


class ReadStateTracker(ABC):

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def messages(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        return

    async def _latest_seq(self, conversation_id: ObjectId) -> int:
        latest = await self.messages.find_one({"conversation_id": conversation_id}, sort=[("seq", DESCENDING)])
        return latest["seq"] if latest else 0

    @abstractmethod
    async def mark_read(self, conversation_id: ObjectId, user_id: str) -> int:
        """Acknowledge everything currently in the conversation; returns the acknowledged seq."""

    @abstractmethod
    async def unread_count(self, conversation_id: ObjectId, user_id: str) -> int:
        ...

    async def unread_counts(self, conversation_ids: Iterable[ObjectId], user_id: str) -> Dict[ObjectId, int]:
        return {cid: await self.unread_count(cid, user_id) for cid in conversation_ids}

    @abstractmethod
    async def readers_by_message(self, conversation_id: ObjectId, messages: List[MessageDocument]) -> Dict[ObjectId, List[str]]:
        """Map each message id to the users (other than its sender) who have read it."""

    async def drop_conversation(self, conversation_id: ObjectId) -> None:
        return


class CursorReadState(ReadStateTracker):

    @property
    def collection(self):
        return self._db["read_cursors"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("user_id", ASCENDING)], unique=True)

    async def mark_read(self, conversation_id: ObjectId, user_id: str) -> int:
        seq = await self._latest_seq(conversation_id)
        query = {"conversation_id": conversation_id, "user_id": user_id}
        update = {"$max": {"last_read_seq": seq}, "$set": {"updated_at": utcnow()}}
        try:
            await self.collection.update_one(query, update, upsert=True)
        except DuplicateKeyError:
            # concurrent first read by the same user created the row
            await self.collection.update_one(query, update)
        cursor: ReadCursorDocument = await self.collection.find_one(query)
        return cursor["last_read_seq"]

    async def last_read_seq(self, conversation_id: ObjectId, user_id: str) -> int:
        cursor = await self.collection.find_one({"conversation_id": conversation_id, "user_id": user_id})
        return cursor["last_read_seq"] if cursor else 0

    async def unread_count(self, conversation_id: ObjectId, user_id: str) -> int:
        last_read = await self.last_read_seq(conversation_id, user_id)
        return await self.messages.count_documents(
            {"conversation_id": conversation_id, "seq": {"$gt": last_read}, "sender_id": {"$ne": user_id}}
        )

    async def unread_counts(self, conversation_ids: Iterable[ObjectId], user_id: str) -> Dict[ObjectId, int]:
        ids = list(conversation_ids)
        cursors: Dict[ObjectId, int] = {}
        async for row in self.collection.find({"conversation_id": {"$in": ids}, "user_id": user_id}):
            cursors[row["conversation_id"]] = row["last_read_seq"]
        counts: Dict[ObjectId, int] = {}
        for cid in ids:
            counts[cid] = await self.messages.count_documents(
                {"conversation_id": cid, "seq": {"$gt": cursors.get(cid, 0)}, "sender_id": {"$ne": user_id}}
            )
        return counts

    async def readers_by_message(self, conversation_id: ObjectId, messages: List[MessageDocument]) -> Dict[ObjectId, List[str]]:
        rows = await self.collection.find({"conversation_id": conversation_id}).to_list(length=None)
        return {
            m["_id"]: [r["user_id"] for r in rows if r["last_read_seq"] >= m["seq"] and r["user_id"] != m["sender_id"]]
            for m in messages
        }

    async def drop_conversation(self, conversation_id: ObjectId) -> None:
        await self.collection.delete_many({"conversation_id": conversation_id})


class ReadBySetState(ReadStateTracker):

    def _unread_query(self, conversation_id: ObjectId, user_id: str) -> Dict[str, Any]:
        return {"conversation_id": conversation_id, "sender_id": {"$ne": user_id}, "read_by": {"$ne": user_id}}

    async def ensure_indexes(self) -> None:
        await self.messages.create_index([("conversation_id", ASCENDING), ("read_by", ASCENDING)])

    async def mark_read(self, conversation_id: ObjectId, user_id: str) -> int:
        seq = await self._latest_seq(conversation_id)
        query = self._unread_query(conversation_id, user_id)
        query["seq"] = {"$lte": seq}
        result = await self.messages.update_many(query, {"$addToSet": {"read_by": user_id}})
        logger.debug("Marked %d messages read for %s in %s", result.modified_count, user_id, conversation_id)
        return seq

    async def unread_count(self, conversation_id: ObjectId, user_id: str) -> int:
        return await self.messages.count_documents(self._unread_query(conversation_id, user_id))

    async def readers_by_message(self, conversation_id: ObjectId, messages: List[MessageDocument]) -> Dict[ObjectId, List[str]]:
        return {m["_id"]: list(m.get("read_by", [])) for m in messages}


def get_read_state(db: AsyncIOMotorDatabase, backend: str) -> ReadStateTracker:
    if backend == "read_by":
        return ReadBySetState(db)
    return CursorReadState(db)
