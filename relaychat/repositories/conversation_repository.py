import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from relaychat.errors import Conflict
from relaychat.models.conversation import ConversationDocument
from relaychat.models.message import MessageDocument
from relaychat.utils.ids import as_utc, utcnow


logger = logging.getLogger(__name__)


def direct_pair_key(user_a: str, user_b: str) -> str:
    low, high = sorted([user_a, user_b])
    return f"{low}:{high}"


def system_group_key(name: str) -> str:
    return f"system:{name.strip().casefold()}"


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        # one direct conversation per unordered pair; groups carry a per-row key
        await self.collection.create_index([("pair_key", ASCENDING)], unique=True)
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING)])

    async def get(self, conversation_id: ObjectId) -> Optional[ConversationDocument]:
        return await self.collection.find_one({"_id": conversation_id})

    async def find_or_create_direct(self, user_a: str, user_b: str) -> Tuple[ConversationDocument, bool]:
        """Return the direct conversation for the pair and whether this call created it."""
        key = direct_pair_key(user_a, user_b)
        now = utcnow()
        created = False
        try:
            result = await self.collection.update_one(
                {"pair_key": key},
                {
                    "$setOnInsert": {
                        "participants": sorted([user_a, user_b]),
                        "is_group": False,
                        "group_name": None,
                        "last_message_id": None,
                        "last_message_seq": 0,
                        "last_message_at": now,
                        "created_at": now,
                        "updated_at": now,
                    }
                },
                upsert=True,
            )
            created = result.upserted_id is not None
        except DuplicateKeyError:
            # lost the upsert race; the winner's row is read back below
            logger.info("Direct conversation race for %s resolved by re-read", key)
        doc = await self.collection.find_one({"pair_key": key})
        if doc is None:
            raise Conflict(f"Direct conversation {key} vanished during creation")
        return doc, created

    async def create_group(self, participants: List[str], name: str, pair_key: Optional[str] = None) -> Tuple[ConversationDocument, bool]:
        conversation_id = ObjectId()
        now = utcnow()
        doc: ConversationDocument = {
            "_id": conversation_id,
            "participants": participants,
            "is_group": True,
            "group_name": name,
            "pair_key": pair_key or f"group:{conversation_id}",
            "last_message_id": None,
            "last_message_seq": 0,
            "last_message_at": now,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            if pair_key is None:
                raise
            existing = await self.collection.find_one({"pair_key": pair_key})
            return existing, False
        return doc, True

    async def find_by_pair_key(self, pair_key: str) -> Optional[ConversationDocument]:
        return await self.collection.find_one({"pair_key": pair_key})

    async def rename(self, conversation_id: ObjectId, name: str) -> Optional[ConversationDocument]:
        return await self.collection.find_one_and_update(
            {"_id": conversation_id, "is_group": True},
            {"$set": {"group_name": name, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    async def delete(self, conversation_id: ObjectId) -> bool:
        result = await self.collection.delete_one({"_id": conversation_id, "is_group": True})
        return bool(result.deleted_count)

    async def add_participants(self, conversation_id: ObjectId, user_ids: Iterable[str]) -> Optional[ConversationDocument]:
        return await self.collection.find_one_and_update(
            {"_id": conversation_id, "is_group": True},
            {"$addToSet": {"participants": {"$each": list(user_ids)}}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    async def advance_last_message(self, conversation_id: ObjectId, message: MessageDocument) -> bool:
        # forward-only; a slower writer never moves the pointer back
        result = await self.collection.update_one(
            {"_id": conversation_id, "last_message_seq": {"$lt": message["seq"]}},
            {
                "$set": {
                    "last_message_id": message["_id"],
                    "last_message_seq": message["seq"],
                    "last_message_at": message["created_at"],
                    "updated_at": utcnow(),
                }
            },
        )
        return bool(result.modified_count)

    async def ids_for_user(self, user_id: str) -> List[ObjectId]:
        cur = self.collection.find({"participants": user_id}, {"_id": 1})
        return [doc["_id"] async for doc in cur]

    async def list_for_user(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[ConversationDocument], Optional[str]]:
        query: Dict[str, Any] = {"participants": user_id}
        sort = [("last_message_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # Cursor format: timestamp_ms:object_id_hex
            try:
                ts_str, oid_hex = cursor.split(":", 1)
                ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
                query["$or"] = [
                    {"last_message_at": {"$lt": ts}},
                    {"last_message_at": ts, "_id": {"$lt": ObjectId(oid_hex)}},
                ]
            except (ValueError, InvalidId):
                logger.warning("Ignoring malformed conversation cursor %r", cursor)

        cursor_db = self.collection.find(query).sort(sort).limit(limit)
        items = await cursor_db.to_list(length=limit)
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            last_ts = int(as_utc(last["last_message_at"]).timestamp() * 1000)
            next_cursor = f"{last_ts}:{last['_id']}"
        return items, next_cursor
