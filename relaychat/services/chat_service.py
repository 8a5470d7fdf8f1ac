import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from relaychat.config import Settings
from relaychat.errors import ConversationNotFound, InvalidInput, NotAParticipant, Transient
from relaychat.repositories.conversation_repository import ConversationRepository
from relaychat.repositories.message_repository import MessageRepository
from relaychat.repositories.read_state_repository import ReadStateTracker
from relaychat.schemas.conversation import ConversationOut, ConversationSnapshot, ConversationSummary
from relaychat.schemas.events import MessageCreated, ReadStateChanged
from relaychat.schemas.message import LastMessageSummary, MessageOut, MessagePage, MessagePayload
from relaychat.services.conversation_service import ConversationService
from relaychat.services.delivery import DeliveryBus
from relaychat.utils.ids import as_utc, utcnow
from relaychat.utils.retry import TRANSIENT_ERRORS, retry_read, storage_errors


logger = logging.getLogger(__name__)


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        read_state: ReadStateTracker,
        conversations: ConversationService,
        delivery: DeliveryBus,
        settings: Settings,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._read_state = read_state
        self._conversations = conversations
        self._delivery = delivery
        self._settings = settings

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        payload: MessagePayload,
        client_message_id: Optional[str] = None,
    ) -> MessageOut:
        convo = await self._conversations.load(conversation_id)
        if sender_id not in convo["participants"]:
            raise NotAParticipant("Sender is not a participant of this conversation")
        convo_oid: ObjectId = convo["_id"]

        if client_message_id:
            existing = await self._message_repo.find_by_token(convo_oid, sender_id, client_message_id)
            if existing:
                return MessageOut.from_document(existing)

        saved, created = await self._append(convo_oid, sender_id, payload, client_message_id)
        try:
            advanced = await self._conversation_repo.advance_last_message(convo_oid, saved)
        except TRANSIENT_ERRORS as exc:
            # message is committed; last-message resolution reads the store directly
            logger.warning("Could not advance last-message pointer of %s: %s", convo_oid, exc)
            advanced = True
        if not advanced and await retry_read(lambda: self._conversation_repo.get(convo_oid), self._settings.read_retry_attempts) is None:
            # the group was deleted while this append was in flight
            await self._message_repo.delete_message(saved["_id"])
            logger.info("Discarded message %s appended to deleted conversation %s", saved["_id"], convo_oid)
            raise ConversationNotFound(conversation_id)

        out = MessageOut.from_document(saved)
        if not created:
            return out
        await self._delivery.publish(
            MessageCreated(
                conversation_id=out.conversation_id,
                participants=list(convo["participants"]),
                actor_id=sender_id,
                message=out,
            )
        )
        return out

    async def _append(self, convo_oid: ObjectId, sender_id: str, payload: MessagePayload, client_message_id: Optional[str]) -> Tuple[Dict[str, Any], bool]:
        attempts = self._settings.append_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                with storage_errors():
                    doc = await self._message_repo.insert_next(convo_oid, sender_id, payload.as_fields(), client_message_id)
                return doc, True
            except DuplicateKeyError:
                if client_message_id:
                    existing = await self._message_repo.find_by_token(convo_oid, sender_id, client_message_id)
                    if existing:
                        # retried send whose first attempt already committed
                        return existing, False
                logger.debug("Seq contention on %s (attempt %d/%d)", convo_oid, attempt, attempts)
        raise Transient(f"Could not append to {convo_oid} after {attempts} attempts")

    async def list_messages(
        self,
        conversation_id: str,
        requester: str,
        since: Optional[int] = None,
        before: Optional[int] = None,
        limit: int = 50,
    ) -> MessagePage:
        if since is not None and before is not None:
            raise InvalidInput("Use either since or before, not both")
        convo = await self._conversations.load_for_participant(conversation_id, requester)
        convo_oid = convo["_id"]
        attempts = self._settings.read_retry_attempts
        if before is not None:
            items = await retry_read(lambda: self._message_repo.list_before(convo_oid, before, limit), attempts)
            next_cursor = items[0]["seq"] if len(items) == limit else None
        else:
            items = await retry_read(lambda: self._message_repo.list_since(convo_oid, since, limit), attempts)
            # resume point for the next incremental pull
            next_cursor = items[-1]["seq"] if items else since
        readers = await retry_read(lambda: self._read_state.readers_by_message(convo_oid, items), attempts)
        return MessagePage(
            items=[MessageOut.from_document(m, readers.get(m["_id"])) for m in items],
            next_cursor=next_cursor,
        )

    async def mark_read(self, conversation_id: str, user_id: str) -> int:
        convo = await self._conversations.load_for_participant(conversation_id, user_id)
        convo_oid = convo["_id"]
        with storage_errors():
            last_read_seq = await self._read_state.mark_read(convo_oid, user_id)
        unread = await retry_read(lambda: self._read_state.unread_count(convo_oid, user_id), self._settings.read_retry_attempts)
        await self._delivery.publish(
            ReadStateChanged(
                conversation_id=str(convo_oid),
                participants=list(convo["participants"]),
                actor_id=user_id,
                user_id=user_id,
                last_read_seq=last_read_seq,
                unread_count=unread,
            )
        )
        return unread

    async def unread_count(self, conversation_id: str, user_id: str) -> int:
        convo = await self._conversations.load_for_participant(conversation_id, user_id)
        return await retry_read(lambda: self._read_state.unread_count(convo["_id"], user_id), self._settings.read_retry_attempts)

    async def unread_totals(self, user_id: str) -> Dict[str, int]:
        attempts = self._settings.read_retry_attempts
        convo_ids = await retry_read(lambda: self._conversation_repo.ids_for_user(user_id), attempts)
        counts = await retry_read(lambda: self._read_state.unread_counts(convo_ids, user_id), attempts)
        return {str(cid): n for cid, n in counts.items() if n}

    async def snapshot(self, user_id: str, limit: Optional[int] = None, cursor: Optional[str] = None) -> ConversationSnapshot:
        """Authoritative pull view of the user's conversations, most recent activity first."""
        attempts = self._settings.read_retry_attempts
        as_of = utcnow()
        limit = limit or self._settings.snapshot_limit
        convos, next_cursor = await retry_read(lambda: self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor), attempts)
        counts = await retry_read(lambda: self._read_state.unread_counts([c["_id"] for c in convos], user_id), attempts)
        items: List[ConversationSummary] = []
        for convo in convos:
            latest = await retry_read(lambda: self._message_repo.latest(convo["_id"]), attempts)
            out = ConversationOut.from_document(convo)
            if latest:
                # the store, not the cached pointer, decides what is latest
                out.last_message_id = str(latest["_id"])
                out.last_message_at = as_utc(latest["created_at"])
            items.append(
                ConversationSummary(
                    conversation=out,
                    last_message=LastMessageSummary.from_document(latest) if latest else None,
                    unread_count=counts.get(convo["_id"], 0),
                )
            )
        return ConversationSnapshot(items=items, next_cursor=next_cursor, as_of=as_of)
