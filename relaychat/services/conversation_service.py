import logging
from typing import Any, Dict, List, Optional

from relaychat.config import Settings
from relaychat.errors import (
    ConversationNotFound,
    InsufficientParticipants,
    InvalidInput,
    InvalidName,
    NotAGroup,
    NotFound,
    Unauthorized,
)
from relaychat.repositories.conversation_repository import ConversationRepository, system_group_key
from relaychat.repositories.message_repository import MessageRepository
from relaychat.repositories.read_state_repository import ReadStateTracker
from relaychat.repositories.user_repository import UserRepository
from relaychat.schemas.conversation import ConversationOut
from relaychat.schemas.events import (
    ConversationCreated,
    ConversationDeleted,
    ConversationRenamed,
    ParticipantsAdded,
)
from relaychat.schemas.user import display_name_of
from relaychat.services.delivery import DeliveryBus
from relaychat.utils.ids import to_object_id
from relaychat.utils.retry import retry_read, storage_errors


logger = logging.getLogger(__name__)

DERIVED_NAME_MAX_MEMBERS = 3


class ConversationService:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        user_repo: UserRepository,
        read_state: ReadStateTracker,
        delivery: DeliveryBus,
        settings: Settings,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._user_repo = user_repo
        self._read_state = read_state
        self._delivery = delivery
        self._settings = settings

    async def load(self, conversation_id: str) -> Dict[str, Any]:
        oid = to_object_id(conversation_id)
        if oid is None:
            raise ConversationNotFound(conversation_id)
        convo = await retry_read(lambda: self._conversation_repo.get(oid), self._settings.read_retry_attempts)
        if not convo:
            raise ConversationNotFound(conversation_id)
        return convo

    async def load_for_participant(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        convo = await self.load(conversation_id)
        if user_id not in convo["participants"]:
            raise Unauthorized("Not a participant of this conversation")
        return convo

    async def get(self, conversation_id: str, requester: str) -> ConversationOut:
        return ConversationOut.from_document(await self.load_for_participant(conversation_id, requester))

    async def create_or_get_direct(self, requester: str, peer_id: str) -> ConversationOut:
        if requester == peer_id:
            raise InvalidInput("Cannot open a direct conversation with yourself")
        if not await self._user_repo.get_user_by_id(peer_id):
            raise NotFound(f"User {peer_id} not found")
        with storage_errors():
            convo, created = await self._conversation_repo.find_or_create_direct(requester, peer_id)
        out = ConversationOut.from_document(convo)
        if created:
            logger.info("Created direct conversation %s", out.id)
            await self._delivery.publish(
                ConversationCreated(conversation_id=out.id, participants=out.participants, actor_id=requester, conversation=out)
            )
        return out

    async def create_group(self, creator: str, participant_ids: List[str], name: Optional[str] = None) -> ConversationOut:
        members: List[str] = []
        for uid in participant_ids:
            if uid != creator and uid not in members:
                members.append(uid)
        if len(members) < 2:
            raise InsufficientParticipants("A group needs at least 2 members besides its creator")
        participants = [creator] + members
        users = await self._user_repo.get_users_by_ids(participants)
        missing = [uid for uid in participants if uid not in users]
        if missing:
            raise NotFound(f"Unknown users: {', '.join(missing)}")

        group_name = (name or "").strip()
        if not group_name:
            group_name = self._derive_name(participants, users)
        elif self._settings.is_reserved_name(group_name):
            raise InvalidName(f"'{group_name}' is a reserved group name")

        with storage_errors():
            convo, _ = await self._conversation_repo.create_group(participants, group_name)
        out = ConversationOut.from_document(convo)
        logger.info("Created group %s with %d participants", out.id, len(participants))
        await self._delivery.publish(
            ConversationCreated(conversation_id=out.id, participants=out.participants, actor_id=creator, conversation=out)
        )
        return out

    def _derive_name(self, participants: List[str], users: Dict[str, dict]) -> str:
        names = [display_name_of(users.get(uid), uid) for uid in participants]
        shown = names[:DERIVED_NAME_MAX_MEMBERS]
        rest = len(names) - len(shown)
        derived = ", ".join(shown)
        if rest:
            derived += f" and {rest} other{'s' if rest > 1 else ''}"
        return derived

    async def _load_group_for(self, conversation_id: str, requester: str) -> Dict[str, Any]:
        convo = await self.load_for_participant(conversation_id, requester)
        if not convo.get("is_group"):
            raise NotAGroup("Direct conversations cannot be renamed or deleted")
        return convo

    async def rename(self, conversation_id: str, requester: str, new_name: str) -> ConversationOut:
        convo = await self._load_group_for(conversation_id, requester)
        name = (new_name or "").strip()
        if not name:
            raise InvalidName("Group name required")
        if self._settings.is_reserved_name(name):
            raise InvalidName(f"'{name}' is a reserved group name")
        with storage_errors():
            updated = await self._conversation_repo.rename(convo["_id"], name)
        if updated is None:
            raise ConversationNotFound(conversation_id)
        out = ConversationOut.from_document(updated)
        logger.info("Renamed group %s", out.id)
        await self._delivery.publish(
            ConversationRenamed(conversation_id=out.id, participants=out.participants, actor_id=requester, group_name=name)
        )
        return out

    async def delete(self, conversation_id: str, requester: str) -> None:
        convo = await self._load_group_for(conversation_id, requester)
        with storage_errors():
            deleted = await self._conversation_repo.delete(convo["_id"])
            if not deleted:
                raise ConversationNotFound(conversation_id)
            await self._message_repo.delete_for_conversation(convo["_id"])
            await self._read_state.drop_conversation(convo["_id"])
        logger.info("Deleted group %s", conversation_id)
        await self._delivery.publish(
            ConversationDeleted(conversation_id=str(convo["_id"]), participants=list(convo["participants"]), actor_id=requester)
        )

    async def add_participants(self, conversation_id: str, user_ids: List[str], actor_id: Optional[str] = None) -> ConversationOut:
        convo = await self.load(conversation_id)
        if not convo.get("is_group"):
            raise NotAGroup("Participants can only be added to groups")
        if actor_id is not None and actor_id not in convo["participants"]:
            raise Unauthorized("Not a participant of this conversation")
        return await self._add(convo, user_ids, actor_id)

    async def _add(self, convo: Dict[str, Any], user_ids: List[str], actor_id: Optional[str]) -> ConversationOut:
        added = [uid for uid in dict.fromkeys(user_ids) if uid not in convo["participants"]]
        if not added:
            return ConversationOut.from_document(convo)
        with storage_errors():
            updated = await self._conversation_repo.add_participants(convo["_id"], added)
        if updated is None:
            raise ConversationNotFound(str(convo["_id"]))
        out = ConversationOut.from_document(updated)
        logger.info("Added %d participants to %s", len(added), out.id)
        await self._delivery.publish(
            ParticipantsAdded(conversation_id=out.id, participants=out.participants, actor_id=actor_id, added=added)
        )
        return out

    async def sync_broadcast_group(self, name: str, user_ids: Optional[List[str]] = None) -> ConversationOut:
        """Find or create the system-wide group ``name`` and make sure every user is in it.

        Reserved names are only reachable through here; user-facing creation rejects them.
        """
        if user_ids is None:
            user_ids = await self._user_repo.list_user_ids()
        key = system_group_key(name)
        convo = await self._conversation_repo.find_by_pair_key(key)
        if convo is None:
            if not user_ids:
                raise InvalidInput("No users to add to the broadcast group")
            with storage_errors():
                convo, created = await self._conversation_repo.create_group(list(dict.fromkeys(user_ids)), name.strip(), pair_key=key)
            if created:
                out = ConversationOut.from_document(convo)
                logger.info("Created broadcast group %s (%s) with %d users", out.id, name, len(out.participants))
                await self._delivery.publish(
                    ConversationCreated(conversation_id=out.id, participants=out.participants, conversation=out)
                )
                return out
        return await self._add(convo, user_ids, None)
