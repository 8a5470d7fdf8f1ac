"""Client-side merge of the two delivery paths.

Pull results (conversation snapshots and ``listMessages`` pages) are the
source of truth. Push events only make the view fresher between polls:

* messages are keyed by id and ordered by their store ``seq``, so a message
  seen through both paths appears once and in store order whatever the
  arrival order;
* unread counts come from the newest snapshot; push-driven changes are kept
  as advisory adjustments and only those that happened after that snapshot
  was taken survive the next one.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from relaychat.schemas.conversation import ConversationSnapshot
from relaychat.schemas.events import (
    ConversationCreated,
    ConversationDeleted,
    ConversationRenamed,
    MessageCreated,
    ParticipantsAdded,
    ReadStateChanged,
    event_adapter,
)
from relaychat.schemas.message import LastMessageSummary, MessageOut


logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class ConversationState:

    conversation_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    messages: Dict[str, MessageOut] = field(default_factory=dict)
    last_message: Optional[LastMessageSummary] = None
    authoritative_unread: int = 0
    as_of: datetime = _EPOCH
    # (occurred_at, op, value) with op "inc" or "set"
    advisories: List[Tuple[datetime, str, int]] = field(default_factory=list)
    # newest push event applied to this conversation
    pushed_at: datetime = _EPOCH
    # highest seq n such that 1..n are all held locally
    contiguous_seq: int = 0

    @property
    def unread_count(self) -> int:
        value = self.authoritative_unread
        for _, op, amount in sorted(self.advisories, key=lambda a: a[0]):
            value = value + amount if op == "inc" else amount
        return max(value, 0)

    @property
    def cursor(self) -> Optional[int]:
        # resume point for pulls; a pushed message beyond a gap never moves it
        return self.contiguous_seq or None

    def _advance_contiguous(self) -> None:
        held = {m.seq for m in self.messages.values()}
        while self.contiguous_seq + 1 in held:
            self.contiguous_seq += 1

    def ordered(self) -> List[MessageOut]:
        return sorted(self.messages.values(), key=lambda m: m.seq)

    def add_message(self, message: MessageOut) -> bool:
        known = self.messages.get(message.id)
        if known is not None:
            # read_by only grows; keep the wider set
            if set(message.read_by) - set(known.read_by):
                self.messages[message.id] = known.model_copy(update={"read_by": sorted(set(known.read_by) | set(message.read_by))})
            return False
        self.messages[message.id] = message
        self._advance_contiguous()
        if self.last_message is None or message.seq > self.last_message.seq:
            self.last_message = LastMessageSummary.from_document(
                {"_id": message.id, **message.model_dump(exclude={"id"})}
            )
        return True


class Inbox:

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self._states: Dict[str, ConversationState] = {}
        self._deleted: Set[str] = set()
        self.last_snapshot_at: Optional[datetime] = None

    def _state(self, conversation_id: str) -> ConversationState:
        state = self._states.get(conversation_id)
        if state is None:
            state = ConversationState(conversation_id)
            self._states[conversation_id] = state
        return state

    def apply_snapshot(self, snapshot: Union[ConversationSnapshot, Dict[str, Any]]) -> bool:
        """Apply a pull snapshot; returns False when it is older than one already applied."""
        if not isinstance(snapshot, ConversationSnapshot):
            snapshot = ConversationSnapshot.model_validate(snapshot)
        if self.last_snapshot_at is not None and snapshot.as_of < self.last_snapshot_at:
            logger.debug("Ignoring stale snapshot from %s", snapshot.as_of)
            return False
        self.last_snapshot_at = snapshot.as_of
        listed = set()
        for item in snapshot.items:
            cid = item.conversation.id
            listed.add(cid)
            self._deleted.discard(cid)
            state = self._state(cid)
            state.metadata = item.conversation.model_dump(mode="json")
            if item.last_message and (state.last_message is None or item.last_message.seq >= state.last_message.seq):
                state.last_message = item.last_message
            state.authoritative_unread = item.unread_count
            state.as_of = snapshot.as_of
            state.advisories = [a for a in state.advisories if a[0] > snapshot.as_of]
        if snapshot.next_cursor is None:
            # complete listing: anything missing is gone unless a push newer than the listing says otherwise
            for cid in [c for c, s in self._states.items() if c not in listed and s.pushed_at <= snapshot.as_of]:
                self._drop(cid)
        return True

    def apply_messages(self, conversation_id: str, items: Iterable[Union[MessageOut, Dict[str, Any]]]) -> int:
        """Merge a pulled page; returns how many messages were new."""
        if conversation_id in self._deleted:
            return 0
        state = self._state(conversation_id)
        added = 0
        for item in items:
            message = item if isinstance(item, MessageOut) else MessageOut.model_validate(item)
            if message.conversation_id != conversation_id:
                continue
            added += state.add_message(message)
        return added

    def apply_event(self, event: Union[str, bytes, Dict[str, Any], Any]) -> None:
        if isinstance(event, (str, bytes)):
            event = event_adapter.validate_json(event)
        elif isinstance(event, dict):
            event = event_adapter.validate_python(event)

        cid = event.conversation_id
        if isinstance(event, ConversationDeleted):
            self._drop(cid)
            return
        if cid in self._deleted and not isinstance(event, ConversationCreated):
            return

        state = self._state(cid)
        state.pushed_at = max(state.pushed_at, event.occurred_at)
        if isinstance(event, MessageCreated):
            is_new = state.add_message(event.message)
            if is_new and event.message.sender_id != self.user_id and event.occurred_at > state.as_of:
                state.advisories.append((event.occurred_at, "inc", 1))
        elif isinstance(event, ReadStateChanged):
            if event.user_id == self.user_id:
                state.advisories.append((event.occurred_at, "set", event.unread_count))
            else:
                for message in state.messages.values():
                    if message.seq <= event.last_read_seq and message.sender_id != event.user_id and event.user_id not in message.read_by:
                        state.messages[message.id] = message.model_copy(update={"read_by": sorted(message.read_by + [event.user_id])})
        elif isinstance(event, ConversationCreated):
            self._deleted.discard(cid)
            state.metadata = event.conversation.model_dump(mode="json")
        elif isinstance(event, ConversationRenamed):
            state.metadata["group_name"] = event.group_name
        elif isinstance(event, ParticipantsAdded):
            state.metadata["participants"] = list(event.participants)

    def note_read(self, conversation_id: str, unread_count: int = 0, at: Optional[datetime] = None) -> None:
        """Record the result of this client's own mark-read call until the next snapshot."""
        state = self._state(conversation_id)
        state.advisories.append((at or datetime.now(timezone.utc), "set", unread_count))

    def _drop(self, conversation_id: str) -> None:
        self._states.pop(conversation_id, None)
        self._deleted.add(conversation_id)

    def messages(self, conversation_id: str) -> List[MessageOut]:
        state = self._states.get(conversation_id)
        return state.ordered() if state else []

    def unread_count(self, conversation_id: str) -> int:
        state = self._states.get(conversation_id)
        return state.unread_count if state else 0

    def cursor(self, conversation_id: str) -> Optional[int]:
        state = self._states.get(conversation_id)
        return state.cursor if state else None

    def conversation(self, conversation_id: str) -> Optional[ConversationState]:
        return self._states.get(conversation_id)

    def conversations(self) -> List[ConversationState]:
        def activity(state: ConversationState):
            if state.last_message is not None:
                return state.last_message.created_at
            return _EPOCH

        return sorted(self._states.values(), key=activity, reverse=True)
