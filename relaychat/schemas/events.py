from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from relaychat.schemas.conversation import ConversationOut
from relaychat.schemas.message import MessageOut


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Event(BaseModel):

    conversation_id: str
    # recipients of the event
    participants: List[str]
    actor_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=_now)


class MessageCreated(Event):

    type: Literal["message_created"] = "message_created"
    message: MessageOut


class ConversationCreated(Event):

    type: Literal["conversation_created"] = "conversation_created"
    conversation: ConversationOut


class ConversationRenamed(Event):

    type: Literal["conversation_renamed"] = "conversation_renamed"
    group_name: str


class ConversationDeleted(Event):

    type: Literal["conversation_deleted"] = "conversation_deleted"


class ParticipantsAdded(Event):

    type: Literal["participants_added"] = "participants_added"
    added: List[str]


class ReadStateChanged(Event):

    type: Literal["read_state_changed"] = "read_state_changed"
    user_id: str
    last_read_seq: int
    unread_count: int = 0


DeliveryEvent = Annotated[
    Union[
        MessageCreated,
        ConversationCreated,
        ConversationRenamed,
        ConversationDeleted,
        ParticipantsAdded,
        ReadStateChanged,
    ],
    Field(discriminator="type"),
]

event_adapter: TypeAdapter = TypeAdapter(DeliveryEvent)


def parse_event(raw: Union[str, bytes]) -> DeliveryEvent:
    return event_adapter.validate_json(raw)
