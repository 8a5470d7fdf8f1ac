from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from relaychat.schemas.message import LastMessageSummary
from relaychat.utils.ids import as_utc


class DirectConversationCreate(BaseModel):

    peer_id: str = Field(min_length=1)


class GroupConversationCreate(BaseModel):

    participant_ids: List[str]
    name: Optional[str] = None


class GroupRename(BaseModel):

    name: str


class ConversationOut(BaseModel):

    id: str
    participants: List[str]
    is_group: bool
    group_name: Optional[str] = None
    last_message_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ConversationOut":
        last_id = doc.get("last_message_id")
        last_at = doc.get("last_message_at")
        return cls(
            id=str(doc["_id"]),
            participants=list(doc["participants"]),
            is_group=doc.get("is_group", False),
            group_name=doc.get("group_name") if doc.get("is_group") else None,
            last_message_id=str(last_id) if last_id else None,
            last_message_at=as_utc(last_at) if last_at else None,
            created_at=as_utc(doc["created_at"]),
        )


class ConversationSummary(BaseModel):

    conversation: ConversationOut
    last_message: Optional[LastMessageSummary] = None
    unread_count: int = 0


class ConversationSnapshot(BaseModel):
    """Pull-channel view of a user's inbox at ``as_of``."""

    items: List[ConversationSummary]
    next_cursor: Optional[str] = None
    as_of: datetime


class BroadcastGroupSync(BaseModel):

    name: str = "Channel"
