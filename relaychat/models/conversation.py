from datetime import datetime
from typing import List, Optional, TypedDict

from bson import ObjectId


class ConversationDocument(TypedDict, total=False):
    _id: ObjectId
    participants: List[str]
    is_group: bool
    group_name: Optional[str]
    # "<min user id>:<max user id>" for direct conversations, "group:<_id>" for groups
    pair_key: str
    last_message_id: Optional[ObjectId]
    last_message_seq: int
    last_message_at: datetime
    created_at: datetime
    updated_at: datetime
