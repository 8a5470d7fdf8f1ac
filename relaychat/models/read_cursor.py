from datetime import datetime
from typing import TypedDict

from bson import ObjectId


class ReadCursorDocument(TypedDict, total=False):
    _id: ObjectId
    conversation_id: ObjectId
    user_id: str
    last_read_seq: int
    updated_at: datetime
