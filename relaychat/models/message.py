from datetime import datetime
from typing import List, Literal, Optional, TypedDict

from bson import ObjectId


PayloadKind = Literal["text", "image_ref", "video_ref", "file_ref"]

PAYLOAD_FIELDS = ("text", "image_ref", "video_ref", "file_ref")


class MessageDocument(TypedDict, total=False):
    _id: ObjectId
    conversation_id: ObjectId
    sender_id: str
    seq: int
    created_at: datetime
    # exactly one of the payload fields is set
    text: Optional[str]
    image_ref: Optional[str]
    video_ref: Optional[str]
    file_ref: Optional[str]
    # only materialised by the read_by backend
    read_by: List[str]
    # client ack
    client_message_id: Optional[str]
    dedupe_key: str
