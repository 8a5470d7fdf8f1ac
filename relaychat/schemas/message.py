from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from relaychat.models.message import PAYLOAD_FIELDS, PayloadKind
from relaychat.utils.ids import as_utc


MEDIA_LABELS = {"image_ref": "Image", "video_ref": "Video", "file_ref": "File"}


class MessagePayload(BaseModel):
    """Text or exactly one media reference, never a mix and never none."""

    text: Optional[str] = None
    image_ref: Optional[str] = None
    video_ref: Optional[str] = None
    file_ref: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "MessagePayload":
        present = [f for f in PAYLOAD_FIELDS if getattr(self, f) is not None]
        if len(present) != 1:
            raise ValueError("Message must carry exactly one of text, image_ref, video_ref, file_ref")
        value = getattr(self, present[0])
        if not value.strip():
            raise ValueError(f"{present[0]} cannot be empty")
        return self

    @property
    def kind(self) -> PayloadKind:
        return next(f for f in PAYLOAD_FIELDS if getattr(self, f) is not None)

    def as_fields(self) -> Dict[str, str]:
        return {self.kind: getattr(self, self.kind)}


class SendMessageRequest(MessagePayload):

    client_message_id: Optional[str] = Field(None, min_length=1, max_length=128)

    def payload(self) -> MessagePayload:
        return MessagePayload(**self.as_fields())


class MessageOut(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    seq: int
    created_at: datetime
    text: Optional[str] = None
    image_ref: Optional[str] = None
    video_ref: Optional[str] = None
    file_ref: Optional[str] = None
    read_by: List[str] = Field(default_factory=list)
    client_message_id: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any], read_by: Optional[List[str]] = None) -> "MessageOut":
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc["conversation_id"]),
            sender_id=doc["sender_id"],
            seq=doc["seq"],
            created_at=as_utc(doc["created_at"]),
            text=doc.get("text"),
            image_ref=doc.get("image_ref"),
            video_ref=doc.get("video_ref"),
            file_ref=doc.get("file_ref"),
            read_by=sorted(read_by if read_by is not None else doc.get("read_by", [])),
            client_message_id=doc.get("client_message_id"),
        )


class LastMessageSummary(BaseModel):

    id: str
    sender_id: str
    seq: int
    text: str
    created_at: datetime

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "LastMessageSummary":
        if doc.get("text") is not None:
            text = doc["text"]
        else:
            text = next((label for f, label in MEDIA_LABELS.items() if doc.get(f)), "No content")
        return cls(
            id=str(doc["_id"]),
            sender_id=doc["sender_id"],
            seq=doc["seq"],
            text=text,
            created_at=as_utc(doc["created_at"]),
        )


class MessagePage(BaseModel):

    items: List[MessageOut]
    next_cursor: Optional[int] = None
