"""
Pydantic models for messages, operations and store results.

These are the JSON-serializable shapes written to the local cache and sent
over the realtime channel.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field, field_serializer, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC so that ordering never mixes naive and aware values."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class Media(BaseModel):
    """Inline media carried by a message; immutable once set."""
    kind: MediaKind
    payload: str

    @property
    def size(self) -> int:
        return len(self.payload.encode("utf-8"))


class Attachment(BaseModel):
    """A file added to a message. Two uploads of the same file are distinct attachments."""
    id: str = Field(default_factory=lambda: f"att-{uuid.uuid4().hex}")
    name: str = Field(..., min_length=1, max_length=255)
    payload: str
    mime: str = Field(default="application/octet-stream")

    @property
    def size(self) -> int:
        return len(self.payload.encode("utf-8"))


class EditRecord(BaseModel):
    """A prior body value and the time it was replaced."""
    previous_body: Optional[str] = None
    edited_at: datetime

    @field_validator("edited_at")
    @classmethod
    def validate_edited_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class Message(BaseModel):
    """One chat entry in a room's message log."""

    id: str = Field(..., min_length=1, max_length=255)
    room_id: str = Field(..., min_length=1)
    sender_id: str
    sender_name: str = ""
    body: Optional[str] = Field(default=None, max_length=4096)
    media: Optional[Media] = None
    created_at: datetime = Field(default_factory=utcnow)
    edited_at: Optional[datetime] = None
    edit_history: List[EditRecord] = Field(default_factory=list)
    reactions: Dict[str, Set[str]] = Field(default_factory=dict)
    read_by: Set[str] = Field(default_factory=set)
    pinned: bool = False
    deleted: bool = False
    reply_to_id: Optional[str] = None
    thread: List["Message"] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)

    @field_validator("created_at", "edited_at")
    @classmethod
    def validate_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @field_validator("thread")
    @classmethod
    def validate_thread_depth(cls, v: List["Message"]) -> List["Message"]:
        """Threads are one level deep: a child message has no thread of its own."""
        for child in v:
            if child.thread:
                raise ValueError("Thread replies cannot carry nested threads")
        return v

    @field_serializer("read_by")
    def serialize_read_by(self, read_by: Set[str]) -> List[str]:
        return sorted(read_by)

    @field_serializer("reactions")
    def serialize_reactions(self, reactions: Dict[str, Set[str]]) -> Dict[str, List[str]]:
        # empty user-sets are dropped so a toggled-off reaction leaves no key
        return {symbol: sorted(users) for symbol, users in reactions.items() if users}

    @property
    def is_edited(self) -> bool:
        return self.edited_at is not None

    def reaction_count(self, symbol: str) -> int:
        return len(self.reactions.get(symbol, ()))


class OperationKind(str, Enum):
    SEND = "send"
    EDIT = "edit"
    DELETE = "delete"
    REACT = "react"
    PIN = "pin"
    MARK_READ = "mark_read"
    REPLY = "reply"
    ATTACH = "attach"
    CATEGORIZE = "categorize"


# Realtime event names, one per operation kind.
EVENT_NAMES: Dict[OperationKind, str] = {
    OperationKind.SEND: "message",
    OperationKind.EDIT: "editMessage",
    OperationKind.DELETE: "deleteMessage",
    OperationKind.REACT: "reaction",
    OperationKind.PIN: "pinMessage",
    OperationKind.MARK_READ: "readMessage",
    OperationKind.REPLY: "threadMessage",
    OperationKind.ATTACH: "attachment",
    OperationKind.CATEGORIZE: "messageCategory",
}

KINDS_BY_EVENT: Dict[str, OperationKind] = {name: kind for kind, name in EVENT_NAMES.items()}


class Operation(BaseModel):
    """
    A discrete intent to create or mutate a message.

    The same shape is applied locally, queued while offline (as a pending
    operation) and emitted on the realtime channel. `op_id` is stable across
    all three so that echoes and replays can be recognised.
    """

    op_id: str = Field(..., min_length=1)
    room_id: str = Field(..., min_length=1)
    kind: OperationKind
    actor_id: str
    target_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def event_name(self) -> str:
        return EVENT_NAMES[self.kind]


PendingOperation = Operation


class ApplyStatus(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    MISSING = "missing"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class ApplyResult(BaseModel):
    """Explicit outcome of a store write."""
    status: ApplyStatus
    message_id: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != ApplyStatus.REJECTED

    @property
    def changed(self) -> bool:
        return self.status == ApplyStatus.APPLIED


class SendStatus(str, Enum):
    SENT = "sent"
    QUEUED = "queued"
    THROTTLED = "throttled"


class SendResult(BaseModel):
    status: SendStatus
    op_id: str
    detail: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status == SendStatus.SENT


Message.model_rebuild()
