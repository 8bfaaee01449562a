"""
Operation constructors.

UI action handlers build operations here after their own authorization
checks (moderator-only pin, sender-only edit and so on); the engine does not
re-check identity. Toggle-style actions (react, pin) are resolved by the
caller into an explicit target state so that the resulting operation is
idempotent.
"""
import uuid
from datetime import datetime
from typing import Optional

from clubsync.schemas.message import Attachment, Media, Message, Operation, OperationKind, utcnow


def new_op_id() -> str:
    return uuid.uuid4().hex


def new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex}"


def send(
    room_id: str,
    sender_id: str,
    sender_name: str,
    body: Optional[str] = None,
    media: Optional[Media] = None,
    reply_to_id: Optional[str] = None,
    message_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Operation:
    created_at = created_at or utcnow()
    message = Message(
        id=message_id or new_message_id(),
        room_id=room_id,
        sender_id=sender_id,
        sender_name=sender_name,
        body=body.strip() if body else None,
        media=media,
        created_at=created_at,
        reply_to_id=reply_to_id,
    )
    return Operation(
        op_id=new_op_id(),
        room_id=room_id,
        kind=OperationKind.SEND,
        actor_id=sender_id,
        target_id=message.id,
        payload={"message": message.model_dump(mode="json")},
        created_at=created_at,
    )


def edit(room_id: str, actor_id: str, message_id: str, body: str) -> Operation:
    return Operation(
        op_id=new_op_id(),
        room_id=room_id,
        kind=OperationKind.EDIT,
        actor_id=actor_id,
        target_id=message_id,
        payload={"body": body},
    )


def delete(room_id: str, actor_id: str, message_id: str) -> Operation:
    return Operation(
        op_id=new_op_id(),
        room_id=room_id,
        kind=OperationKind.DELETE,
        actor_id=actor_id,
        target_id=message_id,
    )


def react(room_id: str, actor_id: str, message_id: str, symbol: str, active: bool = True) -> Operation:
    return Operation(
        op_id=new_op_id(),
        room_id=room_id,
        kind=OperationKind.REACT,
        actor_id=actor_id,
        target_id=message_id,
        payload={"symbol": symbol, "user_id": actor_id, "active": active},
    )


def pin(room_id: str, actor_id: str, message_id: str, pinned: bool) -> Operation:
    return Operation(
        op_id=new_op_id(),
        room_id=room_id,
        kind=OperationKind.PIN,
        actor_id=actor_id,
        target_id=message_id,
        payload={"pinned": pinned},
    )


def mark_read(room_id: str, actor_id: str, message_id: str) -> Operation:
    return Operation(
        op_id=new_op_id(),
        room_id=room_id,
        kind=OperationKind.MARK_READ,
        actor_id=actor_id,
        target_id=message_id,
        payload={"user_id": actor_id},
    )


def reply(
    room_id: str,
    actor_id: str,
    actor_name: str,
    parent_id: str,
    body: Optional[str] = None,
    media: Optional[Media] = None,
) -> Operation:
    child = Message(
        id=f"thread-{new_message_id()}",
        room_id=room_id,
        sender_id=actor_id,
        sender_name=actor_name,
        body=body.strip() if body else None,
        media=media,
        reply_to_id=parent_id,
    )
    return Operation(
        op_id=new_op_id(),
        room_id=room_id,
        kind=OperationKind.REPLY,
        actor_id=actor_id,
        target_id=parent_id,
        payload={"message": child.model_dump(mode="json")},
        created_at=child.created_at,
    )


def attach(room_id: str, actor_id: str, message_id: str, attachment: Attachment) -> Operation:
    return Operation(
        op_id=new_op_id(),
        room_id=room_id,
        kind=OperationKind.ATTACH,
        actor_id=actor_id,
        target_id=message_id,
        payload={"attachment": attachment.model_dump(mode="json")},
    )


def categorize(room_id: str, actor_id: str, message_id: str, category: str) -> Operation:
    return Operation(
        op_id=new_op_id(),
        room_id=room_id,
        kind=OperationKind.CATEGORIZE,
        actor_id=actor_id,
        target_id=message_id,
        payload={"category": category},
    )
