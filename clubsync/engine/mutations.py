"""
Mutation applier.

One pure function per operation kind, each `(message, payload) -> message`.
Functions never modify their input; they return a new message, or the input
itself when the payload changes nothing. Every function is idempotent, so a
replayed or duplicated operation leaves the state as a single application
would. Locally-originated and remotely-received operations go through the
same functions.
"""
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from clubsync.core.config import AttachmentLimits
from clubsync.engine.errors import MutationRejected
from clubsync.schemas.message import Attachment, EditRecord, Message, Operation, OperationKind, ensure_utc

MAX_BODY_LENGTH = 4096

MutationFn = Callable[[Message], Message]


def _timestamp(payload: Mapping[str, Any], key: str) -> datetime:
    value = payload.get(key)
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise MutationRejected(f"Missing timestamp '{key}'")


def _require(payload: Mapping[str, Any], key: str) -> Any:
    if key not in payload or payload[key] is None:
        raise MutationRejected(f"Missing '{key}' in payload")
    return payload[key]


def validate_new_message(message: Message, limits: AttachmentLimits) -> None:
    """Checks applied to a message before it enters a log or thread."""
    if not (message.body and message.body.strip()) and message.media is None:
        raise MutationRejected("Message or media is required")
    if message.body is not None and len(message.body) > MAX_BODY_LENGTH:
        raise MutationRejected(f"Message body exceeds {MAX_BODY_LENGTH} characters")
    if message.media is not None and message.media.size > limits.max_media_bytes:
        raise MutationRejected(f"Media exceeds {limits.max_media_bytes} bytes")


def _edits_of(message: Message) -> Tuple[Optional[str], List[Tuple[datetime, str]]]:
    """Split a message's edit timeline into its original body and `(edited_at, body)` edits."""
    history = message.edit_history
    if not history:
        return message.body, []
    later_bodies = [record.previous_body for record in history[1:]] + [message.body]
    return history[0].previous_body, [
        (record.edited_at, body) for record, body in zip(history, later_bodies)
    ]


def _replay(message: Message, original: Optional[str], edits: List[Tuple[datetime, str]]) -> Message:
    """Rebuild body and history by applying edits in `(edited_at, body)` order."""
    body = original
    edited_at = None
    history: List[EditRecord] = []
    for at, new_body in sorted(edits):
        if new_body == body:
            continue
        history.append(EditRecord(previous_body=body, edited_at=at))
        body = new_body
        edited_at = at
    return message.model_copy(
        update={"body": body, "edited_at": edited_at, "edit_history": history}, deep=True
    )


def edit(message: Message, payload: Mapping[str, Any]) -> Message:
    """
    Replace the body, recording the previous one in the edit history.

    Concurrent edits resolve last-write-wins on `(edited_at, body)`: an edit
    older than the current one is merged into the history at its place in
    time instead of overwriting the body, so replicas converge whatever
    order the edits arrive in.
    """
    body = str(_require(payload, "body")).strip()
    if not body:
        raise MutationRejected("Edit body cannot be empty")
    if len(body) > MAX_BODY_LENGTH:
        raise MutationRejected(f"Message body exceeds {MAX_BODY_LENGTH} characters")
    edited_at = ensure_utc(_timestamp(payload, "edited_at"))

    if message.edited_at is None or (edited_at, body) > (message.edited_at, message.body or ""):
        if body == message.body:
            return message
        updated = message.model_copy(deep=True)
        updated.edit_history.append(EditRecord(previous_body=message.body, edited_at=edited_at))
        updated.body = body
        updated.edited_at = edited_at
        return updated

    original, edits = _edits_of(message)
    if (edited_at, body) in edits:
        return message
    updated = _replay(message, original, edits + [(edited_at, body)])
    return message if updated == message else updated


def delete(message: Message, payload: Mapping[str, Any]) -> Message:
    """Tombstone the message. Body and media stay on the object."""
    if message.deleted:
        return message
    return message.model_copy(update={"deleted": True}, deep=True)


def react(message: Message, payload: Mapping[str, Any]) -> Message:
    """Add or remove one user from one reaction's user-set."""
    symbol = str(_require(payload, "symbol"))
    user_id = str(_require(payload, "user_id"))
    active = bool(payload.get("active", True))

    users = message.reactions.get(symbol, set())
    if (user_id in users) == active:
        return message

    updated = message.model_copy(deep=True)
    if active:
        updated.reactions.setdefault(symbol, set()).add(user_id)
    else:
        updated.reactions[symbol].discard(user_id)
        if not updated.reactions[symbol]:
            del updated.reactions[symbol]
    return updated


def pin(message: Message, payload: Mapping[str, Any]) -> Message:
    pinned = bool(_require(payload, "pinned"))
    if message.pinned == pinned:
        return message
    return message.model_copy(update={"pinned": pinned}, deep=True)


def mark_read(message: Message, payload: Mapping[str, Any]) -> Message:
    user_id = str(_require(payload, "user_id"))
    if user_id in message.read_by:
        return message
    updated = message.model_copy(deep=True)
    updated.read_by.add(user_id)
    return updated


def reply(message: Message, payload: Mapping[str, Any], limits: AttachmentLimits) -> Message:
    """Append a child message to the parent's thread."""
    try:
        child = Message.model_validate(_require(payload, "message"))
    except ValueError as e:
        if isinstance(e, MutationRejected):
            raise
        raise MutationRejected(f"Invalid thread reply: {e}") from e

    if child.room_id != message.room_id:
        raise MutationRejected("Thread reply belongs to a different room")
    if child.thread:
        raise MutationRejected("Thread replies cannot carry nested threads")
    validate_new_message(child, limits)
    if child.id == message.id or any(existing.id == child.id for existing in message.thread):
        return message

    updated = message.model_copy(deep=True)
    updated.thread.append(child)
    return updated


def attach(message: Message, payload: Mapping[str, Any], limits: AttachmentLimits) -> Message:
    """Append an attachment, enforcing the count and cumulative size ceilings."""
    try:
        attachment = Attachment.model_validate(_require(payload, "attachment"))
    except ValueError as e:
        if isinstance(e, MutationRejected):
            raise
        raise MutationRejected(f"Invalid attachment: {e}") from e

    if any(existing.id == attachment.id for existing in message.attachments):
        return message
    if len(message.attachments) + 1 > limits.max_count:
        raise MutationRejected(f"A message can carry at most {limits.max_count} attachments")
    total = sum(existing.size for existing in message.attachments) + attachment.size
    if total > limits.max_total_bytes:
        raise MutationRejected(f"Attachments exceed {limits.max_total_bytes} bytes")

    updated = message.model_copy(deep=True)
    updated.attachments.append(attachment)
    return updated


def categorize(message: Message, payload: Mapping[str, Any]) -> Message:
    category = str(_require(payload, "category")).strip()
    if not category:
        raise MutationRejected("Category cannot be empty")
    if category in message.categories:
        return message
    updated = message.model_copy(deep=True)
    updated.categories.append(category)
    return updated


APPLIERS: Dict[OperationKind, Callable[..., Message]] = {
    OperationKind.EDIT: edit,
    OperationKind.DELETE: delete,
    OperationKind.REACT: react,
    OperationKind.PIN: pin,
    OperationKind.MARK_READ: mark_read,
    OperationKind.REPLY: reply,
    OperationKind.ATTACH: attach,
    OperationKind.CATEGORIZE: categorize,
}

_LIMITED = {OperationKind.REPLY, OperationKind.ATTACH}


def mutation_for(op: Operation, limits: AttachmentLimits) -> MutationFn:
    """
    Bind an operation to its mutation function.

    Defaults that depend on the operation rather than the payload (acting
    user, edit timestamp) are filled in here, so replicas applying the same
    operation compute the same result. Mutations addressed to a tombstoned
    message are accepted and change nothing.
    """
    if op.kind not in APPLIERS:
        raise MutationRejected(f"No mutation for operation kind '{op.kind.value}'")

    payload = dict(op.payload)
    payload.setdefault("user_id", op.actor_id)
    payload.setdefault("edited_at", op.created_at)

    fn = APPLIERS[op.kind]
    if op.kind in _LIMITED:
        fn = partial(fn, limits=limits)

    def apply(message: Message) -> Message:
        if message.deleted and op.kind != OperationKind.DELETE:
            return message
        return fn(message, payload)

    return apply
