"""
In-memory message store backed by the local cache.

The store owns every room's message log and is the only writer of message
data into the cache. Callers receive copies; all changes go through
`append` and `apply`.
"""
from bisect import bisect_right
from collections import OrderedDict
from typing import Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from clubsync.core.config import AttachmentLimits
from clubsync.core.logging import get_logger
from clubsync.engine.cache import LocalCache
from clubsync.engine.errors import MutationRejected
from clubsync.engine.mutations import MutationFn, mutation_for, validate_new_message
from clubsync.schemas.message import ApplyResult, ApplyStatus, Message, Operation, OperationKind

logger = get_logger(__name__)

# Fields a mutation may never change.
IMMUTABLE_FIELDS = ("id", "room_id", "sender_id", "sender_name", "created_at")


class MessageStore:
    """Per-room ordered message logs."""

    def __init__(self, cache: LocalCache, limits: Optional[AttachmentLimits] = None, op_history: int = 500):
        self._cache = cache
        self._limits = limits or AttachmentLimits()
        self._op_history = op_history
        self._rooms: Dict[str, List[Message]] = {}
        self._applied: Dict[str, "OrderedDict[str, None]"] = {}

    @property
    def limits(self) -> AttachmentLimits:
        return self._limits

    def rooms(self) -> List[str]:
        return list(self._rooms)

    def is_loaded(self, room_id: str) -> bool:
        return room_id in self._rooms

    def load(self, room_id: str) -> List[Message]:
        """Read a room's log from the cache. A missing or unreadable cache is an empty room."""
        if room_id not in self._rooms:
            self._rooms[room_id], self._applied[room_id] = self._read_room(room_id)
            logger.debug(
                "Room loaded",
                extra={"extra_data": {"room_id": room_id, "messages": len(self._rooms[room_id])}}
            )
        return [message.model_copy(deep=True) for message in self._rooms[room_id]]

    def _read_room(self, room_id: str):
        messages: List[Message] = []
        applied: "OrderedDict[str, None]" = OrderedDict()
        try:
            records = self._cache.read_messages(room_id)
            applied.update((op_id, None) for op_id in self._cache.read_applied_ops(room_id))
        except SQLAlchemyError as e:
            logger.error(f"Cache read failed, starting room empty: {e}", extra={"extra_data": {"room_id": room_id}})
            return messages, applied

        seen = set()
        for record in records:
            try:
                message = Message.model_validate(record)
            except ValidationError as e:
                logger.warning(
                    f"Skipping unreadable cached message: {e.error_count()} errors",
                    extra={"extra_data": {"room_id": room_id}}
                )
                continue
            if message.id in seen:
                continue
            seen.add(message.id)
            messages.append(message)
        messages.sort(key=lambda m: m.created_at)
        return messages, applied

    def unload(self, room_id: str) -> None:
        """Forget a room's in-memory log; the cache keeps it."""
        self._rooms.pop(room_id, None)
        self._applied.pop(room_id, None)

    def drop(self, room_id: str) -> None:
        """Remove a room entirely (club deleted)."""
        self.unload(room_id)
        self._cache.drop_room(room_id)
        logger.info("Room dropped", extra={"extra_data": {"room_id": room_id}})

    def has_applied(self, room_id: str, op_id: Optional[str]) -> bool:
        return bool(op_id) and op_id in self._applied.get(room_id, {})

    def _record_op(self, room_id: str, op_id: Optional[str]) -> None:
        if not op_id:
            return
        applied = self._applied.setdefault(room_id, OrderedDict())
        applied[op_id] = None
        while len(applied) > self._op_history:
            applied.popitem(last=False)

    def _persist(self, room_id: str) -> None:
        self._cache.write_messages(room_id, [m.model_dump(mode="json") for m in self._rooms[room_id]])
        self._cache.write_applied_ops(room_id, list(self._applied.get(room_id, {})))

    def _index_of(self, room_id: str, message_id: str) -> Optional[int]:
        for index, message in enumerate(self._rooms[room_id]):
            if message.id == message_id:
                return index
        return None

    def _owner_of(self, room_id: str, message_id: str) -> Optional[str]:
        """Id of the top-level message that is, or holds in its thread, `message_id`."""
        for message in self._rooms[room_id]:
            if message.id == message_id or any(child.id == message_id for child in message.thread):
                return message.id
        return None

    def append(self, room_id: str, message: Message, op_id: Optional[str] = None) -> ApplyResult:
        """Add a new message. Ids are create-once across the room and its threads: a known id is a no-op."""
        self.load(room_id)
        if self.has_applied(room_id, op_id):
            return ApplyResult(status=ApplyStatus.DUPLICATE, message_id=message.id)
        if message.room_id != room_id:
            return ApplyResult(
                status=ApplyStatus.REJECTED,
                message_id=message.id,
                detail=f"Message belongs to room {message.room_id}",
            )
        try:
            validate_new_message(message, self._limits)
        except MutationRejected as e:
            return ApplyResult(status=ApplyStatus.REJECTED, message_id=message.id, detail=str(e))

        log = self._rooms[room_id]
        if self._owner_of(room_id, message.id) is not None:
            logger.info(
                "Duplicate message id ignored",
                extra={"extra_data": {"room_id": room_id, "message_id": message.id, "op_id": op_id}}
            )
            self._record_op(room_id, op_id)
            return ApplyResult(status=ApplyStatus.DUPLICATE, message_id=message.id)

        # keeps createdAt non-decreasing when a late message arrives with an older timestamp
        position = bisect_right(log, message.created_at, key=lambda m: m.created_at)
        log.insert(position, message.model_copy(deep=True))
        self._record_op(room_id, op_id)
        self._persist(room_id)
        return ApplyResult(status=ApplyStatus.APPLIED, message_id=message.id)

    def apply(
        self,
        room_id: str,
        op_id: Optional[str],
        kind: OperationKind,
        target_id: str,
        mutation_fn: MutationFn,
    ) -> ApplyResult:
        """
        Run a mutation against one message and persist the result.

        A target that is not (yet) in the log is a no-op. Safe to repeat: an
        op id already applied is reported as a duplicate, and mutation
        functions are idempotent.
        """
        self.load(room_id)
        extra = {"room_id": room_id, "op_id": op_id, "kind": kind.value, "message_id": target_id}
        if self.has_applied(room_id, op_id):
            return ApplyResult(status=ApplyStatus.DUPLICATE, message_id=target_id)

        index = self._index_of(room_id, target_id)
        if index is None:
            logger.debug("Mutation target not found", extra={"extra_data": extra})
            return ApplyResult(status=ApplyStatus.MISSING, message_id=target_id)

        current = self._rooms[room_id][index]
        try:
            updated = mutation_fn(current.model_copy(deep=True))
        except MutationRejected as e:
            logger.warning(f"Mutation rejected: {e}", extra={"extra_data": extra})
            return ApplyResult(status=ApplyStatus.REJECTED, message_id=target_id, detail=str(e))

        for field in IMMUTABLE_FIELDS:
            if getattr(updated, field) != getattr(current, field):
                logger.warning(f"Mutation tried to change {field}", extra={"extra_data": extra})
                return ApplyResult(
                    status=ApplyStatus.REJECTED,
                    message_id=target_id,
                    detail=f"Field '{field}' is immutable",
                )

        self._record_op(room_id, op_id)
        if updated == current:
            self._cache.write_applied_ops(room_id, list(self._applied[room_id]))
            return ApplyResult(status=ApplyStatus.UNCHANGED, message_id=target_id)

        self._rooms[room_id][index] = updated
        self._persist(room_id)
        logger.debug("Mutation applied", extra={"extra_data": extra})
        return ApplyResult(status=ApplyStatus.APPLIED, message_id=target_id)

    def _check_reply_id(self, op: Operation) -> Optional[ApplyResult]:
        """A thread reply may not reuse an id already taken elsewhere in the room."""
        child = op.payload.get("message")
        child_id = child.get("id") if isinstance(child, dict) else None
        if not child_id:
            return None
        self.load(op.room_id)
        if self.has_applied(op.room_id, op.op_id):
            return None
        owner = self._owner_of(op.room_id, child_id)
        if owner is None or (owner == op.target_id and child_id != op.target_id):
            # a reply already in this thread is left to the idempotent mutation
            return None
        logger.warning(
            "Thread reply reuses a message id",
            extra={"extra_data": {"room_id": op.room_id, "op_id": op.op_id, "message_id": child_id}}
        )
        return ApplyResult(
            status=ApplyStatus.REJECTED,
            message_id=op.target_id,
            detail=f"Message id '{child_id}' is already used in room {op.room_id}",
        )

    def apply_operation(self, op: Operation) -> ApplyResult:
        """Route an operation to `append` or `apply`."""
        if op.kind == OperationKind.SEND:
            try:
                message = Message.model_validate(op.payload.get("message"))
            except ValidationError as e:
                return ApplyResult(status=ApplyStatus.REJECTED, message_id=op.target_id, detail=str(e))
            return self.append(op.room_id, message, op_id=op.op_id)

        if not op.target_id:
            return ApplyResult(status=ApplyStatus.REJECTED, detail="Operation has no target message")
        if op.kind == OperationKind.REPLY:
            rejected = self._check_reply_id(op)
            if rejected is not None:
                return rejected
        try:
            mutation = mutation_for(op, self._limits)
        except MutationRejected as e:
            return ApplyResult(status=ApplyStatus.REJECTED, message_id=op.target_id, detail=str(e))
        return self.apply(op.room_id, op.op_id, op.kind, op.target_id, mutation)

    def get(self, room_id: str, message_id: str) -> Optional[Message]:
        self.load(room_id)
        index = self._index_of(room_id, message_id)
        if index is None:
            return None
        return self._rooms[room_id][index].model_copy(deep=True)

    def snapshot(self, room_id: str, include_deleted: bool = True) -> List[Message]:
        """Pinned first, then by createdAt, ties broken by id."""
        messages = self.load(room_id)
        if not include_deleted:
            messages = [m for m in messages if not m.deleted]
        return sorted(messages, key=lambda m: (not m.pinned, m.created_at, m.id))

    def search(self, room_id: str, query: str) -> List[Message]:
        """Case-insensitive match on body or sender name, deleted messages excluded."""
        needle = query.strip().lower()
        if not needle:
            return self.snapshot(room_id, include_deleted=False)
        return [
            m for m in self.snapshot(room_id, include_deleted=False)
            if needle in (m.body or "").lower() or needle in m.sender_name.lower()
        ]
