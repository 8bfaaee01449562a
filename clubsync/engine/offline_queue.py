"""
Durable queue of locally-originated operations awaiting delivery.

Entries are persisted on every change so that they survive a restart while
offline. Draining is event-driven (connectivity restored, explicit flush,
channel reconnected); nothing here runs on a timer.
"""
from typing import Awaitable, Callable, List, Optional, Set

from pydantic import ValidationError

from clubsync.core.logging import get_logger
from clubsync.engine.cache import LocalCache
from clubsync.schemas.message import Operation

logger = get_logger(__name__)

SendFn = Callable[[Operation], Awaitable[Optional[bool]]]


class OfflineQueue:
    """FIFO of pending operations with at-least-once delivery."""

    def __init__(self, cache: LocalCache):
        self._cache = cache
        self._entries: List[Operation] = self._restore()
        # op ids whose echo arrived while still queued
        self._confirmed: Set[str] = set()
        self._draining = False

    def _restore(self) -> List[Operation]:
        entries: List[Operation] = []
        seen = set()
        for record in self._cache.read_queue():
            try:
                op = Operation.model_validate(record)
            except ValidationError as e:
                logger.warning(f"Dropping unreadable queued operation: {e.error_count()} errors")
                continue
            if op.op_id not in seen:
                seen.add(op.op_id)
                entries.append(op)
        if entries:
            logger.info("Offline queue restored", extra={"extra_data": {"pending": len(entries)}})
        return entries

    def _persist(self) -> None:
        self._cache.write_queue([op.model_dump(mode="json") for op in self._entries])

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, op_id: str) -> bool:
        return any(op.op_id == op_id for op in self._entries)

    @property
    def is_draining(self) -> bool:
        return self._draining

    def pending(self, room_id: Optional[str] = None) -> List[Operation]:
        return [
            op.model_copy(deep=True) for op in self._entries
            if room_id is None or op.room_id == room_id
        ]

    def enqueue(self, op: Operation) -> bool:
        """Append and persist. An op id already queued is not added twice."""
        if op.op_id in self:
            return False
        self._entries.append(op.model_copy(deep=True))
        self._persist()
        logger.info(
            "Operation queued",
            extra={"extra_data": {"op_id": op.op_id, "room_id": op.room_id, "kind": op.kind.value, "pending": len(self)}}
        )
        return True

    def remove(self, op_id: str) -> bool:
        """Retract a queued operation before it is sent."""
        before = len(self._entries)
        self._entries = [op for op in self._entries if op.op_id != op_id]
        if len(self._entries) == before:
            return False
        self._persist()
        logger.info("Queued operation retracted", extra={"extra_data": {"op_id": op_id}})
        return True

    def acknowledge(self, op_id: str) -> bool:
        """
        Note that an operation's echo was received.

        A matching entry is discarded on the next drain without being sent.
        Returns True if the op id is currently queued.
        """
        if op_id not in self:
            return False
        self._confirmed.add(op_id)
        return True

    def drop_room(self, room_id: str) -> int:
        before = len(self._entries)
        self._entries = [op for op in self._entries if op.room_id != room_id]
        dropped = before - len(self._entries)
        if dropped:
            self._persist()
        return dropped

    async def drain(self, send_fn: SendFn) -> int:
        """
        Deliver queued operations in FIFO order.

        An entry is removed only after `send_fn` completes without raising and
        without returning False. The first failure stops the drain, leaving it
        and everything behind it queued. Entries appended while draining are
        delivered by the same drain. Returns the number delivered.
        """
        if self._draining:
            return 0
        self._draining = True
        delivered = 0
        try:
            while self._entries:
                op = self._entries[0]
                if op.op_id in self._confirmed:
                    self._entries.pop(0)
                    self._confirmed.discard(op.op_id)
                    self._persist()
                    logger.debug("Echoed operation discarded", extra={"extra_data": {"op_id": op.op_id}})
                    continue

                try:
                    ok = await send_fn(op.model_copy(deep=True))
                except Exception as e:
                    logger.warning(
                        f"Drain stopped: {e}",
                        extra={"extra_data": {"op_id": op.op_id, "pending": len(self)}}
                    )
                    break
                if ok is False:
                    logger.warning(
                        "Drain stopped: send not acknowledged",
                        extra={"extra_data": {"op_id": op.op_id, "pending": len(self)}}
                    )
                    break

                # the entry may have been retracted or confirmed while awaiting
                self._entries = [entry for entry in self._entries if entry.op_id != op.op_id]
                self._confirmed.discard(op.op_id)
                self._persist()
                delivered += 1
        finally:
            self._draining = False

        if delivered:
            logger.info("Offline queue drained", extra={"extra_data": {"delivered": delivered, "pending": len(self)}})
        return delivered
