"""
Per-session engine facade.

A `ClubSession` is constructed once per signed-in session and owns the
message store, offline queue, sync channel and rate limiter. UI action
handlers call its methods after performing their own authorization checks;
the session does not re-check who may pin, edit or delete.

Every local action follows the same path: build an operation, apply it to
the store (optimistic), then hand it to the sync channel, which emits it or
queues it. Edits and deletes are additionally confirmed through the network
client before they are emitted.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from sqlalchemy.engine import Engine

from clubsync.core.config import Settings
from clubsync.core.database import create_cache_engine, create_session_factory, init_cache_schema
from clubsync.core.logging import get_logger
from clubsync.engine import operations
from clubsync.engine.api_client import ApiClient
from clubsync.engine.cache import LocalCache, SqlKeyValueStore
from clubsync.engine.channel import RealtimeTransport, SyncChannel
from clubsync.engine.errors import (
    ApiError,
    ConfirmationFailed,
    NetworkUnavailable,
    OperationRejected,
    RateLimited,
)
from clubsync.engine.offline_queue import OfflineQueue
from clubsync.engine.rate_limit import RateLimiter
from clubsync.engine.store import MessageStore
from clubsync.schemas.message import (
    ApplyResult,
    ApplyStatus,
    Attachment,
    Media,
    Message,
    Operation,
    OperationKind,
    SendResult,
    SendStatus,
)

logger = get_logger(__name__)

# Fields put back when a confirmable operation is rejected by the server.
ROLLBACK_FIELDS = {
    OperationKind.EDIT: ("body", "edited_at", "edit_history"),
    OperationKind.DELETE: ("deleted",),
}


class Notifier(Protocol):
    """User-facing notification collaborator."""

    def inbound_message(self, room_id: str, message: Message) -> None: ...

    def alert(self, level: str, text: str) -> None: ...


class LoggingNotifier:
    """Default notifier for hosts without an alerting subsystem."""

    def inbound_message(self, room_id: str, message: Message) -> None:
        logger.info(
            "New message",
            extra={"extra_data": {"room_id": room_id, "message_id": message.id, "sender_id": message.sender_id}}
        )

    def alert(self, level: str, text: str) -> None:
        logger.info(text, extra={"extra_data": {"alert_level": level}})


class ClubSession:
    def __init__(
        self,
        user_id: str,
        user_name: str,
        store: MessageStore,
        queue: OfflineQueue,
        channel: SyncChannel,
        cache: LocalCache,
        api: Optional[ApiClient] = None,
        notifier: Optional[Notifier] = None,
        cache_engine: Optional[Engine] = None,
    ):
        self.user_id = user_id
        self.user_name = user_name
        self.store = store
        self.queue = queue
        self.channel = channel
        self.cache = cache
        self.api = api
        self.notifier = notifier or LoggingNotifier()
        self.cache_engine = cache_engine
        channel.add_listener(self._on_inbound)
        channel.set_confirm_hook(self._confirm_queued)

    def _on_inbound(self, op: Operation, result: ApplyResult) -> None:
        if op.actor_id == self.user_id:
            return
        if op.kind == OperationKind.SEND:
            message = self.store.get(op.room_id, op.target_id)
        elif op.kind == OperationKind.REPLY:
            message = Message.model_validate(op.payload["message"])
        else:
            return
        if message is not None:
            self.notifier.inbound_message(op.room_id, message)

    # Rooms

    async def open_room(self, room_id: str) -> List[Message]:
        """Load a room and subscribe to its events."""
        if not self.store.is_loaded(room_id):
            self.store.load(room_id)
            await self.channel.join(room_id)
        return self.store.snapshot(room_id)

    def close_room(self, room_id: str) -> None:
        self.store.unload(room_id)

    def drop_room(self, room_id: str) -> None:
        """Forget a deleted club: its log, its draft and its queued operations."""
        dropped = {op.op_id for op in self.queue.pending(room_id)}
        self.store.drop(room_id)
        self.queue.drop_room(room_id)
        self._forget_confirmations(dropped)

    def snapshot(self, room_id: str, include_deleted: bool = True) -> List[Message]:
        return self.store.snapshot(room_id, include_deleted=include_deleted)

    def search(self, room_id: str, query: str) -> List[Message]:
        return self.store.search(room_id, query)

    def get_message(self, room_id: str, message_id: str) -> Message:
        message = self.store.get(room_id, message_id)
        if message is None:
            raise OperationRejected(
                ApplyResult(status=ApplyStatus.MISSING, message_id=message_id, detail="Message not found")
            )
        return message

    # Local actions

    def _apply_local(self, op: Operation) -> ApplyResult:
        result = self.store.apply_operation(op)
        if result.status in (ApplyStatus.REJECTED, ApplyStatus.MISSING, ApplyStatus.DUPLICATE):
            if result.status == ApplyStatus.MISSING and not result.detail:
                result = result.model_copy(update={"detail": "Message not found"})
            raise OperationRejected(result)
        return result

    async def _dispatch(self, op: Operation) -> SendResult:
        result = await self.channel.send(op)
        if result.status == SendStatus.QUEUED and op.kind == OperationKind.SEND:
            self.notifier.alert("success", "Message queued. Will send when online.")
        elif result.status == SendStatus.THROTTLED:
            self.notifier.alert("warning", "Too many actions; will retry shortly.")
        return result

    async def _perform(self, op: Operation) -> Optional[SendResult]:
        """Apply optimistically, then emit. A no-op mutation is not sent."""
        result = self._apply_local(op)
        if result.status == ApplyStatus.UNCHANGED:
            return None
        return await self._dispatch(op)

    def _confirm_call(self, op: Operation) -> Awaitable[Any]:
        if op.kind == OperationKind.EDIT:
            body = str(op.payload["body"]).strip()
            return self.api.confirm_edit(op.room_id, op.target_id, body, op.op_id)
        return self.api.confirm_delete(op.room_id, op.target_id, op.op_id)

    async def _perform_confirmable(self, op: Operation) -> Optional[SendResult]:
        previous = self.get_message(op.room_id, op.target_id)
        restore = previous.model_dump(mode="json", include=set(ROLLBACK_FIELDS[op.kind]))
        result = self._apply_local(op)
        if result.status == ApplyStatus.UNCHANGED:
            return None

        if self.api is not None:
            try:
                await self._confirm_call(op)
            except ApiError as e:
                self._rollback(op, restore)
                self.notifier.alert("error", f"Could not save change: {e.detail}")
                raise ConfirmationFailed(op.op_id, e) from e
            except (NetworkUnavailable, RateLimited) as e:
                # transient: keep the optimistic state, confirm when the queue drains
                logger.warning(
                    f"Confirmation deferred: {e}",
                    extra={"extra_data": {"op_id": op.op_id, "room_id": op.room_id}}
                )
                pending = self.cache.read_confirmations()
                pending[op.op_id] = restore
                self.cache.write_confirmations(pending)
                self.queue.enqueue(op)
                self.notifier.alert("warning", "Change saved locally. Will sync when online.")
                return SendResult(status=SendStatus.QUEUED, op_id=op.op_id, detail=str(e))

        return await self._dispatch(op)

    async def _confirm_queued(self, op: Operation) -> bool:
        """
        Drain step for a queued edit or delete whose server confirmation was
        deferred. Transient failures propagate and stop the drain; a server
        rejection rolls the change back and withdraws the operation.
        """
        pending = self.cache.read_confirmations()
        restore = pending.get(op.op_id)
        if restore is None or self.api is None:
            return True

        try:
            await self._confirm_call(op)
        except ApiError as e:
            self._rollback(op, restore)
            self._forget_confirmations({op.op_id})
            self.notifier.alert("error", f"Could not save change: {e.detail}")
            return False

        self._forget_confirmations({op.op_id})
        logger.info("Deferred change confirmed", extra={"extra_data": {"op_id": op.op_id, "room_id": op.room_id}})
        return True

    def _forget_confirmations(self, op_ids) -> None:
        pending = self.cache.read_confirmations()
        remaining = {op_id: fields for op_id, fields in pending.items() if op_id not in op_ids}
        if len(remaining) != len(pending):
            self.cache.write_confirmations(remaining)

    def _rollback(self, op: Operation, restore: Dict[str, Any]) -> None:
        """Put back the fields an edit or delete changed, leaving concurrent changes to other fields."""

        def revert(message: Message) -> Message:
            return Message.model_validate({**message.model_dump(mode="json"), **restore})

        self.store.apply(op.room_id, None, op.kind, op.target_id, revert)
        logger.info(
            "Optimistic change rolled back",
            extra={"extra_data": {"op_id": op.op_id, "room_id": op.room_id, "kind": op.kind.value}}
        )

    async def send_message(
        self,
        room_id: str,
        body: Optional[str] = None,
        media: Optional[Media] = None,
        reply_to_id: Optional[str] = None,
    ) -> Message:
        op = operations.send(room_id, self.user_id, self.user_name, body=body, media=media, reply_to_id=reply_to_id)
        await self._perform(op)
        self.cache.clear_draft(room_id)
        return self.get_message(room_id, op.target_id)

    async def edit_message(self, room_id: str, message_id: str, body: str) -> Message:
        await self._perform_confirmable(operations.edit(room_id, self.user_id, message_id, body))
        return self.get_message(room_id, message_id)

    async def delete_message(self, room_id: str, message_id: str) -> Message:
        await self._perform_confirmable(operations.delete(room_id, self.user_id, message_id))
        return self.get_message(room_id, message_id)

    async def react(self, room_id: str, message_id: str, symbol: str) -> Message:
        """Toggle the current user's reaction."""
        current = self.get_message(room_id, message_id)
        active = self.user_id not in current.reactions.get(symbol, set())
        await self._perform(operations.react(room_id, self.user_id, message_id, symbol, active=active))
        return self.get_message(room_id, message_id)

    async def toggle_pin(self, room_id: str, message_id: str) -> Message:
        current = self.get_message(room_id, message_id)
        await self._perform(operations.pin(room_id, self.user_id, message_id, pinned=not current.pinned))
        return self.get_message(room_id, message_id)

    async def mark_read(self, room_id: str, message_id: str) -> Message:
        await self._perform(operations.mark_read(room_id, self.user_id, message_id))
        return self.get_message(room_id, message_id)

    async def reply_in_thread(
        self,
        room_id: str,
        parent_id: str,
        body: Optional[str] = None,
        media: Optional[Media] = None,
    ) -> Message:
        op = operations.reply(room_id, self.user_id, self.user_name, parent_id, body=body, media=media)
        await self._perform(op)
        return self.get_message(room_id, parent_id)

    async def attach(self, room_id: str, message_id: str, attachment: Attachment) -> Message:
        await self._perform(operations.attach(room_id, self.user_id, message_id, attachment))
        return self.get_message(room_id, message_id)

    async def categorize(self, room_id: str, message_id: str, category: str) -> Message:
        await self._perform(operations.categorize(room_id, self.user_id, message_id, category))
        return self.get_message(room_id, message_id)

    async def forward_message(self, source_room_id: str, message_id: str, target_room_id: str) -> Message:
        """Re-send a message's content into another room as a new message."""
        original = self.get_message(source_room_id, message_id)
        if original.deleted:
            raise OperationRejected(
                ApplyResult(status=ApplyStatus.REJECTED, message_id=message_id, detail="Cannot forward a deleted message")
            )
        return await self.send_message(target_room_id, body=original.body, media=original.media)

    # Queue and connectivity

    def retract(self, op_id: str) -> bool:
        """Remove a not-yet-sent operation. The local optimistic change stays."""
        if not self.queue.remove(op_id):
            return False
        self._forget_confirmations({op_id})
        return True

    async def flush(self) -> int:
        return await self.channel.flush()

    async def connect(self) -> bool:
        return await self.channel.connect()

    async def set_connectivity(self, online: bool) -> None:
        await self.channel.set_online(online)

    async def logout(self) -> None:
        await self.channel.disconnect()

    def status(self) -> Dict[str, Any]:
        return {**self.channel.status(), "rooms": self.store.rooms(), "user_id": self.user_id}

    # Drafts

    def save_draft(self, room_id: str, text: str) -> None:
        if text and text.strip():
            self.cache.write_draft(room_id, text)
        else:
            self.cache.clear_draft(room_id)

    def load_draft(self, room_id: str) -> Optional[str]:
        return self.cache.read_draft(room_id)

    def clear_draft(self, room_id: str) -> None:
        self.cache.clear_draft(room_id)


def build_session(
    settings: Settings,
    transport: RealtimeTransport,
    notifier: Optional[Notifier] = None,
    api_transport: Any = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ClubSession:
    """Wire a session from settings. `api_transport` is an optional httpx transport."""
    cache_engine = create_cache_engine(settings.cache_url, echo=settings.debug)
    init_cache_schema(cache_engine)
    cache = LocalCache(SqlKeyValueStore(create_session_factory(cache_engine)))

    limiter = RateLimiter(
        max_actions=settings.rate_limit_max_actions,
        window_seconds=settings.rate_limit_window_seconds,
    )
    store = MessageStore(cache, limits=settings.attachment_limits, op_history=settings.applied_op_history)
    queue = OfflineQueue(cache)
    channel = SyncChannel(
        transport,
        store,
        queue,
        limiter,
        reconnect_attempts=settings.reconnect_attempts,
        reconnect_delay=settings.reconnect_delay_seconds,
        reconnect_backoff=settings.reconnect_backoff,
        ack_delivery=settings.is_ack_delivery,
        dedup_window=settings.dedup_window_size,
        user_id=settings.user_id,
        sleep=sleep,
    )
    api = None
    if settings.api_base_url:
        api = ApiClient(
            settings.api_base_url,
            timeout=settings.api_timeout_seconds,
            limiter=limiter,
            transport=api_transport,
        )

    logger.info(
        "Session created",
        extra={"extra_data": {"user_id": settings.user_id, "pending": len(queue), "delivery": settings.delivery_mode}}
    )
    return ClubSession(
        settings.user_id,
        settings.user_name,
        store,
        queue,
        channel,
        cache,
        api=api,
        notifier=notifier,
        cache_engine=cache_engine,
    )
