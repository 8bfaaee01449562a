"""
Sync channel: the single point of contact with the realtime event transport.

Outbound, local operations are emitted when connected and routed to the
offline queue otherwise. Inbound, events from every participant (including
echoes of our own operations) are validated, de-duplicated by op id and
applied through the message store.

Delivery policy is set per deployment with `ack_delivery`:

- fire-and-forget (default): a send that does not raise counts as delivered;
- acknowledged: the transport's `send` must return a truthy acknowledgement,
  otherwise the operation goes back through the offline queue.

Rooms are subscribed with a `joinClub` event when opened and re-joined on
every (re)connect, before queued operations are flushed.
"""
import asyncio
import inspect
import json
from collections import OrderedDict
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from clubsync.core.logging import get_logger
from clubsync.engine.errors import RateLimited
from clubsync.engine.offline_queue import OfflineQueue
from clubsync.engine.rate_limit import RateLimiter
from clubsync.engine.store import MessageStore
from clubsync.schemas.message import (
    EVENT_NAMES,
    KINDS_BY_EVENT,
    ApplyResult,
    ApplyStatus,
    Operation,
    SendResult,
    SendStatus,
)

logger = get_logger(__name__)

Handler = Callable[..., Awaitable[Any]]
InboundListener = Callable[[Operation, ApplyResult], Union[None, Awaitable[None]]]
# Settles a queued operation before it is emitted; False withdraws it.
ConfirmHook = Callable[[Operation], Awaitable[bool]]

JOIN_EVENT = "joinClub"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class RealtimeTransport(Protocol):
    """
    Bidirectional event transport.

    `on` registers async handlers, awaited by the transport. Besides the
    operation events it must dispatch the connection-state events `connect`,
    `disconnect` and `error` for changes it initiates itself.
    """

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def send(self, event_name: str, payload: Dict[str, Any]) -> Optional[bool]: ...

    def on(self, event_name: str, handler: Handler) -> None: ...


class SyncChannel:
    def __init__(
        self,
        transport: RealtimeTransport,
        store: MessageStore,
        queue: OfflineQueue,
        limiter: RateLimiter,
        reconnect_attempts: int = 3,
        reconnect_delay: float = 1.0,
        reconnect_backoff: float = 1.0,
        ack_delivery: bool = False,
        dedup_window: int = 1000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        user_id: Optional[str] = None,
    ):
        self._transport = transport
        self._store = store
        self._queue = queue
        self._limiter = limiter
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._reconnect_backoff = reconnect_backoff
        self._ack_delivery = ack_delivery
        self._dedup_window = dedup_window
        self._sleep = sleep
        self._user_id = user_id

        self.state = ConnectionState.DISCONNECTED
        self._online = True
        self._logged_out = False
        self._recent: "OrderedDict[str, None]" = OrderedDict()
        self._listeners: List[InboundListener] = []
        self._confirm: Optional[ConfirmHook] = None

        for event_name in EVENT_NAMES.values():
            transport.on(event_name, partial(self.on_inbound, event_name))
        transport.on("connect", self._handle_connect)
        transport.on("disconnect", self._handle_disconnect)
        transport.on("error", self._handle_error)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._online

    @property
    def online(self) -> bool:
        return self._online

    def add_listener(self, listener: InboundListener) -> None:
        """Called for every inbound operation that changed the store."""
        self._listeners.append(listener)

    def set_confirm_hook(self, hook: Optional[ConfirmHook]) -> None:
        """Run `hook` on each queued operation before the drain emits it."""
        self._confirm = hook

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "online": self._online,
            "pending": len(self._queue),
            "delivery": "ack" if self._ack_delivery else "fire_and_forget",
        }

    # Connection lifecycle

    async def connect(self) -> bool:
        """
        Connect with bounded retries, then drain the offline queue.

        Returns False when every attempt failed; the channel then stays
        disconnected until the next manual or connectivity-triggered connect.
        """
        if self.state == ConnectionState.CONNECTED:
            return True
        if self.state == ConnectionState.CONNECTING:
            return False

        self._logged_out = False
        self.state = ConnectionState.CONNECTING
        attempts = 1 + self._reconnect_attempts
        for attempt in range(attempts):
            try:
                await self._transport.connect()
            except Exception as e:
                logger.warning(
                    f"Channel connect failed: {e}",
                    extra={"extra_data": {"attempt": attempt + 1, "attempts": attempts}}
                )
                if attempt < attempts - 1:
                    await self._sleep(self._reconnect_delay * (self._reconnect_backoff ** attempt))
                    if self._logged_out or self.state != ConnectionState.CONNECTING:
                        return False
                continue

            await self._on_connected()
            return True

        self.state = ConnectionState.DISCONNECTED
        logger.error(
            "Channel gave up reconnecting; operations will queue until reconnected",
            extra={"extra_data": {"attempts": attempts, "pending": len(self._queue)}}
        )
        return False

    async def disconnect(self) -> None:
        """Explicit logout: close the transport and stop reconnecting."""
        self._logged_out = True
        self.state = ConnectionState.DISCONNECTED
        try:
            await self._transport.disconnect()
        finally:
            logger.info("Channel disconnected by client")

    async def _on_connected(self) -> None:
        self.state = ConnectionState.CONNECTED
        logger.info("Channel connected", extra={"extra_data": {"pending": len(self._queue)}})
        for room_id in self._store.rooms():
            await self.join(room_id)
        # queued operations go out before any new local send
        await self.flush()

    async def _handle_connect(self, *_: Any) -> None:
        if self.state != ConnectionState.CONNECTED:
            await self._on_connected()

    async def _handle_disconnect(self, reason: Any = None) -> None:
        was_connected = self.state == ConnectionState.CONNECTED
        self.state = ConnectionState.DISCONNECTED
        logger.warning("Channel lost connection", extra={"extra_data": {"reason": str(reason)}})
        if was_connected and self._online and not self._logged_out:
            await self.connect()

    async def _handle_error(self, error: Any = None) -> None:
        logger.error("Channel transport error", extra={"extra_data": {"error": str(error)}})
        await self._handle_disconnect(error)

    async def set_online(self, online: bool) -> None:
        """Connectivity signal from the host environment."""
        self._online = online
        logger.info("Connectivity changed", extra={"extra_data": {"online": online}})
        if not online or self._logged_out:
            return
        if self.state == ConnectionState.DISCONNECTED:
            await self.connect()
        else:
            await self.flush()

    async def flush(self) -> int:
        """Drain the offline queue if the channel can deliver."""
        if not self.is_connected:
            return 0
        return await self._queue.drain(self._deliver)

    async def join(self, room_id: str) -> bool:
        """Subscribe to a room's events. Not queued: every connect re-joins loaded rooms."""
        if not self.is_connected:
            return False
        try:
            await self._transport.send(JOIN_EVENT, {"clubId": room_id, "userId": self._user_id})
        except Exception as e:
            logger.warning(f"Room join failed: {e}", extra={"extra_data": {"room_id": room_id}})
            return False
        logger.debug("Room joined", extra={"extra_data": {"room_id": room_id}})
        return True

    # Outbound

    def _remember(self, op_id: str) -> bool:
        """Track an op id; False if it was already seen recently."""
        if op_id in self._recent:
            self._recent.move_to_end(op_id)
            return False
        self._recent[op_id] = None
        while len(self._recent) > self._dedup_window:
            self._recent.popitem(last=False)
        return True

    async def _emit(self, op: Operation) -> bool:
        key = f"room:{op.room_id}:{op.kind.value}"
        if not self._limiter.allow(key):
            raise RateLimited(key)
        ack = await self._transport.send(op.event_name, op.model_dump(mode="json"))
        if self._ack_delivery and not ack:
            return False
        self._remember(op.op_id)
        logger.debug(
            "Operation emitted",
            extra={"extra_data": {"op_id": op.op_id, "room_id": op.room_id, "event": op.event_name}}
        )
        return True

    async def _deliver(self, op: Operation) -> bool:
        if self._confirm is not None and not await self._confirm(op):
            logger.info(
                "Queued operation withdrawn",
                extra={"extra_data": {"op_id": op.op_id, "room_id": op.room_id, "kind": op.kind.value}}
            )
            return True
        return await self._emit(op)

    async def send(self, op: Operation) -> SendResult:
        """Emit a local operation, or queue it until it can be delivered."""
        if not self.is_connected:
            self._queue.enqueue(op)
            return SendResult(status=SendStatus.QUEUED, op_id=op.op_id, detail=self.state.value)

        if len(self._queue) or self._queue.is_draining:
            # older queued operations keep their place ahead of this one
            self._queue.enqueue(op)
            await self.flush()
            status = SendStatus.QUEUED if op.op_id in self._queue else SendStatus.SENT
            return SendResult(status=status, op_id=op.op_id)

        try:
            delivered = await self._emit(op)
        except RateLimited as e:
            self._queue.enqueue(op)
            logger.warning(str(e), extra={"extra_data": {"op_id": op.op_id}})
            return SendResult(status=SendStatus.THROTTLED, op_id=op.op_id, detail=str(e))
        except Exception as e:
            self._queue.enqueue(op)
            logger.warning(f"Channel send failed, queued: {e}", extra={"extra_data": {"op_id": op.op_id}})
            return SendResult(status=SendStatus.QUEUED, op_id=op.op_id, detail=str(e))

        if not delivered:
            self._queue.enqueue(op)
            return SendResult(status=SendStatus.QUEUED, op_id=op.op_id, detail="not acknowledged")
        return SendResult(status=SendStatus.SENT, op_id=op.op_id)

    # Inbound

    async def on_inbound(self, event_name: str, payload: Any) -> Optional[ApplyResult]:
        """
        Apply one inbound event. Never raises: a failing event is logged and
        the listener carries on with the next one.
        """
        try:
            if isinstance(payload, (str, bytes)):
                payload = json.loads(payload)
            op = Operation.model_validate(payload)
            if KINDS_BY_EVENT.get(event_name) != op.kind:
                logger.warning(
                    "Event name does not match operation kind",
                    extra={"extra_data": {"event": event_name, "kind": op.kind.value, "op_id": op.op_id}}
                )
                return None

            if self._queue.acknowledge(op.op_id):
                logger.debug("Echo received for queued operation", extra={"extra_data": {"op_id": op.op_id}})

            if not self._store.is_loaded(op.room_id):
                logger.debug("Event for unloaded room ignored", extra={"extra_data": {"room_id": op.room_id}})
                return None

            if not self._remember(op.op_id):
                return ApplyResult(status=ApplyStatus.DUPLICATE, message_id=op.target_id)

            result = self._store.apply_operation(op)
            if result.status == ApplyStatus.REJECTED:
                logger.warning(
                    f"Inbound operation rejected: {result.detail}",
                    extra={"extra_data": {"op_id": op.op_id, "room_id": op.room_id, "kind": op.kind.value}}
                )
            elif result.changed:
                await self._notify(op, result)
            return result
        except Exception:
            logger.exception("Inbound event handling failed", extra={"extra_data": {"event": event_name}})
            return None

    async def _notify(self, op: Operation, result: ApplyResult) -> None:
        for listener in self._listeners:
            try:
                outcome = listener(op, result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Inbound listener failed", extra={"extra_data": {"op_id": op.op_id}})
