"""
Shared fixtures: a recording realtime transport and SQLite-backed caches.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from clubsync.core.config import Settings
from clubsync.core.database import create_cache_engine, create_session_factory, init_cache_schema
from clubsync.engine.cache import LocalCache, SqlKeyValueStore
from clubsync.engine.session import build_session
from clubsync.schemas.message import Message

BASE_TIME = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


class FakeTransport:
    """In-memory realtime transport that records outbound events."""

    def __init__(self, fail_connects: int = 0, ack: Optional[bool] = True):
        self.handlers: Dict[str, Any] = {}
        self.sent: List[Tuple[str, dict]] = []
        self.joined: List[dict] = []
        self.fail_connects = fail_connects
        self.connect_calls = 0
        self.connected = False
        self.ack = ack
        self.send_error: Optional[Exception] = None

    def on(self, event_name, handler):
        self.handlers[event_name] = handler

    async def connect(self):
        self.connect_calls += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise ConnectionError("connection refused")
        self.connected = True

    async def disconnect(self):
        self.connected = False

    async def send(self, event_name, payload):
        if self.send_error is not None:
            raise self.send_error
        if event_name == "joinClub":
            self.joined.append(payload)
            return self.ack
        self.sent.append((event_name, payload))
        return self.ack

    async def emit(self, event_name, payload):
        """Deliver an inbound event as the server would."""
        return await self.handlers[event_name](payload)

    async def drop(self, reason="transport close"):
        self.connected = False
        await self.handlers["disconnect"](reason)

    @property
    def sent_op_ids(self) -> List[str]:
        return [payload["op_id"] for _, payload in self.sent]


async def no_sleep(_delay: float) -> None:
    return None


def make_message(message_id: str, room_id: str = "R1", minutes: int = 0, **kwargs) -> Message:
    fields = {
        "id": message_id,
        "room_id": room_id,
        "sender_id": "userB",
        "sender_name": "Bob",
        "body": f"body of {message_id}",
        "created_at": BASE_TIME + timedelta(minutes=minutes),
    }
    fields.update(kwargs)
    return Message(**fields)


class RecordingNotifier:
    def __init__(self):
        self.inbound: List[Tuple[str, Message]] = []
        self.alerts: List[Tuple[str, str]] = []

    def inbound_message(self, room_id, message):
        self.inbound.append((room_id, message))

    def alert(self, level, text):
        self.alerts.append((level, text))


@pytest.fixture
def cache_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'cache.db'}"


@pytest.fixture
def settings(cache_url) -> Settings:
    return Settings(
        cache_url=cache_url,
        user_id="userA",
        user_name="Alice",
        api_base_url="",
        reconnect_delay_seconds=0,
        log_level="DEBUG",
        log_format="text",
    )


@pytest.fixture
def cache(cache_url) -> LocalCache:
    engine = create_cache_engine(cache_url)
    init_cache_schema(engine)
    return LocalCache(SqlKeyValueStore(create_session_factory(engine)))


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def session(settings, transport, notifier):
    return build_session(settings, transport, notifier=notifier, sleep=no_sleep)
