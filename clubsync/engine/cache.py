"""
Durable local cache.

`SqlKeyValueStore` is the synchronous get/set/remove persistent store;
`LocalCache` partitions its key space into per-room message logs, the
offline queue, deferred server confirmations and composer drafts, and
handles JSON encoding.
"""
import json
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.orm import sessionmaker

from clubsync.core.database import session_scope
from clubsync.core.logging import get_logger
from clubsync.models.cache_entry import CacheEntry

logger = get_logger(__name__)

QUEUE_KEY = "offline_queue"
CONFIRMATIONS_KEY = "pending_confirmations"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class SqlKeyValueStore:
    """Key-value store on the `cache_entries` table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, key: str) -> Optional[str]:
        with session_scope(self._session_factory) as session:
            entry = session.get(CacheEntry, key)
            return entry.value if entry is not None else None

    def set(self, key: str, value: str) -> None:
        with session_scope(self._session_factory) as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                session.add(CacheEntry(key=key, value=value))
            else:
                entry.value = value

    def remove(self, key: str) -> None:
        with session_scope(self._session_factory) as session:
            entry = session.get(CacheEntry, key)
            if entry is not None:
                session.delete(entry)


def room_key(room_id: str) -> str:
    return f"chat_{room_id}"


def applied_key(room_id: str) -> str:
    return f"applied_{room_id}"


def draft_key(room_id: str) -> str:
    return f"draft_{room_id}"


class LocalCache:
    """JSON documents over a key-value store, one array per room key."""

    def __init__(self, store: KeyValueStore):
        self._store = store

    def _read_value(self, key: str) -> Any:
        raw = self._store.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(
                f"Discarding unreadable cache entry: {e}",
                extra={"extra_data": {"key": key}}
            )
            return None

    def _read_list(self, key: str) -> List[Any]:
        data = self._read_value(key)
        if data is None:
            return []
        if not isinstance(data, list):
            logger.warning("Cache entry is not an array", extra={"extra_data": {"key": key}})
            return []
        return data

    def _write_list(self, key: str, records: List[Any]) -> None:
        self._store.set(key, json.dumps(records, ensure_ascii=False))

    # Message logs (written only by the MessageStore)

    def read_messages(self, room_id: str) -> List[dict]:
        return self._read_list(room_key(room_id))

    def write_messages(self, room_id: str, records: List[dict]) -> None:
        self._write_list(room_key(room_id), records)

    def read_applied_ops(self, room_id: str) -> List[str]:
        return [op_id for op_id in self._read_list(applied_key(room_id)) if isinstance(op_id, str)]

    def write_applied_ops(self, room_id: str, op_ids: List[str]) -> None:
        self._write_list(applied_key(room_id), op_ids)

    def drop_room(self, room_id: str) -> None:
        for key in (room_key(room_id), applied_key(room_id), draft_key(room_id)):
            self._store.remove(key)

    # Offline queue partition

    def read_queue(self) -> List[dict]:
        return self._read_list(QUEUE_KEY)

    def write_queue(self, records: List[dict]) -> None:
        self._write_list(QUEUE_KEY, records)

    def read_confirmations(self) -> Dict[str, dict]:
        """Queued op ids still owed a server confirmation, with the fields to restore on rejection."""
        data = self._read_value(CONFIRMATIONS_KEY)
        return data if isinstance(data, dict) else {}

    def write_confirmations(self, pending: Dict[str, dict]) -> None:
        if pending:
            self._store.set(CONFIRMATIONS_KEY, json.dumps(pending, ensure_ascii=False))
        else:
            self._store.remove(CONFIRMATIONS_KEY)

    # Drafts

    def read_draft(self, room_id: str) -> Optional[str]:
        return self._store.get(draft_key(room_id))

    def write_draft(self, room_id: str, text: str) -> None:
        self._store.set(draft_key(room_id), text)

    def clear_draft(self, room_id: str) -> None:
        self._store.remove(draft_key(room_id))
