"""
Tests for the durable offline queue.
"""
import pytest

from clubsync.core.database import create_cache_engine, create_session_factory, init_cache_schema
from clubsync.engine import operations
from clubsync.engine.cache import LocalCache, SqlKeyValueStore
from clubsync.engine.offline_queue import OfflineQueue


def reopen_cache(cache_url: str) -> LocalCache:
    """A fresh engine over the same file, as after a process restart."""
    engine = create_cache_engine(cache_url)
    init_cache_schema(engine)
    return LocalCache(SqlKeyValueStore(create_session_factory(engine)))


class Recorder:
    def __init__(self, fail_on=None):
        self.sent = []
        self.fail_on = fail_on

    async def __call__(self, op):
        if op.op_id == self.fail_on:
            raise ConnectionError("send failed")
        self.sent.append(op.op_id)
        return True


class TestEnqueue:

    def test_enqueue_persists(self, cache):
        queue = OfflineQueue(cache)
        op = operations.send("R1", "userA", "Alice", body="hi")

        assert queue.enqueue(op) is True
        assert len(cache.read_queue()) == 1

    def test_same_op_id_not_queued_twice(self, cache):
        queue = OfflineQueue(cache)
        op = operations.send("R1", "userA", "Alice", body="hi")

        queue.enqueue(op)
        assert queue.enqueue(op) is False
        assert len(queue) == 1

    def test_remove_retracts(self, cache):
        queue = OfflineQueue(cache)
        op = operations.send("R1", "userA", "Alice", body="hi")
        queue.enqueue(op)

        assert queue.remove(op.op_id) is True
        assert queue.remove(op.op_id) is False
        assert cache.read_queue() == []


class TestDrain:

    @pytest.mark.asyncio
    async def test_survives_restart_and_delivers_in_order_once(self, cache, cache_url):
        queue = OfflineQueue(cache)
        ops = [operations.send("R1", "userA", "Alice", body=f"msg {i}") for i in range(3)]
        for op in ops:
            queue.enqueue(op)

        restarted = OfflineQueue(reopen_cache(cache_url))
        recorder = Recorder()

        assert await restarted.drain(recorder) == 3
        assert recorder.sent == [op.op_id for op in ops]
        assert await restarted.drain(recorder) == 0
        assert recorder.sent == [op.op_id for op in ops]

    @pytest.mark.asyncio
    async def test_failure_stops_drain_and_keeps_order(self, cache):
        queue = OfflineQueue(cache)
        ops = [operations.mark_read("R1", "userA", f"m{i}") for i in range(3)]
        for op in ops:
            queue.enqueue(op)

        delivered = await queue.drain(Recorder(fail_on=ops[1].op_id))

        assert delivered == 1
        assert [op.op_id for op in queue.pending()] == [ops[1].op_id, ops[2].op_id]

    @pytest.mark.asyncio
    async def test_false_result_counts_as_failure(self, cache):
        queue = OfflineQueue(cache)
        queue.enqueue(operations.mark_read("R1", "userA", "m1"))

        async def unacknowledged(op):
            return False

        assert await queue.drain(unacknowledged) == 0
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_echoed_entry_discarded_without_resend(self, cache):
        queue = OfflineQueue(cache)
        echoed = operations.send("R1", "userA", "Alice", body="one")
        other = operations.send("R1", "userA", "Alice", body="two")
        queue.enqueue(echoed)
        queue.enqueue(other)

        assert queue.acknowledge(echoed.op_id) is True
        recorder = Recorder()
        assert await queue.drain(recorder) == 1
        assert recorder.sent == [other.op_id]
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_entries_added_during_drain_are_sent(self, cache):
        queue = OfflineQueue(cache)
        first = operations.mark_read("R1", "userA", "m1")
        late = operations.mark_read("R1", "userA", "m2")
        queue.enqueue(first)
        sent = []

        async def send(op):
            sent.append(op.op_id)
            if op.op_id == first.op_id:
                queue.enqueue(late)
            return True

        assert await queue.drain(send) == 2
        assert sent == [first.op_id, late.op_id]

    def test_drop_room(self, cache):
        queue = OfflineQueue(cache)
        queue.enqueue(operations.mark_read("R1", "userA", "m1"))
        queue.enqueue(operations.mark_read("R2", "userA", "m1"))

        assert queue.drop_room("R1") == 1
        assert [op.room_id for op in queue.pending()] == ["R2"]
