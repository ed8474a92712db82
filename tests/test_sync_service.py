import asyncio

from chatsync.services.sync_queue import SyncQueue
from chatsync.services.sync_service import CoalescedSyncService
from chatsync.utils.event_bus import ReadStatusChanged, SyncWarning

from tests.conftest import settle


def make_service(kv, sink, bus, active=(), **kwargs):
    queue = SyncQueue(kv)
    options = {"debounce_seconds": 0.01, "batch_size": 10, "max_retries": 3}
    options.update(kwargs)
    service = CoalescedSyncService(queue, sink, bus, is_active=lambda key: key in active, **options)
    return queue, service


async def test_debounced_flush_sends_one_batch(kv, sink, bus):
    queue, service = make_service(kv, sink, bus)
    queue.enqueue("club:1", "club", 10)
    queue.enqueue("club:2", "club", 20)
    queue.enqueue("club:1", "club", 30)
    service.request_flush()
    service.request_flush()

    await settle()

    assert len(sink.calls) == 1
    sent = {m.conversation_key: m.read_through_ms for m in sink.calls[0]}
    assert sent == {"club:1": 30, "club:2": 20}
    assert len(queue) == 0


async def test_immediate_flush_bypasses_debounce(kv, sink, bus):
    queue, service = make_service(kv, sink, bus, debounce_seconds=10)
    queue.enqueue("dm:7", "direct", 10)

    service.request_flush(immediate=True)
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert len(sink.calls) == 1


async def test_read_status_event_flushes_immediately_for_active_conversation(kv, sink, bus):
    queue, service = make_service(kv, sink, bus, active={"dm:7"}, debounce_seconds=10)
    service.attach()
    queue.enqueue("dm:7", "direct", 10)

    bus.publish(ReadStatusChanged("dm:7", 10))
    await settle()

    assert len(sink.calls) == 1


async def test_read_status_event_is_debounced_for_background_reads(kv, sink, bus):
    queue, service = make_service(kv, sink, bus, debounce_seconds=10)
    service.attach()
    queue.enqueue("club:1", "club", 10)

    bus.publish(ReadStatusChanged("club:1", 10))
    await settle()

    assert sink.calls == []
    service.detach()


async def test_batches_are_capped_and_remaining_items_follow(kv, sink, bus):
    queue, service = make_service(kv, sink, bus)
    for i in range(15):
        queue.enqueue(f"club:{i}", "club", i)

    service.request_flush()
    await settle(0.1)

    assert [len(call) for call in sink.calls] == [10, 5]
    assert len(queue) == 0


async def test_failure_below_ceiling_retries_without_warning(kv, sink, bus):
    queue, service = make_service(kv, sink, bus)
    warnings = []
    bus.subscribe(SyncWarning, warnings.append)
    sink.failures = 2
    queue.enqueue("club:42", "club", 500)

    service.request_flush(immediate=True)
    await settle(0.1)

    assert len(sink.calls) == 3
    assert len(queue) == 0
    assert warnings == []


async def test_item_dropped_after_exceeding_retry_ceiling(kv, sink, bus):
    queue, service = make_service(kv, sink, bus)
    warnings = []
    bus.subscribe(SyncWarning, warnings.append)
    sink.failures = 100
    queue.enqueue("club:1", "club", 1)
    queue.enqueue("club:2", "club", 2)

    service.request_flush(immediate=True)
    await settle(0.2)

    # first attempt plus MAX_RETRIES retries, then nothing more
    assert len(sink.calls) == 4
    assert len(queue) == 0
    assert len(warnings) == 1
    assert set(warnings[0].dropped_keys) == {"club:1", "club:2"}


async def test_flush_in_flight_is_not_duplicated(kv, sink, bus):
    queue, service = make_service(kv, sink, bus)
    sink.delay = 0.05
    queue.enqueue("club:42", "club", 100)

    first = asyncio.ensure_future(service.flush())
    await asyncio.sleep(0.01)
    queue.enqueue("club:42", "club", 200)
    second = await service.flush()
    await first
    await settle(0.1)

    assert second is False
    assert [[m.read_through_ms for m in call] for call in sink.calls] == [[100], [200]]
    assert len(queue) == 0


async def test_remote_backoff_retries_inside_one_flush(kv, sink, bus):
    queue, service = make_service(kv, sink, bus, remote_attempts=3, backoff_seconds=0.001)
    sink.failures = 2
    queue.enqueue("dm:7", "direct", 5)

    assert await service.flush() is True
    assert len(sink.calls) == 3
    assert queue.get("dm:7") is None


async def test_shutdown_flush_is_fire_and_forget(kv, sink, bus):
    queue, service = make_service(kv, sink, bus, debounce_seconds=10)
    queue.enqueue("dm:7", "direct", 5)

    task = service.flush_now_nowait()
    assert isinstance(task, asyncio.Task)
    await task

    assert len(sink.calls) == 1
