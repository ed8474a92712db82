import asyncio
import logging
from typing import Callable, List, Optional, Protocol

from chatsync.errors import TransientSyncFailure
from chatsync.schemas.sync import QueuedSync, ReadMarker
from chatsync.services.sync_queue import SyncQueue
from chatsync.utils.event_bus import EventBus, ReadStatusChanged, SyncWarning
from chatsync.utils.scheduling import DebouncedCall


logger = logging.getLogger(__name__)


class ReadMarkerSink(Protocol):

    async def upsert_read_markers(self, batch: List[ReadMarker]) -> None:
        ...


class CoalescedSyncService:
    """Debounces and batches queued read markers to the remote store.

    One flush runs at a time. A flush takes up to ``batch_size`` pending
    entries and sends them in a single upsert. A failed upsert bumps the
    retry count of every entry in the batch; entries past ``max_retries``
    are dropped and a single ``SyncWarning`` is published for the flush.
    """

    def __init__(
        self,
        queue: SyncQueue,
        sink: ReadMarkerSink,
        bus: EventBus,
        is_active: Callable[[str], bool] = lambda key: False,
        debounce_seconds: float = 0.5,
        batch_size: int = 10,
        max_retries: int = 3,
        remote_attempts: int = 1,
        backoff_seconds: float = 0.2,
    ) -> None:
        self._queue = queue
        self._sink = sink
        self._bus = bus
        self._is_active = is_active
        self._batch_size = batch_size
        self._max_retries = max_retries
        self._remote_attempts = remote_attempts
        self._backoff_seconds = backoff_seconds
        self._timer = DebouncedCall(self._flush_from_timer, debounce_seconds)
        self._flush_lock_held = False
        self._rerun_immediately = False
        self._stopped = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self) -> None:
        self._stopped = False
        if self._unsubscribe is None:
            self._unsubscribe = self._bus.subscribe(ReadStatusChanged, self._on_read_status_changed)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._stopped = True
        self._timer.cancel()

    def _on_read_status_changed(self, event: ReadStatusChanged) -> None:
        self.request_flush(immediate=self._is_active(event.conversation_key))

    def request_flush(self, immediate: bool = False) -> None:
        if self._flush_lock_held:
            # the running flush schedules its own follow-up
            if immediate:
                self._rerun_immediately = True
                self._timer.cancel()
            return
        if immediate:
            self._timer.run_now()
        else:
            self._timer.schedule()

    def flush_now_nowait(self) -> asyncio.Task:
        """Fire-and-forget immediate flush, used at shutdown."""
        self._timer.cancel()
        return asyncio.get_running_loop().create_task(self.flush())

    async def _flush_from_timer(self) -> None:
        await self.flush()

    async def flush(self) -> bool:
        """Send one batch. Returns True when the batch was confirmed."""
        if self._flush_lock_held:
            self._rerun_immediately = True
            return False
        self._flush_lock_held = True
        confirmed = False
        try:
            batch = self._queue.take_batch(self._batch_size)
            if not batch:
                return True
            confirmed = await self._send(batch)
        finally:
            self._flush_lock_held = False
        self._after_flush()
        return confirmed

    async def _send(self, batch: List[QueuedSync]) -> bool:
        markers = [item.marker() for item in batch]
        logger.debug("Syncing %d read markers", len(markers))
        try:
            await self._upsert_with_backoff(markers)
        except TransientSyncFailure as exc:
            dropped = self._queue.fail(batch, self._max_retries)
            logger.info("Read-status sync of %d markers failed: %s", len(batch), exc)
            if dropped:
                self._bus.publish(
                    SyncWarning(
                        message="Some conversations could not be marked as read. Please check your connection.",
                        dropped_keys=tuple(item.conversation_key for item in dropped),
                    )
                )
            return False
        removed = self._queue.confirm(batch)
        logger.debug("Confirmed read markers for %s", ", ".join(removed) or "nothing")
        return True

    async def _upsert_with_backoff(self, markers: List[ReadMarker]) -> None:
        delay = self._backoff_seconds
        for attempt in range(1, self._remote_attempts + 1):
            try:
                await self._sink.upsert_read_markers(markers)
                return
            except TransientSyncFailure:
                if attempt >= self._remote_attempts:
                    raise
            except Exception as exc:
                if attempt >= self._remote_attempts:
                    raise TransientSyncFailure(str(exc)) from exc
            await asyncio.sleep(delay)
            delay *= 2

    def _after_flush(self) -> None:
        if self._stopped:
            # detached: the shutdown flush is the last attempt
            return
        if self._rerun_immediately:
            self._rerun_immediately = False
            self._timer.run_now()
        elif self._queue.pending_count():
            self._timer.schedule()
