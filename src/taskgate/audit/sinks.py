"""Audit sinks: where the engine publishes committed mutation events."""

import asyncio
import logging
from typing import Optional

from taskgate.audit.recorder import AuditRecorder
from taskgate.config import AuditMode, settings
from taskgate.models import TaskMutationEvent
from taskgate.observability.metrics import metrics

logger = logging.getLogger("taskgate.audit")


class InlineAuditSink:
    """Records on the request path with attempt-then-swallow semantics."""

    def __init__(self, recorder: Optional[AuditRecorder] = None):
        self.recorder = recorder or AuditRecorder()

    async def publish(self, event: TaskMutationEvent) -> None:
        await self.recorder.record_event(event)

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def drain(self) -> None:
        return None


class QueuedAuditSink:
    """
    Fire-and-forget sink backed by an asyncio.Queue and one consumer task.

    publish() never blocks: when the queue is full the event is dropped,
    logged and counted.
    """

    def __init__(
        self,
        recorder: Optional[AuditRecorder] = None,
        maxsize: Optional[int] = None,
        drain_timeout: Optional[float] = None,
    ):
        self.recorder = recorder or AuditRecorder()
        self.maxsize = settings.audit_queue_size if maxsize is None else maxsize
        self.drain_timeout = (
            settings.audit_drain_timeout_seconds if drain_timeout is None else drain_timeout
        )
        self._queue: asyncio.Queue[TaskMutationEvent] = asyncio.Queue(maxsize=self.maxsize)
        self._consumer: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def publish(self, event: TaskMutationEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            metrics.inc_counter("audit.queue.dropped")
            logger.warning(
                f"Audit queue full ({self.maxsize}); dropped {event.action.value} "
                f"event for task {event.task_id}"
            )
            return
        metrics.set_gauge("audit.queue.depth", self._queue.qsize())

    async def _consume(self) -> None:
        logger.info("Audit consumer started")
        while True:
            event = await self._queue.get()
            try:
                await self.recorder.record_event(event)
            except Exception as e:
                # record_event already swallows write failures; anything else
                # must not kill the consumer.
                logger.error(f"Audit consumer error: {e}", exc_info=True)
            finally:
                self._queue.task_done()
                metrics.set_gauge("audit.queue.depth", self._queue.qsize())

    async def start(self) -> None:
        """Start the background consumer."""
        if self.running:
            return
        self._consumer = asyncio.create_task(self._consume())

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def stop(self) -> None:
        """Drain with a timeout, then cancel the consumer."""
        if self._consumer is None:
            return

        try:
            await asyncio.wait_for(self.drain(), timeout=self.drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Audit queue not drained within {self.drain_timeout}s; "
                f"{self._queue.qsize()} events lost"
            )

        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None
        logger.info("Audit consumer stopped")


def build_audit_sink(mode: Optional[AuditMode] = None):
    """Sink selected by ``settings.audit_mode``."""
    mode = mode or settings.audit_mode
    if mode == AuditMode.INLINE:
        return InlineAuditSink()
    return QueuedAuditSink()
