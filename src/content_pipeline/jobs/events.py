"""Lifecycle event delivery that never blocks queue coordination."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Protocol

from content_pipeline.jobs.models import LifecycleEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def emit(self, event: LifecycleEvent) -> None:
        """Deliver one lifecycle event."""


class LoggingEventSink:
    """Writes lifecycle events to the module logger."""

    def emit(self, event: LifecycleEvent) -> None:
        logger.info(
            "job=%s event=%s %s -> %s worker=%s",
            event.job_id,
            event.event_type,
            event.status_from.value if event.status_from else "-",
            event.status_to.value if event.status_to else "-",
            event.worker_id or "-",
        )


class RecordingEventSink:
    """Keeps events in memory; handy for tests and local inspection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[LifecycleEvent] = []

    def emit(self, event: LifecycleEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[LifecycleEvent]:
        with self._lock:
            return list(self._events)

    def event_types(self, job_id: str | None = None) -> list[str]:
        return [
            event.event_type for event in self.events if job_id is None or event.job_id == job_id
        ]


class NonBlockingEventSink:
    """Hands events to a daemon thread through a bounded queue.

    emit() never waits: when the queue is full the event is dropped and counted.
    Errors raised by the wrapped sink are logged and do not stop delivery.
    """

    def __init__(self, sink: EventSink, *, max_queue_size: int = 1_000) -> None:
        self.sink = sink
        self._queue: queue.Queue[LifecycleEvent | None] = queue.Queue(maxsize=max_queue_size)
        self._dropped = 0
        self._lock = threading.Lock()
        self._thread = threading.Thread(
            target=self._drain,
            name="content-pipeline-events",
            daemon=True,
        )
        self._thread.start()

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    def emit(self, event: LifecycleEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._lock:
                self._dropped += 1
            logger.debug("Event queue full, dropping %s for job %s", event.event_type, event.job_id)

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until queued events were delivered; False on timeout."""

        done = threading.Event()

        def _wait() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        return done.wait(timeout)

    def close(self, timeout: float = 5.0) -> None:
        self.flush(timeout)
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("Event queue still full on close; drain thread left running")
            return
        self._thread.join(timeout)

    def _drain(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self.sink.emit(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event sink failed for %s", getattr(event, "event_type", "?"))
            finally:
                self._queue.task_done()
