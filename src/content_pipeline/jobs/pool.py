"""Fixed-size pool of worker threads sharing the job store."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from content_pipeline.jobs.repository import JobRepository
from content_pipeline.jobs.worker import JobWorker, WorkerRunSummary, stop_signal_handlers

logger = logging.getLogger(__name__)

RepositoryFactory = Callable[[], JobRepository]
WorkerFactory = Callable[[JobRepository, str, threading.Event], JobWorker]


class WorkerPool:
    """Runs `size` JobWorker threads, each with its own repository.

    The schema must already be migrated; workers only open connections.
    stop() prevents new claims, join() waits up to the grace period for
    in-flight attempts and leaves anything still running to the sweeper.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        size: int,
        repository_factory: RepositoryFactory,
        worker_factory: WorkerFactory,
        poll_interval_seconds: float = 2.0,
        graceful_shutdown_seconds: float = 30.0,
        worker_id_prefix: str = "worker",
    ) -> None:
        if size <= 0:
            raise ValueError("Worker pool size must be positive.")
        self.size = size
        self.repository_factory = repository_factory
        self.worker_factory = worker_factory
        self.poll_interval_seconds = poll_interval_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.worker_id_prefix = worker_id_prefix
        self.stop_event = threading.Event()
        self._lock = threading.Lock()
        self._summary = WorkerRunSummary()
        self._threads: list[threading.Thread] = []
        self._max_idle_polls: int | None = None

    @property
    def summary(self) -> WorkerRunSummary:
        with self._lock:
            snapshot = WorkerRunSummary()
            snapshot.add(self._summary)
            return snapshot

    def start(self, *, max_idle_polls: int | None = None) -> None:
        """Start worker threads; with max_idle_polls a thread exits once the queue stays empty."""

        if self._threads:
            raise RuntimeError("Worker pool already started.")
        self._max_idle_polls = max_idle_polls
        for index in range(1, self.size + 1):
            worker_id = f"{self.worker_id_prefix}-{index}"
            thread = threading.Thread(
                target=self._run_worker,
                args=(worker_id,),
                name=worker_id,
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Worker pool started with %d workers", self.size)

    def stop(self) -> None:
        """Stop claiming new jobs; in-flight attempts continue."""

        if not self.stop_event.is_set():
            logger.info("Worker pool stop requested")
        self.stop_event.set()

    def join(self, grace_seconds: float | None = None) -> bool:
        """Wait for worker threads; False when some are still busy after the grace period."""

        timeout = self.graceful_shutdown_seconds if grace_seconds is None else grace_seconds
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        alive = [thread.name for thread in self._threads if thread.is_alive()]
        if alive:
            logger.warning(
                "Workers still running after %.1fs grace period: %s; "
                "their jobs will be reclaimed by the sweeper",
                timeout,
                ", ".join(alive),
            )
            return False
        return True

    def run(self, *, max_idle_polls: int | None = None) -> WorkerRunSummary:
        """Run the pool in the foreground until stopped (or idle) and return totals."""

        with stop_signal_handlers(self.stop):
            self.start(max_idle_polls=max_idle_polls)
            try:
                while any(thread.is_alive() for thread in self._threads):
                    if self.stop_event.wait(0.2):
                        break
            finally:
                self.stop()
                self.join()
        return self.summary

    def _run_worker(self, worker_id: str) -> None:
        repository = self.repository_factory()
        worker = self.worker_factory(repository, worker_id, self.stop_event)
        consecutive_idle = 0
        try:
            while not self.stop_event.is_set():
                try:
                    summary = worker.run_once()
                except Exception:  # noqa: BLE001
                    logger.exception("Worker %s error", worker_id)
                    self.stop_event.wait(self.poll_interval_seconds)
                    continue
                with self._lock:
                    self._summary.add(summary)
                if summary.processed:
                    consecutive_idle = 0
                    continue
                consecutive_idle += 1
                if self._max_idle_polls is not None and consecutive_idle >= self._max_idle_polls:
                    return
                self.stop_event.wait(self.poll_interval_seconds)
        finally:
            worker.close()
            repository.close()
            logger.debug("Worker %s stopped", worker_id)
