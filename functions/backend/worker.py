"""
Worker pool that consumes profile events and runs reconciliation.

Each worker thread blocks on the queue, hands the event to the identity
service and goes back for more. Retries sleep inside the worker that owns
the identity, so other identities keep flowing through the remaining workers.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from backend.config import get_settings
from backend.dependencies import get_identity_service, get_queue_client, shutdown
from backend.queue import EventQueue
from backend.service import IdentityConsistencyService

logger = logging.getLogger(__name__)


def process_next(
    *,
    service: Optional[IdentityConsistencyService] = None,
    queue: Optional[EventQueue] = None,
    block: bool = True,
    timeout: Optional[int] = None,
) -> bool:
    """
    Fetch and process one event from the queue. Returns True if an event was consumed.
    """
    # An empty in-memory queue is falsy, so compare against None.
    if service is None:
        service = get_identity_service()
    if queue is None:
        queue = get_queue_client()

    event = queue.consume(block=block, timeout=timeout)
    if event is None:
        return False

    try:
        task = service.dispatch(event)
    except Exception:
        # The task row already records the failure; keep the worker alive.
        logger.exception(
            "Failed to process %s event %s for %s",
            event.kind.value,
            event.delivery_id,
            event.identity,
        )
        return True

    if task is not None:
        logger.info(
            "[%s] %s for %s -> %s (%s)",
            event.delivery_id,
            task.action.value,
            task.identity,
            task.status.value,
            task.outcome,
        )
    return True


def drain(
    *,
    service: Optional[IdentityConsistencyService] = None,
    queue: Optional[EventQueue] = None,
) -> int:
    """Process queued events without blocking until the queue is empty."""
    processed = 0
    while process_next(service=service, queue=queue, block=False):
        processed += 1
    return processed


class WorkerPool:
    """A fixed number of threads consuming from one queue."""

    def __init__(
        self,
        service: IdentityConsistencyService,
        queue: EventQueue,
        size: int = 4,
        poll_timeout_seconds: int = 2,
    ):
        if size < 1:
            raise ValueError("WorkerPool needs at least one worker")
        self.service = service
        self.queue = queue
        self.size = size
        self.poll_timeout_seconds = poll_timeout_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._run, name=f"identity-worker-{index}", daemon=True
            )
            for index in range(self.size)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d identity workers", self.size)

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Ask workers to exit and wait for them. A worker in the middle of an
        attempt finishes it first.
        """
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Stopped identity workers")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                process_next(
                    service=self.service,
                    queue=self.queue,
                    block=True,
                    timeout=self.poll_timeout_seconds,
                )
            except Exception:
                logger.exception("Worker loop error")
                self._stop.wait(self.poll_timeout_seconds)


def run_loop() -> None:
    """
    Run the worker pool until interrupted. Intended to be run under systemd/supervisor.
    """
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO)
    )
    service = get_identity_service()
    pool = WorkerPool(
        service,
        get_queue_client(),
        size=settings.worker_pool_size,
        poll_timeout_seconds=settings.worker_poll_timeout_seconds,
    )
    pool.start()
    try:
        while True:
            try:
                service.requeue_stale_tasks(settings.stale_task_timeout_seconds)
            except Exception:
                logger.exception("Failed to requeue stale tasks")
            time.sleep(settings.stale_task_timeout_seconds / 3)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        pool.stop(timeout=settings.worker_poll_timeout_seconds * 2)
        shutdown()


if __name__ == "__main__":
    run_loop()
