"""
Worker pool — leases items from every broker queue and runs them on a thread pool.

Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      WorkerPool                          │
    │                                                          │
    │  Dispatcher Thread                                       │
    │  ┌────────────────────────────┐                          │
    │  │ for queue in queues:       │  ← one reserve() per     │
    │  │   slot free? reserve()     │    queue per pass, so    │
    │  └──────────┬─────────────────┘    no queue starves      │
    │             │ submit()                                   │
    │             ▼                                            │
    │  ┌──────────────────────────────────────────┐            │
    │  │ ThreadPoolExecutor (N threads)           │            │
    │  │  ┌────────┐ ┌────────┐ ┌────────┐        │            │
    │  │  │execute │ │execute │ │(idle)  │  ...   │            │
    │  │  └────────┘ └────────┘ └────────┘        │            │
    │  └──────────────────────────────────────────┘            │
    └──────────────────────────────────────────────────────────┘

A semaphore with N slots guards reserve(): an item is only leased when a thread
is free to run it, so nothing sits leased in a local backlog while its lease ticks.
The lease is the queue timeout plus a grace period; if this process dies the
lease expires and the broker hands the item to another worker.

When a full pass over every queue finds nothing, the dispatcher sleeps for
WORKER_POLL_INTERVAL.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Iterable

from config.settings import settings
from models.enums import QueueName
from queues.broker import BrokerItem, RedisBroker
from queues.config import get_queue_config
from worker.executor import JobExecutor

logger = logging.getLogger(__name__)


def lease_seconds(queue: QueueName) -> float:
    return get_queue_config(queue).timeout + settings.LEASE_GRACE_SECONDS


class WorkerPool:

    def __init__(self, broker: RedisBroker, executor: JobExecutor,
                 pool_size: int = settings.WORKER_POOL_SIZE,
                 poll_interval: float = settings.WORKER_POLL_INTERVAL,
                 queues: Iterable[QueueName] = tuple(QueueName)):
        self._broker = broker
        self._job_executor = executor
        self._pool_size = pool_size
        self._poll_interval = poll_interval
        self._queues = tuple(queues)
        self._executor = ThreadPoolExecutor(
            max_workers=pool_size,
            thread_name_prefix="job-worker",
        )
        self._slots = threading.BoundedSemaphore(pool_size)
        self._running = False

    def start(self) -> None:
        """Start the dispatcher thread that feeds items to the thread pool."""
        self._running = True
        dispatcher = threading.Thread(target=self._dispatch_loop, name="job-dispatcher", daemon=True)
        dispatcher.start()
        logger.info(f"Worker pool started with {self._pool_size} threads over {len(self._queues)} queues")

    def stop(self) -> None:
        """Signal the dispatcher to stop, then wait for running jobs to finish."""
        self._running = False
        self._executor.shutdown(wait=True)
        logger.info("Worker pool stopped")

    def _dispatch_loop(self) -> None:
        while self._running:
            try:
                if self.dispatch_once() == 0:
                    time.sleep(self._poll_interval)
            except Exception as e:
                logger.error(f"Dispatch error: {e}", exc_info=True)
                time.sleep(self._poll_interval)

    def dispatch_once(self) -> int:
        """One pass over every queue. Returns how many items were submitted."""
        dispatched = 0
        for queue in self._queues:
            if not self._slots.acquire(blocking=False):
                break
            try:
                item = self._broker.reserve(queue, lease_seconds(queue))
            except Exception:
                self._slots.release()
                raise
            if item is None:
                self._slots.release()
                continue

            logger.debug(f"Dispatching {item.correlation_key} to thread pool")
            try:
                future: Future = self._executor.submit(self._run, item)
            except RuntimeError:
                # pool is shutting down
                self._slots.release()
                self._broker.retry(queue, item.id, 0, "worker shutting down")
                raise
            future.add_done_callback(self._on_job_done)
            dispatched += 1
        return dispatched

    def _run(self, item: BrokerItem) -> dict:
        try:
            return self._job_executor.execute(item)
        finally:
            self._slots.release()

    def _on_job_done(self, future: Future) -> None:
        """
        Callback fired when a worker thread finishes executing a job.

        Used only for logging unhandled exceptions — all normal
        success/failure handling happens inside JobExecutor.execute().
        """
        try:
            exc = future.exception()
            if exc:
                logger.error(f"Unhandled worker exception: {exc}")
        except Exception as e:
            logger.error(f"Callback error: {e}")
