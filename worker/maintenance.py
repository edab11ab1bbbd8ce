"""
Maintenance loop — the periodic chores a worker process runs alongside its pool.

    promote            every WORKER_POLL_INTERVAL   delayed → wait, expired leases → wait,
                                                    due repeatables → new items
    stuck sweep        every STUCK_SWEEP_INTERVAL   (5 min)
    pattern detection  every ERROR_PATTERN_INTERVAL (15 min)
    cleanup            every MAINTENANCE_CLEANUP_INTERVAL (daily): error log retention
                       plus old completed/failed broker items

Every task runs once at startup, then on its interval. A task that raises is
logged and tried again next interval; it never takes the loop down.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from config.settings import settings
from errors.tracking import ErrorTrackingService
from models.enums import QueueName
from queues.broker import RedisBroker
from queues.registry import QueueRegistry
from recovery.stuck_tasks import StuckTaskDetector

logger = logging.getLogger(__name__)


@dataclass
class PeriodicTask:
    name: str
    interval: float
    fn: Callable[[], object]
    last_run: Optional[float] = None

    def is_due(self, now: float) -> bool:
        return self.last_run is None or now - self.last_run >= self.interval


class MaintenanceLoop:

    def __init__(self, tasks: list[PeriodicTask], tick: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self._tasks = tasks
        self._tick = tick
        self._clock = clock
        self._stop = threading.Event()

    @classmethod
    def standard(cls, broker: RedisBroker, registry: QueueRegistry,
                 detector: StuckTaskDetector, tracking: ErrorTrackingService) -> "MaintenanceLoop":
        def promote_all():
            for queue in QueueName:
                broker.promote(queue)

        def cleanup():
            tracking.cleanup(settings.ERROR_RETENTION_DAYS)
            registry.clean_all_queues()

        return cls([
            PeriodicTask("promote", settings.WORKER_POLL_INTERVAL, promote_all),
            PeriodicTask("stuck-sweep", settings.STUCK_SWEEP_INTERVAL, detector.detect),
            PeriodicTask("error-patterns", settings.ERROR_PATTERN_INTERVAL, tracking.detect_patterns),
            PeriodicTask("cleanup", settings.MAINTENANCE_CLEANUP_INTERVAL, cleanup),
        ], tick=min(1.0, settings.WORKER_POLL_INTERVAL))

    def start(self) -> None:
        self._stop.clear()
        thread = threading.Thread(target=self._run_loop, name="maintenance", daemon=True)
        thread.start()
        logger.info(f"Maintenance loop started: {', '.join(t.name for t in self._tasks)}")

    def stop(self) -> None:
        """Signal the loop to stop. It finishes the current task and exits."""
        self._stop.set()

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(self._tick)

    def run_pending(self) -> list[str]:
        """Run every task that is due. Returns the names of the tasks that ran."""
        ran = []
        for task in self._tasks:
            now = self._clock()
            if not task.is_due(now):
                continue
            task.last_run = now
            try:
                task.fn()
            except Exception as e:
                logger.error(f"Maintenance task {task.name} failed: {e}", exc_info=True)
            ran.append(task.name)
        return ran
