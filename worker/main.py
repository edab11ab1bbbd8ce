"""
Worker process entry point.

This is a SEPARATE process from the FastAPI API server. It runs:

    1. WorkerPool — leases items from every broker queue and executes them
       in a thread pool
    2. MaintenanceLoop — promotes delayed/expired/repeatable items, sweeps
       stuck tasks, detects error patterns, cleans old data

Both run as daemon threads. The main thread just waits for Ctrl+C (SIGINT)
or a kill signal (SIGTERM) to shut down gracefully.

Run as many of these as you like: the broker's leases keep two processes from
running the same item, and repeatable fires are claimed in Redis.

To run:
    python -m worker.main
"""

import logging
import signal
import threading

from redis import Redis

from config.settings import settings
from errors.circuit_breaker import CircuitBreakerRegistry
from errors.tracking import ErrorTrackingService
from jobs.registry import handlers, load_handler_modules
from models.base import Base, SyncSessionLocal, sync_engine
from queues.broker import RedisBroker
from queues.compensation import CompensationLog
from queues.registry import QueueRegistry
from recovery.stuck_tasks import InMemoryStuckCounterStore, StuckTaskDetector
from scheduler.recurring import RecurringScheduler
from worker.executor import JobExecutor
from worker.maintenance import MaintenanceLoop
from worker.pool import WorkerPool
from worker.retry import RetryHandler

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    # Safe to call from every process: a no-op once the tables exist
    logger.info("Ensuring database tables exist...")
    Base.metadata.create_all(sync_engine)

    load_handler_modules(settings.HANDLER_MODULES)
    logger.info(f"Handlers registered for: {handlers.registered_types() or 'none'}")

    redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    broker = RedisBroker(redis_client)
    compensation_log = CompensationLog()
    tracking = ErrorTrackingService(SyncSessionLocal)
    registry = QueueRegistry(SyncSessionLocal, broker, compensation_log)
    detector = StuckTaskDetector(
        SyncSessionLocal, broker, tracking, InMemoryStuckCounterStore(), compensation_log
    )

    # Idempotent: re-registering a schedule replaces it under the same key
    RecurringScheduler(broker).initialize_defaults()

    # Handlers reach these through JobContext.call_service; the API reads and resets them
    breakers = CircuitBreakerRegistry(redis_client)

    executor = JobExecutor(
        SyncSessionLocal, broker, handlers, RetryHandler(broker, tracking), detector, breakers
    )
    pool = WorkerPool(broker, executor)
    pool.start()

    maintenance = MaintenanceLoop.standard(broker, registry, detector, tracking)
    maintenance.start()

    # ── Graceful shutdown on Ctrl+C or SIGTERM ──────────────────
    shutdown_event = threading.Event()

    def shutdown(signum, frame):
        logger.info("Shutdown signal received, stopping...")
        maintenance.stop()
        pool.stop()
        shutdown_event.set()

    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    logger.info("Worker process running. Press Ctrl+C to stop.")

    # Event.wait() instead of signal.pause() for Windows compatibility
    shutdown_event.wait()

    logger.info("Worker process exited")


if __name__ == "__main__":
    main()
