"""
Tests for JobExecutor — one leased broker item from start to finish.

Items are admitted through the real QueueRegistry so the executor sees exactly
what production admission produces.
"""

import uuid

import pytest

from errors.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from errors.tracking import ErrorLogFilters
from jobs.base import AbstractJobHandler, JobContext, JobResult
from jobs.registry import HandlerRegistry
from models.enums import JobStatus, JobType, QueueName
from models.job import Job
from models.payloads import ContentGeneratePayload
from queues.registry import JobOptions
from recovery.stuck_tasks import counter_key
from worker.executor import JobExecutor, failure_from_result
from worker.retry import RetryHandler


class RecordingHandler(AbstractJobHandler):
    """Returns a canned result and remembers every context it was called with."""

    def __init__(self, job_type=JobType.CONTENT_GENERATE, result=None, error=None):
        self._job_type = job_type
        self._result = result or JobResult.ok("done", pages=3)
        self._error = error
        self.calls: list[JobContext] = []

    @property
    def job_type(self):
        return self._job_type

    def run(self, context):
        self.calls.append(context)
        if self._error is not None:
            raise self._error
        return self._result


@pytest.fixture
def handlers():
    return HandlerRegistry()


@pytest.fixture
def executor(session_factory, broker, handlers, tracking, detector):
    return JobExecutor(session_factory, broker, handlers, RetryHandler(broker, tracking), detector)


def _admit_and_reserve(registry, broker, **options):
    handle = registry.admit("CONTENT_GENERATE", {"siteId": "site-1"}, JobOptions(**options))
    return handle.job_id, broker.reserve(QueueName.CONTENT, 60)


def _get(session_factory, job_id):
    with session_factory() as session:
        return session.get(Job, uuid.UUID(job_id))


def test_success_completes_job(executor, handlers, registry, broker, session_factory):
    handler = RecordingHandler()
    handlers.register(handler)
    job_id, item = _admit_and_reserve(registry, broker)

    outcome = executor.execute(item)

    assert outcome["status"] == "completed"
    job = _get(session_factory, job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 1
    assert job.result["pages"] == 3
    assert job.result["message"] == "done"
    assert "execution_time_sec" in job.result
    assert job.started_at is not None and job.completed_at is not None
    assert broker.counts(QueueName.CONTENT)["active"] == 0


def test_handler_receives_typed_context(executor, handlers, registry, broker):
    handler = RecordingHandler()
    handlers.register(handler)
    job_id, item = _admit_and_reserve(registry, broker)

    executor.execute(item)

    [context] = handler.calls
    assert context.job_id == job_id
    assert context.attempt == 1
    assert context.site_id == "site-1"
    assert context.correlation_key == item.correlation_key
    assert isinstance(context.payload, ContentGeneratePayload)


def test_success_releases_dedup_and_resets_stuck_count(executor, handlers, registry, broker, detector, stuck_counters):
    handlers.register(RecordingHandler())
    stuck_counters.increment(counter_key("site-1", "CONTENT_GENERATE"))
    _, item = _admit_and_reserve(registry, broker)

    executor.execute(item)

    assert detector.stuck_count("site-1", "CONTENT_GENERATE") == 0
    assert registry.admit("CONTENT_GENERATE", {"siteId": "site-1"}).created


def test_failure_goes_to_retry(executor, handlers, registry, broker, session_factory, clock):
    handlers.register(RecordingHandler(error=RuntimeError("upstream hiccup")))
    job_id, item = _admit_and_reserve(registry, broker)

    outcome = executor.execute(item)

    assert outcome["status"] == "retrying"
    job = _get(session_factory, job_id)
    assert job.status == JobStatus.RETRYING.value
    assert job.error == "upstream hiccup"
    assert broker.counts(QueueName.CONTENT)["delayed"] == 1


def test_retry_then_success(executor, handlers, registry, broker, session_factory, clock):
    flaky = RecordingHandler(error=RuntimeError("upstream hiccup"))
    handlers.register(flaky)
    job_id, item = _admit_and_reserve(registry, broker)
    executor.execute(item)

    flaky._error = None
    clock.advance(400)
    broker.promote(QueueName.CONTENT)
    executor.execute(broker.reserve(QueueName.CONTENT, 60))

    job = _get(session_factory, job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 2
    assert job.error is None
    assert [c.attempt for c in flaky.calls] == [1, 2]


def test_failed_result_is_treated_like_an_exception(executor, handlers, registry, broker, session_factory):
    handlers.register(RecordingHandler(result=JobResult.failed("bad input", retryable=False)))
    job_id, item = _admit_and_reserve(registry, broker)

    outcome = executor.execute(item)

    assert outcome["status"] == "failed"
    assert _get(session_factory, job_id).status == JobStatus.FAILED.value


def test_exhausted_attempts_dead_letter(executor, handlers, registry, broker, session_factory, tracking):
    handlers.register(RecordingHandler(error=RuntimeError("still broken")))
    job_id, item = _admit_and_reserve(registry, broker, attempts=1)

    executor.execute(item)

    assert _get(session_factory, job_id).status == JobStatus.FAILED.value
    assert broker.counts(QueueName.CONTENT)["failed"] == 1
    [entry] = tracking.query(ErrorLogFilters(job_id=job_id)).entries
    assert entry.severity == "HIGH"


def test_missing_handler_dead_letters_immediately(executor, registry, broker, session_factory, tracking):
    job_id, item = _admit_and_reserve(registry, broker, attempts=5)

    executor.execute(item)

    assert _get(session_factory, job_id).status == JobStatus.FAILED.value
    [entry] = tracking.query(ErrorLogFilters(job_id=job_id)).entries
    assert entry.category == "CONFIGURATION"
    assert entry.severity == "CRITICAL"


def test_redelivered_terminal_job_is_dropped(executor, handlers, registry, broker, clock):
    handler = RecordingHandler()
    handlers.register(handler)
    _, item = _admit_and_reserve(registry, broker)
    executor.execute(item)

    outcome = executor.execute(item)

    assert outcome["status"] == "skipped"
    assert len(handler.calls) == 1


class WorkerKilled(BaseException):
    """Escapes execute() the way a killed worker thread would: no status is written."""


def _expire_and_redeliver(broker, clock):
    clock.advance(61)
    assert broker.promote(QueueName.CONTENT).redelivered == 1
    return broker.reserve(QueueName.CONTENT, 60)


def test_stalled_run_with_no_attempts_left_dead_letters(executor, handlers, registry, broker,
                                                         session_factory, clock, tracking):
    handler = RecordingHandler(error=WorkerKilled())
    handlers.register(handler)
    job_id, item = _admit_and_reserve(registry, broker, attempts=1)
    with pytest.raises(WorkerKilled):
        executor.execute(item)
    started_at = _get(session_factory, job_id).started_at

    outcome = executor.execute(_expire_and_redeliver(broker, clock))

    assert outcome["status"] == "failed"
    job = _get(session_factory, job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 1
    assert job.started_at == started_at
    assert "stalled" in job.error
    assert len(handler.calls) == 1
    assert broker.counts(QueueName.CONTENT)["failed"] == 1
    [entry] = tracking.query(ErrorLogFilters(job_id=job_id)).entries
    assert entry.error_name == "StalledJobError"


def test_repeated_stalls_never_exceed_max_attempts(executor, handlers, registry, broker, session_factory, clock):
    handlers.register(RecordingHandler(error=WorkerKilled()))
    job_id, item = _admit_and_reserve(registry, broker, attempts=2)

    for _ in range(6):
        if item is None:
            break
        try:
            executor.execute(item)
        except WorkerKilled:
            pass
        job = _get(session_factory, job_id)
        assert job.attempts <= job.max_attempts
        clock.advance(400)
        broker.promote(QueueName.CONTENT)
        item = broker.reserve(QueueName.CONTENT, 60)

    job = _get(session_factory, job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 2


def test_stalled_run_with_attempts_left_is_retried(executor, handlers, registry, broker, session_factory, clock):
    handler = RecordingHandler(error=WorkerKilled())
    handlers.register(handler)
    job_id, item = _admit_and_reserve(registry, broker, attempts=3)
    with pytest.raises(WorkerKilled):
        executor.execute(item)

    outcome = executor.execute(_expire_and_redeliver(broker, clock))

    assert outcome["status"] == "retrying"
    job = _get(session_factory, job_id)
    assert job.status == JobStatus.RETRYING.value
    assert job.attempts == 1

    handler._error = None
    clock.advance(400)
    broker.promote(QueueName.CONTENT)
    executor.execute(broker.reserve(QueueName.CONTENT, 60))

    job = _get(session_factory, job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 2
    assert [c.attempt for c in handler.calls] == [1, 2]


def test_item_for_missing_job_is_dropped(executor, broker):
    broker.add(QueueName.CONTENT, "CONTENT_GENERATE", {"dbJobId": str(uuid.uuid4())})

    outcome = executor.execute(broker.reserve(QueueName.CONTENT, 60))

    assert outcome["status"] == "skipped"
    assert broker.counts(QueueName.CONTENT)["active"] == 0


def test_repeatable_fire_creates_its_record(executor, handlers, broker, session_factory, clock):
    handler = RecordingHandler(job_type=JobType.ABTEST_REBALANCE)
    handlers.register(handler)
    broker.add_repeatable(QueueName.ABTEST, "ABTEST_REBALANCE", {"abTestId": "all"}, "0 * * * *")
    clock.advance(3600)
    broker.promote(QueueName.ABTEST)
    item = broker.reserve(QueueName.ABTEST, 60)

    outcome = executor.execute(item)

    job = _get(session_factory, outcome["job_id"])
    assert job.type == "ABTEST_REBALANCE"
    assert job.status == JobStatus.COMPLETED.value
    assert job.correlation_key == item.correlation_key
    assert handler.calls[0].payload.ab_test_id == "all"


def test_failure_from_result_respects_retryable_flag():
    error = failure_from_result(JobResult.failed("odd state", retryable=False))
    assert error.retryable is False
    assert error.severity.value == "PERMANENT"

    error = failure_from_result(JobResult.failed("403 forbidden", retryable=True))
    assert error.retryable is True


class UpstreamHandler(AbstractJobHandler):
    """Calls a third party through the context's circuit breaker."""

    def __init__(self):
        self.upstream_calls = 0

    @property
    def job_type(self):
        return JobType.CONTENT_GENERATE

    def run(self, context):
        return context.call_service("holibob", self._fetch)

    def _fetch(self):
        self.upstream_calls += 1
        raise RuntimeError("upstream 503")


def test_handlers_share_circuit_breakers(session_factory, broker, handlers, tracking, registry,
                                         redis_client, clock):
    breakers = CircuitBreakerRegistry(redis_client, CircuitBreakerConfig(failure_threshold=1),
                                      prefix="test", clock=clock)
    executor = JobExecutor(session_factory, broker, handlers, RetryHandler(broker, tracking), breakers=breakers)
    handler = UpstreamHandler()
    handlers.register(handler)
    job_id, item = _admit_and_reserve(registry, broker, attempts=3)

    executor.execute(item)

    api_view = CircuitBreakerRegistry(redis_client, prefix="test", clock=clock)
    assert api_view.all_status()["holibob"]["state"] == "OPEN"

    clock.advance(30)
    broker.promote(QueueName.CONTENT)
    outcome = executor.execute(broker.reserve(QueueName.CONTENT, 60))

    assert outcome["status"] == "retrying"
    assert handler.upstream_calls == 1
    assert "Circuit breaker is OPEN for holibob" in _get(session_factory, job_id).error
