"""
Tests for the admission pipeline (QueueRegistry.admit).

validation → dedup claim → daily budget → durable record → broker dispatch → correlation key

Each stage that can refuse a job is tested on its own, plus the compensation
path where the record landed but dispatch didn't.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from redis.exceptions import RedisError
from sqlalchemy import func, select

from errors.classifier import JobValidationError
from models.enums import JobStatus, QueueName
from models.job import Job, utcnow
from queues.broker import RedisBroker
from queues.registry import AdmissionOutcome, JobOptions, QueueRegistry


def _jobs(session_factory):
    with session_factory() as session:
        return session.execute(select(Job).order_by(Job.created_at)).scalars().all()


def _count_jobs(session_factory):
    with session_factory() as session:
        return session.execute(select(func.count(Job.id))).scalar()


def _content(site_id="site-1", **extra):
    return {"siteId": site_id, "targetKeyword": "things to do in lisbon", **extra}


# ── Happy path ──────────────────────────────────────────────────

def test_admit_creates_record_and_dispatches(registry, broker, session_factory):
    handle = registry.admit("CONTENT_GENERATE", _content())

    assert handle.outcome == AdmissionOutcome.CREATED
    assert handle.created
    assert handle.value == handle.job_id

    [job] = _jobs(session_factory)
    assert str(job.id) == handle.job_id
    assert job.status == JobStatus.PENDING.value
    assert job.queue == "content"
    assert job.site_id == "site-1"
    assert job.max_attempts == 3
    assert job.payload["targetKeyword"] == "things to do in lisbon"
    assert job.correlation_key == "content:1"

    item = broker.get(QueueName.CONTENT, "1")
    assert item.db_job_id == handle.job_id
    assert item.data["siteId"] == "site-1"


def test_admit_with_delay_is_scheduled(registry, broker, session_factory):
    registry.admit("CONTENT_GENERATE", _content(), JobOptions(delay=120))

    [job] = _jobs(session_factory)
    assert job.status == JobStatus.SCHEDULED.value
    assert job.scheduled_for is not None
    assert broker.counts(QueueName.CONTENT)["delayed"] == 1


def test_admit_passes_options_to_broker(registry, broker, session_factory):
    registry.admit("CONTENT_GENERATE", _content(), JobOptions(priority=2, attempts=7))

    [job] = _jobs(session_factory)
    item = broker.get(QueueName.CONTENT, "1")
    assert job.priority == 2
    assert job.max_attempts == 7
    assert item.opts["priority"] == 2
    assert item.opts["attempts"] == 7


def test_site_all_is_stored_without_owner(registry, session_factory):
    handle = registry.admit("METRICS_AGGREGATE", {"siteId": "all", "aggregationType": "daily"})

    assert handle.created
    assert _jobs(session_factory)[0].site_id is None


def test_site_optional_type_without_site(registry):
    assert registry.admit("SITE_CREATE", {"opportunityId": "opp-1"}).created


def test_domain_id_counts_as_owner(registry):
    assert registry.admit("DOMAIN_VERIFY", {"domainId": "dom-1"}).created


# ── Validation ──────────────────────────────────────────────────

@pytest.mark.parametrize("job_type, payload, options", [
    ("NOT_A_TYPE", {}, None),
    ("CONTENT_GENERATE", {}, None),                                   # siteId required
    ("GSC_SYNC", {"siteId": "s1", "dimensions": ["weather"]}, None),  # bad enum value
    ("CONTENT_GENERATE", _content(), JobOptions(priority=11)),
    ("CONTENT_GENERATE", _content(), JobOptions(priority=0)),
    ("CONTENT_GENERATE", _content(), JobOptions(attempts=0)),
])
def test_invalid_requests_write_nothing(registry, broker, session_factory, job_type, payload, options):
    with pytest.raises(JobValidationError):
        registry.admit(job_type, payload, options)

    assert _count_jobs(session_factory) == 0
    assert broker.counts(QueueName.CONTENT)["waiting"] == 0
    assert broker.claim_dedup("site-1", "CONTENT_GENERATE", 60) is True


# ── Dedup ───────────────────────────────────────────────────────

def test_second_admission_is_deduplicated(registry, session_factory):
    first = registry.admit("CONTENT_GENERATE", _content())
    second = registry.admit("CONTENT_GENERATE", _content())

    assert first.created
    assert second.outcome == AdmissionOutcome.DEDUPLICATED
    assert second.value == "dedup:site-1:CONTENT_GENERATE"
    assert second.job_id is None
    assert _count_jobs(session_factory) == 1


def test_concurrent_admissions_create_one_job(registry, session_factory):
    start = threading.Barrier(8)

    def admit():
        start.wait()
        return registry.admit("CONTENT_GENERATE", _content())

    with ThreadPoolExecutor(max_workers=8) as pool:
        handles = list(pool.map(lambda _: admit(), range(8)))

    created = [h for h in handles if h.created]
    assert len(created) == 1
    others = {h.outcome for h in handles if not h.created}
    assert others <= {AdmissionOutcome.DEDUPLICATED, AdmissionOutcome.EXISTING}
    assert {h.job_id for h in handles if h.outcome == AdmissionOutcome.EXISTING} <= {created[0].job_id}
    assert _count_jobs(session_factory) == 1


def test_dedup_is_per_site(registry):
    assert registry.admit("CONTENT_GENERATE", _content("site-1")).created
    assert registry.admit("CONTENT_GENERATE", _content("site-2")).created


def test_dedup_exempt_types_admit_every_time(registry, session_factory):
    payload = {"siteId": "site-1", "platform": "pinterest"}
    assert registry.admit("SOCIAL_POST_GENERATE", payload).created
    assert registry.admit("SOCIAL_POST_GENERATE", {**payload, "platform": "facebook"}).created
    assert _count_jobs(session_factory) == 2


def test_lost_race_returns_existing_job(registry, broker, session_factory):
    """The store's unique index catches what the dedup claim missed (e.g. claim expired)."""
    first = registry.admit("CONTENT_GENERATE", _content())
    broker.release_dedup("site-1", "CONTENT_GENERATE")

    second = registry.admit("CONTENT_GENERATE", _content())

    assert second.outcome == AdmissionOutcome.EXISTING
    assert second.job_id == first.job_id
    assert _count_jobs(session_factory) == 1


def test_dedup_fails_open_when_redis_errors(session_factory, redis_client, clock, caplog):
    class FlakyDedupBroker(RedisBroker):
        def claim_dedup(self, site_id, job_type, ttl_seconds):
            raise RedisError("connection reset")

    registry = QueueRegistry(session_factory, FlakyDedupBroker(redis_client, prefix="test", clock=clock))

    with caplog.at_level(logging.WARNING):
        handle = registry.admit("CONTENT_GENERATE", _content())

    assert handle.created
    assert registry.counters["dedup_check_failed"] == 1
    assert "admitting anyway" in caplog.text


# ── Daily budget ────────────────────────────────────────────────

def _preset_budget(redis_client, broker, count):
    key = broker.budget_key("content", "CONTENT_GENERATE", utcnow().date())
    redis_client.set(key, count)


def test_budget_exceeded_returns_sentinel(registry, broker, redis_client, session_factory):
    _preset_budget(redis_client, broker, 2000)

    handle = registry.admit("CONTENT_GENERATE", _content())

    assert handle.outcome == AdmissionOutcome.BUDGET_EXCEEDED
    assert handle.value == "budget-exceeded:content:CONTENT_GENERATE"
    assert _count_jobs(session_factory) == 0
    # the dedup claim was given back
    assert broker.claim_dedup("site-1", "CONTENT_GENERATE", 60) is True


def test_last_slot_under_budget_is_admitted(registry, broker, redis_client):
    _preset_budget(redis_client, broker, 1999)
    assert registry.admit("CONTENT_GENERATE", _content()).created


def test_budget_warning_at_eighty_percent(registry, broker, redis_client, caplog):
    _preset_budget(redis_client, broker, 1599)

    with caplog.at_level(logging.WARNING):
        assert registry.admit("CONTENT_GENERATE", _content()).created

    assert "1600/2000" in caplog.text
    assert "80%" in caplog.text


def test_queue_without_budget_is_unlimited(registry, broker, redis_client):
    assert registry.admit("SITE_CREATE", {"opportunityId": "opp-1"}).created
    assert redis_client.keys("test:budget:*") == []


def test_custom_budget(session_factory, broker):
    registry = QueueRegistry(session_factory, broker, daily_budgets={QueueName.CONTENT: 1})
    assert registry.admit("CONTENT_GENERATE", _content("site-1")).created
    assert registry.admit("CONTENT_GENERATE", _content("site-2")).outcome == AdmissionOutcome.BUDGET_EXCEEDED


def test_budget_fails_open_when_redis_errors(session_factory, redis_client, clock):
    class FlakyBudgetBroker(RedisBroker):
        def incr_budget(self, queue, job_type, day):
            raise RedisError("READONLY")

    registry = QueueRegistry(session_factory, FlakyBudgetBroker(redis_client, prefix="test", clock=clock))

    assert registry.admit("CONTENT_GENERATE", _content()).created
    assert registry.counters["budget_check_failed"] == 1


# ── Compensation ────────────────────────────────────────────────

def test_dispatch_failure_deletes_record_and_releases_claim(session_factory, redis_client, clock, compensation_log):
    class DeadBroker(RedisBroker):
        def add(self, *args, **kwargs):
            raise RedisError("connection refused")

    broker = DeadBroker(redis_client, prefix="test", clock=clock)
    registry = QueueRegistry(session_factory, broker, compensation_log)

    with pytest.raises(RedisError):
        registry.admit("CONTENT_GENERATE", _content())

    assert _count_jobs(session_factory) == 0
    assert broker.claim_dedup("site-1", "CONTENT_GENERATE", 60) is True

    actions = [(r.action, r.succeeded) for r in compensation_log.entries()]
    assert actions == [("delete_job_record", True), ("release_dedup", True)]


# ── Operator helpers ────────────────────────────────────────────

def test_remove_job_is_best_effort(registry, broker):
    registry.admit("CONTENT_GENERATE", _content())
    assert registry.remove_job(QueueName.CONTENT, "1") is True
    assert registry.remove_job(QueueName.CONTENT, "1") is False


def test_queue_metrics_cover_every_queue(registry):
    registry.admit("CONTENT_GENERATE", _content())
    metrics = {m["queue"]: m for m in registry.queue_metrics()}

    assert set(metrics) == {q.value for q in QueueName}
    assert metrics["content"]["waiting"] == 1
    assert metrics["content"]["total"] == 1


def test_clean_all_queues(registry, broker, clock):
    registry.admit("CONTENT_GENERATE", _content())
    item = broker.reserve(QueueName.CONTENT, 60)
    broker.fail(QueueName.CONTENT, item.id, "gave up")

    clock.advance(86401)
    assert registry.clean_all_queues() == 1


def test_pause_and_resume_queue(registry, broker):
    registry.admit("CONTENT_GENERATE", _content())

    registry.pause_queue(QueueName.CONTENT)
    assert broker.reserve(QueueName.CONTENT, 60) is None
    assert registry.admit("CONTENT_GENERATE", _content("site-2")).created

    registry.resume_queue(QueueName.CONTENT)
    assert broker.reserve(QueueName.CONTENT, 60) is not None


def test_drain_queue_fails_waiting_records(registry, broker, session_factory):
    leased = registry.admit("CONTENT_GENERATE", _content("site-1"))
    broker.reserve(QueueName.CONTENT, 60)
    waiting = registry.admit("CONTENT_GENERATE", _content("site-2"))
    delayed = registry.admit("CONTENT_GENERATE", _content("site-3"), JobOptions(delay=300))

    result = registry.drain_queue(QueueName.CONTENT)

    assert (result.queue, result.removed, result.jobs_failed) == ("content", 1, 1)
    jobs = {str(j.id): j for j in _jobs(session_factory)}
    assert jobs[waiting.job_id].status == JobStatus.FAILED.value
    assert jobs[waiting.job_id].error == "Drained from content by operator"
    assert jobs[leased.job_id].status == JobStatus.PENDING.value
    assert jobs[delayed.job_id].status == JobStatus.SCHEDULED.value
    # the drained job's site can be admitted again
    assert registry.admit("CONTENT_GENERATE", _content("site-2")).created


def test_drain_queue_with_delayed(registry, broker, session_factory):
    registry.admit("CONTENT_GENERATE", _content("site-1"), JobOptions(delay=300))

    result = registry.drain_queue(QueueName.CONTENT, include_delayed=True)

    assert result.removed == 1
    assert result.jobs_failed == 1
    assert broker.counts(QueueName.CONTENT)["delayed"] == 0
    assert {j.status for j in _jobs(session_factory)} == {JobStatus.FAILED.value}


def test_drain_queue_skips_items_without_records(registry, broker):
    broker.add(QueueName.CONTENT, "CONTENT_GENERATE", {"siteId": "site-1"})

    result = registry.drain_queue(QueueName.CONTENT)

    assert (result.removed, result.jobs_failed) == (1, 0)
