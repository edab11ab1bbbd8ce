"""
Tests for RedisBroker against fakeredis.

The clock fixture drives every time-dependent transition: delayed items
becoming due, leases expiring, repeatables firing.
"""

from datetime import date

import pytest

from models.enums import QueueName
from queues.broker import resolve_options
from queues.config import KEEP_COMPLETED, get_queue_config

CONTENT = QueueName.CONTENT


def test_resolve_options_uses_queue_defaults():
    opts = resolve_options(QueueName.GSC)
    config = get_queue_config(QueueName.GSC)
    assert opts["attempts"] == config.default_attempts
    assert opts["backoff"] == {"type": "exponential", "delay": config.backoff_base_delay}
    assert opts["remove_on_complete"] == KEEP_COMPLETED
    assert opts["priority"] == 0


def test_resolve_options_none_never_overrides():
    opts = resolve_options(CONTENT, attempts=None, remove_on_complete=None, priority=3)
    assert opts["attempts"] == get_queue_config(CONTENT).default_attempts
    assert opts["remove_on_complete"] == KEEP_COMPLETED
    assert opts["priority"] == 3


def test_add_and_reserve(broker):
    item_id = broker.add(CONTENT, "CONTENT_GENERATE", {"dbJobId": "job-1", "siteId": "s1"})

    item = broker.reserve(CONTENT, lease_seconds=60)

    assert item.id == item_id
    assert item.name == "CONTENT_GENERATE"
    assert item.db_job_id == "job-1"
    assert item.state == "active"
    assert item.correlation_key == f"content:{item_id}"
    assert broker.reserve(CONTENT, lease_seconds=60) is None


def test_item_ids_are_per_queue(broker):
    first = broker.add(CONTENT, "CONTENT_GENERATE", {})
    other = broker.add(QueueName.SEO, "SEO_ANALYZE", {})
    assert first == other == "1"


def test_reserve_orders_by_priority_then_fifo(broker):
    low = broker.add(CONTENT, "CONTENT_GENERATE", {}, priority=9)
    high_first = broker.add(CONTENT, "CONTENT_GENERATE", {}, priority=1)
    high_second = broker.add(CONTENT, "CONTENT_GENERATE", {}, priority=1)
    unprioritized = broker.add(CONTENT, "CONTENT_GENERATE", {})

    order = [broker.reserve(CONTENT, 60).id for _ in range(4)]
    assert order == [unprioritized, high_first, high_second, low]


def test_delayed_item_waits_until_promoted(broker, clock):
    broker.add(CONTENT, "CONTENT_GENERATE", {}, delay=30)
    assert broker.reserve(CONTENT, 60) is None

    clock.advance(29)
    assert broker.promote(CONTENT).delayed == 0

    clock.advance(2)
    assert broker.promote(CONTENT).delayed == 1
    assert broker.reserve(CONTENT, 60) is not None


def test_expired_lease_is_redelivered(broker, clock):
    item_id = broker.add(CONTENT, "CONTENT_GENERATE", {})
    broker.reserve(CONTENT, lease_seconds=60)

    clock.advance(61)
    result = broker.promote(CONTENT)

    assert result.redelivered == 1
    assert broker.reserve(CONTENT, 60).id == item_id


def test_complete_keeps_bounded_history(broker):
    for _ in range(3):
        broker.add(CONTENT, "CONTENT_GENERATE", {}, remove_on_complete=2)
    for _ in range(3):
        item = broker.reserve(CONTENT, 60)
        broker.complete(CONTENT, item.id, {"ok": True})

    assert broker.counts(CONTENT)["completed"] == 2
    assert broker.get(CONTENT, "1") is None


def test_complete_with_remove_true_deletes(broker):
    item_id = broker.add(CONTENT, "CONTENT_GENERATE", {}, remove_on_complete=True)
    broker.reserve(CONTENT, 60)
    broker.complete(CONTENT, item_id)

    assert broker.get(CONTENT, item_id) is None
    assert broker.counts(CONTENT)["completed"] == 0


def test_retry_moves_to_delayed(broker, clock):
    item_id = broker.add(CONTENT, "CONTENT_GENERATE", {})
    broker.reserve(CONTENT, 60)

    broker.retry(CONTENT, item_id, delay=10, reason="boom")
    item = broker.get(CONTENT, item_id)

    assert item.state == "delayed"
    assert item.attempts_made == 1
    assert item.failed_reason == "boom"
    assert broker.counts(CONTENT)["active"] == 0

    clock.advance(11)
    broker.promote(CONTENT)
    assert broker.reserve(CONTENT, 60).id == item_id


def test_fail_dead_letters(broker):
    item_id = broker.add(CONTENT, "CONTENT_GENERATE", {})
    broker.reserve(CONTENT, 60)

    broker.fail(CONTENT, item_id, "gave up")

    counts = broker.counts(CONTENT)
    assert counts["failed"] == 1
    assert counts["active"] == 0
    assert broker.get(CONTENT, item_id).failed_reason == "gave up"


def test_remove_reports_whether_item_existed(broker):
    item_id = broker.add(CONTENT, "CONTENT_GENERATE", {})
    assert broker.remove(CONTENT, item_id) is True
    assert broker.remove(CONTENT, item_id) is False
    assert broker.reserve(CONTENT, 60) is None


def test_pause_and_resume(broker):
    broker.add(CONTENT, "CONTENT_GENERATE", {})
    broker.pause(CONTENT)

    assert broker.reserve(CONTENT, 60) is None
    assert broker.counts(CONTENT)["paused"] == 1

    broker.resume(CONTENT)
    assert broker.reserve(CONTENT, 60) is not None


def test_drain_removes_waiting_but_not_leased(broker):
    leased = broker.add(CONTENT, "CONTENT_GENERATE", {"n": 1})
    broker.reserve(CONTENT, 60)
    waiting = broker.add(CONTENT, "CONTENT_GENERATE", {"n": 2})
    delayed = broker.add(CONTENT, "CONTENT_GENERATE", {"n": 3}, delay=60)

    drained = broker.drain(CONTENT)

    assert [item.id for item in drained] == [waiting]
    assert drained[0].data == {"n": 2}
    assert broker.get(CONTENT, waiting) is None
    assert broker.get(CONTENT, leased) is not None
    assert broker.get(CONTENT, delayed) is not None
    counts = broker.counts(CONTENT)
    assert (counts["waiting"], counts["active"], counts["delayed"]) == (0, 1, 1)


def test_drain_with_delayed(broker):
    broker.add(CONTENT, "CONTENT_GENERATE", {})
    broker.add(CONTENT, "CONTENT_GENERATE", {}, delay=60)

    assert len(broker.drain(CONTENT, include_delayed=True)) == 2
    assert broker.counts(CONTENT)["delayed"] == 0


def test_clean_removes_old_finished_items(broker, clock):
    item_id = broker.add(CONTENT, "CONTENT_GENERATE", {})
    broker.reserve(CONTENT, 60)
    broker.fail(CONTENT, item_id, "gave up")

    assert broker.clean(CONTENT, "failed", grace_seconds=3600) == []
    clock.advance(3601)
    assert broker.clean(CONTENT, "failed", grace_seconds=3600) == [item_id]
    assert broker.get(CONTENT, item_id) is None


def test_clean_rejects_live_states(broker):
    with pytest.raises(ValueError):
        broker.clean(CONTENT, "wait", grace_seconds=0)


def test_dedup_claim_is_exclusive(broker, redis_client):
    assert broker.claim_dedup("site-1", "CONTENT_GENERATE", 1800) is True
    assert broker.claim_dedup("site-1", "CONTENT_GENERATE", 1800) is False
    assert 0 < redis_client.ttl(broker.dedup_key("site-1", "CONTENT_GENERATE")) <= 1800

    broker.release_dedup("site-1", "CONTENT_GENERATE")
    assert broker.claim_dedup("site-1", "CONTENT_GENERATE", 1800) is True


def test_budget_counter_expires_after_a_day(broker, redis_client):
    day = date(2026, 10, 18)
    assert broker.incr_budget("content", "CONTENT_GENERATE", day) == 1
    assert broker.incr_budget("content", "CONTENT_GENERATE", day) == 2
    assert redis_client.ttl(broker.budget_key("content", "CONTENT_GENERATE", day)) <= 86400


# ── Repeatables ─────────────────────────────────────────────────

def test_add_repeatable_rejects_bad_pattern(broker):
    with pytest.raises(ValueError):
        broker.add_repeatable(QueueName.GSC, "GSC_SYNC", {}, "not a cron")


def test_repeatable_is_stored_in_redis(broker):
    key = broker.add_repeatable(QueueName.GSC, "GSC_SYNC", {"siteId": "all"}, "0 */6 * * *")

    specs = broker.list_repeatables(QueueName.GSC)

    assert [s.key for s in specs] == [key]
    assert specs[0].pattern == "0 */6 * * *"
    assert specs[0].next_run_at is not None


def test_re_registering_repeatable_replaces_it(broker):
    broker.add_repeatable(QueueName.GSC, "GSC_SYNC", {"v": 1}, "0 */6 * * *")
    broker.add_repeatable(QueueName.GSC, "GSC_SYNC", {"v": 2}, "0 */6 * * *")

    specs = broker.list_repeatables(QueueName.GSC)
    assert len(specs) == 1
    assert specs[0].data == {"v": 2}


def test_due_repeatable_fires_once(broker, clock, redis_client):
    broker.add_repeatable(QueueName.ABTEST, "ABTEST_REBALANCE", {"abTestId": "all"}, "0 * * * *")

    clock.advance(3600)
    assert broker.promote(QueueName.ABTEST).repeated == 1
    # a second worker promoting the same queue finds nothing due
    assert broker.promote(QueueName.ABTEST).repeated == 0

    item = broker.reserve(QueueName.ABTEST, 60)
    assert item.name == "ABTEST_REBALANCE"
    assert item.repeat_key == "ABTEST_REBALANCE::0 * * * *"
    assert item.db_job_id is None


def test_remove_repeatable(broker):
    broker.add_repeatable(QueueName.GSC, "GSC_SYNC", {}, "0 */6 * * *")
    assert broker.remove_repeatable(QueueName.GSC, "GSC_SYNC", "0 */6 * * *") is True
    assert broker.remove_repeatable(QueueName.GSC, "GSC_SYNC", "0 */6 * * *") is False
    assert broker.list_repeatables(QueueName.GSC) == []
