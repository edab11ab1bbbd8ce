"""
Redis work broker — dispatch only, never the source of truth for job status.

One logical queue per QueueName, every key under a configurable prefix:

    {prefix}:{queue}:id            INCR counter → item ids (unique per queue, not globally)
    {prefix}:{queue}:item:{id}     hash: name, data, opts, attempts_made, state, ...
    {prefix}:{queue}:wait          zset  score = priority * 1e12 + id  (lowest pops first)
    {prefix}:{queue}:delayed       zset  score = due timestamp
    {prefix}:{queue}:active        zset  score = lease expiry timestamp
    {prefix}:{queue}:completed     zset  score = finished timestamp
    {prefix}:{queue}:failed        zset  score = finished timestamp (dead letters)
    {prefix}:{queue}:repeat        hash: repeat key → JSON {name, data, pattern, opts, next}
    {prefix}:{queue}:paused        flag

Item lifecycle:

    add ──> wait ──reserve──> active ──complete──> completed
     │        ^                 │  │
     │        │                 │  └──fail──> failed
     │        │              retry(delay)
     └delay─> delayed <─────────┘
              │
           promote (due) ──> wait
    active ──promote (lease expired)──> wait    (crashed worker → redelivery)

reserve() pops with ZPOPMIN, so two workers can never lease the same item.
Priority 0 (the default) means "no priority" and runs before prioritized items,
then 1 (highest) … 10, FIFO within a priority.

Repeatables are stored in Redis (not in process memory), so schedules survive
restarts, and each fire is claimed with SET NX so several worker processes
promoting the same queue don't double-fire.

The client must be created with decode_responses=True.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

from croniter import croniter
from redis import Redis

from config.settings import settings
from models.enums import QueueName
from queues.config import get_queue_config

logger = logging.getLogger(__name__)

PRIORITY_SCALE = 10 ** 12
BUDGET_KEY_TTL = 24 * 60 * 60
REPEAT_FIRE_CLAIM_TTL = 60 * 60
CLEANABLE_STATES = ("completed", "failed")


@dataclass
class BrokerItem:
    id: str
    queue: str
    name: str
    data: dict
    opts: dict
    state: str
    attempts_made: int = 0
    timestamp: float = 0.0
    processed_on: Optional[float] = None
    finished_on: Optional[float] = None
    failed_reason: Optional[str] = None
    repeat_key: Optional[str] = None

    @property
    def correlation_key(self) -> str:
        return f"{self.queue}:{self.id}"

    @property
    def db_job_id(self) -> Optional[str]:
        return self.data.get("dbJobId")

    @classmethod
    def from_hash(cls, queue: str, item_id: str, raw: dict[str, str]) -> "BrokerItem":
        def _float(key: str) -> Optional[float]:
            value = raw.get(key)
            return float(value) if value not in (None, "") else None

        return cls(
            id=item_id,
            queue=queue,
            name=raw["name"],
            data=json.loads(raw.get("data") or "{}"),
            opts=json.loads(raw.get("opts") or "{}"),
            state=raw.get("state", "waiting"),
            attempts_made=int(raw.get("attempts_made") or 0),
            timestamp=_float("timestamp") or 0.0,
            processed_on=_float("processed_on"),
            finished_on=_float("finished_on"),
            failed_reason=raw.get("failed_reason") or None,
            repeat_key=raw.get("repeat_key") or None,
        )


@dataclass
class RepeatableSpec:
    key: str
    queue: str
    name: str
    pattern: str
    data: dict
    opts: dict = field(default_factory=dict)
    next_run_at: Optional[datetime] = None


@dataclass
class PromotionResult:
    delayed: int = 0
    redelivered: int = 0
    repeated: int = 0


def resolve_options(queue: QueueName, **explicit: Any) -> dict:
    """
    Queue defaults overlaid with the options the caller actually set.

    None means "not set" and never overrides a default: passing
    remove_on_complete=None must not turn off the queue's retention policy.
    """
    config = get_queue_config(queue)
    options = {
        "priority": 0,
        "delay": 0,
        "attempts": config.default_attempts,
        "backoff": {"type": "exponential", "delay": config.backoff_base_delay},
        "remove_on_complete": config.remove_on_complete,
        "remove_on_fail": config.remove_on_fail,
    }
    options.update({key: value for key, value in explicit.items() if value is not None})
    return options


def repeat_key_for(name: str, pattern: str) -> str:
    return f"{name}::{pattern}"


class RedisBroker:

    def __init__(self, redis_client: Redis, prefix: str = settings.BROKER_PREFIX,
                 clock: Callable[[], float] = time.time):
        self._redis = redis_client
        self._prefix = prefix
        self._clock = clock

    # ── Keys ────────────────────────────────────────────────────
    def _key(self, queue: str, *parts: str) -> str:
        return ":".join((self._prefix, str(QueueName(queue).value), *parts))

    def _item_key(self, queue: str, item_id: str) -> str:
        return self._key(queue, "item", str(item_id))

    def dedup_key(self, site_id: str, job_type: str) -> str:
        return f"{self._prefix}:dedup:{site_id}:{job_type}"

    def budget_key(self, queue: str, job_type: str, day: date) -> str:
        return f"{self._prefix}:budget:{queue}:{job_type}:{day.isoformat()}"

    @staticmethod
    def _wait_score(item_id: str, priority: int) -> int:
        return int(priority) * PRIORITY_SCALE + int(item_id)

    def ping(self) -> bool:
        return bool(self._redis.ping())

    # ── Adding ──────────────────────────────────────────────────
    def add(self, queue: QueueName, name: str, data: dict, *,
            priority: Optional[int] = None,
            delay: Optional[float] = None,
            attempts: Optional[int] = None,
            backoff: Optional[dict] = None,
            remove_on_complete: Optional[int | bool] = None,
            remove_on_fail: Optional[int | bool] = None,
            repeat_key: Optional[str] = None) -> str:
        """Enqueue one item and return its id. Unset options fall back to queue defaults."""
        opts = resolve_options(
            queue,
            priority=priority,
            delay=delay,
            attempts=attempts,
            backoff=backoff,
            remove_on_complete=remove_on_complete,
            remove_on_fail=remove_on_fail,
        )
        now = self._clock()
        item_id = str(self._redis.incr(self._key(queue, "id")))

        mapping = {
            "name": name,
            "data": json.dumps(data),
            "opts": json.dumps(opts),
            "attempts_made": 0,
            "timestamp": now,
            "priority": opts["priority"],
        }
        if repeat_key:
            mapping["repeat_key"] = repeat_key

        pipe = self._redis.pipeline()
        if opts["delay"] and opts["delay"] > 0:
            mapping["state"] = "delayed"
            pipe.hset(self._item_key(queue, item_id), mapping=mapping)
            pipe.zadd(self._key(queue, "delayed"), {item_id: now + float(opts["delay"])})
        else:
            mapping["state"] = "waiting"
            pipe.hset(self._item_key(queue, item_id), mapping=mapping)
            pipe.zadd(self._key(queue, "wait"), {item_id: self._wait_score(item_id, opts["priority"])})
        pipe.execute()

        logger.debug(f"Added {name} to {queue} as item {item_id}")
        return item_id

    # ── Lookup / removal ────────────────────────────────────────
    def get(self, queue: QueueName, item_id: str) -> Optional[BrokerItem]:
        raw = self._redis.hgetall(self._item_key(queue, item_id))
        if not raw:
            return None
        return BrokerItem.from_hash(QueueName(queue).value, str(item_id), raw)

    def update_data(self, queue: QueueName, item_id: str, data: dict) -> None:
        self._redis.hset(self._item_key(queue, item_id), "data", json.dumps(data))

    def remove(self, queue: QueueName, item_id: str) -> bool:
        """Drop an item from every state set. Returns True if it existed."""
        item_id = str(item_id)
        pipe = self._redis.pipeline()
        for state in ("wait", "delayed", "active", "completed", "failed"):
            pipe.zrem(self._key(queue, state), item_id)
        pipe.delete(self._item_key(queue, item_id))
        results = pipe.execute()
        return bool(results[-1])

    # ── Worker side ─────────────────────────────────────────────
    def reserve(self, queue: QueueName, lease_seconds: float) -> Optional[BrokerItem]:
        """Pop the next waiting item and lease it. None when empty or paused."""
        if self.is_paused(queue):
            return None

        while True:
            popped = self._redis.zpopmin(self._key(queue, "wait"))
            if not popped:
                return None
            item_id = popped[0][0]
            now = self._clock()

            item_key = self._item_key(queue, item_id)
            if not self._redis.exists(item_key):
                # removed between add and pop
                continue

            pipe = self._redis.pipeline()
            pipe.zadd(self._key(queue, "active"), {item_id: now + lease_seconds})
            pipe.hset(item_key, mapping={"state": "active", "processed_on": now})
            pipe.execute()
            return self.get(queue, item_id)

    def complete(self, queue: QueueName, item_id: str, result: Optional[dict] = None) -> None:
        item = self.get(queue, item_id)
        if item is None:
            return
        now = self._clock()
        keep = item.opts.get("remove_on_complete", True)

        pipe = self._redis.pipeline()
        pipe.zrem(self._key(queue, "active"), item.id)
        if keep is True:
            pipe.delete(self._item_key(queue, item.id))
        else:
            pipe.hset(self._item_key(queue, item.id), mapping={
                "state": "completed",
                "finished_on": now,
                "returnvalue": json.dumps(result or {}),
            })
            pipe.zadd(self._key(queue, "completed"), {item.id: now})
        pipe.execute()

        if keep is not True and keep is not False:
            self._trim(queue, "completed", int(keep))

    def retry(self, queue: QueueName, item_id: str, delay: float, reason: Optional[str] = None) -> None:
        """Release the lease and put the item back, after `delay` seconds."""
        item_id = str(item_id)
        now = self._clock()
        item_key = self._item_key(queue, item_id)
        if not self._redis.exists(item_key):
            return

        priority = int(self._redis.hget(item_key, "priority") or 0)
        pipe = self._redis.pipeline()
        pipe.zrem(self._key(queue, "active"), item_id)
        pipe.hincrby(item_key, "attempts_made", 1)
        if reason:
            pipe.hset(item_key, "failed_reason", reason)
        if delay > 0:
            pipe.hset(item_key, "state", "delayed")
            pipe.zadd(self._key(queue, "delayed"), {item_id: now + delay})
        else:
            pipe.hset(item_key, "state", "waiting")
            pipe.zadd(self._key(queue, "wait"), {item_id: self._wait_score(item_id, priority)})
        pipe.execute()

    def fail(self, queue: QueueName, item_id: str, reason: str) -> None:
        """Dead-letter: the broker will not hand this item out again."""
        item = self.get(queue, item_id)
        if item is None:
            return
        now = self._clock()
        keep = item.opts.get("remove_on_fail", False)

        pipe = self._redis.pipeline()
        pipe.zrem(self._key(queue, "active"), item.id)
        pipe.zrem(self._key(queue, "wait"), item.id)
        pipe.zrem(self._key(queue, "delayed"), item.id)
        if keep is True:
            pipe.delete(self._item_key(queue, item.id))
        else:
            pipe.hincrby(self._item_key(queue, item.id), "attempts_made", 1)
            pipe.hset(self._item_key(queue, item.id), mapping={
                "state": "failed",
                "finished_on": now,
                "failed_reason": reason,
            })
            pipe.zadd(self._key(queue, "failed"), {item.id: now})
        pipe.execute()

        if keep is not True and keep is not False:
            self._trim(queue, "failed", int(keep))

    def _trim(self, queue: QueueName, state: str, keep: int) -> None:
        """Keep only the newest `keep` items in a finished set."""
        stale = self._redis.zrange(self._key(queue, state), 0, -(keep + 1))
        if not stale:
            return
        pipe = self._redis.pipeline()
        pipe.zrem(self._key(queue, state), *stale)
        for item_id in stale:
            pipe.delete(self._item_key(queue, item_id))
        pipe.execute()

    # ── Housekeeping ────────────────────────────────────────────
    def promote(self, queue: QueueName) -> PromotionResult:
        """
        Move everything that is due into the wait set:
        delayed items whose time has come, leases that expired (the worker
        holding them died), and repeatables whose next fire time has passed.
        """
        result = PromotionResult()
        now = self._clock()

        for item_id in self._redis.zrangebyscore(self._key(queue, "delayed"), "-inf", now):
            # zrem == 1 means this process won the item
            if self._redis.zrem(self._key(queue, "delayed"), item_id):
                self._requeue(queue, item_id)
                result.delayed += 1

        for item_id in self._redis.zrangebyscore(self._key(queue, "active"), "-inf", now):
            if self._redis.zrem(self._key(queue, "active"), item_id):
                logger.warning(f"Lease expired for {queue}:{item_id}, redelivering")
                self._requeue(queue, item_id)
                result.redelivered += 1

        result.repeated = self._fire_repeatables(queue, now)
        return result

    def _requeue(self, queue: QueueName, item_id: str) -> None:
        item_key = self._item_key(queue, item_id)
        priority = int(self._redis.hget(item_key, "priority") or 0)
        pipe = self._redis.pipeline()
        pipe.hset(item_key, "state", "waiting")
        pipe.zadd(self._key(queue, "wait"), {item_id: self._wait_score(item_id, priority)})
        pipe.execute()

    def _fire_repeatables(self, queue: QueueName, now: float) -> int:
        fired = 0
        for key, raw in self._redis.hgetall(self._key(queue, "repeat")).items():
            spec = json.loads(raw)
            if spec["next"] > now:
                continue

            claim = self._key(queue, "repeat-fire", key, str(int(spec["next"])))
            if not self._redis.set(claim, "1", nx=True, ex=REPEAT_FIRE_CLAIM_TTL):
                continue

            spec["next"] = self._next_fire(spec["pattern"], now)
            self._redis.hset(self._key(queue, "repeat"), key, json.dumps(spec))
            self.add(queue, spec["name"], spec["data"], repeat_key=key, **spec["opts"])
            fired += 1
        return fired

    @staticmethod
    def _next_fire(pattern: str, after: float) -> float:
        start = datetime.fromtimestamp(after, tz=timezone.utc)
        return croniter(pattern, start).get_next(datetime).timestamp()

    # ── Repeatables ─────────────────────────────────────────────
    def add_repeatable(self, queue: QueueName, name: str, data: dict, pattern: str,
                       **opts: Any) -> str:
        """Register (or replace) a cron-driven repeatable. Returns its repeat key."""
        if not croniter.is_valid(pattern):
            raise ValueError(f"Invalid cron pattern: {pattern!r}")

        key = repeat_key_for(name, pattern)
        spec = {
            "name": name,
            "data": data,
            "pattern": pattern,
            "opts": {k: v for k, v in opts.items() if v is not None},
            "next": self._next_fire(pattern, self._clock()),
        }
        self._redis.hset(self._key(queue, "repeat"), key, json.dumps(spec))
        return key

    def remove_repeatable(self, queue: QueueName, name: str, pattern: str) -> bool:
        return bool(self._redis.hdel(self._key(queue, "repeat"), repeat_key_for(name, pattern)))

    def list_repeatables(self, queue: QueueName) -> list[RepeatableSpec]:
        specs = []
        for key, raw in self._redis.hgetall(self._key(queue, "repeat")).items():
            spec = json.loads(raw)
            specs.append(RepeatableSpec(
                key=key,
                queue=QueueName(queue).value,
                name=spec["name"],
                pattern=spec["pattern"],
                data=spec["data"],
                opts=spec["opts"],
                next_run_at=datetime.fromtimestamp(spec["next"], tz=timezone.utc),
            ))
        return sorted(specs, key=lambda s: s.key)

    # ── Metrics / maintenance ───────────────────────────────────
    def counts(self, queue: QueueName) -> dict[str, int]:
        pipe = self._redis.pipeline()
        for state in ("wait", "active", "delayed", "completed", "failed"):
            pipe.zcard(self._key(queue, state))
        waiting, active, delayed, completed, failed = pipe.execute()
        paused = self.is_paused(queue)
        return {
            "waiting": 0 if paused else waiting,
            "active": active,
            "delayed": delayed,
            "completed": completed,
            "failed": failed,
            "paused": waiting if paused else 0,
        }

    def clean(self, queue: QueueName, state: str, grace_seconds: float, limit: int = 5000) -> list[str]:
        """Delete finished items older than the grace period. Returns removed ids."""
        if state not in CLEANABLE_STATES:
            raise ValueError(f"Can only clean {CLEANABLE_STATES}, got {state!r}")
        cutoff = self._clock() - grace_seconds
        stale = self._redis.zrangebyscore(self._key(queue, state), "-inf", cutoff, start=0, num=limit)
        if stale:
            pipe = self._redis.pipeline()
            pipe.zrem(self._key(queue, state), *stale)
            for item_id in stale:
                pipe.delete(self._item_key(queue, item_id))
            pipe.execute()
        return list(stale)

    def pause(self, queue: QueueName) -> None:
        self._redis.set(self._key(queue, "paused"), "1")

    def resume(self, queue: QueueName) -> None:
        self._redis.delete(self._key(queue, "paused"))

    def is_paused(self, queue: QueueName) -> bool:
        return bool(self._redis.exists(self._key(queue, "paused")))

    def drain(self, queue: QueueName, include_delayed: bool = False) -> list[BrokerItem]:
        """
        Remove every waiting item (and delayed ones when asked). Leased, completed
        and failed items are untouched. Returns what was removed.
        """
        states = ("wait", "delayed") if include_delayed else ("wait",)
        drained = []
        for state in states:
            for item_id in self._redis.zrange(self._key(queue, state), 0, -1):
                # zrem == 0: a worker reserved it first
                if not self._redis.zrem(self._key(queue, state), item_id):
                    continue
                item = self.get(queue, item_id)
                self._redis.delete(self._item_key(queue, item_id))
                if item is not None:
                    drained.append(item)
        return drained

    # ── Admission guards ────────────────────────────────────────
    def claim_dedup(self, site_id: str, job_type: str, ttl_seconds: int) -> bool:
        """Atomic set-if-absent. False means someone else holds the claim."""
        return bool(self._redis.set(self.dedup_key(site_id, job_type), "1", nx=True, ex=ttl_seconds))

    def release_dedup(self, site_id: str, job_type: str) -> None:
        self._redis.delete(self.dedup_key(site_id, job_type))

    def incr_budget(self, queue: str, job_type: str, day: date) -> int:
        key = self.budget_key(queue, job_type, day)
        count = self._redis.incr(key)
        if count == 1:
            self._redis.expire(key, BUDGET_KEY_TTL)
        return int(count)
