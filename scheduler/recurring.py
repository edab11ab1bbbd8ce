"""
Recurring schedules — cron-driven admissions stored in the broker.

Schedules are broker repeatables, not in-process timers, so they survive
restarts and several worker processes never double-fire them.
`DEFAULT_SCHEDULES` is the platform's standing set; `initialize_defaults()` registers
it on worker start (re-registering is idempotent: same type + pattern = same key).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from errors.classifier import JobValidationError
from models.catalog import queue_for
from models.enums import JobType, QueueName
from queues.broker import RedisBroker, repeat_key_for
from queues.registry import JobOptions, validate_request
from scheduler.cron import next_run

logger = logging.getLogger(__name__)

# Repeatables fire forever; keep less history than ad-hoc jobs
REPEATABLE_KEEP_COMPLETED = 50
REPEATABLE_KEEP_FAILED = 200


@dataclass(frozen=True)
class ScheduleDefinition:
    job_type: JobType
    pattern: str
    description: str
    payload: dict = field(default_factory=dict)


DEFAULT_SCHEDULES: tuple[ScheduleDefinition, ...] = (
    ScheduleDefinition(
        JobType.GSC_SYNC, "0 */6 * * *", "GSC data sync, every 6 hours",
        {"siteId": "all", "dimensions": ["query", "page", "country", "device"]},
    ),
    ScheduleDefinition(
        JobType.SEO_OPPORTUNITY_SCAN, "0 2 * * *", "Opportunity scan, daily at 2 AM",
        {"forceRescan": False},
    ),
    ScheduleDefinition(
        JobType.SEO_ANALYZE, "0 3 * * *", "SEO health audit with auto-optimization, daily at 3 AM",
        {"siteId": "all", "fullSiteAudit": False, "triggerOptimizations": True},
    ),
    ScheduleDefinition(
        JobType.SEO_ANALYZE, "0 5 * * 0", "Deep SEO audit, Sundays at 5 AM",
        {"siteId": "all", "fullSiteAudit": True, "forceAudit": True, "triggerOptimizations": True},
    ),
    ScheduleDefinition(
        JobType.SEO_AUTO_OPTIMIZE, "0 6 * * 0", "SEO auto-optimization, Sundays at 6 AM",
        {"siteId": "all", "scope": "all"},
    ),
    ScheduleDefinition(
        JobType.METRICS_AGGREGATE, "0 1 * * *", "Metrics aggregation, daily at 1 AM",
        {"aggregationType": "daily"},
    ),
    ScheduleDefinition(
        JobType.PERFORMANCE_REPORT, "0 9 * * 1", "Weekly performance report, Mondays at 9 AM",
        {"reportType": "weekly"},
    ),
    ScheduleDefinition(
        JobType.ABTEST_REBALANCE, "0 * * * *", "A/B test rebalancing, hourly",
        {"abTestId": "all", "algorithm": "thompson_sampling"},
    ),
    ScheduleDefinition(
        JobType.LINK_BACKLINK_MONITOR, "0 3 * * 3", "Backlink monitor, Wednesdays at 3 AM",
        {"siteId": "all"},
    ),
    ScheduleDefinition(
        JobType.LINK_OPPORTUNITY_SCAN, "0 2 * * 2", "Link opportunity scan, Tuesdays at 2 AM",
        {"siteId": "all"},
    ),
)


@dataclass
class ScheduleInfo:
    job_type: str
    queue: str
    pattern: str
    description: str
    registered: bool
    next_run: Optional[datetime]
    payload: dict = field(default_factory=dict)


class RecurringScheduler:

    def __init__(self, broker: RedisBroker,
                 schedules: tuple[ScheduleDefinition, ...] = DEFAULT_SCHEDULES):
        self._broker = broker
        self._schedules = schedules

    def register_recurring(self, job_type: "JobType | str", payload: dict, cron_pattern: str,
                           options: Optional[JobOptions] = None) -> str:
        """Validate the request and store it as a broker repeatable. Returns the repeat key."""
        job_type, queue, model = validate_request(job_type, payload, options)
        try:
            next_run(cron_pattern)
        except ValueError as e:
            raise JobValidationError(str(e), context={"job_type": job_type.value, "pattern": cron_pattern})

        opts = options.explicit() if options else {}
        opts.pop("delay", None)
        opts.setdefault("remove_on_complete", REPEATABLE_KEEP_COMPLETED)
        opts.setdefault("remove_on_fail", REPEATABLE_KEEP_FAILED)

        try:
            key = self._broker.add_repeatable(queue, job_type.value, model.to_json(), cron_pattern, **opts)
        except ValueError as e:
            raise JobValidationError(str(e), context={"job_type": job_type.value, "pattern": cron_pattern})
        logger.info(f"Registered recurring {job_type.value} on {queue.value} with pattern '{cron_pattern}'")
        return key

    def unregister(self, job_type: "JobType | str", cron_pattern: str) -> bool:
        job_type = JobType(job_type)
        return self._broker.remove_repeatable(queue_for(job_type), job_type.value, cron_pattern)

    def unregister_all(self) -> int:
        """Remove every repeatable found in the broker. Returns how many were removed."""
        removed = 0
        for queue in QueueName:
            for spec in self._broker.list_repeatables(queue):
                if self._broker.remove_repeatable(queue, spec.name, spec.pattern):
                    removed += 1
        logger.info(f"Removed {removed} recurring schedules")
        return removed

    def initialize_defaults(self) -> list[str]:
        keys = [
            self.register_recurring(s.job_type, s.payload, s.pattern)
            for s in self._schedules
        ]
        logger.info(f"Initialized {len(keys)} default schedules")
        return keys

    def list_schedules(self, now: Optional[datetime] = None) -> list[ScheduleInfo]:
        """Every repeatable in the broker, plus defaults that aren't registered yet."""
        descriptions = {repeat_key_for(s.job_type.value, s.pattern): s for s in self._schedules}
        seen = set()
        inventory = []

        for queue in QueueName:
            for spec in self._broker.list_repeatables(queue):
                seen.add(spec.key)
                definition = descriptions.get(spec.key)
                inventory.append(ScheduleInfo(
                    job_type=spec.name,
                    queue=spec.queue,
                    pattern=spec.pattern,
                    description=definition.description if definition else "Custom schedule",
                    registered=True,
                    next_run=next_run(spec.pattern, now),
                    payload=spec.data,
                ))

        for key, definition in descriptions.items():
            if key in seen:
                continue
            inventory.append(ScheduleInfo(
                job_type=definition.job_type.value,
                queue=queue_for(definition.job_type).value,
                pattern=definition.pattern,
                description=definition.description,
                registered=False,
                next_run=next_run(definition.pattern, now),
                payload=definition.payload,
            ))

        return inventory
