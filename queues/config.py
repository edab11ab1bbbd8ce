"""
Per-queue settings: broker lease, default attempts, backoff base, retention, daily budget.

Timeouts are chosen by how slow the queue's external dependencies are: a DB-only
A/B rebalance gets a minute, a full product-catalog sync gets four hours.

Attempts/backoff/timeout can be overridden per queue from the environment:
    QUEUE_OVERRIDES='{"content": {"attempts": 5, "backoff_delay": 20, "timeout": 600}}'
Daily budgets likewise:
    DAILY_BUDGETS='{"content": 5000}'
"""

from dataclasses import dataclass, replace

from config.settings import settings
from models.enums import QueueName

# Broker retention when the caller doesn't ask for anything else
KEEP_COMPLETED = 100
KEEP_FAILED = 500


@dataclass(frozen=True)
class QueueConfig:
    name: QueueName
    timeout: float               # seconds a worker may hold an item before it's redelivered
    default_attempts: int
    backoff_base_delay: float    # seconds
    remove_on_complete: int = KEEP_COMPLETED
    remove_on_fail: int = KEEP_FAILED


DEFAULT_QUEUE_CONFIG: dict[QueueName, QueueConfig] = {
    QueueName.CONTENT: QueueConfig(QueueName.CONTENT, 300, 3, 10),
    QueueName.SEO: QueueConfig(QueueName.SEO, 180, 5, 15),
    QueueName.GSC: QueueConfig(QueueName.GSC, 120, 5, 30),
    QueueName.SITE: QueueConfig(QueueName.SITE, 600, 3, 10),
    QueueName.DOMAIN: QueueConfig(QueueName.DOMAIN, 180, 5, 30),
    QueueName.ANALYTICS: QueueConfig(QueueName.ANALYTICS, 120, 3, 10),
    QueueName.ABTEST: QueueConfig(QueueName.ABTEST, 60, 3, 5),
    QueueName.SYNC: QueueConfig(QueueName.SYNC, 4 * 60 * 60, 2, 60),
    QueueName.MICROSITE: QueueConfig(QueueName.MICROSITE, 300, 3, 15),
    QueueName.SOCIAL: QueueConfig(QueueName.SOCIAL, 120, 3, 30),
    QueueName.ADS: QueueConfig(QueueName.ADS, 300, 3, 30),
}

# Queues that call paid or rate-limited APIs get a daily admission ceiling per job type
DEFAULT_DAILY_BUDGETS: dict[QueueName, int] = {
    QueueName.CONTENT: 2000,
    QueueName.SEO: 1000,
    QueueName.GSC: 500,
    QueueName.SOCIAL: 300,
    QueueName.ADS: 500,
}


def build_queue_configs(overrides: dict[str, dict[str, float]]) -> dict[QueueName, QueueConfig]:
    """Apply QUEUE_OVERRIDES on top of the defaults. Unknown queue names raise ValueError."""
    configs = dict(DEFAULT_QUEUE_CONFIG)
    for queue_name, values in overrides.items():
        queue = QueueName(queue_name)
        changes = {}
        if "attempts" in values:
            changes["default_attempts"] = int(values["attempts"])
        if "backoff_delay" in values:
            changes["backoff_base_delay"] = float(values["backoff_delay"])
        if "timeout" in values:
            changes["timeout"] = float(values["timeout"])
        configs[queue] = replace(configs[queue], **changes)
    return configs


def build_daily_budgets(overrides: dict[str, int]) -> dict[QueueName, int]:
    budgets = dict(DEFAULT_DAILY_BUDGETS)
    for queue_name, ceiling in overrides.items():
        budgets[QueueName(queue_name)] = int(ceiling)
    return budgets


QUEUE_CONFIG = build_queue_configs(settings.QUEUE_OVERRIDES)
DAILY_BUDGETS = build_daily_budgets(settings.DAILY_BUDGETS)


def get_queue_config(queue: QueueName) -> QueueConfig:
    return QUEUE_CONFIG[QueueName(queue)]
