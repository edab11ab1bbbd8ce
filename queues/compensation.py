"""
Compensation log for the two-store writes (Job Store + broker).

There is no transaction spanning Postgres and Redis. When one side of a write
succeeded and the other didn't, we undo the half that landed: delete the record
whose dispatch failed, remove the broker item of a healed job, release a dedup claim.

Each compensating action is logged in two phases: intent before running it and
outcome after. A failed compensation is logged and recorded but never raised:
the caller is already handling a worse error, and the stuck-task sweep repairs
whatever is left behind.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from models.job import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CompensationRecord:
    action: str
    target: str
    reason: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    succeeded: Optional[bool] = None
    error: Optional[str] = None


class CompensationLog:

    def __init__(self, max_entries: int = 500):
        self._entries: deque[CompensationRecord] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def run(self, action: str, target: str, reason: str, fn: Callable[[], object]) -> CompensationRecord:
        record = CompensationRecord(action=action, target=target, reason=reason, started_at=utcnow())
        logger.warning(f"Compensation {action} on {target} starting: {reason}")

        try:
            fn()
            record.succeeded = True
            logger.info(f"Compensation {action} on {target} succeeded")
        except Exception as e:
            record.succeeded = False
            record.error = str(e)
            logger.error(f"Compensation {action} on {target} failed: {e}", exc_info=True)
        finally:
            record.finished_at = utcnow()
            with self._lock:
                self._entries.append(record)

        return record

    def entries(self) -> list[CompensationRecord]:
        with self._lock:
            return list(self._entries)

    def failures(self) -> list[CompensationRecord]:
        return [r for r in self.entries() if r.succeeded is False]
