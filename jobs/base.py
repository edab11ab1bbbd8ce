"""
Handler contract for job types.

Each job type (content generation, GSC sync, social posting, ...) is implemented by
a handler living outside this package. The worker calls handler.run(context)
without knowing which type it is; it looks the handler up in a HandlerRegistry.

    AbstractJobHandler = interface
    HandlerRegistry    = job_type → handler lookup

Handlers must be idempotent: delivery is at-least-once, and a crashed worker's
lease expiring means the same payload can run twice.

Returning JobResult(success=False, ...) and raising are equivalent: both go
through the error classifier and the retry policy.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from errors.circuit_breaker import CircuitBreakerRegistry
from models.enums import JobType, QueueName
from models.payloads import JobPayload

T = TypeVar("T")


@dataclass
class JobContext:
    job_id: str
    job_type: JobType
    queue: QueueName
    payload: JobPayload
    attempt: int                 # 1-based
    max_attempts: int
    correlation_key: str
    site_id: Optional[str] = None
    breakers: Optional[CircuitBreakerRegistry] = None

    def call_service(self, service: str, fn: Callable[[], T]) -> T:
        """
        Call an external service through its shared circuit breaker.

        While the circuit is OPEN this raises CircuitOpenError without calling fn;
        the retry policy treats that as a temporary failure and backs off.
        """
        if self.breakers is None:
            return fn()
        return self.breakers.get(service).call(fn)


@dataclass
class JobResult:
    success: bool
    message: Optional[str] = None
    data: dict = field(default_factory=dict)
    error: Optional[str] = None
    retryable: Optional[bool] = None   # None = let the classifier decide

    @classmethod
    def ok(cls, message: Optional[str] = None, **data) -> "JobResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def failed(cls, error: str, *, retryable: Optional[bool] = None) -> "JobResult":
        return cls(success=False, error=error, retryable=retryable)


class AbstractJobHandler(ABC):

    @abstractmethod
    def run(self, context: JobContext) -> JobResult:
        """
        Execute the job.

        Args:
            context: job identity plus the validated, typed payload.

        Returns:
            JobResult. On success, `data` is stored in the Job.result column.

        Raises:
            Any exception → classified and handed to the retry policy.
        """
        ...

    @property
    @abstractmethod
    def job_type(self) -> JobType:
        """The JobType this handler executes."""
        ...
