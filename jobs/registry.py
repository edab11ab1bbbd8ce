"""
Handler registry — maps JobType to the handler that executes it.

Handlers are provided by the modules listed in HANDLER_MODULES; each one
registers itself on import:

    from jobs.registry import handlers
    handlers.register(ContentGenerateHandler())

A job type with no handler is a deployment mistake, not a transient failure:
lookup raises ConfigurationError, which the retry policy dead-letters immediately.
"""

import importlib
import logging

from errors.classifier import ConfigurationError
from jobs.base import AbstractJobHandler
from models.enums import JobType

logger = logging.getLogger(__name__)


class HandlerRegistry:

    def __init__(self):
        self._handlers: dict[JobType, AbstractJobHandler] = {}

    def register(self, handler: AbstractJobHandler) -> None:
        job_type = JobType(handler.job_type)
        if job_type in self._handlers:
            logger.warning(f"Replacing handler for {job_type.value}")
        self._handlers[job_type] = handler

    def get(self, job_type: "JobType | str") -> AbstractJobHandler:
        handler = self._handlers.get(JobType(job_type))
        if handler is None:
            raise ConfigurationError(
                f"No handler registered for job type {job_type}. "
                f"Available: {[t.value for t in self._handlers]}",
                config_key="HANDLER_MODULES",
            )
        return handler

    def __contains__(self, job_type) -> bool:
        return JobType(job_type) in self._handlers

    def registered_types(self) -> list[str]:
        return sorted(t.value for t in self._handlers)


# Process-wide registry that handler modules register into
handlers = HandlerRegistry()


def load_handler_modules(module_names: list[str]) -> None:
    """Import each handler module so it can register itself."""
    for name in module_names:
        importlib.import_module(name)
        logger.info(f"Loaded handler module {name}")
