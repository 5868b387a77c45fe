"""Concurrency control for document processing.

Bounds how many processing jobs may be in flight at once. The counter is
only touched from the event loop thread, so no lock is needed; a threaded
runtime would have to guard it.
"""

import logging
from typing import Optional

from docflow.exceptions import CapacityError
from docflow.jobs.models import ProcessingLoad

logger = logging.getLogger(__name__)


class ConcurrencyManager:
    """Counts active processing jobs against a configured ceiling."""

    def __init__(self, max_concurrent: int = 5):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._max = max_concurrent
        self._active = 0

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def max_concurrent(self) -> int:
        return self._max

    def get_processing_load(self) -> ProcessingLoad:
        return ProcessingLoad(
            active=self._active,
            max=self._max,
            available=max(0, self._max - self._active),
            utilization_percent=round(self._active / self._max * 100),
        )

    def has_capacity(self) -> bool:
        return self._active < self._max

    def check_capacity(self) -> Optional[CapacityError]:
        """Return a CapacityError descriptor when full, None otherwise."""
        if self.has_capacity():
            return None
        logger.warning("Processing limit reached (%d/%d)", self._active, self._max)
        return CapacityError(load=self.get_processing_load().model_dump())

    def increment_jobs(self) -> int:
        self._active += 1
        logger.info("Active processing jobs: %d/%d", self._active, self._max)
        return self._active

    def decrement_jobs(self) -> int:
        if self._active == 0:
            logger.warning("decrement_jobs() called with no active jobs; ignoring")
            return 0
        self._active -= 1
        logger.info("Active processing jobs: %d/%d", self._active, self._max)
        return self._active
