"""Retention cleanup for completed jobs."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from analysis_queue.queue.repository import JobRepository

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(hours=24)


class Reaper:
    """Deletes completed jobs whose completion is older than the retention window."""

    def __init__(
        self,
        repository: JobRepository,
        *,
        retention: timedelta = DEFAULT_RETENTION,
    ) -> None:
        if retention < timedelta(0):
            raise ValueError("Retention window must not be negative.")
        self.repository = repository
        self.retention = retention

    def purge(self, *, now: datetime | None = None) -> int:
        """Delete expired completed jobs; failed and active jobs are never touched."""

        purged = self.repository.purge_completed_older_than(self.retention, now=now)
        if purged:
            logger.info("Purged %d completed jobs older than %s", purged, self.retention)
        return purged
