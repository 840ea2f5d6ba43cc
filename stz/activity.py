"""
Activity Tracker: decides whether the cluster counts as active.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from loguru import logger

from .probe import is_connection_refused


class ActivityVerdict(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    RETRY = "retry"  # rebuild the probe with fresh credentials and count again


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivityTracker:
    """
    Tracks the last time the cluster had open sessions.

    ``last_active`` is None until tracking starts. A tracker in that state
    counts as active, so a freshly started, re-enabled or promoted sidecar
    needs a full inactivity window before it can trigger hibernation.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self.last_active: Optional[datetime] = None

    def reset(self) -> None:
        self.last_active = None

    def assess(
        self,
        count: Optional[int],
        inactivity_minutes: int,
        error: Optional[BaseException] = None,
    ) -> ActivityVerdict:
        """
        Turn a session count (or the error that prevented one) into a verdict.

        Args:
            count: Open non-replication sessions, None if the query failed
            inactivity_minutes: Minutes without sessions before the cluster is inactive
            error: The probe failure, if any

        Returns:
            ActivityVerdict

        Raises:
            The probe error itself, unless it is a refused connection
        """
        if error is not None:
            if is_connection_refused(error):
                return ActivityVerdict.RETRY
            raise error

        if count is None:
            raise ValueError("count is required when no error is given")

        if count > 0 or self.last_active is None:
            self.last_active = self._clock()
            return ActivityVerdict.ACTIVE

        idle = self._clock() - self.last_active
        logger.debug(f"No open connections for {idle}")
        if idle < timedelta(minutes=inactivity_minutes):
            return ActivityVerdict.ACTIVE

        return ActivityVerdict.INACTIVE
