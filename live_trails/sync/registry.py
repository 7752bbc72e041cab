"""
Bookkeeping shared by every session of the same user.

A user may be signed in from several places at once (browser tabs, an
MQTT phone). Their sessions all write the same presence record and the
same location stream, so they share two things through a registry:

- a count of live presence trackers, so only the last one to leave writes
  ``online: false``
- the last assigned sample timestamp, so two publishers of one user never
  hand out the same ``(user_id, timestamp)`` pair
"""

import logging
from collections import Counter

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Per-user tracker counts and timestamp sequences for one process."""

    def __init__(self) -> None:
        self._trackers: Counter[str] = Counter()
        self._last_timestamps: dict[str, int] = {}

    def acquire(self, user_id: str) -> int:
        """
        Register a live tracker for ``user_id``.

        Returns:
            Number of live trackers of the user, this one included
        """
        self._trackers[user_id] += 1
        return self._trackers[user_id]

    def release(self, user_id: str) -> bool:
        """
        Unregister a live tracker.

        Returns:
            True if it was the user's last one
        """
        remaining = self._trackers[user_id] - 1
        if remaining > 0:
            self._trackers[user_id] = remaining
            return False
        self._trackers.pop(user_id, None)
        logger.debug("Last session of %s released", user_id)
        return True

    def active(self, user_id: str) -> int:
        """Number of live trackers of ``user_id``."""
        return self._trackers[user_id]

    def next_timestamp(self, user_id: str, now: float) -> int:
        """Millisecond timestamp for a new sample, strictly above the user's last one."""
        timestamp = int(now)
        last = self._last_timestamps.get(user_id)
        if last is not None and timestamp <= last:
            timestamp = last + 1
        self._last_timestamps[user_id] = timestamp
        return timestamp
