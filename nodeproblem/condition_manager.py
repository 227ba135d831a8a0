"""Keeps the node conditions on the API server in step with the detector's view.

The manager makes sure that:

1. condition updates reach the API server as soon as possible;
2. the API server is not flooded with requests;
3. nobody else can change the conditions the detector maintains.

Every UPDATE_PERIOD it checks for condition updates and syncs if there are
any. It also resyncs after a failed sync, no more often than RESYNC_PERIOD,
and sends a heartbeat sync every ``heartbeat_period`` regardless.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Protocol, Union

from .problemclient import NodeCondition

__all__ = [
    "UPDATE_PERIOD",
    "RESYNC_PERIOD",
    "ConditionStatus",
    "Condition",
    "ManualClock",
    "ConditionManager",
    "convert_to_api_condition",
]

logger = logging.getLogger(__name__)

# Seconds between checks for condition updates.
UPDATE_PERIOD = 1.0
# Minimum time between a failed sync and the resync that follows it.
RESYNC_PERIOD = timedelta(seconds=10)


class ConditionStatus(str, Enum):
    """Whether a condition holds."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """A node condition as the problem daemons report it."""

    type: str
    status: ConditionStatus
    transition: datetime
    reason: str = ""
    message: str = ""


def convert_to_api_condition(condition: Condition) -> NodeCondition:
    """Convert a detector condition into the form the API server stores."""
    return NodeCondition(
        type=condition.type,
        status=ConditionStatus(condition.status).value,
        last_transition_time=condition.transition,
        reason=condition.reason,
        message=condition.message,
    )


class Clock(Protocol):
    def now(self) -> datetime: ...


class _SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def _as_timedelta(value: Union[float, int, timedelta]) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(seconds=value)


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime.now(timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        """Return the current fake time."""
        with self._lock:
            return self._now

    def step(self, seconds: Union[float, int, timedelta]) -> None:
        """Advance the clock by ``seconds``."""
        with self._lock:
            self._now += _as_timedelta(seconds)


class ConditionManager:
    """Synchronises node conditions with the API server through a problem client."""

    def __init__(
        self,
        client: Any,
        heartbeat_period: Union[float, int, timedelta],
        clock: Optional[Clock] = None,
    ) -> None:
        self.client = client
        self.clock: Clock = clock or _SystemClock()
        self.heartbeat_period = _as_timedelta(heartbeat_period)
        self.updates: dict[str, Condition] = {}
        self.conditions: dict[str, Condition] = {}
        self.latest_try: Optional[datetime] = None
        self.resync_needed = False
        self._lock = threading.RLock()

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Run the sync loop in a background thread until ``stop_event`` is set."""
        thread = threading.Thread(
            target=self._sync_loop, args=(stop_event,), name="condition-sync", daemon=True
        )
        thread.start()
        return thread

    def update_condition(self, condition: Condition) -> None:
        """Queue ``condition``; a newer one of the same type replaces it."""
        with self._lock:
            self.updates[condition.type] = condition

    def get_conditions(self) -> list[Condition]:
        """Return every condition currently held."""
        with self._lock:
            return list(self.conditions.values())

    def _sync_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(UPDATE_PERIOD):
            if self.need_updates() or self.need_resync() or self.need_heartbeat():
                self.sync()

    def need_updates(self) -> bool:
        """Apply queued updates; return True if any of them changed a condition."""
        with self._lock:
            changed = False
            for condition_type, update in self.updates.items():
                if self.conditions.get(condition_type) != update:
                    changed = True
                    self.conditions[condition_type] = update
            self.updates.clear()
            return changed

    def _since_latest_try(self) -> timedelta:
        if self.latest_try is None:
            return timedelta.max
        return self.clock.now() - self.latest_try

    def need_resync(self) -> bool:
        """Return True if a failed sync is due to be retried."""
        return self._since_latest_try() >= RESYNC_PERIOD and self.resync_needed

    def need_heartbeat(self) -> bool:
        """Return True if a forced heartbeat sync is due."""
        return self._since_latest_try() >= self.heartbeat_period

    def sync(self) -> None:
        """Send every held condition to the API server."""
        self.latest_try = self.clock.now()
        self.resync_needed = False
        with self._lock:
            conditions = [convert_to_api_condition(c) for c in self.conditions.values()]
        try:
            self.client.set_conditions(conditions)
        except Exception as exc:
            # The conditions are sent again on a later sync.
            logger.error("failed to update node conditions: %s", exc)
            self.resync_needed = True