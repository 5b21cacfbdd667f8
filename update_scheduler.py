"""Coalescing commit scheduler with a forced-commit ceiling."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional

from interfaces import Timer, TimerHandle
from models import ApplicationState, CommitResult, RejectionReason
from state_store import StateStore

logger = logging.getLogger(__name__)

Producer = Callable[[ApplicationState], Optional[Mapping[str, Any]]]
ResultCallback = Callable[[CommitResult], None]


class UpdateScheduler:
    """Last-write-wins scheduler in front of the StateStore.

    Each ``schedule_commit`` restarts the idle window with the newest producer.
    The ceiling timer is armed by the first request of a burst and is never
    restarted, so a continuous burst still commits at least every
    ``max_interval`` units.
    """

    def __init__(
        self,
        store: StateStore,
        timer: Timer,
        idle_delay: float = 100.0,
        max_interval: float = 500.0,
    ) -> None:
        self._store = store
        self._timer = timer
        self._idle_delay = idle_delay
        self._max_interval = max_interval
        self._producer: Optional[Producer] = None
        self._on_result: Optional[ResultCallback] = None
        self._idle_handle: Optional[TimerHandle] = None
        self._ceiling_handle: Optional[TimerHandle] = None
        self.commits = 0
        self.forced_commits = 0

    @property
    def pending(self) -> bool:
        return self._producer is not None

    def schedule_commit(self, producer: Producer, on_result: Optional[ResultCallback] = None) -> None:
        self._producer = producer
        self._on_result = on_result
        if self._idle_handle is not None:
            self._idle_handle.cancel()
        self._idle_handle = self._timer.call_later(self._idle_delay, self._fire_idle)
        if self._ceiling_handle is None:
            self._ceiling_handle = self._timer.call_later(self._max_interval, self._fire_forced)

    def flush(self) -> Optional[CommitResult]:
        """Run the pending producer now, if any."""
        if self._producer is None:
            return None
        return self._fire()

    def cancel(self) -> None:
        """Drop the pending producer without running it."""
        self._producer = None
        self._on_result = None
        self._cancel_timers()

    def _fire_idle(self) -> None:
        self._idle_handle = None
        self._fire()

    def _fire_forced(self) -> None:
        self._ceiling_handle = None
        if self._producer is not None:
            self.forced_commits += 1
        self._fire()

    def _fire(self) -> Optional[CommitResult]:
        producer, on_result = self._producer, self._on_result
        self._producer = None
        self._on_result = None
        self._cancel_timers()
        if producer is None:
            return None

        result = self._run(producer)
        if result is None:
            return None
        if (
            not result.accepted
            and result.reason is RejectionReason.STALE_VERSION_CONFLICT
        ):
            logger.debug("Scheduled commit hit a stale version, recomputing once")
            result = self._run(producer)
            if result is None:
                return None

        if result.accepted:
            self.commits += 1
        else:
            logger.warning(
                "Scheduled commit rejected: %s %s",
                result.reason.value if result.reason else "",
                result.message,
            )
        if on_result is not None:
            on_result(result)
        return result

    def _run(self, producer: Producer) -> Optional[CommitResult]:
        snapshot = self._store.read()
        delta = producer(snapshot)
        if delta is None:
            return None
        return self._store.propose(delta, base_version=snapshot.version)

    def _cancel_timers(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None
        if self._ceiling_handle is not None:
            self._ceiling_handle.cancel()
            self._ceiling_handle = None
