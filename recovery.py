"""Failure classification, retry/backoff and escalation.

Each ErrorKind has its own machine ``IDLE -> RETRYING(n) -> RECOVERED | ESCALATED``
but at most one kind is in flight at a time. A failure of a different kind
preempts the running one: its backoff timer and recovery action are
cancelled and it goes back to IDLE.

Recovery actions run as asyncio tasks spawned from the backoff timer. A
generation counter is bumped on every preemption or reset so that a
completion arriving after the machine moved on is ignored.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, Optional

from config import EngineConfig
from errors import is_retryable, message_for, options_for
from interfaces import RecognitionControl, Timer, TimerHandle
from models import (
    CommitResult,
    ErrorKind,
    ErrorRecord,
    RecoveryAttempt,
    RecoveryPhase,
)
from state_store import StateStore
from timers import maybe_await

logger = logging.getLogger(__name__)

Spawner = Callable[[Coroutine[Any, Any, None]], "asyncio.Future[None]"]


def _spawn_on_running_loop(coro: Coroutine[Any, Any, None]) -> "asyncio.Future[None]":
    return asyncio.get_running_loop().create_task(coro)


class ErrorRecoveryCoordinator:
    def __init__(
        self,
        store: StateStore,
        control: RecognitionControl,
        timer: Timer,
        config: EngineConfig,
        spawn: Optional[Spawner] = None,
    ) -> None:
        self._store = store
        self._control = control
        self._timer = timer
        self._config = config
        self._spawn = spawn or _spawn_on_running_loop
        self._phases: Dict[ErrorKind, RecoveryPhase] = {kind: RecoveryPhase.IDLE for kind in ErrorKind}
        self._active_kind: Optional[ErrorKind] = None
        self._attempt = 0
        self._record: Optional[ErrorRecord] = None
        self._handle: Optional[TimerHandle] = None
        self._task: Optional["asyncio.Future[None]"] = None
        self._generation = 0

    @property
    def active_kind(self) -> Optional[ErrorKind]:
        return self._active_kind

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def is_escalated(self) -> bool:
        return self._active_kind is not None and self._phases[self._active_kind] is RecoveryPhase.ESCALATED

    @property
    def is_recovering(self) -> bool:
        return self._active_kind is not None and self._phases[self._active_kind] is RecoveryPhase.RETRYING

    @property
    def pending_task(self) -> Optional["asyncio.Future[None]"]:
        return self._task

    def phase(self, kind: ErrorKind) -> RecoveryPhase:
        return self._phases[kind]

    def handle_failure(self, kind: ErrorKind, message: str = "") -> CommitResult:
        """Entry point for a failure signal from the recognition collaborator."""
        active = self._active_kind
        if active is kind and self._phases[kind] in (RecoveryPhase.RETRYING, RecoveryPhase.ESCALATED):
            logger.debug("Ignoring repeated %s failure while %s", kind.value, self._phases[kind].value)
            return CommitResult.ok(self._store.read().version)
        if active is not None:
            logger.info("%s failure preempts recovery of %s", kind.value, active.value)
        self._abandon()

        retryable = is_retryable(kind) and self._config.max_attempts_for(kind) > 0
        self._record = ErrorRecord(
            kind=kind,
            message=message or message_for(kind),
            retryable=retryable,
            occurred_at_version=self._store.read().version,
        )
        self._active_kind = kind
        if not retryable:
            return self._escalate(kind, attempts=0)
        return self._enter_retrying(kind, 1)

    def note_failure(self, kind: ErrorKind, message: str = "") -> CommitResult:
        """Record a failure that arrived while listening was not requested.

        No retry machine is started. ``aborted`` is the expected echo of a
        user stop and is not recorded.
        """
        state = self._store.read()
        if kind is ErrorKind.ABORTED:
            logger.debug("Ignoring aborted signal while stopped")
            return CommitResult.ok(state.version)
        record = ErrorRecord(
            kind=kind,
            message=message or message_for(kind),
            retryable=False,
            occurred_at_version=state.version,
        )
        return self._propose({"last_error": record})

    def handle_success(self) -> Optional[CommitResult]:
        """Recognition is producing results: every kind goes back to IDLE."""
        was_in_flight = self._active_kind is not None
        if self._active_kind is not None:
            self._abandon()
        for kind in ErrorKind:
            self._phases[kind] = RecoveryPhase.IDLE
        self._record = None

        state = self._store.read()
        if state.last_error is None and state.recovery_attempt is None:
            return None
        delta: Dict[str, Any] = {"last_error": None, "recovery_attempt": None}
        if was_in_flight:
            delta["is_active"] = True
        return self._propose(delta)

    def reset(self) -> None:
        """Abandon all recovery bookkeeping without committing."""
        self._abandon()
        for kind in ErrorKind:
            self._phases[kind] = RecoveryPhase.IDLE
        self._record = None

    def _enter_retrying(self, kind: ErrorKind, attempt: int) -> CommitResult:
        self._phases[kind] = RecoveryPhase.RETRYING
        self._attempt = attempt
        generation = self._generation
        result = self._propose(
            {
                "last_error": self._record,
                "recovery_attempt": RecoveryAttempt(kind=kind, attempt=attempt),
                "is_active": False,
            }
        )
        if generation != self._generation:
            # A subscriber reacted to the commit by preempting this machine.
            return result
        delay = self._config.backoff_delay(kind, attempt)
        logger.info("Retrying %s (attempt %d) in %.0f ms", kind.value, attempt, delay)
        self._handle = self._timer.call_later(
            delay, lambda: self._on_backoff_elapsed(generation, kind, attempt)
        )
        return result

    def _escalate(self, kind: ErrorKind, attempts: int) -> CommitResult:
        self._phases[kind] = RecoveryPhase.ESCALATED
        self._attempt = attempts
        logger.warning("Escalating %s after %d attempt(s)", kind.value, attempts)
        return self._propose(
            {
                "last_error": self._record,
                "recovery_attempt": RecoveryAttempt(
                    kind=kind,
                    attempt=attempts,
                    phase=RecoveryPhase.ESCALATED,
                    options=options_for(kind),
                ),
                "is_active": False,
            }
        )

    def _on_backoff_elapsed(self, generation: int, kind: ErrorKind, attempt: int) -> None:
        if generation != self._generation:
            return
        self._handle = None
        self._task = self._spawn(self._recover(generation, kind, attempt))

    async def _recover(self, generation: int, kind: ErrorKind, attempt: int) -> None:
        try:
            succeeded = await self._run_action(kind)
        except Exception as exc:
            logger.warning("Recovery action for %s failed: %s", kind.value, exc)
            succeeded = False
        if generation != self._generation:
            return
        self._task = None
        if succeeded:
            self._mark_recovered(kind)
        elif attempt < self._config.max_attempts_for(kind):
            self._enter_retrying(kind, attempt + 1)
        else:
            self._escalate(kind, attempts=attempt)

    async def _run_action(self, kind: ErrorKind) -> bool:
        if kind is ErrorKind.NETWORK:
            if not await maybe_await(self._control.probe_connectivity()):
                return False
        elif kind is ErrorKind.AUDIO_CAPTURE_FAILURE:
            if not await maybe_await(self._control.reacquire_audio()):
                return False
        await maybe_await(self._control.start())
        return bool(await maybe_await(self._control.is_listening()))

    def _mark_recovered(self, kind: ErrorKind) -> None:
        logger.info("Recovered from %s after %d attempt(s)", kind.value, self._attempt)
        self._phases[kind] = RecoveryPhase.RECOVERED
        self._active_kind = None
        self._attempt = 0
        self._record = None
        self._propose({"last_error": None, "recovery_attempt": None, "is_active": True})

    def _abandon(self) -> None:
        self._generation += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            self._task = None
        if self._active_kind is not None:
            self._phases[self._active_kind] = RecoveryPhase.IDLE
        self._active_kind = None
        self._attempt = 0

    def _propose(self, delta: Dict[str, Any]) -> CommitResult:
        state = self._store.read()
        result = self._store.propose(delta, base_version=state.version)
        if not result.accepted:
            logger.error(
                "Recovery state commit rejected: %s %s",
                result.reason.value if result.reason else "",
                result.message,
            )
        return result
