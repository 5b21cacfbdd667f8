"""Session orchestration: wires the recognizer's events and the user's commands to the engine."""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from typing import Any, Callable, List, Optional, Set, Tuple

from config import EngineConfig
from errors import classify_exception, classify_failure
from interfaces import RecognitionControl, Timer
from models import (
    ApplicationState,
    CommitResult,
    RecognitionEvent,
    RecognitionEventKind,
    RejectionReason,
    RejectionRecord,
)
from recovery import ErrorRecoveryCoordinator, Spawner
from state_store import FieldPredicate, StateCallback, StateStore
from timers import LoopTimer, maybe_await
from transcript import TranscriptAccumulator, transcript_invariants
from update_scheduler import UpdateScheduler

logger = logging.getLogger(__name__)

_LANGUAGE_RE = re.compile(r"^[A-Za-z]{2,3}(?:-[A-Za-z0-9]{2,8})*$")

EventSink = Callable[[RecognitionEvent], None]
# (method name, arguments, route a failure to recovery)
ControlStep = Tuple[str, Tuple[Any, ...], bool]


class SessionController:
    def __init__(
        self,
        control: RecognitionControl,
        config: Optional[EngineConfig] = None,
        timer: Optional[Timer] = None,
        store: Optional[StateStore] = None,
        spawn: Optional[Spawner] = None,
    ) -> None:
        self._control = control
        self._config = config or EngineConfig()
        self._timer = timer or LoopTimer()
        self._store = store or StateStore(validators=[transcript_invariants(self._config)])
        self._scheduler = UpdateScheduler(
            self._store,
            self._timer,
            idle_delay=self._config.idle_delay,
            max_interval=self._config.max_commit_interval,
        )
        self._recovery = ErrorRecoveryCoordinator(
            self._store, control, self._timer, self._config, spawn=spawn
        )
        self._accumulator = TranscriptAccumulator(
            self._store,
            self._config,
            scheduler=self._scheduler,
            recovery_reset=self._recovery.reset,
        )
        self._wants_active = False
        self._control_task: Optional["asyncio.Future[None]"] = None
        self._control_tasks: Set["asyncio.Future[Any]"] = set()

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def scheduler(self) -> UpdateScheduler:
        return self._scheduler

    @property
    def recovery(self) -> ErrorRecoveryCoordinator:
        return self._recovery

    @property
    def accumulator(self) -> TranscriptAccumulator:
        return self._accumulator

    def read(self) -> ApplicationState:
        return self._store.read()

    def subscribe(self, predicate: FieldPredicate, callback: StateCallback) -> Callable[[], None]:
        return self._store.subscribe(predicate, callback)

    # ------------------------------------------------------------------
    # Commands (presentation layer)
    # ------------------------------------------------------------------

    def request_start(self) -> CommitResult:
        state = self._store.read()
        if state.is_active and self._wants_active and self._recovery.active_kind is None:
            return CommitResult.ok(state.version)
        # Starting while a recovery is pending or escalated is the user acting on it.
        self._recovery.reset()
        self._wants_active = True
        failure = self._invoke("start")
        if failure is not None:
            return failure
        return self._store.propose(self._activation_delta(), base_version=state.version)

    def request_stop(self) -> CommitResult:
        self._wants_active = False
        self._scheduler.cancel()
        self._recovery.reset()
        self._cancel_control_tasks()
        self._invoke("stop", route_failure=False)
        state = self._store.read()
        if not state.is_active and state.recovery_attempt is None:
            return CommitResult.ok(state.version)
        return self._store.propose(
            {"is_active": False, "recovery_attempt": None}, base_version=state.version
        )

    def request_clear(self) -> CommitResult:
        if not (self._wants_active and self._recovery.active_kind is not None):
            return self._accumulator.clear()
        # Clearing abandons the running recovery, so the recognizer is restarted here.
        result = self._accumulator.clear(extra={"is_active": True})
        failure = self._invoke("start")
        return failure or result

    def request_language_change(self, code: str) -> CommitResult:
        code = (code or "").strip()
        if not _LANGUAGE_RE.match(code):
            return CommitResult.rejected(
                RejectionReason.INVALID_FIELD_VALUE, f"invalid language code: {code!r}"
            )
        self._recovery.reset()
        steps: List[ControlStep] = [("set_language", (code,), True)]
        if self._wants_active:
            # Recognizers pick up a new language on restart.
            steps += [("stop", (), False), ("start", (), True)]
        failure = self._run_steps(steps)
        if failure is not None:
            return failure

        delta = {"language": code}
        if self._wants_active:
            delta.update(self._activation_delta())
        else:
            delta.update({"last_error": None, "recovery_attempt": None})
        return self._store.propose(delta, base_version=self._store.read().version)

    def flush(self) -> Optional[CommitResult]:
        return self._scheduler.flush()

    def shutdown(self) -> None:
        self._wants_active = False
        self._scheduler.cancel()
        self._recovery.reset()
        self._cancel_control_tasks()

    # ------------------------------------------------------------------
    # Recognizer events
    # ------------------------------------------------------------------

    def handle_event(self, event: RecognitionEvent) -> CommitResult:
        kind = RecognitionEventKind(event.kind)
        if kind is RecognitionEventKind.INTERIM:
            if not self._wants_active:
                logger.debug("Dropping interim result received while stopped")
                return CommitResult.ok(self._store.read().version)
            self._recovery.handle_success()
            return self._accumulator.set_interim(event.text)

        if kind is RecognitionEventKind.FINAL:
            if self._wants_active:
                self._recovery.handle_success()
            result = self._accumulator.merge_final(event.text)
            if not result.accepted:
                self._record_rejection(result)
            return result

        if kind is RecognitionEventKind.FAILURE:
            error_kind = classify_failure(event.code)
            if not self._wants_active:
                return self._recovery.note_failure(error_kind, event.message)
            return self._recovery.handle_failure(error_kind, event.message)

        return self._handle_ended()

    def threadsafe_sink(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> EventSink:
        """Return an event callback that recognizer threads may call directly."""
        target = loop or asyncio.get_running_loop()

        def sink(event: RecognitionEvent) -> None:
            target.call_soon_threadsafe(self.handle_event, event)

        return sink

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _handle_ended(self) -> CommitResult:
        state = self._store.read()
        if self._wants_active and self._recovery.active_kind is None:
            # Continuous listening: the recognizer ended on its own, start it again.
            logger.debug("Recognizer ended while listening was requested, restarting")
            failure = self._invoke("start")
            return failure or CommitResult.ok(state.version)
        if not state.is_active:
            return CommitResult.ok(state.version)
        return self._store.propose({"is_active": False}, base_version=state.version)

    def _activation_delta(self) -> dict:
        return {"is_active": True, "last_error": None, "recovery_attempt": None}

    def _record_rejection(self, result: CommitResult) -> None:
        state = self._store.read()
        record = RejectionRecord(
            reason=result.reason or RejectionReason.INVALID_FIELD_VALUE,
            message=result.message,
            occurred_at_version=state.version,
        )
        self._store.propose({"last_rejection": record}, base_version=state.version)

    def _invoke(self, action: str, *args: Any, route_failure: bool = True) -> Optional[CommitResult]:
        return self._run_steps([(action, args, route_failure)])

    def _run_steps(self, steps: List[ControlStep]) -> Optional[CommitResult]:
        """Issue recognizer calls in order.

        Calls run inline until one returns an awaitable. That call and the
        remaining steps then finish in a task chained behind any control task
        still in flight, so the recognizer sees calls in issue order. Only a
        failure raised inline is returned; later ones go through recovery.
        """
        if self._control_task is not None and not self._control_task.done():
            self._chain(None, steps)
            return None
        for index, (action, args, route_failure) in enumerate(steps):
            try:
                outcome = getattr(self._control, action)(*args)
            except Exception as exc:
                failure = self._control_failed(action, exc, route_failure)
                if route_failure:
                    return failure
                continue
            if inspect.isawaitable(outcome):
                self._chain(self._track(asyncio.ensure_future(outcome)), steps[index:])
                return None
        return None

    def _chain(self, pending: Optional["asyncio.Future[Any]"], steps: List[ControlStep]) -> None:
        previous = self._control_task
        self._control_task = self._track(asyncio.ensure_future(self._finish_steps(previous, pending, steps)))

    def _track(self, future: "asyncio.Future[Any]") -> "asyncio.Future[Any]":
        self._control_tasks.add(future)
        future.add_done_callback(self._control_tasks.discard)
        return future

    async def _finish_steps(
        self,
        previous: Optional["asyncio.Future[None]"],
        pending: Optional["asyncio.Future[Any]"],
        steps: List[ControlStep],
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        for index, (action, args, route_failure) in enumerate(steps):
            try:
                if index == 0 and pending is not None:
                    await pending
                else:
                    await maybe_await(getattr(self._control, action)(*args))
            except Exception as exc:
                self._control_failed(action, exc, route_failure)
                if route_failure:
                    return

    def _cancel_control_tasks(self) -> None:
        for task in list(self._control_tasks):
            task.cancel()

    def _control_failed(self, action: str, exc: BaseException, route_failure: bool) -> CommitResult:
        kind = classify_exception(exc)
        logger.warning("Recognizer %s failed (%s): %s", action, kind.value, exc)
        if route_failure and self._wants_active:
            self._recovery.handle_failure(kind, str(exc))
        else:
            self._recovery.note_failure(kind, str(exc))
        return CommitResult.failed(kind, str(exc))

