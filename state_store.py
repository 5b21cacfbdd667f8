"""Versioned, validated application state with ordered subscriber notification.

The store is the single write gateway for ``ApplicationState``. Every accepted
proposal installs a brand-new frozen snapshot with ``version + 1`` and
notifies matching subscribers before ``propose`` returns.

Threading:
    The store is not thread-safe and does not lock. All mutation entry points
    are expected to run on one event loop; collaborators living on other
    threads must marshal onto that loop first
    (see ``SessionController.threadsafe_sink``).

Ordering:
    A subscriber that proposes from inside its callback gets its commit
    installed immediately, but the notifications for it are queued behind the
    commit currently being delivered. Every subscriber therefore observes
    commits in version order.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable, Deque, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from models import (
    MANAGED_FIELDS,
    STATE_FIELDS,
    ApplicationState,
    CommitResult,
    RejectionReason,
    StateChange,
)
from timers import LogicalClock

logger = logging.getLogger(__name__)

Validator = Callable[[ApplicationState, ApplicationState], Optional[RejectionReason]]
StateCallback = Callable[[ApplicationState, ApplicationState], None]
FieldPredicate = Union[None, Callable[[str], bool], Iterable[str]]
ErrorReporter = Callable[[StateCallback, Exception], None]


class _Subscription:
    __slots__ = ("predicate", "callback", "active")

    def __init__(self, predicate: Callable[[str], bool], callback: StateCallback) -> None:
        self.predicate = predicate
        self.callback = callback
        self.active = True


def _as_predicate(predicate: FieldPredicate) -> Callable[[str], bool]:
    if predicate is None:
        return lambda _field: True
    if callable(predicate):
        return predicate
    names = frozenset(predicate)
    return names.__contains__


class StateStore:
    def __init__(
        self,
        initial: Optional[ApplicationState] = None,
        validators: Iterable[Validator] = (),
        clock: Optional[Callable[[], int]] = None,
        history_limit: int = 256,
        on_subscriber_error: Optional[ErrorReporter] = None,
    ) -> None:
        self._state = initial or ApplicationState()
        self._validators: Tuple[Validator, ...] = tuple(validators)
        self._clock = clock or LogicalClock(self._state.updated_at_logical_time)
        self._history: Deque[StateChange] = deque(maxlen=history_limit)
        self._subscriptions: List[_Subscription] = []
        self._on_subscriber_error = on_subscriber_error
        self._pending: Deque[Tuple[ApplicationState, ApplicationState, frozenset]] = deque()
        self._notifying = False

    def read(self) -> ApplicationState:
        return self._state

    def history(self) -> Tuple[StateChange, ...]:
        return tuple(self._history)

    def add_validator(self, validator: Validator) -> None:
        self._validators = self._validators + (validator,)

    def propose(
        self,
        delta: Mapping[str, Any],
        validator: Optional[Validator] = None,
        *,
        base_version: Optional[int] = None,
    ) -> CommitResult:
        """Validate ``delta`` against the current snapshot and install it, or reject.

        Args:
            delta: Field name to new value. ``version`` and
                ``updated_at_logical_time`` are managed here and may not appear.
            validator: Extra check run after the store's own validators.
            base_version: Version the delta was computed against. When older
                than the current version, the proposal is rejected if any
                intervening commit touched one of the delta's fields.

        Returns:
            ``CommitResult.ok(new_version)`` or ``CommitResult.rejected(reason)``.
            Rejections never change the snapshot or the version.
        """
        current = self._state
        fields = frozenset(delta)

        unknown = fields - STATE_FIELDS
        if unknown or fields & MANAGED_FIELDS:
            bad = ", ".join(sorted(unknown | (fields & MANAGED_FIELDS)))
            return CommitResult.rejected(
                RejectionReason.INVALID_FIELD_VALUE, f"field(s) not writable: {bad}"
            )

        if base_version is not None and self._is_stale(base_version, fields):
            return CommitResult.rejected(
                RejectionReason.STALE_VERSION_CONFLICT,
                f"delta computed at version {base_version}, store is at {current.version}",
            )

        data = {name: getattr(current, name) for name in STATE_FIELDS}
        data.update(delta)
        if current.is_active and data.get("is_active") is False:
            data["pending_text"] = ""
            fields = fields | {"pending_text"}
        data["version"] = current.version + 1
        data["updated_at_logical_time"] = self._next_logical_time(current)

        try:
            candidate = ApplicationState.model_validate(data)
        except ValidationError as exc:
            return CommitResult.rejected(RejectionReason.INVALID_FIELD_VALUE, str(exc))

        for check in self._validators + ((validator,) if validator else ()):
            reason = check(current, candidate)
            if reason is not None:
                return CommitResult.rejected(reason)

        self._state = candidate
        self._history.append(
            StateChange(candidate.version, fields, candidate.updated_at_logical_time)
        )
        self._pending.append((candidate, current, fields))
        self._drain_notifications()
        return CommitResult.ok(candidate.version)

    def subscribe(self, predicate: FieldPredicate, callback: StateCallback) -> Callable[[], None]:
        """Register ``callback(new_state, prev_state)`` for commits touching matching fields.

        Returns:
            A handle that removes the subscription when called. Safe to call
            more than once and from inside a callback.
        """
        subscription = _Subscription(_as_predicate(predicate), callback)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription.active:
                subscription.active = False
                self._subscriptions.remove(subscription)

        return unsubscribe

    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _is_stale(self, base_version: int, fields: frozenset) -> bool:
        current_version = self._state.version
        if base_version >= current_version:
            return False
        oldest_needed = base_version + 1
        if not self._history or self._history[0].version > oldest_needed:
            return True
        return any(
            change.fields & fields
            for change in self._history
            if change.version > base_version
        )

    def _next_logical_time(self, current: ApplicationState) -> int:
        stamp = self._clock()
        if stamp <= current.updated_at_logical_time:
            stamp = current.updated_at_logical_time + 1
        return stamp

    def _drain_notifications(self) -> None:
        if self._notifying:
            return
        self._notifying = True
        try:
            while self._pending:
                new_state, prev_state, fields = self._pending.popleft()
                self._notify(new_state, prev_state, fields)
        finally:
            self._notifying = False

    def _notify(self, new_state: ApplicationState, prev_state: ApplicationState, fields: frozenset) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            if not any(subscription.predicate(name) for name in fields):
                continue
            try:
                subscription.callback(new_state, prev_state)
            except Exception as exc:
                logger.error(
                    "Subscriber %r failed on version %d: %s",
                    subscription.callback,
                    new_state.version,
                    exc,
                    exc_info=True,
                )
                if self._on_subscriber_error is not None:
                    try:
                        self._on_subscriber_error(subscription.callback, exc)
                    except Exception:
                        logger.exception("Subscriber error reporter failed")
