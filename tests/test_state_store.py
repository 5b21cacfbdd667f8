from __future__ import annotations

import logging

import pytest

from config import EngineConfig
from models import ApplicationState, ErrorKind, ErrorRecord, RejectionReason
from state_store import StateStore
from transcript import transcript_invariants


def _store(**config) -> StateStore:
    return StateStore(validators=[transcript_invariants(EngineConfig(**config))])


def test_initial_state_is_at_rest() -> None:
    state = StateStore().read()

    assert state == ApplicationState()
    assert state.version == 0
    assert state.committed_text == ""
    assert state.recovery_attempt is None


def test_accepted_proposals_increment_version_by_one() -> None:
    store = _store()
    versions = []
    for index in range(20):
        result = store.propose({"committed_text": "a" * (index + 1)})
        assert result.accepted
        versions.append(result.version)

    assert versions == list(range(1, 21))
    assert store.read().version == 20


def test_rejected_proposal_does_not_advance_version() -> None:
    store = _store(max_chunk=5, max_total=10)
    store.propose({"committed_text": "hello"})
    before = store.read()

    result = store.propose({"committed_text": "x" * 11})

    assert result.accepted is False
    assert result.reason is RejectionReason.LENGTH_EXCEEDED
    assert store.read() is before


def test_managed_and_unknown_fields_are_invalid() -> None:
    store = StateStore()

    assert store.propose({"version": 7}).reason is RejectionReason.INVALID_FIELD_VALUE
    assert store.propose({"updated_at_logical_time": 9}).reason is RejectionReason.INVALID_FIELD_VALUE
    assert store.propose({"colour": "red"}).reason is RejectionReason.INVALID_FIELD_VALUE
    assert store.read().version == 0


def test_type_errors_are_invalid_field_value() -> None:
    store = StateStore()

    result = store.propose({"committed_text": 42})

    assert result.reason is RejectionReason.INVALID_FIELD_VALUE
    assert store.read().version == 0


def test_committed_text_cannot_shrink_except_to_empty() -> None:
    store = _store()
    store.propose({"committed_text": "hello world"})

    assert store.propose({"committed_text": "hello"}).reason is RejectionReason.INVALID_FIELD_VALUE
    assert store.propose({"committed_text": ""}).accepted


def test_deactivation_clears_pending_text() -> None:
    store = StateStore()
    store.propose({"is_active": True, "pending_text": "partial"})

    store.propose({"is_active": False})

    assert store.read().pending_text == ""


def test_custom_validator_runs_per_call() -> None:
    store = StateStore()

    def no_shouting(current, candidate):  # noqa: ANN001
        if candidate.pending_text.isupper():
            return RejectionReason.INVALID_FIELD_VALUE
        return None

    assert store.propose({"pending_text": "LOUD"}, no_shouting).accepted is False
    assert store.propose({"pending_text": "quiet"}, no_shouting).accepted is True


def test_logical_time_is_monotonic_even_with_a_stuck_clock() -> None:
    store = StateStore(clock=lambda: 5)

    store.propose({"pending_text": "a"})
    store.propose({"pending_text": "b"})
    store.propose({"pending_text": "c"})

    stamps = [change.logical_time for change in store.history()]
    assert stamps == [5, 6, 7]


def test_stale_base_version_conflicts_only_on_overlapping_fields() -> None:
    store = StateStore()
    base = store.read().version
    store.propose({"pending_text": "intervening"})

    overlapping = store.propose({"pending_text": "mine"}, base_version=base)
    disjoint = store.propose({"language": "de-DE"}, base_version=base)

    assert overlapping.reason is RejectionReason.STALE_VERSION_CONFLICT
    assert disjoint.accepted is True


def test_stale_check_fails_closed_when_history_is_trimmed() -> None:
    store = StateStore(history_limit=2)
    for text in ("a", "b", "c", "d"):
        store.propose({"pending_text": text})

    result = store.propose({"language": "fr-FR"}, base_version=0)

    assert result.reason is RejectionReason.STALE_VERSION_CONFLICT


def test_history_records_touched_fields() -> None:
    store = StateStore()
    store.propose({"committed_text": "hi", "pending_text": ""})

    change = store.history()[-1]
    assert change.version == 1
    assert change.fields == frozenset({"committed_text", "pending_text"})


def test_subscribers_notified_in_subscription_order_before_propose_returns() -> None:
    store = StateStore()
    calls = []
    store.subscribe(None, lambda new, prev: calls.append(("first", prev.version, new.version)))
    store.subscribe(None, lambda new, prev: calls.append(("second", prev.version, new.version)))

    store.propose({"pending_text": "x"})

    assert calls == [("first", 0, 1), ("second", 0, 1)]


def test_predicate_filters_by_touched_field() -> None:
    store = StateStore()
    text_calls = []
    error_calls = []
    store.subscribe({"committed_text"}, lambda new, prev: text_calls.append(new.version))
    store.subscribe(lambda name: name == "last_error", lambda new, prev: error_calls.append(new.version))

    store.propose({"committed_text": "hi"})
    store.propose({"pending_text": "there"})
    store.propose(
        {
            "last_error": ErrorRecord(
                kind=ErrorKind.NETWORK, message="offline", retryable=True, occurred_at_version=2
            )
        }
    )

    assert text_calls == [1]
    assert error_calls == [3]


def test_failing_subscriber_is_isolated_and_reported(caplog: pytest.LogCaptureFixture) -> None:
    reported = []
    store = StateStore(on_subscriber_error=lambda callback, exc: reported.append(str(exc)))
    seen = []

    def broken(new, prev):  # noqa: ANN001
        raise RuntimeError("boom")

    store.subscribe(None, broken)
    store.subscribe(None, lambda new, prev: seen.append(new.version))

    with caplog.at_level(logging.ERROR):
        result = store.propose({"pending_text": "x"})

    assert result.accepted
    assert seen == [1]
    assert reported == ["boom"]
    assert "boom" in caplog.text


def test_unsubscribe_stops_notifications() -> None:
    store = StateStore()
    seen = []
    unsubscribe = store.subscribe(None, lambda new, prev: seen.append(new.version))

    store.propose({"pending_text": "a"})
    unsubscribe()
    unsubscribe()
    store.propose({"pending_text": "b"})

    assert seen == [1]
    assert store.subscriber_count() == 0


def test_reentrant_propose_is_observed_in_version_order() -> None:
    store = StateStore()
    first_seen = []
    second_seen = []

    def echo(new, prev):  # noqa: ANN001
        first_seen.append(new.version)
        if new.pending_text == "ping":
            store.propose({"pending_text": "pong"})

    store.subscribe(None, echo)
    store.subscribe(None, lambda new, prev: second_seen.append((new.version, new.pending_text)))

    result = store.propose({"pending_text": "ping"})

    assert result.version == 1
    assert first_seen == [1, 2]
    assert second_seen == [(1, "ping"), (2, "pong")]
    assert store.read().version == 2


def test_failing_error_reporter_does_not_interrupt_delivery(caplog: pytest.LogCaptureFixture) -> None:
    def reporter(callback, exc):  # noqa: ANN001
        raise ValueError("reporter down")

    store = StateStore(on_subscriber_error=reporter)
    seen = []

    def echo(new, prev):  # noqa: ANN001
        if new.pending_text == "ping":
            store.propose({"pending_text": "pong"})

    def broken(new, prev):  # noqa: ANN001
        raise RuntimeError("boom")

    store.subscribe(None, echo)
    store.subscribe(None, broken)
    store.subscribe(None, lambda new, prev: seen.append(new.version))

    with caplog.at_level(logging.ERROR):
        result = store.propose({"pending_text": "ping"})

    assert result.accepted
    assert seen == [1, 2]
    assert "reporter failed" in caplog.text
