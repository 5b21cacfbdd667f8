"""Accumulates final and interim recognition text into the StateStore."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from config import EngineConfig
from models import ApplicationState, CommitResult, RejectionReason
from sanitizer import sanitize, validate_chunk_size, validate_total_size
from state_store import StateStore, Validator
from update_scheduler import UpdateScheduler

logger = logging.getLogger(__name__)

SEPARATOR = " "


def transcript_invariants(config: EngineConfig) -> Validator:
    """Store-level validator guarding the committed transcript.

    Rejects growth past ``max_total`` and any shrink of ``committed_text``
    other than an explicit clear to the empty string.
    """

    def check(current: ApplicationState, candidate: ApplicationState) -> Optional[RejectionReason]:
        if len(candidate.committed_text) > config.max_total:
            return RejectionReason.LENGTH_EXCEEDED
        if len(candidate.pending_text) > config.max_chunk:
            return RejectionReason.LENGTH_EXCEEDED
        shrunk = len(candidate.committed_text) < len(current.committed_text)
        if shrunk and candidate.committed_text != "":
            return RejectionReason.INVALID_FIELD_VALUE
        return None

    return check


class TranscriptAccumulator:
    def __init__(
        self,
        store: StateStore,
        config: EngineConfig,
        scheduler: Optional[UpdateScheduler] = None,
        recovery_reset: Optional[Callable[[], None]] = None,
    ) -> None:
        self._store = store
        self._config = config
        self._scheduler = scheduler
        self._recovery_reset = recovery_reset
        # Advanced by every final merge and clear; stale interim producers check it.
        self._utterance = 0

    def merge_final(self, raw_text: str) -> CommitResult:
        text = sanitize(raw_text)
        state = self._store.read()
        existing = state.committed_text
        added = text
        if text and existing:
            added = SEPARATOR + text
        # The separator counts against the chunk cap too.
        if not validate_chunk_size(added, self._config.max_chunk):
            logger.warning("Final chunk rejected: %d chars > %d", len(added), self._config.max_chunk)
            return CommitResult.rejected(
                RejectionReason.LENGTH_EXCEEDED,
                f"chunk of {len(added)} characters exceeds {self._config.max_chunk}",
            )
        if not validate_total_size(len(existing), len(added), self._config.max_total):
            logger.warning(
                "Final chunk rejected: transcript would reach %d chars > %d",
                len(existing) + len(added),
                self._config.max_total,
            )
            return CommitResult.rejected(
                RejectionReason.LENGTH_EXCEEDED,
                f"transcript would exceed {self._config.max_total} characters",
            )

        self._utterance += 1
        if self._scheduler is not None:
            self._scheduler.cancel()
        delta: Dict[str, Any] = {"pending_text": ""}
        if added:
            delta["committed_text"] = existing + added
        return self._store.propose(delta, base_version=state.version)

    def set_interim(self, raw_text: str) -> CommitResult:
        text = sanitize(raw_text)
        if not validate_chunk_size(text, self._config.max_chunk):
            logger.warning("Interim chunk rejected: %d chars > %d", len(text), self._config.max_chunk)
            return CommitResult.rejected(
                RejectionReason.LENGTH_EXCEEDED,
                f"chunk of {len(text)} characters exceeds {self._config.max_chunk}",
            )

        utterance = self._utterance

        def produce(snapshot: ApplicationState) -> Optional[Mapping[str, Any]]:
            if utterance != self._utterance or not snapshot.is_active:
                return None
            if snapshot.pending_text == text:
                return None
            return {"pending_text": text}

        if self._scheduler is not None:
            self._scheduler.schedule_commit(produce)
            return CommitResult.pending()

        snapshot = self._store.read()
        delta = produce(snapshot)
        if delta is None:
            return CommitResult.ok(snapshot.version)
        return self._store.propose(delta, base_version=snapshot.version)

    def clear(self, extra: Optional[Mapping[str, Any]] = None) -> CommitResult:
        """Reset the transcript and recovery fields in one commit.

        ``extra`` is folded into the same commit (the controller uses it to
        re-activate when clearing abandons a running recovery).
        """
        self._utterance += 1
        if self._scheduler is not None:
            self._scheduler.cancel()
        if self._recovery_reset is not None:
            self._recovery_reset()
        delta: Dict[str, Any] = {
            "committed_text": "",
            "pending_text": "",
            "last_error": None,
            "last_rejection": None,
            "recovery_attempt": None,
        }
        if extra:
            delta.update(extra)
        return self._store.propose(delta)
