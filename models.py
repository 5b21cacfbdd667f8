"""Core data models for the engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, Enum):
    NETWORK = "network"
    PERMISSION_DENIED = "permissionDenied"
    NO_SPEECH_DETECTED = "noSpeechDetected"
    ABORTED = "aborted"
    AUDIO_CAPTURE_FAILURE = "audioCaptureFailure"
    SERVICE_UNAVAILABLE = "serviceUnavailable"
    UNSUPPORTED_LANGUAGE = "unsupportedLanguage"
    UNKNOWN = "unknown"


class RejectionReason(str, Enum):
    LENGTH_EXCEEDED = "lengthExceeded"
    INVALID_FIELD_VALUE = "invalidFieldValue"
    STALE_VERSION_CONFLICT = "staleVersionConflict"


class RecoveryPhase(str, Enum):
    IDLE = "idle"
    RETRYING = "retrying"
    RECOVERED = "recovered"
    ESCALATED = "escalated"


class RecoveryOption(str, Enum):
    RETRY = "retry"
    CHECK_CONNECTION = "checkConnection"
    CHECK_MICROPHONE = "checkMicrophone"
    GRANT_PERMISSION = "grantPermission"
    CHANGE_LANGUAGE = "changeLanguage"
    CONTINUE_DEGRADED = "continueDegraded"
    DISMISS = "dismiss"


class RecognitionEventKind(str, Enum):
    INTERIM = "interimResult"
    FINAL = "finalResult"
    FAILURE = "failure"
    ENDED = "ended"


class ErrorRecord(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ErrorKind
    message: str
    retryable: bool
    occurred_at_version: int = Field(ge=0)


class RejectionRecord(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    reason: RejectionReason
    message: str = ""
    occurred_at_version: int = Field(ge=0)


class RecoveryAttempt(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ErrorKind
    attempt: int = Field(ge=0)
    phase: RecoveryPhase = RecoveryPhase.RETRYING
    options: Tuple[RecoveryOption, ...] = ()


class ApplicationState(BaseModel):
    """Immutable snapshot; the store replaces it wholesale on every commit."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    committed_text: str = ""
    pending_text: str = ""
    is_active: bool = False
    language: str = "en-US"
    last_error: Optional[ErrorRecord] = None
    last_rejection: Optional[RejectionRecord] = None
    recovery_attempt: Optional[RecoveryAttempt] = None
    version: int = Field(default=0, ge=0)
    updated_at_logical_time: int = Field(default=0, ge=0)


# Fields only the store itself may write.
MANAGED_FIELDS = frozenset({"version", "updated_at_logical_time"})
STATE_FIELDS = frozenset(ApplicationState.model_fields)


@dataclass(frozen=True)
class StateChange:
    version: int
    fields: FrozenSet[str]
    logical_time: int


@dataclass
class RecognitionEvent:
    kind: RecognitionEventKind
    text: str = ""
    code: str = ""
    message: str = ""


@dataclass(frozen=True)
class CommitResult:
    """Outcome of a store proposal, transcript merge or command."""

    accepted: bool
    version: Optional[int] = None
    reason: Optional[RejectionReason] = None
    error: Optional[ErrorKind] = None
    message: str = ""
    deferred: bool = False

    @classmethod
    def ok(cls, version: int) -> "CommitResult":
        return cls(accepted=True, version=version)

    @classmethod
    def pending(cls) -> "CommitResult":
        return cls(accepted=True, deferred=True)

    @classmethod
    def rejected(cls, reason: RejectionReason, message: str = "") -> "CommitResult":
        return cls(accepted=False, reason=reason, message=message)

    @classmethod
    def failed(cls, kind: ErrorKind, message: str = "") -> "CommitResult":
        return cls(accepted=False, error=kind, message=message)
