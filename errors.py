"""Failure taxonomy: retry policy membership, user-facing messages and recovery options."""

from __future__ import annotations

from typing import Dict, Tuple, Union

from models import ErrorKind, RecoveryOption

RETRYABLE_KINDS = frozenset(
    {ErrorKind.NETWORK, ErrorKind.AUDIO_CAPTURE_FAILURE, ErrorKind.ABORTED}
)

ERROR_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "Network failed, reconnecting.",
    ErrorKind.PERMISSION_DENIED: "Microphone permission is required.",
    ErrorKind.NO_SPEECH_DETECTED: "No speech was detected.",
    ErrorKind.ABORTED: "Recognition was interrupted.",
    ErrorKind.AUDIO_CAPTURE_FAILURE: "The microphone could not be opened.",
    ErrorKind.SERVICE_UNAVAILABLE: "The recognition service is unavailable.",
    ErrorKind.UNSUPPORTED_LANGUAGE: "The selected language is not supported.",
    ErrorKind.UNKNOWN: "Recognition failed for an unknown reason.",
}

RECOVERY_OPTIONS: Dict[ErrorKind, Tuple[RecoveryOption, ...]] = {
    ErrorKind.NETWORK: (RecoveryOption.CHECK_CONNECTION, RecoveryOption.RETRY),
    ErrorKind.PERMISSION_DENIED: (RecoveryOption.GRANT_PERMISSION, RecoveryOption.RETRY),
    ErrorKind.NO_SPEECH_DETECTED: (RecoveryOption.RETRY, RecoveryOption.DISMISS),
    ErrorKind.ABORTED: (RecoveryOption.RETRY, RecoveryOption.DISMISS),
    ErrorKind.AUDIO_CAPTURE_FAILURE: (RecoveryOption.CHECK_MICROPHONE, RecoveryOption.RETRY),
    ErrorKind.SERVICE_UNAVAILABLE: (RecoveryOption.CONTINUE_DEGRADED, RecoveryOption.RETRY),
    ErrorKind.UNSUPPORTED_LANGUAGE: (RecoveryOption.CHANGE_LANGUAGE,),
    ErrorKind.UNKNOWN: (RecoveryOption.RETRY, RecoveryOption.DISMISS),
}

# Native codes as emitted by browser-style recognizers.
_NATIVE_CODES: Dict[str, ErrorKind] = {
    "network": ErrorKind.NETWORK,
    "not-allowed": ErrorKind.PERMISSION_DENIED,
    "permission-denied": ErrorKind.PERMISSION_DENIED,
    "service-not-allowed": ErrorKind.SERVICE_UNAVAILABLE,
    "no-speech": ErrorKind.NO_SPEECH_DETECTED,
    "aborted": ErrorKind.ABORTED,
    "audio-capture": ErrorKind.AUDIO_CAPTURE_FAILURE,
    "language-not-supported": ErrorKind.UNSUPPORTED_LANGUAGE,
}


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS


def message_for(kind: ErrorKind) -> str:
    return ERROR_MESSAGES[kind]


def options_for(kind: ErrorKind) -> Tuple[RecoveryOption, ...]:
    return RECOVERY_OPTIONS[kind]


def classify_failure(code: Union[ErrorKind, str, None]) -> ErrorKind:
    """Map a native failure code (or an ErrorKind value) onto the closed ErrorKind set."""
    if isinstance(code, ErrorKind):
        return code
    if not code:
        return ErrorKind.UNKNOWN
    raw = str(code).strip()
    try:
        return ErrorKind(raw)
    except ValueError:
        pass
    return _NATIVE_CODES.get(raw.lower(), ErrorKind.UNKNOWN)


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map a collaborator exception to an ErrorKind."""
    if isinstance(exc, PermissionError):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorKind.NETWORK
    low = str(exc).lower()
    if "permission" in low or "not allowed" in low or "denied" in low:
        return ErrorKind.PERMISSION_DENIED
    if "timeout" in low or "network" in low or "connection" in low:
        return ErrorKind.NETWORK
    if "microphone" in low or "audio" in low or "device" in low:
        return ErrorKind.AUDIO_CAPTURE_FAILURE
    if "language" in low:
        return ErrorKind.UNSUPPORTED_LANGUAGE
    if "unavailable" in low or "503" in low:
        return ErrorKind.SERVICE_UNAVAILABLE
    return ErrorKind.UNKNOWN
