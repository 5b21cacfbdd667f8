"""Protocol interfaces for the engine's collaborators."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol, Union

from config import EngineConfig

MaybeAwaitable = Union[Any, Awaitable[Any]]


class RecognitionControl(Protocol):
    """Capability-control handle exposed by the speech-recognition collaborator.

    Any method may return an awaitable; the engine awaits it where it can
    suspend (recovery actions) and treats it as fire-and-forget elsewhere.
    """

    def start(self) -> MaybeAwaitable: ...

    def stop(self) -> MaybeAwaitable: ...

    def set_language(self, code: str) -> MaybeAwaitable: ...

    def probe_connectivity(self) -> MaybeAwaitable: ...

    def reacquire_audio(self) -> MaybeAwaitable: ...

    def is_listening(self) -> MaybeAwaitable: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timer(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    def now(self) -> float: ...


class ConfigStore(Protocol):
    def load(self) -> EngineConfig: ...

    def save(self, config: EngineConfig) -> None: ...
