"""Engine configuration and a simple JSON-based config store."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from errors import RETRYABLE_KINDS
from models import ErrorKind

logger = logging.getLogger(__name__)


def _default_max_attempts() -> Dict[ErrorKind, int]:
    return {
        ErrorKind.NETWORK: 3,
        ErrorKind.AUDIO_CAPTURE_FAILURE: 2,
        ErrorKind.ABORTED: 2,
    }


def _default_backoff_base() -> Dict[ErrorKind, float]:
    return {
        ErrorKind.NETWORK: 1000.0,
        ErrorKind.AUDIO_CAPTURE_FAILURE: 500.0,
        ErrorKind.ABORTED: 250.0,
    }


class EngineConfig(BaseModel):
    """Fixed configuration surface. Durations are timer units (milliseconds)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_chunk: int = Field(default=5000, gt=0)
    max_total: int = Field(default=50000, gt=0)
    idle_delay: float = Field(default=100.0, gt=0)
    max_commit_interval: float = Field(default=500.0, gt=0)
    max_attempts: Dict[ErrorKind, int] = Field(default_factory=_default_max_attempts)
    backoff_base: Dict[ErrorKind, float] = Field(default_factory=_default_backoff_base)
    backoff_ceiling: float = Field(default=8000.0, gt=0)

    @model_validator(mode="after")
    def _check_consistency(self) -> "EngineConfig":
        if self.max_chunk > self.max_total:
            raise ValueError("max_chunk must not exceed max_total")
        if self.max_commit_interval < self.idle_delay:
            raise ValueError("max_commit_interval must be >= idle_delay")
        for table in (self.max_attempts, self.backoff_base):
            for kind, value in table.items():
                if kind not in RETRYABLE_KINDS:
                    raise ValueError(f"{kind.value} is never retried automatically")
                if value < 0:
                    raise ValueError(f"negative policy value for {kind.value}")
        return self

    def max_attempts_for(self, kind: ErrorKind) -> int:
        return self.max_attempts.get(kind, 0)

    def backoff_delay(self, kind: ErrorKind, attempt: int) -> float:
        base = self.backoff_base.get(kind, 0.0)
        return min(base * 2 ** (attempt - 1), self.backoff_ceiling)


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "recostate" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> EngineConfig:
        data = self._read_all()
        try:
            return EngineConfig.model_validate(data)
        except ValidationError as exc:
            logger.warning("Invalid engine config in %s, using defaults: %s", self._path, exc)
            return EngineConfig()

    def save(self, config: EngineConfig) -> None:
        self._write_all(config.model_dump(mode="json"))

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Could not read config %s: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
