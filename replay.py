"""Scripted recognizer and replay of recorded event scripts.

A script is a JSON-lines file. Every line carries an ``at`` offset in
milliseconds and exactly one of:

    {"at": 0, "command": "start"}                 start | stop | clear | language
    {"at": 10, "command": "language", "arg": "de-DE"}
    {"at": 20, "event": "interimResult", "text": "hel"}
    {"at": 40, "event": "failure", "code": "network", "message": "offline"}
    {"at": 900, "set": {"connectivity": true}}    ScriptedRecognizer attributes
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from models import CommitResult, RecognitionEvent, RecognitionEventKind
from session_controller import SessionController

logger = logging.getLogger(__name__)

_SETTABLE = frozenset({"connectivity", "audio_available", "start_succeeds"})


class ScriptedRecognizer:
    """RecognitionControl whose health is driven by the script."""

    def __init__(self) -> None:
        self.connectivity = True
        self.audio_available = True
        self.start_succeeds = True
        self.language = "en-US"
        self.listening = False
        self.calls: List[str] = []

    def start(self) -> None:
        self.calls.append("start")
        self.listening = self.start_succeeds

    def stop(self) -> None:
        self.calls.append("stop")
        self.listening = False

    def set_language(self, code: str) -> None:
        self.calls.append(f"set_language:{code}")
        self.language = code

    def probe_connectivity(self) -> bool:
        self.calls.append("probe_connectivity")
        return self.connectivity

    def reacquire_audio(self) -> bool:
        self.calls.append("reacquire_audio")
        return self.audio_available

    def is_listening(self) -> bool:
        return self.listening


@dataclass
class ScriptStep:
    at: float
    command: Optional[str] = None
    arg: str = ""
    event: Optional[RecognitionEvent] = None
    settings: Dict[str, Any] = field(default_factory=dict)


def parse_step(data: Dict[str, Any]) -> ScriptStep:
    at = float(data.get("at", 0))
    if "command" in data:
        command = str(data["command"])
        if command not in ("start", "stop", "clear", "language"):
            raise ValueError(f"unknown command: {command}")
        return ScriptStep(at=at, command=command, arg=str(data.get("arg", "")))
    if "event" in data:
        event = RecognitionEvent(
            kind=RecognitionEventKind(data["event"]),
            text=str(data.get("text", "")),
            code=str(data.get("code", "")),
            message=str(data.get("message", "")),
        )
        return ScriptStep(at=at, event=event)
    if "set" in data:
        settings = dict(data["set"])
        unknown = set(settings) - _SETTABLE
        if unknown:
            raise ValueError(f"unknown recognizer setting(s): {', '.join(sorted(unknown))}")
        return ScriptStep(at=at, settings=settings)
    raise ValueError(f"script line has no command, event or set: {data!r}")


def load_script(path: Path) -> List[ScriptStep]:
    steps: List[ScriptStep] = []
    for number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            steps.append(parse_step(json.loads(line)))
        except (json.JSONDecodeError, ValueError, KeyError) as exc:
            raise ValueError(f"{path}:{number}: {exc}") from exc
    return sorted(steps, key=lambda step: step.at)


def apply_step(controller: SessionController, recognizer: ScriptedRecognizer, step: ScriptStep) -> Optional[CommitResult]:
    if step.settings:
        for name, value in step.settings.items():
            setattr(recognizer, name, bool(value))
        return None
    if step.event is not None:
        return controller.handle_event(step.event)
    if step.command == "start":
        return controller.request_start()
    if step.command == "stop":
        return controller.request_stop()
    if step.command == "clear":
        return controller.request_clear()
    return controller.request_language_change(step.arg)


async def replay(
    controller: SessionController,
    recognizer: ScriptedRecognizer,
    steps: List[ScriptStep],
    settle: float = 0.0,
) -> None:
    """Apply ``steps`` at their offsets on the running loop, then wait ``settle`` ms."""
    loop = asyncio.get_running_loop()
    started = loop.time()
    for step in steps:
        delay = started + step.at / 1000.0 - loop.time()
        if delay > 0:
            await asyncio.sleep(delay)
        result = apply_step(controller, recognizer, step)
        if result is not None and not result.accepted:
            logger.info("Step at %.0f ms not accepted: %s", step.at, result)
    if settle > 0:
        await asyncio.sleep(settle / 1000.0)
    controller.flush()
