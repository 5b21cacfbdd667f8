"""Application entrypoint: replay a recognizer event script through the engine."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from config import JsonConfigStore
from interfaces import ConfigStore
from logging_setup import setup_logging
from models import ApplicationState
from replay import ScriptedRecognizer, load_script, replay
from session_controller import SessionController


def _describe(state: ApplicationState) -> str:
    parts = [f"v{state.version}", "active" if state.is_active else "idle"]
    if state.committed_text:
        parts.append(f"text={state.committed_text!r}")
    if state.pending_text:
        parts.append(f"pending={state.pending_text!r}")
    if state.recovery_attempt is not None:
        attempt = state.recovery_attempt
        parts.append(f"recovery={attempt.kind.value}:{attempt.phase.value}#{attempt.attempt}")
        if attempt.options:
            parts.append("options=" + ",".join(option.value for option in attempt.options))
    if state.last_error is not None:
        parts.append(f"error={state.last_error.kind.value}")
    if state.last_rejection is not None:
        parts.append(f"rejected={state.last_rejection.reason.value}")
    return " ".join(parts)


class ReplayApp:
    def __init__(self, script: Path, config_path: Optional[Path] = None, settle_ms: float = 0.0) -> None:
        config_store: ConfigStore = JsonConfigStore(config_path)
        self.config = config_store.load()
        self.steps = load_script(script)
        self.settle_ms = settle_ms
        self.recognizer = ScriptedRecognizer()

    async def _run(self) -> ApplicationState:
        controller = SessionController(self.recognizer, config=self.config)
        controller.subscribe(None, self._on_commit)
        try:
            await replay(controller, self.recognizer, self.steps, settle=self.settle_ms)
        finally:
            controller.shutdown()
        return controller.read()

    def _on_commit(self, new_state: ApplicationState, prev_state: ApplicationState) -> None:
        print(_describe(new_state), flush=True)

    def run(self) -> int:
        final = asyncio.run(self._run())
        print(f"final: {_describe(final)}")
        return 1 if final.last_error is not None else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Replay a recognizer event script through the state engine.")
    parser.add_argument("script", type=Path, help="JSON-lines event script")
    parser.add_argument("--config", type=Path, default=None, help="engine config JSON file")
    parser.add_argument("--settle", type=float, default=0.0, help="ms to keep running after the last step")
    parser.add_argument("--logs-dir", type=Path, default=None, help="write a rotating log file here")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = parser.parse_args(argv)

    setup_logging(args.logs_dir, verbose=args.verbose)
    try:
        app = ReplayApp(args.script, config_path=args.config, settle_ms=args.settle)
    except (OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
