from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from config import EngineConfig
from main import main
from models import ErrorKind, RecognitionEventKind
from replay import ScriptedRecognizer, load_script, parse_step, replay
from session_controller import SessionController


def _write_script(path: Path, lines: list) -> Path:
    path.write_text("\n".join(json.dumps(line) for line in lines) + "\n", encoding="utf-8")
    return path


def _fast_config(path: Path) -> Path:
    path.write_text(
        json.dumps({"idle_delay": 5, "max_commit_interval": 20, "backoff_base": {"network": 10}}),
        encoding="utf-8",
    )
    return path


def test_load_script_sorts_steps_and_skips_comments(tmp_path: Path) -> None:
    script = tmp_path / "script.jsonl"
    script.write_text(
        "# warm up\n"
        '{"at": 30, "event": "finalResult", "text": "hi"}\n'
        "\n"
        '{"at": 0, "command": "start"}\n'
        '{"at": 10, "set": {"connectivity": false}}\n',
        encoding="utf-8",
    )

    steps = load_script(script)

    assert [step.at for step in steps] == [0, 10, 30]
    assert steps[0].command == "start"
    assert steps[1].settings == {"connectivity": False}
    assert steps[2].event.kind is RecognitionEventKind.FINAL


def test_load_script_reports_line_numbers(tmp_path: Path) -> None:
    script = tmp_path / "bad.jsonl"
    script.write_text('{"at": 0, "command": "start"}\n{"at": 1, "command": "dance"}\n', encoding="utf-8")

    with pytest.raises(ValueError, match="bad.jsonl:2"):
        load_script(script)


def test_parse_step_rejects_unknown_settings() -> None:
    with pytest.raises(ValueError):
        parse_step({"at": 0, "set": {"volume": 11}})
    with pytest.raises(ValueError):
        parse_step({"at": 0})


def test_replay_drives_controller_through_recovery() -> None:
    async def scenario() -> None:
        recognizer = ScriptedRecognizer()
        config = EngineConfig(idle_delay=5, max_commit_interval=20, backoff_base={ErrorKind.NETWORK: 10})
        controller = SessionController(recognizer, config=config)
        steps = [
            parse_step({"at": 0, "command": "start"}),
            parse_step({"at": 0, "set": {"connectivity": False}}),
            parse_step({"at": 0, "event": "failure", "code": "network"}),
            parse_step({"at": 25, "set": {"connectivity": True}}),
            parse_step({"at": 60, "event": "finalResult", "text": "back online"}),
        ]

        await replay(controller, recognizer, steps, settle=20)
        controller.shutdown()

        state = controller.read()
        assert state.committed_text == "back online"
        assert state.last_error is None
        assert state.is_active is True
        assert recognizer.calls.count("probe_connectivity") >= 2

    asyncio.run(scenario())


def test_main_prints_commits_and_exits_clean(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    script = _write_script(
        tmp_path / "session.jsonl",
        [
            {"at": 0, "command": "start"},
            {"at": 0, "event": "interimResult", "text": "hel"},
            {"at": 0, "event": "finalResult", "text": "hello"},
            {"at": 0, "command": "stop"},
        ],
    )

    code = main([str(script), "--config", str(_fast_config(tmp_path / "config.json"))])

    out = capsys.readouterr().out
    assert code == 0
    assert "final: " in out
    assert "text='hello'" in out


def test_main_exits_nonzero_when_error_is_left_open(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    script = _write_script(
        tmp_path / "denied.jsonl",
        [
            {"at": 0, "command": "start"},
            {"at": 0, "event": "failure", "code": "not-allowed"},
        ],
    )

    code = main([str(script), "--config", str(_fast_config(tmp_path / "config.json"))])

    out = capsys.readouterr().out
    assert code == 1
    assert "recovery=permissionDenied:escalated#0" in out
    assert "options=grantPermission,retry" in out


def test_main_reports_unreadable_script(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    code = main([str(tmp_path / "missing.jsonl"), "--config", str(tmp_path / "config.json")])

    assert code == 2
    assert "error:" in capsys.readouterr().err
