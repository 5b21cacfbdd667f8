from __future__ import annotations

import pytest

from sanitizer import sanitize, validate_chunk_size, validate_total_size


def test_script_block_is_removed_with_its_content() -> None:
    assert sanitize("<script>x</script>hello") == "hello"


def test_tags_and_handlers_are_stripped() -> None:
    assert sanitize('<b onclick="steal()">bold</b> text') == "bold text"
    assert sanitize("<img src=x onerror=alert(1)>caption") == "caption"


def test_script_scheme_is_stripped() -> None:
    assert sanitize("go to javascript:alert(1)") == "go to alert(1)"
    assert sanitize("VBScript : run") == "run"


def test_plain_speech_is_only_trimmed() -> None:
    assert sanitize("  hello world, 3 < 5  ") == "hello world, 3 < 5"


def test_empty_and_whitespace() -> None:
    assert sanitize("") == ""
    assert sanitize("   \t\n") == ""


def test_control_characters_are_removed() -> None:
    assert sanitize("a\x00b\x07c") == "abc"


@pytest.mark.parametrize(
    "raw",
    [
        "<script>x</script>hello",
        "<scr<script>ipt>alert(1)</script>",
        "<<b>b>nested</b>",
        "javajavascript:script:alert(1)",
        "<div onmouseover='x()'>  hi  </div>",
        "<style>p{}</style><p>para",
        "text <unclosed attr=1",
        "on on onload=x",
    ],
)
def test_sanitize_is_idempotent(raw: str) -> None:
    once = sanitize(raw)
    assert sanitize(once) == once
    assert "<script" not in once.lower()


def test_chunk_size_boundary() -> None:
    assert validate_chunk_size("a" * 10, 10) is True
    assert validate_chunk_size("a" * 11, 10) is False


def test_total_size_boundary() -> None:
    assert validate_total_size(90, 10, 100) is True
    assert validate_total_size(90, 11, 100) is False
