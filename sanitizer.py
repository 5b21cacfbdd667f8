"""Pure text cleaning and size checks applied to untrusted recognition text."""

from __future__ import annotations

import re

_BLOCK_RE = re.compile(r"<\s*(script|style)\b[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^<>]*>")
_OPEN_TAG_RE = re.compile(r"<\s*/?\s*[a-zA-Z!?][^<>]*$")
_SCHEME_RE = re.compile(r"(?:java|vb|live)script\s*:", re.IGNORECASE)
_HANDLER_RE = re.compile(
    r"\bon[a-z]{2,}\s*=\s*(?:\"[^\"]*\"|'[^']*'|[^\s>]+)", re.IGNORECASE
)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def _clean_once(text: str) -> str:
    text = _BLOCK_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    text = _OPEN_TAG_RE.sub("", text)
    text = _SCHEME_RE.sub("", text)
    text = _HANDLER_RE.sub("", text)
    text = _CONTROL_RE.sub("", text)
    return text.strip()


def sanitize(raw: str) -> str:
    """Strip markup-like and executable-looking fragments, then trim.

    Every pass only removes characters, so iterating to a fixpoint terminates
    and guarantees ``sanitize(sanitize(x)) == sanitize(x)``.
    """
    if not raw:
        return ""
    text = raw
    while True:
        cleaned = _clean_once(text)
        if cleaned == text:
            return cleaned
        text = cleaned


def validate_chunk_size(text: str, max_chunk: int) -> bool:
    return len(text) <= max_chunk


def validate_total_size(existing_length: int, added_length: int, max_total: int) -> bool:
    return existing_length + added_length <= max_total
