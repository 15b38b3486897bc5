"""Turn raw backend output into a single-line inline completion."""

from __future__ import annotations

from sidekick.completion.templates import CONTROL_TOKEN_RE

MAX_COMPLETION_LENGTH = 50

# Syntactically meaningful cut points for over-long completions
BREAK_POINTS = (";", "{", ")", "]", ",")


def strip_control_tokens(text: str) -> str:
    """Remove every known family's control tokens, whichever family produced *text*."""
    return CONTROL_TOKEN_RE.sub("", text)


def truncate_at_break_point(text: str, max_length: int = MAX_COMPLETION_LENGTH) -> str:
    """Cut *text* to at most *max_length* characters.

    Cuts right after the earliest break-point character within the limit;
    if none occurs there, hard-cuts at *max_length*.
    """
    if len(text) <= max_length:
        return text
    head = text[:max_length]
    positions = [idx for idx in (head.find(ch) for ch in BREAK_POINTS) if idx != -1]
    if positions:
        return text[: min(positions) + 1]
    return head


def normalize(raw: str, current_line_prefix: str, max_length: int = MAX_COMPLETION_LENGTH) -> str:
    """Normalize a raw completion: strip tokens, drop echoed prefix, first line, truncate."""
    text = strip_control_tokens(raw)
    if current_line_prefix and text.startswith(current_line_prefix):
        text = text[len(current_line_prefix):]
    text = text.splitlines()[0].strip() if text else ""
    return truncate_at_break_point(text, max_length)
