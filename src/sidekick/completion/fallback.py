"""Deterministic, backend-free completions for when the model can't help.

Rules are evaluated in ``RULES`` order against the current line; the first
rule that returns a string (possibly empty) decides. ``None`` means "not
mine, try the next rule". No I/O, no model, microseconds per call.
"""

from __future__ import annotations

import logging
import re
from typing import Callable

from sidekick.languages import get_language

logger = logging.getLogger(__name__)

BRACKET_PAIRS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {v: k for k, v in BRACKET_PAIRS.items()}
QUOTES = ('"', "'", "`")
SHORT_INDENT = "    "

# `x =`, `x +=`, `x :=` ... but not `==`, `<=`, `>=`, `!=`, `=>`
_TRAILING_ASSIGNMENT_RE = re.compile(r"(?<![=<>!])(?:[-+*/%&|^]|:|//|\*\*|<<|>>)?=$")

Rule = Callable[[str, str | None], "str | None"]


def _unescaped_count(text: str, quote: str) -> int:
    return len(re.findall(rf"(?<!\\){re.escape(quote)}", text))


def _open_quote(line: str, language_id: str | None) -> str | None:
    """Dangling quote: close the string literal."""
    for quote in QUOTES:
        if _unescaped_count(line, quote) % 2 == 1:
            return quote
    return None


def _statement_terminated(line: str, language_id: str | None) -> str | None:
    """Line already ends a statement: nothing to add."""
    return "" if line.rstrip().endswith(";") else None


def _trailing_assignment(line: str, language_id: str | None) -> str | None:
    """Right-hand side still missing: no value can be guessed safely."""
    return "" if _TRAILING_ASSIGNMENT_RE.search(line.rstrip()) else None


def _block_opener(line: str, language_id: str | None) -> str | None:
    """Line opens a block (``{`` or Python-style ``:``): start the body."""
    stripped = line.rstrip()
    if stripped.endswith("{") or stripped.endswith(":"):
        return "\n" + _indent_of(line) + SHORT_INDENT
    return None


def _unclosed_brackets(line: str, language_id: str | None) -> str | None:
    """Close every bracket left open on the line, innermost first."""
    stack: list[str] = []
    for ch in line:
        if ch in BRACKET_PAIRS:
            stack.append(ch)
        elif ch in _CLOSERS and stack and stack[-1] == _CLOSERS[ch]:
            stack.pop()
    if not stack:
        return None
    return "".join(BRACKET_PAIRS[ch] for ch in reversed(stack))


def _member_access(line: str, language_id: str | None) -> str | None:
    """Well-known member access for the document's language (``console.`` -> ``log()``)."""
    lang = get_language(language_id)
    if lang is None:
        return None
    for trigger, completion in lang.member_patterns.items():
        if line.endswith(trigger):
            return completion
    return None


RULES: list[Rule] = [
    _open_quote,
    _statement_terminated,
    _trailing_assignment,
    _block_opener,
    _unclosed_brackets,
    _member_access,
]


def _indent_of(line: str) -> str:
    return line[: len(line) - len(line.lstrip())]


def fallback(prompt: str, line_prefix: str | None = None, language_id: str | None = None) -> str:
    """Return a conservative continuation for the cursor line, or "" if no rule applies.

    *line_prefix* defaults to the last line of *prompt*. Never raises.
    """
    try:
        line = prompt.rsplit("\n", 1)[-1] if line_prefix is None else line_prefix
        if not line.strip():
            return ""
        for rule in RULES:
            result = rule(line, language_id)
            if result is not None:
                return result
    except Exception:
        logger.debug("Fallback rule failed; returning no completion", exc_info=True)
    return ""
