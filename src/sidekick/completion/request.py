"""Per-request value objects for inline completion."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class CompletionSource(enum.Enum):
    BACKEND_GENERATED = "backend"
    CACHED = "cached"
    FALLBACK = "fallback"


class CancellationToken:
    """Set by the editor when a newer keystroke supersedes the request."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass(frozen=True)
class CursorPosition:
    line: int  # zero-based
    character: int  # zero-based column


@dataclass
class CompletionRequest:
    """The document window around the cursor plus request options.

    ``lines_after`` starts with the rest of the cursor line.
    """

    lines_before: list[str]
    line_prefix: str
    lines_after: list[str] = field(default_factory=list)
    semantic_context: str = ""
    max_tokens: int | None = None  # None = configured default
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    language_id: str | None = None

    @property
    def prefix_text(self) -> str:
        """Everything before the cursor, as one string."""
        return "\n".join([*self.lines_before, self.line_prefix])


@dataclass
class CompletionResult:
    text: str
    source: CompletionSource
    latency_ms: float = 0.0


def request_from_document(
    text: str,
    cursor: CursorPosition,
    *,
    lines_before: int = 50,
    lines_after: int = 10,
    semantic_context: str = "",
    language_id: str | None = None,
    cancellation: CancellationToken | None = None,
) -> CompletionRequest:
    """Cut the bounded window around *cursor* out of a full document.

    Out-of-range positions are clamped to the document.
    """
    lines = text.split("\n")
    line_no = min(max(cursor.line, 0), len(lines) - 1)
    current = lines[line_no]
    column = min(max(cursor.character, 0), len(current))

    before = lines[max(0, line_no - lines_before):line_no]
    after = [current[column:], *lines[line_no + 1:line_no + 1 + lines_after]]
    return CompletionRequest(
        lines_before=before,
        line_prefix=current[:column],
        lines_after=after,
        semantic_context=semantic_context,
        cancellation=cancellation or CancellationToken(),
        language_id=language_id,
    )
