"""Suppression policy: decide, before any work, whether a completion is worth attempting."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass

from sidekick.languages import comment_tokens_for

MIN_PREFIX_LENGTH = 3


class TriggerKind(enum.Enum):
    AUTOMATIC = "automatic"  # typing pause
    EXPLICIT = "explicit"  # user asked for a suggestion


@dataclass
class DocumentState:
    """What the policy sees of the document: the text left of the cursor."""

    line_prefix: str
    language_id: str | None = None


def _in_comment(line_prefix: str, language_id: str | None) -> bool:
    return any(tok in line_prefix for tok in comment_tokens_for(language_id))


def _in_string(line_prefix: str) -> bool:
    for quote in ('"', "'"):
        if len(re.findall(rf"(?<!\\){quote}", line_prefix)) % 2 == 1:
            return True
    return False


def skip_reason(
    state: DocumentState,
    trigger: TriggerKind,
    min_prefix_length: int = MIN_PREFIX_LENGTH,
) -> str | None:
    """Why a completion should be suppressed, or None if it should go ahead."""
    prefix = state.line_prefix
    if len(prefix.strip()) < min_prefix_length:
        return "prefix too short"
    if _in_comment(prefix, state.language_id):
        return "inside comment"
    if _in_string(prefix):
        return "inside string literal"
    if trigger is TriggerKind.AUTOMATIC and prefix[-1:].isspace():
        return "automatic trigger after whitespace"
    return None


def should_skip(
    state: DocumentState,
    trigger: TriggerKind,
    min_prefix_length: int = MIN_PREFIX_LENGTH,
) -> bool:
    """True when no completion should be produced for *state*. Pure and side-effect free."""
    return skip_reason(state, trigger, min_prefix_length) is not None
