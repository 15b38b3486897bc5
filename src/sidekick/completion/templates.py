"""Table-driven prompt template selection by model family.

A model identifier is matched against ``FAMILY_PATTERNS`` (first match wins);
each family maps to a ``Template`` that knows how to wrap the context and
which stop sequences to send. Adding a family means adding table rows, not
touching call sites.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Sequence

from sidekick.inference.engine import ModelProfile, TemplateFamily

PromptBuilder = Callable[[str, str], str]  # (prefix_text, suffix_text) -> prompt

_GENERIC_INSTRUCTION = (
    "You are a code completion assistant. Continue the text verbatim, "
    "following the existing style and patterns. Return ONLY the continuation, "
    "no explanations or markdown."
)


def _generic(prefix: str, suffix: str) -> str:
    return f"{_GENERIC_INSTRUCTION}\n\n{prefix}"


def _fim_starcoder(prefix: str, suffix: str) -> str:
    return f"<fim_prefix>{prefix}<fim_suffix>{suffix}<fim_middle>"


def _fim_deepseek(prefix: str, suffix: str) -> str:
    return f"<｜fim▁begin｜>{prefix}<｜fim▁hole｜>{suffix}<｜fim▁end｜>"


def _fim_codellama(prefix: str, suffix: str) -> str:
    return f"<PRE> {prefix} <SUF>{suffix} <MID>"


@dataclass(frozen=True)
class Template:
    build: PromptBuilder
    stop_sequences: tuple[str, ...]
    control_tokens: tuple[str, ...]


TEMPLATES: dict[TemplateFamily, Template] = {
    TemplateFamily.GENERIC: Template(
        build=_generic,
        stop_sequences=("\n\n", "```", "</code>"),
        control_tokens=(),
    ),
    TemplateFamily.FIM_STARCODER: Template(
        build=_fim_starcoder,
        stop_sequences=("<|endoftext|>", "<fim_prefix>", "<fim_suffix>", "<fim_middle>", "\n\n"),
        control_tokens=(
            "<fim_prefix>", "<fim_suffix>", "<fim_middle>", "<fim_pad>",
            "<|endoftext|>", "<file_sep>", "<repo_name>",
        ),
    ),
    TemplateFamily.FIM_DEEPSEEK: Template(
        build=_fim_deepseek,
        stop_sequences=("<｜end▁of▁sentence｜>", "<｜fim▁begin｜>", "<｜fim▁hole｜>", "\n\n"),
        control_tokens=(
            "<｜fim▁begin｜>", "<｜fim▁hole｜>", "<｜fim▁end｜>",
            "<｜begin▁of▁sentence｜>", "<｜end▁of▁sentence｜>",
        ),
    ),
    TemplateFamily.FIM_CODELLAMA: Template(
        build=_fim_codellama,
        stop_sequences=("<EOT>", "<PRE>", "<SUF>", "<MID>", "\n\n"),
        control_tokens=("<PRE>", "<SUF>", "<MID>", "<EOT>", "</s>", "<s>"),
    ),
}

# Identifier substring (lower-case) -> family. Order matters: first match wins.
FAMILY_PATTERNS: list[tuple[str, TemplateFamily]] = [
    ("deepseek", TemplateFamily.FIM_DEEPSEEK),
    ("codellama", TemplateFamily.FIM_CODELLAMA),
    ("code-llama", TemplateFamily.FIM_CODELLAMA),
    ("code_llama", TemplateFamily.FIM_CODELLAMA),
    ("starcoder", TemplateFamily.FIM_STARCODER),
    ("santacoder", TemplateFamily.FIM_STARCODER),
    ("stable-code", TemplateFamily.FIM_STARCODER),
]

# Every family's control tokens, longest first so overlapping tokens strip cleanly
ALL_CONTROL_TOKENS: tuple[str, ...] = tuple(sorted(
    {tok for t in TEMPLATES.values() for tok in t.control_tokens},
    key=len,
    reverse=True,
))
CONTROL_TOKEN_RE = re.compile("|".join(re.escape(tok) for tok in ALL_CONTROL_TOKENS))


def family_for(identifier: str) -> TemplateFamily:
    """Match a model identifier (name or file name) to a template family."""
    lowered = identifier.lower()
    for pattern, family in FAMILY_PATTERNS:
        if pattern in lowered:
            return family
    return TemplateFamily.GENERIC


def profile_for(
    identifier: str,
    *,
    context_size: int = 4096,
    gpu_offload: bool = False,
) -> ModelProfile:
    """Build the ModelProfile for *identifier*, with its family's stop sequences."""
    family = family_for(identifier)
    return ModelProfile(
        identifier=identifier,
        family=family,
        stop_sequences=TEMPLATES[family].stop_sequences,
        context_size=context_size,
        gpu_offload=gpu_offload,
    )


def stop_sequences(profile: ModelProfile) -> list[str]:
    """Stop sequences for a request: the profile's own, else its family's."""
    return list(profile.stop_sequences or TEMPLATES[profile.family].stop_sequences)


def build_prompt(
    profile: ModelProfile,
    context_lines: Sequence[str],
    current_line_prefix: str,
    suffix_lines: Sequence[str] = (),
) -> str:
    """Render the backend prompt for the text before (and optionally after) the cursor.

    *context_lines* are the lines above the cursor line; *suffix_lines* start
    with the remainder of the cursor line. Generic templates ignore the suffix.
    """
    prefix = "\n".join([*context_lines, current_line_prefix])
    suffix = "\n".join(suffix_lines)
    return TEMPLATES[profile.family].build(prefix, suffix)
