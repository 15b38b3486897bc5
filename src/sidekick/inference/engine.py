"""Shared inference types: backend state, model profile, backend replies."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BackendState(Enum):
    NOT_INITIALIZED = "not_initialized"
    DISCOVERING = "discovering"
    LAUNCHING = "launching"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"


class TemplateFamily(Enum):
    """Prompt-template families; FIM variants differ only in their control tokens."""

    GENERIC = "generic"
    FIM_STARCODER = "fim_starcoder"  # <fim_prefix> / <fim_suffix> / <fim_middle>
    FIM_DEEPSEEK = "fim_deepseek"  # <｜fim▁begin｜> / <｜fim▁hole｜> / <｜fim▁end｜>
    FIM_CODELLAMA = "fim_codellama"  # <PRE> / <SUF> / <MID>


@dataclass(frozen=True)
class ModelProfile:
    """The active model as seen by the orchestrator.

    Immutable; a model switch replaces the whole profile.
    """

    identifier: str
    family: TemplateFamily = TemplateFamily.GENERIC
    stop_sequences: tuple[str, ...] = ()
    context_size: int = 4096
    gpu_offload: bool = False


@dataclass
class BackendEvent:
    """A backend state transition, delivered to listeners and ``events()`` subscribers."""

    state: BackendState
    previous: BackendState
    detail: str = ""


@dataclass
class CompletionResponse:
    """Parsed body of a ``POST /completion`` reply.

    Only ``content`` is needed for correctness; the rest is advisory telemetry.
    """

    content: str
    tokens_predicted: int = 0
    tokens_evaluated: int = 0
    stop_reason: str = ""
    timings: dict[str, Any] = field(default_factory=dict)
