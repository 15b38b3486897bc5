"""Inline completion pipeline: cache, readiness gate, backend call, normalize, fallback.

``complete()`` never raises for per-request problems. Whatever goes wrong
with the backend, the caller gets a string (possibly empty) tagged with
where it came from.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable

from sidekick.completion.cache import CompletionCache, fingerprint
from sidekick.completion.fallback import fallback
from sidekick.completion.normalizer import normalize
from sidekick.completion.request import (
    CompletionRequest,
    CompletionResult,
    CompletionSource,
)
from sidekick.completion.templates import build_prompt, stop_sequences
from sidekick.config import CompletionConfig
from sidekick.errors import (
    MalformedResponseError,
    RequestCancelledError,
    RequestFailedError,
)
from sidekick.inference.client import LlamaServerClient
from sidekick.inference.server import BackendManager

logger = logging.getLogger(__name__)

Sanitizer = Callable[[str], str]


def _identity(text: str) -> str:
    return text


@dataclass
class UsageReport:
    """Local inference accounting, shown in ``status()``."""

    by_source: Counter = field(default_factory=Counter)
    characters: int = 0
    generations: int = 0
    generated_characters: int = 0

    def record(self, result: CompletionResult) -> None:
        self.by_source[result.source.value] += 1
        self.characters += len(result.text)

    def record_generation(self, text: str) -> None:
        self.generations += 1
        self.generated_characters += len(text)

    @property
    def backend_inferences(self) -> int:
        return self.by_source[CompletionSource.BACKEND_GENERATED.value] + self.generations

    def as_dict(self) -> dict:
        return {
            "completions": dict(self.by_source),
            "completion_characters": self.characters,
            "generations": self.generations,
            "generated_characters": self.generated_characters,
            "local_inferences": self.backend_inferences,
        }


class CompletionOrchestrator:
    """Turns a CompletionRequest into a CompletionResult.

    Owns the completion cache; the backend manager is consulted for
    readiness on every request and never cached as a boolean.
    """

    def __init__(
        self,
        manager: BackendManager,
        client: LlamaServerClient,
        config: CompletionConfig,
        *,
        request_timeout: float = 5.0,
        sanitize: Sanitizer | None = None,
        cache: CompletionCache | None = None,
    ) -> None:
        self.manager = manager
        self.client = client
        self.config = config
        self.request_timeout = request_timeout
        self.sanitize = sanitize or _identity
        self.cache = cache or CompletionCache(config.cache_capacity)
        self.usage = UsageReport()
        self._lock = asyncio.Lock()
        self._cache_epoch = 0  # bumped by clear_cache()

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Cached text, a fresh backend completion, or the fallback heuristic.

        The lock is not held across the backend call, so overlapping misses on
        the same key each generate; the later result overwrites the earlier.
        A result whose request started before a ``clear_cache()`` is
        returned to its caller but never stored.
        """
        started = time.monotonic()
        key = fingerprint(request.prefix_text, self.config.fingerprint_length)

        async with self._lock:
            cached = self.cache.get(key)
            epoch = self._cache_epoch
        if cached is not None:
            return self._result(cached, CompletionSource.CACHED, started)

        if not self.manager.is_healthy:
            return self._fallback(request, started)

        try:
            text = await self._generate(request)
        except RequestCancelledError:
            logger.debug("Completion superseded before it could be used")
            return self._fallback(request, started)
        except asyncio.TimeoutError:
            logger.info("Completion timed out after %.1fs", self.request_timeout)
            return self._fallback(request, started)
        except RequestFailedError as e:
            logger.info("Completion request failed: %s", e)
            if e.unreachable:
                self.manager.report_failure(str(e))
            return self._fallback(request, started)
        except MalformedResponseError as e:
            logger.info("Unusable completion response: %s", e)
            return self._fallback(request, started)

        if not text:
            return self._fallback(request, started)

        async with self._lock:
            if epoch == self._cache_epoch:
                self.cache.put(key, text)
            else:
                logger.debug("Cache cleared during generation; result not stored")
        return self._result(text, CompletionSource.BACKEND_GENERATED, started)

    async def _generate(self, request: CompletionRequest) -> str:
        """One backend round trip, normalized. Raises on any per-request failure."""
        _check_cancelled(request)

        prefix_lines = self.sanitize(request.prefix_text).split("\n")
        context_lines, current_line = prefix_lines[:-1], prefix_lines[-1]
        if request.semantic_context:
            context_lines = [*self.sanitize(request.semantic_context).split("\n"), "", *context_lines]
        suffix_lines = self.sanitize("\n".join(request.lines_after)).split("\n") if request.lines_after else []

        profile = self.manager.profile
        prompt = build_prompt(profile, context_lines, current_line, suffix_lines)
        response = await asyncio.wait_for(
            self.client.complete(
                prompt,
                n_predict=request.max_tokens or self.config.n_predict,
                temperature=self.config.temperature,
                stop=stop_sequences(profile),
                top_k=self.config.top_k,
                top_p=self.config.top_p,
                repeat_penalty=self.config.repeat_penalty,
            ),
            timeout=self.request_timeout,
        )

        _check_cancelled(request)
        return normalize(response.content, current_line, self.config.max_length)

    def _fallback(self, request: CompletionRequest, started: float) -> CompletionResult:
        text = fallback(request.prefix_text, request.line_prefix, request.language_id)
        return self._result(text, CompletionSource.FALLBACK, started)

    def _result(self, text: str, source: CompletionSource, started: float) -> CompletionResult:
        result = CompletionResult(
            text=text,
            source=source,
            latency_ms=(time.monotonic() - started) * 1000,
        )
        self.usage.record(result)
        return result

    async def clear_cache(self) -> None:
        async with self._lock:
            self._cache_epoch += 1
            self.cache.clear()


def _check_cancelled(request: CompletionRequest) -> None:
    if request.cancellation.cancelled:
        raise RequestCancelledError("completion request was superseded")
