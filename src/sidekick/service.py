"""The sidekick service: one explicitly owned context for every editor-facing operation.

A ``Sidekick`` wires config, HTTP client, backend manager and completion
orchestrator together. Nothing here is global; create one per editor
session and bind its lifetime to ``start()``/``stop()`` (or ``async with``).
"""

from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from sidekick.completion.cache import CompletionCache
from sidekick.completion.orchestrator import CompletionOrchestrator, Sanitizer
from sidekick.completion.policy import DocumentState, TriggerKind, skip_reason
from sidekick.completion.request import (
    CancellationToken,
    CompletionResult,
    CursorPosition,
    request_from_document,
)
from sidekick.completion.templates import profile_for
from sidekick.config import ModelConfig, SidekickConfig, save_model_default
from sidekick.errors import MalformedResponseError, ModelNotFoundError, RequestFailedError
from sidekick.gpu import gpu_offload_available
from sidekick.inference.client import LlamaServerClient, base_url_for
from sidekick.inference.engine import BackendState, ModelProfile
from sidekick.inference.server import BackendManager
from sidekick.languages import detect_language, format_test_boilerplate, task_prompt
from sidekick.model_manager import (
    format_local_models,
    infer_context_size,
    list_local_models,
    model_directory,
    resolve_model_path,
    resolve_switch_target,
)

logger = logging.getLogger(__name__)

# (cursor, token budget) -> related code from elsewhere in the workspace
ContextProvider = Callable[[CursorPosition, int], Awaitable[str]]

_FENCE_OPEN_RE = re.compile(r"^\s*```[\w+#.-]*[ \t]*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")


@dataclass(frozen=True)
class GenerationTask:
    """Budget and wording for one long-form generation operation."""

    title: str  # "<title> unavailable: ..."
    action: str  # "Unable to <action>: ..."
    prompt_task: str
    n_predict: int
    temperature: float
    code_only: bool = False  # strip markdown fences from the reply


GENERATION_TASKS: dict[str, GenerationTask] = {
    "explain": GenerationTask("Explanation", "explain code", "explain", 500, 0.3),
    "refactor": GenerationTask("Refactoring", "refactor code", "refactor", 1000, 0.1, code_only=True),
    "tests": GenerationTask("Test generation", "generate tests", "test", 1500, 0.2),
    "fix": GenerationTask("Code fix", "fix code", "fix", 500, 0.1, code_only=True),
}


@dataclass
class BackendStatus:
    ready: bool
    active_model: str
    state: str
    detail: str = ""
    usage: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def strip_code_fences(text: str) -> str:
    """Remove a wrapping markdown code fence, if the model added one."""
    text = _FENCE_OPEN_RE.sub("", text, count=1)
    return _FENCE_CLOSE_RE.sub("", text).strip("\n")


def build_profile(model_config: ModelConfig, model_path: Path | None = None) -> ModelProfile:
    """Derive the ModelProfile from config and the model file (if one can be found)."""
    if model_path is None:
        try:
            model_path = resolve_model_path(model_config)
        except ModelNotFoundError:
            model_path = None

    identifier = model_config.identifier or (model_path.name if model_path else "")
    if model_config.n_ctx > 0:
        n_ctx = model_config.n_ctx
    elif model_path is not None:
        n_ctx = infer_context_size(model_path)
    else:
        n_ctx = 4096
    gpu_offload = model_config.n_gpu_layers != 0 and gpu_offload_available()
    return profile_for(identifier, context_size=n_ctx, gpu_offload=gpu_offload)


class Sidekick:
    """Editor collaborator interface over a supervised local backend."""

    def __init__(
        self,
        config: SidekickConfig,
        *,
        sanitize: Sanitizer | None = None,
        context_provider: ContextProvider | None = None,
        client: LlamaServerClient | None = None,
    ) -> None:
        self.config = config
        self.sanitize = sanitize or (lambda text: text)
        self.context_provider = context_provider
        self.client = client or LlamaServerClient(
            base_url_for(config.backend.host, config.backend.port),
            timeout=config.backend.request_timeout,
        )
        self.manager = BackendManager(
            config.backend, config.model, build_profile(config.model), self.client,
        )
        self.orchestrator = CompletionOrchestrator(
            self.manager,
            self.client,
            config.completion,
            request_timeout=config.backend.request_timeout,
            sanitize=self.sanitize,
        )

    @property
    def cache(self) -> CompletionCache:
        return self.orchestrator.cache

    # ─── Lifecycle ──────────────────────────────────────────────────────

    async def start(self, wait: bool = True) -> BackendState:
        """Bring the backend up; with ``wait=False`` only kick it off in the background."""
        if wait:
            return await self.manager.ensure_ready()
        self.manager.start_background()
        return self.manager.state

    async def stop(self) -> None:
        """Terminate the backend, clear the cache and close the HTTP client."""
        await self.manager.shutdown()
        await self.orchestrator.clear_cache()
        await self.client.close()

    async def __aenter__(self) -> Sidekick:
        await self.start(wait=False)
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ─── Inline completion ──────────────────────────────────────────────

    async def complete(
        self,
        document_text: str,
        cursor: CursorPosition,
        trigger: TriggerKind = TriggerKind.AUTOMATIC,
        cancellation: CancellationToken | None = None,
        language_id: str | None = None,
    ) -> CompletionResult | None:
        """Inline completion at *cursor*. Returns None when the request is suppressed.

        Never raises for backend problems and never waits for backend startup.
        """
        completion = self.config.completion
        request = request_from_document(
            document_text,
            cursor,
            lines_before=completion.lines_before,
            lines_after=completion.lines_after,
            language_id=language_id,
            cancellation=cancellation,
        )
        reason = skip_reason(
            DocumentState(request.line_prefix, language_id),
            trigger,
            self.config.policy.min_prefix_length,
        )
        if reason is not None:
            logger.debug("Completion skipped: %s", reason)
            return None

        if self.manager.can_auto_start:
            self.manager.start_background()

        if self.context_provider is not None:
            request.semantic_context = await self._relevant_context(cursor)
        return await self.orchestrator.complete(request)

    async def _relevant_context(self, cursor: CursorPosition) -> str:
        try:
            return await self.context_provider(cursor, self.config.completion.context_tokens)
        except Exception:
            logger.warning("Semantic context provider failed; completing without it", exc_info=True)
            return ""

    # ─── Generation ─────────────────────────────────────────────────────

    async def explain(self, code: str, context: str = "", language_id: str | None = None) -> str:
        return await self._generate("explain", code, context=context, language_id=language_id)

    async def refactor(
        self,
        code: str,
        instruction: str,
        context: str = "",
        language_id: str | None = None,
    ) -> str:
        return await self._generate(
            "refactor", code, context=context, instruction=instruction, language_id=language_id,
        )

    async def generate_tests(self, code: str, context: str = "", language_id: str | None = None) -> str:
        language_id = language_id or detect_language(code)
        return await self._generate(
            "tests", code, context=context, language_id=language_id,
            postprocess=lambda tests: format_test_boilerplate(language_id, tests),
        )

    async def fix_error(
        self,
        code: str,
        error_message: str,
        line: int | None = None,
        context: str = "",
        language_id: str | None = None,
    ) -> str:
        """Corrected version of *code* for a diagnostic reported at *line* (1-based)."""
        where = f" at line {line}" if line is not None else ""
        instruction = f"Error{where}: {error_message}"
        return await self._generate(
            "fix", code, context=context, instruction=instruction, language_id=language_id,
        )

    async def _generate(
        self,
        task_name: str,
        code: str,
        *,
        context: str = "",
        instruction: str = "",
        language_id: str | None = None,
        postprocess: Callable[[str], str] | None = None,
    ) -> str:
        task = GENERATION_TASKS[task_name]

        # Explicitly requested: worth waiting for a start that is allowed or under way
        if not self.manager.is_healthy and (self.manager.initializing or self.manager.can_auto_start):
            await self.manager.ensure_ready()
        if not self.manager.is_healthy:
            reason = self.manager.last_error or f"state: {self.manager.state.value}"
            return f"{task.title} unavailable: local model backend is not running ({reason})."

        prompt = task_prompt(
            task.prompt_task,
            self.sanitize(code),
            language_id=language_id or detect_language(code),
            context=self.sanitize(context) if context else "",
            instruction=instruction,
        )
        try:
            response = await self.client.complete(
                prompt,
                n_predict=task.n_predict,
                temperature=task.temperature,
                timeout=self.config.backend.generate_timeout,
            )
        except RequestFailedError as e:
            logger.warning("%s request failed: %s", task.title, e)
            if e.unreachable:
                self.manager.report_failure(str(e))
            return f"Unable to {task.action}: {e}"
        except MalformedResponseError as e:
            logger.warning("%s response unusable: %s", task.title, e)
            return f"Unable to {task.action}: {e}"

        text = response.content.strip()
        if task.code_only:
            text = strip_code_fences(text)
        if postprocess is not None:
            text = postprocess(text)
        self.orchestrator.usage.record_generation(text)
        return text

    # ─── Models / status ────────────────────────────────────────────────

    def status(self) -> BackendStatus:
        return BackendStatus(
            ready=self.manager.is_healthy,
            active_model=self.manager.profile.identifier,
            state=self.manager.state.value,
            detail=self.manager.last_error,
            usage=self.orchestrator.usage.as_dict(),
        )

    def list_models(self) -> list[Path]:
        return list_local_models(model_directory(self.config.model))

    def format_models(self) -> str:
        return format_local_models(self.list_models(), self.manager.profile.identifier)

    async def switch_model(self, identifier: str, persist: bool = False) -> ModelProfile:
        """Make *identifier* (a path or a name in the model directory) the active model.

        Clears the completion cache, restarts the backend against the new
        model and, with *persist*, saves it as the default.
        """
        path = resolve_switch_target(identifier, self.config.model)
        if path is None:
            raise ModelNotFoundError(f"Model not found: {identifier}\n{self.format_models()}")

        model_config = dataclasses.replace(self.config.model, path=str(path), identifier="")
        profile = build_profile(model_config, path)

        await self.orchestrator.clear_cache()
        await self.manager.switch_model(profile, model_config)
        self.config.model = model_config
        if persist:
            saved_to = save_model_default(str(path))
            logger.info("Default model saved to %s", saved_to)

        logger.info("Switched model to %s (%s)", profile.identifier, profile.family.value)
        await self.manager.ensure_ready()
        return profile
