"""Tests for the Sidekick service (editor collaborator interface)."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from sidekick.completion.cache import fingerprint
from sidekick.completion.policy import TriggerKind
from sidekick.completion.request import CompletionSource, CursorPosition
from sidekick.config import SidekickConfig
from sidekick.errors import ModelNotFoundError, RequestFailedError
from sidekick.inference.engine import BackendState, CompletionResponse, TemplateFamily
from sidekick.service import Sidekick, build_profile, strip_code_fences

FACTORIAL = "function factorial(n) {\n  if (n <= 1) return 1;\n  ret"
FACTORIAL_CURSOR = CursorPosition(2, 5)


@pytest.fixture(autouse=True)
def _no_gpu(monkeypatch):
    monkeypatch.setattr("sidekick.service.gpu_offload_available", lambda: False)


@pytest.fixture
def config(tmp_path: Path) -> SidekickConfig:
    cfg = SidekickConfig()
    cfg.model.model_dir = str(tmp_path / "models")
    cfg.backend.health_interval = 0
    cfg.backend.health_attempts = 1
    return cfg


def _make_client(healthy: bool = True, content: str = "42;") -> MagicMock:
    client = MagicMock()
    client.base_url = "http://127.0.0.1:8012"
    client.health = AsyncMock(return_value=healthy)
    client.complete = AsyncMock(return_value=CompletionResponse(content=content))
    client.close = AsyncMock()
    return client


def _add_model(config: SidekickConfig, name: str) -> Path:
    model_dir = Path(config.model.model_dir)
    model_dir.mkdir(parents=True, exist_ok=True)
    path = model_dir / name
    path.write_bytes(b"GGUF")
    return path


# ─── Inline completion ──────────────────────────────────────────────────────


class TestComplete:
    async def test_automatic_after_space_is_suppressed(self, config):
        sk = Sidekick(config, client=_make_client())
        result = await sk.complete("const x = ", CursorPosition(0, 10), TriggerKind.AUTOMATIC)
        assert result is None
        sk.client.complete.assert_not_awaited()

    async def test_end_to_end_first_line_only(self, config):
        client = _make_client(content="return n * factorial(n - 1);\nfoo();")
        sk = Sidekick(config, client=client)
        await sk.start()

        result = await sk.complete(FACTORIAL, FACTORIAL_CURSOR, TriggerKind.EXPLICIT)
        assert result.text == "return n * factorial(n - 1);"
        assert result.source == CompletionSource.BACKEND_GENERATED
        await sk.stop()

    async def test_second_call_is_cached(self, config):
        sk = Sidekick(config, client=_make_client())
        await sk.start()

        first = await sk.complete(FACTORIAL, FACTORIAL_CURSOR, TriggerKind.EXPLICIT)
        snapshot = sk.cache.keys()
        second = await sk.complete(FACTORIAL, FACTORIAL_CURSOR, TriggerKind.EXPLICIT)

        assert second.source == CompletionSource.CACHED
        assert second.text == first.text
        assert sk.cache.keys() == snapshot
        assert sk.client.complete.await_count == 1
        await sk.stop()

    async def test_unhealthy_backend_falls_back(self, config):
        sk = Sidekick(config, client=_make_client(healthy=False))
        result = await sk.complete("if (x > 0", CursorPosition(0, 9), TriggerKind.EXPLICIT)
        assert result.text == ")"
        assert result.source == CompletionSource.FALLBACK
        sk.client.complete.assert_not_awaited()
        await sk.stop()

    async def test_completion_kicks_off_background_start(self, config):
        sk = Sidekick(config, client=_make_client(healthy=True))
        assert sk.manager.state == BackendState.NOT_INITIALIZED
        await sk.complete("if (x > 0", CursorPosition(0, 9), TriggerKind.EXPLICIT)
        assert sk.manager.initializing or sk.manager.is_healthy
        await sk.stop()

    async def test_context_provider_feeds_prompt(self, config):
        provider = AsyncMock(return_value="function helper() {}")
        sk = Sidekick(config, client=_make_client(), context_provider=provider)
        await sk.start()

        await sk.complete(FACTORIAL, FACTORIAL_CURSOR, TriggerKind.EXPLICIT)
        provider.assert_awaited_once_with(FACTORIAL_CURSOR, 500)
        assert "function helper() {}" in sk.client.complete.call_args.args[0]
        await sk.stop()

    async def test_failing_context_provider_is_tolerated(self, config):
        provider = AsyncMock(side_effect=RuntimeError("index not ready"))
        sk = Sidekick(config, client=_make_client(), context_provider=provider)
        await sk.start()
        result = await sk.complete(FACTORIAL, FACTORIAL_CURSOR, TriggerKind.EXPLICIT)
        assert result.source == CompletionSource.BACKEND_GENERATED
        await sk.stop()


# ─── Generation ─────────────────────────────────────────────────────────────


class TestGeneration:
    async def test_unavailable_message(self, config):
        sk = Sidekick(config, client=_make_client(healthy=False))
        text = await sk.explain("x = 1")
        assert text.startswith("Explanation unavailable: local model backend is not running (")
        assert "No model file" in text
        sk.client.complete.assert_not_awaited()

    async def test_explain_uses_task_limits(self, config):
        sk = Sidekick(config, client=_make_client(content="  It assigns one to x.\n"))
        await sk.start()
        assert await sk.explain("x = 1", language_id="python") == "It assigns one to x."
        kwargs = sk.client.complete.call_args.kwargs
        assert kwargs["n_predict"] == 500
        assert kwargs["temperature"] == 0.3
        assert kwargs["timeout"] == 120.0

    async def test_refactor_strips_fences(self, config):
        reply = "```python\ndef f():\n    return 1\n```"
        sk = Sidekick(config, client=_make_client(content=reply))
        await sk.start()
        assert await sk.refactor("def f(): return 1", "expand") == "def f():\n    return 1"
        assert "Instruction: expand" in sk.client.complete.call_args.args[0]

    async def test_request_failure_message(self, config):
        client = _make_client()
        client.complete = AsyncMock(side_effect=RequestFailedError("Backend error 500: boom", 500))
        sk = Sidekick(config, client=client)
        await sk.start()
        text = await sk.refactor("a", "b")
        assert text == "Unable to refactor code: Backend error 500: boom"
        assert sk.manager.is_healthy

    async def test_refused_connection_demotes_backend(self, config):
        client = _make_client()
        client.complete = AsyncMock(side_effect=RequestFailedError("refused", unreachable=True))
        sk = Sidekick(config, client=client)
        await sk.start()
        await sk.explain("a")
        assert sk.manager.state == BackendState.UNHEALTHY

    async def test_generate_tests_adds_boilerplate(self, config):
        sk = Sidekick(config, client=_make_client(content="assert add(1, 2) == 3"))
        await sk.start()
        tests = await sk.generate_tests("def add(a, b):\n    return a + b\n")
        assert tests.startswith("# Tests using pytest")
        assert sk.client.complete.call_args.kwargs["n_predict"] == 1500

    async def test_fix_error_prompt(self, config):
        sk = Sidekick(config, client=_make_client(content="```\nprint(x)\n```"))
        await sk.start()
        fixed = await sk.fix_error("print(y)", "NameError: name 'y' is not defined", line=1)
        assert fixed == "print(x)"
        prompt = sk.client.complete.call_args.args[0]
        assert "Error at line 1: NameError" in prompt

    async def test_usage_counts_generations(self, config):
        sk = Sidekick(config, client=_make_client(content="ok"))
        await sk.start()
        await sk.explain("x")
        usage = sk.status().usage
        assert usage["generations"] == 1
        assert usage["generated_characters"] == 2


# ─── Models and status ──────────────────────────────────────────────────────


class TestModels:
    async def test_status(self, config):
        _add_model(config, "starcoder2-3b.gguf")
        sk = Sidekick(config, client=_make_client())
        await sk.start()
        status = sk.status()
        assert status.ready is True
        assert status.active_model == "starcoder2-3b.gguf"
        assert status.state == "healthy"
        assert status.to_dict()["usage"]["local_inferences"] == 0

    async def test_switch_model_clears_cache(self, config):
        _add_model(config, "starcoder2-3b.gguf")
        _add_model(config, "deepseek-coder-1.3b.gguf")
        sk = Sidekick(config, client=_make_client())
        await sk.start()
        await sk.complete(FACTORIAL, FACTORIAL_CURSOR, TriggerKind.EXPLICIT)
        key = fingerprint(FACTORIAL)
        assert key in sk.cache

        profile = await sk.switch_model("deepseek-coder-1.3b")
        assert key not in sk.cache
        assert len(sk.cache) == 0
        assert profile.family == TemplateFamily.FIM_DEEPSEEK
        assert sk.status().active_model == "deepseek-coder-1.3b.gguf"
        assert sk.manager.is_healthy

    async def test_switch_model_unknown(self, config):
        sk = Sidekick(config, client=_make_client())
        with pytest.raises(ModelNotFoundError, match="Model not found"):
            await sk.switch_model("nope")

    async def test_switch_model_persist(self, config, tmp_path, monkeypatch):
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        model = _add_model(config, "codellama-7b.gguf")
        sk = Sidekick(config, client=_make_client())
        await sk.switch_model("codellama-7b.gguf", persist=True)
        saved = (tmp_path / ".config" / "sidekick" / "config.toml").read_text()
        assert str(model.resolve()) in saved or str(model) in saved

    def test_list_models(self, config):
        _add_model(config, "b.gguf")
        _add_model(config, "a.gguf")
        sk = Sidekick(config, client=_make_client())
        assert [p.name for p in sk.list_models()] == ["a.gguf", "b.gguf"]
        assert "Local models:" in sk.format_models()


# ─── Lifecycle ──────────────────────────────────────────────────────────────


class TestLifecycle:
    async def test_context_manager_stops(self, config):
        client = _make_client()
        async with Sidekick(config, client=client) as sk:
            await sk.start()
            assert sk.manager.is_healthy
        assert sk.manager.state == BackendState.STOPPED
        client.close.assert_awaited_once()

    async def test_stop_clears_cache(self, config):
        sk = Sidekick(config, client=_make_client())
        await sk.start()
        await sk.complete(FACTORIAL, FACTORIAL_CURSOR, TriggerKind.EXPLICIT)
        await sk.stop()
        assert len(sk.cache) == 0


# ─── Helpers ────────────────────────────────────────────────────────────────


class TestHelpers:
    def test_strip_code_fences(self):
        assert strip_code_fences("```ts\nconst a = 1;\n```") == "const a = 1;"
        assert strip_code_fences("no fences") == "no fences"

    def test_build_profile_from_directory(self, config):
        _add_model(config, "codellama-13b.Q4_K_M.gguf")
        profile = build_profile(config.model)
        assert profile.identifier == "codellama-13b.Q4_K_M.gguf"
        assert profile.family == TemplateFamily.FIM_CODELLAMA
        assert profile.context_size == 16384
        assert profile.gpu_offload is False

    def test_build_profile_identifier_override(self, config):
        config.model.identifier = "deepseek-coder"
        config.model.n_ctx = 1024
        profile = build_profile(config.model)
        assert profile.family == TemplateFamily.FIM_DEEPSEEK
        assert profile.context_size == 1024
