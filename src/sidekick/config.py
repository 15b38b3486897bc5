"""Configuration loading and management for sidekick."""

from __future__ import annotations

import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "::1")


@dataclass
class BackendConfig:
    host: str = "127.0.0.1"
    port: int = 8012
    executable: str = ""  # "" = search conventional locations, then PATH
    n_threads: int = 0  # 0 = os.cpu_count()
    health_interval: float = 1.0
    health_attempts: int = 30
    request_timeout: float = 5.0  # hard cap for inline completions
    generate_timeout: float = 120.0  # explain / refactor / tests


@dataclass
class ModelConfig:
    path: str = ""
    model_dir: str = "models"  # project-local, relative to the working directory
    identifier: str = ""  # "" = use the model file name
    n_ctx: int = 0  # 0 = auto (inferred from model size)
    n_gpu_layers: int = -1  # -1 = auto (all layers if a GPU is detected)


@dataclass
class CompletionConfig:
    n_predict: int = 32
    temperature: float = 0.1
    top_k: int = 40
    top_p: float = 0.9
    repeat_penalty: float = 1.1
    max_length: int = 50
    cache_capacity: int = 100
    fingerprint_length: int = 200
    lines_before: int = 50
    lines_after: int = 10
    context_tokens: int = 500


@dataclass
class PolicyConfig:
    min_prefix_length: int = 3


@dataclass
class McpConfig:
    server_name: str = "sidekick"


@dataclass
class SidekickConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    mcp: McpConfig = field(default_factory=McpConfig)


_SECTIONS = ("backend", "model", "completion", "policy", "mcp")


def user_config_path() -> Path:
    return Path.home() / ".config" / "sidekick" / "config.toml"


def load_config(config_path: str | Path | None = None) -> SidekickConfig:
    """Load configuration from TOML file, falling back to defaults.

    Search order:
    1. Explicit config_path argument
    2. ~/.config/sidekick/config.toml
    3. Built-in defaults

    ``SIDEKICK_MODEL`` overrides ``[model] path`` afterwards.
    """
    config = SidekickConfig()

    user_path = Path(config_path) if config_path else user_config_path()
    if user_path.exists():
        _merge_toml(config, user_path)

    env_model = os.environ.get("SIDEKICK_MODEL")
    if env_model:
        config.model.path = env_model

    _enforce_loopback(config)
    return config


def _merge_toml(config: SidekickConfig, path: Path) -> None:
    """Merge a TOML file into the config, overwriting only specified fields."""
    with open(path, "rb") as f:
        data = tomllib.load(f)

    for section in _SECTIONS:
        if section not in data:
            continue
        target = getattr(config, section)
        for key, value in data[section].items():
            if hasattr(target, key):
                setattr(target, key, value)
            else:
                logger.warning("Ignoring unknown config key [%s] %s in %s", section, key, path)


def _enforce_loopback(config: SidekickConfig) -> None:
    """Keep the backend on the local machine: non-loopback hosts are replaced."""
    if config.backend.host not in LOOPBACK_HOSTS:
        logger.warning(
            "backend.host %r is not a loopback address; using 127.0.0.1 so no "
            "code leaves this machine.",
            config.backend.host,
        )
        config.backend.host = "127.0.0.1"


def save_model_default(model_path: str) -> Path:
    """Persist the default local model path to user config.

    Uses simple line-based TOML editing to avoid a tomli_w dependency.
    Returns the path to the config file.
    """
    config_path = user_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    if config_path.exists():
        lines = config_path.read_text().splitlines(keepends=True)
    else:
        lines = []

    # Find [model] section and locate an existing path key
    model_idx = None
    next_section_idx = None
    path_idx = None

    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped == "[model]":
            model_idx = i
        elif model_idx is not None and next_section_idx is None:
            if re.match(r"^\[.+\]", stripped):
                next_section_idx = i
            elif re.match(r"^#?\s*path\s*=", stripped):
                path_idx = i

    escaped = model_path.replace("\\", "\\\\").replace('"', '\\"')
    path_line = f'path = "{escaped}"\n'

    if model_idx is not None:
        if path_idx is not None:
            lines[path_idx] = path_line
        else:
            insert_at = next_section_idx if next_section_idx is not None else len(lines)
            lines.insert(insert_at, path_line)
    else:
        if lines and not lines[-1].endswith("\n"):
            lines.append("\n")
        lines.append("\n[model]\n")
        lines.append(path_line)

    config_path.write_text("".join(lines))
    return config_path
