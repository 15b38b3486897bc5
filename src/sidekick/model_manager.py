"""Model file helpers: discovery, listing, switching targets, context size.

Pure logic over the filesystem and config; nothing here talks to the
backend process.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from sidekick.config import ModelConfig
from sidekick.errors import ModelNotFoundError

logger = logging.getLogger(__name__)

MODEL_EXTENSIONS = (".gguf",)


# ─── Discovery ──────────────────────────────────────────────────────


def model_directory(config: ModelConfig) -> Path:
    """The project-local model directory (relative paths resolve against the CWD)."""
    return Path(config.model_dir).expanduser().resolve()


def list_local_models(model_dir: Path) -> list[Path]:
    """Return recognised model files in *model_dir*, sorted by name."""
    if not model_dir.is_dir():
        return []
    return sorted(
        p for p in model_dir.iterdir()
        if p.is_file() and p.suffix.lower() in MODEL_EXTENSIONS
    )


def resolve_model_path(config: ModelConfig) -> Path:
    """Find the model file to serve.

    Search order: the explicit ``[model] path``, then the first recognised
    file in the project-local model directory.

    Raises ModelNotFoundError when neither yields a file.
    """
    if config.path:
        explicit = Path(config.path).expanduser()
        if explicit.is_file():
            return explicit
        logger.warning("Configured model path does not exist: %s", explicit)

    model_dir = model_directory(config)
    available = list_local_models(model_dir)
    if available:
        logger.debug("Using model %s from %s", available[0].name, model_dir)
        return available[0]

    wanted = ", ".join(MODEL_EXTENSIONS)
    where = f"{config.path} or {model_dir}" if config.path else str(model_dir)
    raise ModelNotFoundError(
        f"No model file ({wanted}) found in {where}. Put a GGUF model there "
        "or set [model] path in ~/.config/sidekick/config.toml."
    )


# ─── Switching ──────────────────────────────────────────────────────


def find_local_model(name: str, available: list[Path]) -> Path | None:
    """Find a local model by filename or stem.

    Returns the matching ``Path`` or ``None``.
    """
    for model in available:
        if model.name == name or model.stem == name:
            return model
    return None


def resolve_switch_target(identifier: str, config: ModelConfig) -> Path | None:
    """Map a switch request to a model file: a path, or a name in the model directory."""
    candidate = Path(identifier).expanduser()
    if candidate.is_file():
        return candidate
    return find_local_model(identifier, list_local_models(model_directory(config)))


def format_local_models(available: list[Path], current_model_name: str) -> str:
    """Format the list of local models for display."""
    if not available:
        return "No local models found."
    lines = ["Local models:"]
    for model in available:
        marker = "  (active)" if model.name == current_model_name else ""
        lines.append(f"  {model.name}{marker}")
    return "\n".join(lines)


# ─── Sizing ─────────────────────────────────────────────────────────


def infer_context_size(model_path: str | Path) -> int:
    """Infer an appropriate context size from the model filename.

    Looks for a parameter-count pattern like '1.3b', '6.7b', '15B' in the
    filename and maps it to a reasonable context size.
    Falls back to 4096 if no pattern is found.
    """
    name = Path(model_path).name.lower()
    match = re.search(r"(\d+(?:\.\d+)?)b", name)
    if not match:
        return 4096
    param_billions = float(match.group(1))
    if param_billions <= 1:
        return 2048
    if param_billions <= 4:
        return 4096
    if param_billions <= 8:
        return 8192
    if param_billions <= 14:
        return 16384
    return 32768
