"""Headless (non-interactive) mode: one action per invocation.

Usage: sidekick --explain src/app.py | less

Result text goes to stdout (pipeable), everything else to stderr.
"""

from __future__ import annotations

import sys
from pathlib import Path

from sidekick.completion.policy import TriggerKind
from sidekick.completion.request import CursorPosition
from sidekick.languages import language_for_path
from sidekick.service import Sidekick

GENERATION_ACTIONS = ("explain", "refactor", "tests")


def parse_location(location: str) -> tuple[Path, int, int]:
    """Split ``FILE:LINE:COLUMN`` (1-based line and column) into its parts.

    Raises ValueError for anything else.
    """
    path, sep, rest = location.rpartition(":")
    path, sep2, line = path.rpartition(":")
    if not sep or not sep2 or not path:
        raise ValueError(f"Expected FILE:LINE:COLUMN, got {location!r}")
    try:
        return Path(path), int(line), int(rest)
    except ValueError:
        raise ValueError(f"Line and column must be integers in {location!r}") from None


async def run_complete(sidekick: Sidekick, location: str) -> int:
    """Print the inline completion at ``FILE:LINE:COLUMN``.

    Waits for the backend first; a CLI call has no keystrokes to keep up with.
    """
    try:
        path, line, column = parse_location(location)
        text = path.read_text(encoding="utf-8")
    except (ValueError, OSError) as e:
        _err(f"[error] {e}")
        return 1

    await sidekick.start()
    result = await sidekick.complete(
        text,
        CursorPosition(line - 1, column - 1),
        trigger=TriggerKind.EXPLICIT,
        language_id=language_for_path(path),
    )
    if result is None:
        _err("[skipped] no completion for this position")
        return 0
    print(result.text, flush=True)
    _err(f"[{result.source.value}] {result.latency_ms:.0f}ms")
    return 0


async def run_generation(
    sidekick: Sidekick,
    action: str,
    file: str,
    instruction: str = "",
) -> int:
    """Run explain / refactor / tests on a whole file and print the result.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    if action not in GENERATION_ACTIONS:
        _err(f"[error] unknown action: {action}")
        return 1
    path = Path(file)
    try:
        code = path.read_text(encoding="utf-8")
    except OSError as e:
        _err(f"[error] {e}")
        return 1

    language_id = language_for_path(path)
    await sidekick.start()
    if not sidekick.status().ready:
        status = sidekick.status()
        _err(f"[error] local model backend is not running ({status.detail or status.state})")
        return 1

    match action:
        case "explain":
            output = await sidekick.explain(code, language_id=language_id)
        case "refactor":
            output = await sidekick.refactor(code, instruction, language_id=language_id)
        case "tests":
            output = await sidekick.generate_tests(code, language_id=language_id)

    print(output, flush=True)
    return 0 if output and not output.startswith("Unable to ") else 1


def run_status(sidekick: Sidekick) -> int:
    status = sidekick.status()
    print(f"ready: {'yes' if status.ready else 'no'}")
    print(f"state: {status.state}")
    print(f"model: {status.active_model or '(none)'}")
    if status.detail:
        print(f"detail: {status.detail}")
    return 0 if status.ready else 1


def run_list_models(sidekick: Sidekick) -> int:
    print(sidekick.format_models())
    return 0


def _err(msg: str) -> None:
    """Print a message to stderr."""
    print(msg, file=sys.stderr, flush=True)
