"""Platform detection and llama.cpp server executable lookup (Linux, macOS, WSL)."""

from __future__ import annotations

import logging
import os
import shutil
import sys
from functools import lru_cache
from pathlib import Path

from sidekick.errors import ExecutableNotFoundError

logger = logging.getLogger(__name__)

# Binary names, newest first (older llama.cpp builds shipped a plain "server")
SERVER_BINARY_NAMES = ("llama-server", "llama.cpp-server", "server")


@lru_cache(maxsize=1)
def current_platform() -> str:
    """Detect the current platform.

    Returns ``"macos"``, ``"wsl"``, ``"windows"`` or ``"linux"``.
    WSL is detected by checking for ``"microsoft"`` in ``/proc/version``.
    Result is cached for the process lifetime.
    """
    if sys.platform == "darwin":
        return "macos"
    if sys.platform == "win32":
        return "windows"
    if sys.platform == "linux":
        try:
            with open("/proc/version", "r") as f:
                if "microsoft" in f.read().lower():
                    return "wsl"
        except OSError:
            pass
    return "linux"


def is_macos() -> bool:
    return current_platform() == "macos"


def is_windows() -> bool:
    return current_platform() == "windows"


def conventional_server_locations() -> list[Path]:
    """Fixed list of places llama.cpp is usually installed, in search order."""
    home = Path.home()
    exe = ".exe" if is_windows() else ""
    locations = [
        home / ".local" / "bin" / f"llama-server{exe}",
        home / "llama.cpp" / "build" / "bin" / f"llama-server{exe}",
        home / "llama.cpp" / f"llama-server{exe}",
    ]
    if is_macos():
        locations.insert(0, Path("/opt/homebrew/bin/llama-server"))
        locations.insert(1, Path("/usr/local/bin/llama-server"))
    elif is_windows():
        local_app = Path(os.environ.get("LOCALAPPDATA", home / "AppData" / "Local"))
        locations.insert(0, local_app / "llama.cpp" / "llama-server.exe")
    else:
        locations.insert(0, Path("/usr/local/bin/llama-server"))
        locations.insert(1, Path("/usr/bin/llama-server"))
    return locations


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def resolve_executable(explicit: str = "") -> Path:
    """Find the inference server binary.

    Search order: the explicit path (if configured), the conventional install
    locations, then ``PATH`` lookup for each known binary name.

    Raises ExecutableNotFoundError listing everything that was tried.
    """
    tried: list[str] = []

    if explicit:
        candidate = Path(explicit).expanduser()
        if _is_executable(candidate):
            return candidate
        tried.append(str(candidate))

    for candidate in conventional_server_locations():
        if _is_executable(candidate):
            logger.debug("Found server executable at %s", candidate)
            return candidate
        tried.append(str(candidate))

    for name in SERVER_BINARY_NAMES:
        found = shutil.which(name)
        if found:
            logger.debug("Found server executable on PATH: %s", found)
            return Path(found)
        tried.append(f"PATH:{name}")

    raise ExecutableNotFoundError(
        "llama.cpp server executable not found. Set [backend] executable in "
        "~/.config/sidekick/config.toml or put llama-server on your PATH. "
        f"Tried: {', '.join(tried)}"
    )
