"""GPU hardware detection for deciding how many layers the backend offloads.

Follows the same cached-detection pattern as ``platform.py``.
Tries ``nvidia-smi``, ``vulkaninfo`` and ``lspci`` in order; Apple Silicon
always counts as a (unified-memory) GPU.
"""

from __future__ import annotations

import logging
import platform as _stdlib_platform
import re
import shutil
import subprocess
from dataclasses import dataclass
from functools import lru_cache

from sidekick.platform import is_macos

logger = logging.getLogger(__name__)

# llama.cpp clamps this to the real layer count, so it means "everything"
ALL_LAYERS = 999


@dataclass
class GpuInfo:
    """Describes a single GPU visible to the system."""

    name: str
    vendor: str  # "nvidia", "amd", "intel", "apple", "unknown"
    vram_mb: int
    is_discrete: bool


def _run(cmd: list[str], timeout: int = 5) -> str | None:
    """Run *cmd* and return stdout, or ``None`` on any failure."""
    try:
        r = subprocess.run(
            cmd, capture_output=True, text=True, timeout=timeout,
        )
        if r.returncode == 0:
            return r.stdout
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
        pass
    return None


def _classify_vendor(name: str) -> str:
    low = name.lower()
    if any(k in low for k in ("nvidia", "geforce", "rtx", "gtx", "quadro")):
        return "nvidia"
    if "amd" in low or "radeon" in low:
        return "amd"
    if "intel" in low:
        return "intel"
    if "apple" in low:
        return "apple"
    return "unknown"


def _parse_nvidia_smi(output: str) -> list[GpuInfo]:
    """Parse ``nvidia-smi --query-gpu=name,memory.total`` CSV output."""
    gpus: list[GpuInfo] = []
    for line in output.strip().splitlines():
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 2 or not parts[0]:
            continue
        try:
            vram_mb = int(parts[1].replace("MiB", "").strip())
        except ValueError:
            vram_mb = 0
        gpus.append(GpuInfo(name=parts[0], vendor="nvidia", vram_mb=vram_mb, is_discrete=True))
    return gpus


def _parse_vulkaninfo(output: str) -> list[GpuInfo]:
    """Parse ``vulkaninfo --summary``; software rasterisers (llvmpipe) are skipped."""
    gpus: list[GpuInfo] = []
    for block in re.split(r"(?m)^GPU\s*\d+\s*:", output)[1:]:
        name = ""
        device_type = ""
        for line in block.splitlines():
            line_s = line.strip()
            if line_s.startswith("deviceName"):
                name = line_s.split("=", 1)[-1].strip()
            elif line_s.startswith("deviceType"):
                device_type = line_s.split("=", 1)[-1].strip().lower()
        if not name or "cpu" in device_type or "llvmpipe" in name.lower():
            continue
        gpus.append(GpuInfo(
            name=name,
            vendor=_classify_vendor(name),
            vram_mb=0,
            is_discrete="discrete" in device_type,
        ))
    return gpus


def _parse_lspci(output: str) -> list[GpuInfo]:
    """Parse ``lspci`` output for VGA/3D controllers."""
    gpus: list[GpuInfo] = []
    for line in output.splitlines():
        if "VGA" not in line and "3D" not in line:
            continue
        match = re.search(r":\s+(.+)$", line.split(" ", 1)[-1])
        name = match.group(1).strip() if match else line
        vendor = _classify_vendor(name)
        gpus.append(GpuInfo(
            name=name,
            vendor=vendor,
            vram_mb=0,
            is_discrete=vendor == "nvidia" or "Radeon RX" in name,
        ))
    return gpus


@lru_cache(maxsize=1)
def detect_gpus() -> list[GpuInfo]:
    """Detect GPU hardware usable for offload. Result is cached for the process lifetime."""
    if is_macos():
        if _stdlib_platform.machine() == "arm64":
            return [GpuInfo(name="Apple Silicon", vendor="apple", vram_mb=0, is_discrete=False)]
        return []

    probes = (
        ("nvidia-smi", ["nvidia-smi", "--query-gpu=name,memory.total",
                        "--format=csv,noheader,nounits"], _parse_nvidia_smi),
        ("vulkaninfo", ["vulkaninfo", "--summary"], _parse_vulkaninfo),
        ("lspci", ["lspci"], _parse_lspci),
    )
    for tool, cmd, parser in probes:
        if not shutil.which(tool):
            continue
        out = _run(cmd)
        if out:
            gpus = parser(out)
            if gpus:
                logger.debug("GPU detection via %s: %d device(s)", tool, len(gpus))
                return gpus

    logger.debug("No GPUs detected")
    return []


def gpu_offload_available() -> bool:
    """True when at least one GPU worth offloading to is present."""
    return any(g.is_discrete or g.vendor == "apple" for g in detect_gpus())


def resolve_gpu_layers(configured: int, gpu_offload: bool) -> int:
    """Translate config + profile into the ``--n-gpu-layers`` spawn argument.

    Without GPU offload on the profile the answer is always 0, whatever is
    configured. With offload, ``configured`` >= 0 is used verbatim and -1
    means offload every layer.
    """
    if not gpu_offload:
        return 0
    if configured >= 0:
        return configured
    return ALL_LAYERS
