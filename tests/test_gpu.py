"""Tests for GPU detection and offload decisions."""

from __future__ import annotations

from unittest.mock import patch

from sidekick.gpu import (
    ALL_LAYERS,
    GpuInfo,
    _classify_vendor,
    _parse_lspci,
    _parse_nvidia_smi,
    _parse_vulkaninfo,
    detect_gpus,
    gpu_offload_available,
    resolve_gpu_layers,
)

# ─── _classify_vendor ────────────────────────────────────────────────────────


class TestClassifyVendor:
    def test_nvidia(self):
        assert _classify_vendor("NVIDIA GeForce RTX 4090") == "nvidia"
        assert _classify_vendor("Quadro RTX 5000") == "nvidia"

    def test_amd(self):
        assert _classify_vendor("AMD Radeon RX 7900 XTX") == "amd"

    def test_intel(self):
        assert _classify_vendor("Intel UHD Graphics 770") == "intel"

    def test_unknown(self):
        assert _classify_vendor("Some Random GPU") == "unknown"


# ─── Parsers ─────────────────────────────────────────────────────────────────


VULKANINFO_SUMMARY = """\
Vulkan Instance Version: 1.3.275

Devices:
========
GPU0:
\tdeviceName = NVIDIA GeForce RTX 4090
\tdeviceType = PHYSICAL_DEVICE_TYPE_DISCRETE_GPU

GPU1:
\tdeviceName = Intel UHD Graphics 770
\tdeviceType = PHYSICAL_DEVICE_TYPE_INTEGRATED_GPU

GPU2:
\tdeviceName = llvmpipe (LLVM 17.0.6, 256 bits)
\tdeviceType = PHYSICAL_DEVICE_TYPE_CPU
"""


class TestParseVulkaninfo:
    def test_software_renderer_skipped(self):
        gpus = _parse_vulkaninfo(VULKANINFO_SUMMARY)
        assert [g.name for g in gpus] == ["NVIDIA GeForce RTX 4090", "Intel UHD Graphics 770"]

    def test_discrete_flag(self):
        gpus = _parse_vulkaninfo(VULKANINFO_SUMMARY)
        assert gpus[0].is_discrete is True
        assert gpus[1].is_discrete is False

    def test_empty_output(self):
        assert _parse_vulkaninfo("") == []


class TestParseNvidiaSmi:
    def test_single_gpu(self):
        gpus = _parse_nvidia_smi("NVIDIA GeForce RTX 4090, 24564\n")
        assert len(gpus) == 1
        assert gpus[0].vram_mb == 24564
        assert gpus[0].is_discrete is True

    def test_bad_vram(self):
        gpus = _parse_nvidia_smi("NVIDIA GPU, bad_value\n")
        assert gpus[0].vram_mb == 0

    def test_empty_output(self):
        assert _parse_nvidia_smi("") == []


class TestParseLspci:
    def test_nvidia_vga(self):
        output = "01:00.0 VGA compatible controller: NVIDIA Corporation GA102 [GeForce RTX 3090]\n"
        gpus = _parse_lspci(output)
        assert len(gpus) == 1
        assert gpus[0].vendor == "nvidia"
        assert gpus[0].is_discrete is True

    def test_intel_integrated(self):
        output = "00:02.0 VGA compatible controller: Intel Corporation UHD Graphics 770\n"
        gpus = _parse_lspci(output)
        assert gpus[0].vendor == "intel"
        assert gpus[0].is_discrete is False

    def test_no_gpu_lines(self):
        assert _parse_lspci("00:1f.0 ISA bridge: Intel Corporation Device\n") == []


# ─── Detection ───────────────────────────────────────────────────────────────


class TestDetectGpus:
    def setup_method(self):
        detect_gpus.cache_clear()

    def teardown_method(self):
        detect_gpus.cache_clear()

    def test_apple_silicon(self):
        with patch("sidekick.gpu.is_macos", return_value=True), \
             patch("sidekick.gpu._stdlib_platform.machine", return_value="arm64"):
            gpus = detect_gpus()
        assert gpus[0].vendor == "apple"

    def test_prefers_nvidia_smi(self):
        with patch("sidekick.gpu.is_macos", return_value=False), \
             patch("sidekick.gpu.shutil.which", return_value="/usr/bin/tool"), \
             patch("sidekick.gpu._run", return_value="NVIDIA RTX A4000, 16376\n") as run:
            gpus = detect_gpus()
        assert gpus[0].name == "NVIDIA RTX A4000"
        assert run.call_args.args[0][0] == "nvidia-smi"

    def test_no_tools(self):
        with patch("sidekick.gpu.is_macos", return_value=False), \
             patch("sidekick.gpu.shutil.which", return_value=None):
            assert detect_gpus() == []

    def test_offload_needs_discrete_or_apple(self):
        integrated = [GpuInfo("Intel UHD", "intel", 0, False)]
        with patch("sidekick.gpu.detect_gpus", return_value=integrated):
            assert gpu_offload_available() is False
        with patch("sidekick.gpu.detect_gpus", return_value=[GpuInfo("Apple Silicon", "apple", 0, False)]):
            assert gpu_offload_available() is True


# ─── resolve_gpu_layers ──────────────────────────────────────────────────────


class TestResolveGpuLayers:
    def test_offload_disabled(self):
        assert resolve_gpu_layers(-1, False) == 0
        assert resolve_gpu_layers(20, False) == 0

    def test_auto_means_all(self):
        assert resolve_gpu_layers(-1, True) == ALL_LAYERS

    def test_explicit_count(self):
        assert resolve_gpu_layers(20, True) == 20
