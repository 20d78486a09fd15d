from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest

import koboldkeeper_hardware
from koboldkeeper_core import CapabilityProbeError
from koboldkeeper_hardware import (
    GpuMemoryInfo,
    HardwareCapabilityDetector,
    ProbeResult,
    parse_clinfo,
    parse_hipinfo,
    parse_nvidia_smi,
    parse_rocminfo,
    parse_vulkaninfo,
)


NVIDIA_SMI = "NVIDIA GeForce RTX 4090, 24564 MiB, 23000 MiB\nNVIDIA GeForce RTX 3060, 12288 MiB, 11000 MiB\n"

ROCMINFO = """
*******
Agent 1
*******
  Name:                    AMD Ryzen 9 7950X
  Marketing Name:          AMD Ryzen 9 7950X 16-Core Processor
  Device Type:             CPU
*******
Agent 2
*******
  Name:                    gfx1100
  Marketing Name:          AMD Radeon RX 7900 XTX
  Vendor Name:             AMD
  Device Type:             GPU
"""

VULKANINFO = """
Devices:
========
GPU0:
	apiVersion         = 1.3.260
	deviceName         = AMD Radeon RX 7900 XTX (RADV NAVI31)
GPU1:
	deviceName         = llvmpipe (LLVM 15.0.7, 256 bits)
"""

CLINFO = """
Number of platforms                               1
  Platform Name:                                  AMD Accelerated Parallel Processing
  Device Type:                                    CL_DEVICE_TYPE_GPU
  Board name:                                     AMD Radeon RX 7900 XTX
  Device Type:                                    CL_DEVICE_TYPE_CPU
  Name:                                           Ryzen
"""

HIPINFO = """
device#                           0
Name:                             AMD Radeon RX 7900 XTX
Name:                             AMD Radeon RX 7900 XTX
"""


class FakeRunner:
    def __init__(self, outputs: Dict[str, Optional[str]]) -> None:
        self.outputs = outputs
        self.calls: List[List[str]] = []

    def __call__(self, cmd: List[str], timeout: float) -> Optional[str]:
        self.calls.append(cmd)
        return self.outputs.get(cmd[0])


def test_parse_nvidia_smi() -> None:
    assert parse_nvidia_smi(NVIDIA_SMI) == ["NVIDIA GeForce RTX 4090", "NVIDIA GeForce RTX 3060"]


def test_parse_rocminfo_skips_cpu_agents() -> None:
    assert parse_rocminfo(ROCMINFO) == ["RX 7900 XTX"]


def test_parse_vulkaninfo_lists_every_device() -> None:
    assert parse_vulkaninfo(VULKANINFO) == ["RX 7900 XTX", "llvmpipe"]


def test_parse_clinfo_only_gpu_devices() -> None:
    assert parse_clinfo(CLINFO) == ["RX 7900 XTX"]


def test_parse_hipinfo_deduplicates() -> None:
    assert parse_hipinfo(HIPINFO) == ["RX 7900 XTX"]


def test_detect_gpu_capabilities_with_fake_tools() -> None:
    runner = FakeRunner({"nvidia-smi": NVIDIA_SMI, "rocminfo": None, "vulkaninfo": VULKANINFO, "clinfo": ""})
    detector = HardwareCapabilityDetector(runner=runner, platform_name="linux")

    caps = detector.detect_gpu_capabilities()

    assert caps["cuda"] == ProbeResult(True, ["RTX 4090", "RTX 3060"])
    assert caps["rocm"] == ProbeResult(False, [])
    assert caps["vulkan"].supported
    assert caps["clblast"] == ProbeResult(False, [])


def test_detection_is_cached_until_invalidated() -> None:
    runner = FakeRunner({"nvidia-smi": NVIDIA_SMI})
    detector = HardwareCapabilityDetector(runner=runner, platform_name="linux")

    detector.detect_cuda()
    detector.detect_cuda()
    assert len(runner.calls) == 1

    detector.invalidate()
    detector.detect_cuda()
    assert len(runner.calls) == 2


def test_windows_rocm_uses_hipinfo() -> None:
    runner = FakeRunner({"hipInfo": HIPINFO})
    detector = HardwareCapabilityDetector(runner=runner, platform_name="win32")

    assert detector.detect_rocm() == ProbeResult(True, ["RX 7900 XTX"])
    assert runner.calls == [["hipInfo"]]


def test_probe_errors_degrade_to_unsupported() -> None:
    def failing_runner(cmd: List[str], timeout: float) -> Optional[str]:
        raise CapabilityProbeError("driver exploded")

    detector = HardwareCapabilityDetector(runner=failing_runner, platform_name="linux")

    assert detector.detect_vulkan() == ProbeResult(False, [])


def test_missing_cuda_tool_reports_unsupported(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PATH", str(tmp_path))
    detector = HardwareCapabilityDetector(platform_name="linux", timeout_s=5)

    started = time.monotonic()
    result = detector.detect_cuda()

    assert result == ProbeResult(False, [])
    assert time.monotonic() - started < 5


@pytest.mark.posix_only
def test_hanging_cuda_tool_is_cut_off(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = tmp_path / "nvidia-smi"
    fake.write_text("#!/bin/sh\nexec sleep 30\n")
    os.chmod(fake, 0o755)
    monkeypatch.setenv("PATH", f"{tmp_path}{os.pathsep}{os.environ.get('PATH', '')}")
    detector = HardwareCapabilityDetector(platform_name="linux", timeout_s=1)

    started = time.monotonic()
    result = detector.detect_cuda()

    assert result == ProbeResult(False, [])
    assert time.monotonic() - started < 10


def test_has_amd_gpu_from_vulkan_names() -> None:
    runner = FakeRunner({"vulkaninfo": VULKANINFO})
    detector = HardwareCapabilityDetector(runner=runner, platform_name="linux")

    assert detector.has_amd_gpu()


def test_available_vram_falls_back_to_nvidia_smi(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(koboldkeeper_hardware, "_gpu_memory_from_nvml", lambda: [])
    runner = FakeRunner({"nvidia-smi": "NVIDIA GeForce RTX 4090, 24564, 20480\n"})
    detector = HardwareCapabilityDetector(runner=runner, platform_name="linux")

    assert detector.detect_gpu_memory() == [GpuMemoryInfo("RTX 4090", 23.99, 20.0)]
    assert detector.available_vram_gb() == 20.0


def test_available_vram_prefers_nvml(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(koboldkeeper_hardware, "_gpu_memory_from_nvml",
                        lambda: [GpuMemoryInfo("RTX 3060", 12.0, None)])
    detector = HardwareCapabilityDetector(runner=FakeRunner({}), platform_name="linux")

    assert detector.available_vram_gb() == 12.0


def test_cpu_detection_reads_flags(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(koboldkeeper_hardware.cpuinfo, "get_cpu_info",
                        lambda: {"flags": ["sse4_2", "avx", "avx2"], "brand_raw": "AMD Ryzen 9 7950X 16-Core Processor"})

    cpu = HardwareCapabilityDetector(runner=FakeRunner({}), platform_name="linux").detect_cpu()

    assert cpu.avx and cpu.avx2
    assert cpu.devices == ["Ryzen 9 7950X"]


def test_cpu_detection_failure_is_not_fatal(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken() -> dict:
        raise RuntimeError("no cpuid")

    monkeypatch.setattr(koboldkeeper_hardware.cpuinfo, "get_cpu_info", broken)

    cpu = HardwareCapabilityDetector(runner=FakeRunner({}), platform_name="linux").detect_cpu()

    assert not cpu.avx and cpu.devices == []
