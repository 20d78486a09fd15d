import os
import sys
import logging
import threading
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Callable, Tuple

import cpuinfo
import psutil
import pynvml

from koboldkeeper_core import (
    PROBE_TIMEOUT_S, INTERNAL_DIR_NAME, CapabilityProbeError, format_device_name,
)

logger = logging.getLogger(__name__)

CLINFO_TIMEOUT_S = 3
GPU_BACKENDS = ("cuda", "rocm", "vulkan", "clblast")
BACKEND_LABELS = {"cuda": "CUDA", "rocm": "ROCm", "vulkan": "Vulkan", "clblast": "CLBlast", "cpu": "CPU"}
BACKEND_LIBRARIES = {
    "cuda": "koboldcpp_cublas",
    "rocm": "koboldcpp_hipblas",
    "vulkan": "koboldcpp_vulkan",
    "clblast": "koboldcpp_clblast",
    "noavx2": "koboldcpp_noavx2",
    "failsafe": "koboldcpp_failsafe",
}


@dataclass
class ProbeResult:
    supported: bool = False
    devices: List[str] = field(default_factory=list)


@dataclass
class CpuCapabilities:
    avx: bool = False
    avx2: bool = False
    devices: List[str] = field(default_factory=list)
    physical_cores: Optional[int] = None
    logical_cores: Optional[int] = None


@dataclass
class GpuMemoryInfo:
    device_name: str
    total_gb: Optional[float]
    free_gb: Optional[float] = None


def run_probe_command(cmd: List[str], timeout: float) -> Optional[str]:
    """Runs a diagnostic tool and returns its stdout, or None on timeout, error exit or missing tool."""
    kwargs = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
    try:
        process = subprocess.run(cmd, capture_output=True, text=True, errors="replace", check=False,
                                 timeout=timeout, stdin=subprocess.DEVNULL, **kwargs)
    except FileNotFoundError:
        logger.debug("%s not found", cmd[0])
        return None
    except subprocess.TimeoutExpired:
        logger.debug("%s timed out after %ss", cmd[0], timeout)
        return None
    except OSError as e_run:
        logger.debug("%s failed to start: %s", cmd[0], e_run)
        return None
    if process.returncode != 0:
        logger.debug("%s exited with code %s", cmd[0], process.returncode)
        return None
    return process.stdout


# --- Output parsers ---

def parse_nvidia_smi(output: str) -> List[str]:
    devices = []
    for line in output.strip().splitlines():
        if not line.strip():
            continue
        name = line.split(",")[0].strip()
        devices.append(name or "Unknown NVIDIA GPU")
    return devices

def parse_nvidia_smi_memory(output: str) -> List[GpuMemoryInfo]:
    def mib_to_gb(value: str) -> Optional[float]:
        digits = value.strip().split(" ")[0]
        try:
            return round(float(digits) / 1024.0, 2)
        except ValueError:
            return None

    memory = []
    for line in output.strip().splitlines():
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 3 or not parts[0]:
            continue
        memory.append(GpuMemoryInfo(format_device_name(parts[0]), mib_to_gb(parts[1]), mib_to_gb(parts[2])))
    return memory

def parse_rocminfo(output: str) -> List[str]:
    """GPU agents from rocminfo. Each agent's Device Type is the closest one within 20 lines of its name."""
    devices = []
    lines = output.split("\n")
    for index, line in enumerate(lines):
        if "Marketing Name:" not in line:
            continue
        name = line.split("Marketing Name:", 1)[1].strip()
        if not name:
            continue
        device_type = ""
        window = range(max(0, index - 20), min(len(lines), index + 20))
        # agents are listed back to back
        for nearby in sorted(window, key=lambda i: abs(i - index)):
            if "Device Type:" in lines[nearby]:
                device_type = lines[nearby].split("Device Type:", 1)[1].strip()
                break
        if device_type != "CPU":
            devices.append(format_device_name(name))
    return devices

def parse_hipinfo(output: str) -> List[str]:
    devices = []
    for line in output.split("\n"):
        stripped = line.strip()
        if not stripped.startswith("Name:"):
            continue
        name = stripped.split("Name:", 1)[1].strip()
        if name and "cpu" not in name.lower():
            formatted = format_device_name(name)
            if formatted not in devices:
                devices.append(formatted)
    return devices

def parse_vulkaninfo(output: str) -> List[str]:
    devices = []
    for line in output.split("\n"):
        if "deviceName" in line and "=" in line:
            name = line.split("=", 1)[1].strip()
            if name:
                devices.append(format_device_name(name))
    return devices

def parse_clinfo(output: str) -> List[str]:
    devices = []
    lines = output.split("\n")
    current_platform = ""
    for index, raw_line in enumerate(lines):
        line = raw_line.strip()
        if "Platform Name:" in line:
            current_platform = line.split("Platform Name:", 1)[1].strip()
            continue
        if "Device Type:" in line and "GPU" in line:
            name = _find_clinfo_device_name(lines, index)
            if name and current_platform:
                devices.append(format_device_name(name))
    return devices

def _find_clinfo_device_name(lines: List[str], start: int) -> str:
    for candidate in lines[start + 1:start + 50]:
        candidate = candidate.strip()
        if "Board name:" in candidate:
            return candidate.split("Board name:", 1)[1].strip()
    for candidate in lines[start + 1:start + 100]:
        candidate = candidate.strip()
        if candidate.startswith("Name:"):
            return candidate.split("Name:", 1)[1].strip()
    return ""


class HardwareCapabilityDetector:
    """Probes the host for GPU runtimes and CPU features.

    Every probe is bounded by its timeout and degrades to "unsupported"; nothing
    here raises to the caller. Results are cached until ``invalidate()``.
    """

    def __init__(self, runner: Callable[[List[str], float], Optional[str]] = run_probe_command,
                 platform_name: Optional[str] = None, timeout_s: float = PROBE_TIMEOUT_S):
        self.runner = runner
        self.platform_name = platform_name or sys.platform
        self.timeout_s = timeout_s
        self._cache: Dict[str, object] = {}

    def invalidate(self):
        self._cache.clear()

    def _cached(self, key: str, compute):
        if key in self._cache:
            return self._cache[key]
        value = compute()
        self._cache[key] = value
        return value

    def _probe(self, name: str, cmd: List[str], parser: Callable[[str], List[str]],
               timeout: Optional[float] = None) -> ProbeResult:
        try:
            output = self.runner(cmd, timeout or self.timeout_s)
            if output is None or not output.strip():
                return ProbeResult(False, [])
            devices = parser(output)
        except CapabilityProbeError as e_probe:
            logger.warning("%s probe failed: %s", name, e_probe.message)
            return ProbeResult(False, [])
        except (ValueError, IndexError, OSError) as e_parse:
            logger.warning("%s probe output could not be parsed: %s", name, e_parse)
            return ProbeResult(False, [])
        logger.debug("%s probe found %s", name, devices or "no devices")
        return ProbeResult(len(devices) > 0, devices)

    def detect_cuda(self) -> ProbeResult:
        return self._cached("cuda", lambda: self._probe(
            "CUDA", ["nvidia-smi", "--query-gpu=name,memory.total,memory.free", "--format=csv,noheader"],
            lambda out: [format_device_name(d) for d in parse_nvidia_smi(out)]))

    def detect_rocm(self) -> ProbeResult:
        if self.platform_name == "win32":
            return self._cached("rocm", lambda: self._probe("ROCm", ["hipInfo"], parse_hipinfo))
        return self._cached("rocm", lambda: self._probe("ROCm", ["rocminfo"], parse_rocminfo))

    def detect_vulkan(self) -> ProbeResult:
        return self._cached("vulkan", lambda: self._probe("Vulkan", ["vulkaninfo", "--summary"], parse_vulkaninfo))

    def detect_clblast(self) -> ProbeResult:
        return self._cached("clblast", lambda: self._probe("CLBlast", ["clinfo"], parse_clinfo,
                                                           timeout=min(CLINFO_TIMEOUT_S, self.timeout_s)))

    def detect_gpu_capabilities(self) -> Dict[str, ProbeResult]:
        """Runs the four GPU runtime probes concurrently."""
        probes = {"cuda": self.detect_cuda, "rocm": self.detect_rocm,
                  "vulkan": self.detect_vulkan, "clblast": self.detect_clblast}
        with ThreadPoolExecutor(max_workers=len(probes), thread_name_prefix="hw-probe") as pool:
            futures = {name: pool.submit(probe) for name, probe in probes.items()}
            return {name: future.result() for name, future in futures.items()}

    def detect_cpu(self) -> CpuCapabilities:
        return self._cached("cpu", self._detect_cpu)

    def _detect_cpu(self) -> CpuCapabilities:
        try:
            info = cpuinfo.get_cpu_info()
        except Exception as e_cpu:  # py-cpuinfo can fail in many platform-specific ways
            logger.warning("CPU detection failed: %s", e_cpu)
            return CpuCapabilities()
        flags = [str(f).lower() for f in info.get("flags", [])]
        brand = info.get("brand_raw") or info.get("brand") or ""
        try:
            physical = psutil.cpu_count(logical=False)
            logical = psutil.cpu_count(logical=True)
        except (OSError, RuntimeError):
            physical = logical = None
        return CpuCapabilities(avx="avx" in flags, avx2="avx2" in flags,
                               devices=[format_device_name(brand)] if brand else [],
                               physical_cores=physical, logical_cores=logical)

    def detect_gpu_memory(self) -> List[GpuMemoryInfo]:
        return self._cached("gpu_memory", self._detect_gpu_memory)

    def _detect_gpu_memory(self) -> List[GpuMemoryInfo]:
        memory = _gpu_memory_from_nvml()
        if memory:
            return memory
        output = self.runner(["nvidia-smi", "--query-gpu=name,memory.total,memory.free",
                              "--format=csv,noheader,nounits"], self.timeout_s)
        if not output:
            return []
        try:
            return parse_nvidia_smi_memory(output)
        except (ValueError, IndexError):
            return []

    def has_amd_gpu(self) -> bool:
        if self.detect_rocm().supported:
            return True
        names = self.detect_vulkan().devices + self.detect_clblast().devices
        return any("amd" in n.lower() or "radeon" in n.lower() or n.upper().startswith("RX ") for n in names)

    def available_vram_gb(self) -> Optional[float]:
        """Free VRAM of the first GPU that reports it, else its total."""
        for info in self.detect_gpu_memory():
            if info.free_gb:
                return info.free_gb
            if info.total_gb:
                return info.total_gb
        return None


def _gpu_memory_from_nvml() -> List[GpuMemoryInfo]:
    try:
        pynvml.nvmlInit()
    except pynvml.NVMLError as e_init:
        logger.debug("PyNVML (NVIDIA) initialization failed: %s", e_init)
        return []
    try:
        memory = []
        for index in range(pynvml.nvmlDeviceGetCount()):
            handle = pynvml.nvmlDeviceGetHandleByIndex(index)
            mem_info = pynvml.nvmlDeviceGetMemoryInfo(handle)
            name_raw = pynvml.nvmlDeviceGetName(handle)
            name = name_raw.decode('utf-8') if isinstance(name_raw, bytes) else str(name_raw)
            memory.append(GpuMemoryInfo(format_device_name(name), round(mem_info.total / (1024 ** 3), 2),
                                        round(mem_info.free / (1024 ** 3), 2)))
        return memory
    except pynvml.NVMLError as e_nvml:
        logger.debug("NVML query failed: %s", e_nvml)
        return []
    finally:
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError:
            pass


# --- Backend support of an installed binary ---

@dataclass(frozen=True)
class BackendCapabilitySet:
    cuda: bool = False
    rocm: bool = False
    vulkan: bool = False
    clblast: bool = False
    noavx2: bool = False
    failsafe: bool = False


@dataclass
class BackendOption:
    value: str
    label: str
    devices: List[str] = field(default_factory=list)
    disabled: bool = False


class BackendCapabilityProbe:
    """Which acceleration backends an installed binary ships, and which of them the host can use."""

    def __init__(self, platform_name: Optional[str] = None):
        self.platform_name = platform_name or sys.platform
        self._support_cache: Dict[str, BackendCapabilitySet] = {}
        self._available_cache: Dict[Tuple[str, bool], List[BackendOption]] = {}
        self._lock = threading.Lock()

    def invalidate(self, binary_path: Optional[str] = None):
        with self._lock:
            if binary_path is None:
                self._support_cache.clear()
                self._available_cache.clear()
                return
            self._support_cache.pop(binary_path, None)
            for key in [k for k in self._available_cache if k[0] == binary_path]:
                del self._available_cache[key]

    def _search_dirs(self, binary_path: str) -> List[str]:
        binary_dir = os.path.dirname(os.path.abspath(binary_path))
        internal_dir = os.path.join(binary_dir, INTERNAL_DIR_NAME)
        if self.platform_name == "win32":
            return [binary_dir, internal_dir]
        return [internal_dir, binary_dir]

    def detect_backend_support(self, binary_path: str) -> BackendCapabilitySet:
        with self._lock:
            cached = self._support_cache.get(binary_path)
        if cached is not None:
            return cached
        extension = ".dll" if self.platform_name == "win32" else ".so"
        search_dirs = [d for d in self._search_dirs(binary_path) if os.path.isdir(d)]
        found = {}
        for backend, library in BACKEND_LIBRARIES.items():
            found[backend] = any(os.path.isfile(os.path.join(d, library + extension)) for d in search_dirs)
        support = BackendCapabilitySet(**found)
        logger.debug("Backend support for %s: %s", binary_path, support)
        with self._lock:
            self._support_cache[binary_path] = support
        return support

    def get_available_backends(self, binary_path: Optional[str], hardware: Dict[str, ProbeResult],
                               include_disabled: bool = False,
                               cpu: Optional[CpuCapabilities] = None) -> List[BackendOption]:
        cpu_label = "Metal" if self.platform_name == "darwin" else BACKEND_LABELS["cpu"]
        cpu_option = BackendOption("cpu", cpu_label, list(cpu.devices) if cpu else [], disabled=False)
        if not binary_path:
            return [cpu_option]

        key = (binary_path, include_disabled)
        with self._lock:
            cached = self._available_cache.get(key)
        if cached is not None:
            return list(cached)

        options: List[BackendOption] = []
        if self.platform_name != "darwin":
            support = self.detect_backend_support(binary_path)
            for backend in GPU_BACKENDS:
                if not getattr(support, backend):
                    continue
                probe = hardware.get(backend) or ProbeResult()
                host_has_it = len(probe.devices) > 0
                if host_has_it or include_disabled:
                    options.append(BackendOption(backend, BACKEND_LABELS[backend], list(probe.devices),
                                                 disabled=not host_has_it))
        options.append(cpu_option)
        options.sort(key=lambda option: 1 if option.disabled else 0)

        with self._lock:
            self._available_cache[key] = options
        return list(options)
