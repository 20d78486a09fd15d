import os
import re
import struct
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, BinaryIO, Tuple

import requests
import urllib3

from koboldkeeper_core import (
    KeeperError, NetworkError, ModelMetadataError, Result, format_bytes,
)

logger = logging.getLogger(__name__)

GGUF_MAGIC = 0x46554747  # "GGUF" in little endian
HTTP_TIMEOUT_S = 20
BYTES_PER_KV_ELEMENT = 2
GB = 1024 ** 3

_MULTI_PART_RE = re.compile(r"-(\d{5})-of-(\d{5})\.")
_MAX_STRING_LENGTH = 1 << 26
_MAX_METADATA_ENTRIES = 1 << 20

# GGUF value types
GGUF_TYPE_UINT8 = 0
GGUF_TYPE_INT8 = 1
GGUF_TYPE_UINT16 = 2
GGUF_TYPE_INT16 = 3
GGUF_TYPE_UINT32 = 4
GGUF_TYPE_INT32 = 5
GGUF_TYPE_FLOAT32 = 6
GGUF_TYPE_BOOL = 7
GGUF_TYPE_STRING = 8
GGUF_TYPE_ARRAY = 9
GGUF_TYPE_UINT64 = 10
GGUF_TYPE_INT64 = 11
GGUF_TYPE_FLOAT64 = 12

_SCALAR_FORMATS = {
    GGUF_TYPE_UINT8: "<B", GGUF_TYPE_INT8: "<b",
    GGUF_TYPE_UINT16: "<H", GGUF_TYPE_INT16: "<h",
    GGUF_TYPE_UINT32: "<I", GGUF_TYPE_INT32: "<i",
    GGUF_TYPE_FLOAT32: "<f", GGUF_TYPE_BOOL: "<?",
    GGUF_TYPE_UINT64: "<Q", GGUF_TYPE_INT64: "<q",
    GGUF_TYPE_FLOAT64: "<d",
}

# acceleration -> (model size multiplier, compute buffer GB, headroom GB)
ACCELERATION_PROFILES = {
    "cuda": (1.05, 0.2, 0.1),
    "vulkan": (1.05, 0.2, 0.1),
    "rocm": (1.15, 0.4, 0.2),
    "clblast": (1.2, 0.5, 0.3),
    "cpu": (1.05, 0.2, 0.1),
    "metal": (1.05, 0.2, 0.1),
}
DEFAULT_PROFILE = (1.1, 0.3, 0.15)

DEFAULT_ARCHITECTURE = "llama"
DEFAULT_BLOCK_COUNT = 32
DEFAULT_EMBEDDING_LENGTH = 4096
DEFAULT_HEAD_COUNT = 32


class _GGUFStream:
    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self.length_format = "<Q"

    def read_exact(self, size: int) -> bytes:
        chunks = []
        remaining = size
        while remaining > 0:
            data = self.stream.read(remaining)
            if not data:
                raise ModelMetadataError("Model file header is truncated.")
            chunks.append(data)
            remaining -= len(data)
        return b"".join(chunks)

    def unpack(self, fmt: str):
        return struct.unpack(fmt, self.read_exact(struct.calcsize(fmt)))[0]

    def read_length(self) -> int:
        return self.unpack(self.length_format)

    def read_string(self) -> str:
        length = self.read_length()
        if length > _MAX_STRING_LENGTH:
            raise ModelMetadataError("Model file header contains an implausible string length.")
        return self.read_exact(length).decode("utf-8", errors="replace")

    def read_value(self, value_type: int, keep: bool = True):
        if value_type in _SCALAR_FORMATS:
            return self.unpack(_SCALAR_FORMATS[value_type])
        if value_type == GGUF_TYPE_STRING:
            return self.read_string()
        if value_type == GGUF_TYPE_ARRAY:
            item_type = self.unpack("<I")
            count = self.read_length()
            if item_type in _SCALAR_FORMATS and not keep:
                self.read_exact(count * struct.calcsize(_SCALAR_FORMATS[item_type]))
                return None
            items = [self.read_value(item_type, keep) for _ in range(count)]
            return items if keep else None
        raise ModelMetadataError(f"Model file header has unknown value type {value_type}.")


def read_gguf_metadata(stream: BinaryIO) -> Dict[str, Any]:
    """Reads the key/value metadata block from the start of a GGUF stream.

    Arrays (tokenizer vocabularies and the like) are skipped.
    """
    reader = _GGUFStream(stream)
    magic = reader.unpack("<I")
    if magic != GGUF_MAGIC:
        raise ModelMetadataError("Not a valid GGUF model file.")
    version = reader.unpack("<I")
    if version not in (1, 2, 3):
        raise ModelMetadataError(f"Unsupported GGUF version {version}.")
    if version == 1:
        reader.length_format = "<I"

    reader.read_length()  # tensor count
    kv_count = reader.read_length()
    if kv_count > _MAX_METADATA_ENTRIES:
        raise ModelMetadataError("Model file header reports an implausible number of metadata entries.")

    metadata: Dict[str, Any] = {"__version__": version}
    for _ in range(kv_count):
        key = reader.read_string()
        value_type = reader.unpack("<I")
        value = reader.read_value(value_type, keep=value_type != GGUF_TYPE_ARRAY)
        if value is not None:
            metadata[key] = value
    return metadata


def _is_url(path: str) -> bool:
    return path.startswith("http://") or path.startswith("https://")


def load_model_metadata(model_path: str, session: Optional[requests.Session] = None) -> Dict[str, Any]:
    """GGUF metadata from a local file or a URL. Raises ModelMetadataError or NetworkError."""
    if _is_url(model_path):
        http = session or requests
        try:
            with http.get(model_path, stream=True, allow_redirects=True, timeout=HTTP_TIMEOUT_S) as response:
                if not response.ok:
                    raise ModelMetadataError(f"Could not read the model header (HTTP {response.status_code}).")
                response.raw.decode_content = True
                return read_gguf_metadata(response.raw)
        except (requests.RequestException, urllib3.exceptions.HTTPError, OSError) as e_req:
            # reads from response.raw surface urllib3 errors directly
            raise NetworkError(f"Could not read the model header: {e_req}") from e_req
    try:
        with open(model_path, "rb") as f:
            return read_gguf_metadata(f)
    except OSError as e_io:
        raise ModelMetadataError(f"Could not open model file: {e_io.strerror or e_io}") from e_io
    except struct.error as e_struct:
        raise ModelMetadataError(f"Model file header is malformed: {e_struct}") from e_struct


def model_file_size(model_path: str, session: Optional[requests.Session] = None) -> int:
    """Size in bytes; for URLs the HEAD content-length, or 0 if the server omits it."""
    if _is_url(model_path):
        http = session or requests
        try:
            response = http.head(model_path, allow_redirects=True, timeout=HTTP_TIMEOUT_S)
        except requests.RequestException as e_req:
            raise NetworkError(f"Could not reach the model URL: {e_req}") from e_req
        try:
            return int(response.headers.get("content-length") or 0)
        except ValueError:
            return 0
    try:
        return os.path.getsize(model_path)
    except OSError as e_io:
        raise ModelMetadataError(f"Could not open model file: {e_io.strerror or e_io}") from e_io


def multi_part_count(model_path: str) -> int:
    match = _MULTI_PART_RE.search(model_path)
    if match:
        total_parts = int(match.group(2))
        if 1 < total_parts <= 999:
            return total_parts
    return 1


@dataclass
class ModelStructure:
    architecture: str
    total_layers: int
    embedding_length: int
    head_count: int
    head_count_kv: int

    @property
    def head_dim(self) -> float:
        return self.embedding_length / self.head_count

    @property
    def kv_dim(self) -> float:
        return self.head_count_kv * self.head_dim


def _positive_int(value, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return default
    return int(value)

def model_structure(metadata: Dict[str, Any]) -> ModelStructure:
    architecture = metadata.get("general.architecture") or DEFAULT_ARCHITECTURE
    if not isinstance(architecture, str):
        architecture = DEFAULT_ARCHITECTURE
    head_count = _positive_int(metadata.get(f"{architecture}.attention.head_count"), DEFAULT_HEAD_COUNT)
    return ModelStructure(
        architecture=architecture,
        total_layers=_positive_int(metadata.get(f"{architecture}.block_count"), DEFAULT_BLOCK_COUNT),
        embedding_length=_positive_int(metadata.get(f"{architecture}.embedding_length"), DEFAULT_EMBEDDING_LENGTH),
        head_count=head_count,
        head_count_kv=_positive_int(metadata.get(f"{architecture}.attention.head_count_kv"), head_count),
    )


@dataclass
class VramPlan:
    recommended_layers: int
    total_layers: int
    estimated_vram_usage_gb: float
    model_vram_gb: float
    context_vram_gb: float
    headroom_gb: float
    compute_buffer_gb: float = 0.0


def estimate_context_vram_gb(context_size: int, layers: int, kv_dim: float, flash_attention: bool) -> float:
    kv_cache_bytes = 2 * context_size * layers * kv_dim * BYTES_PER_KV_ELEMENT
    if flash_attention:
        kv_cache_bytes *= 0.5
    return kv_cache_bytes / GB

def acceleration_profile(acceleration: Optional[str]) -> Tuple[float, float, float]:
    return ACCELERATION_PROFILES.get((acceleration or "").lower(), DEFAULT_PROFILE)

def plan_gpu_layers(file_size: int, structure: ModelStructure, context_size: int, available_vram_gb: float,
                    flash_attention: bool = False, acceleration: Optional[str] = None) -> VramPlan:
    """Largest layer count whose weights plus KV cache fit the VRAM left after buffers.

    Cost grows with the layer count, so the scan stops at the first count that
    does not fit.
    """
    multiplier, compute_buffer_gb, headroom_gb = acceleration_profile(acceleration)
    total_layers = structure.total_layers
    vram_per_layer_gb = (file_size / GB) * multiplier / total_layers
    budget_gb = available_vram_gb - compute_buffer_gb - headroom_gb

    recommended_layers = 0
    for layers in range(1, total_layers + 1):
        cost_gb = layers * vram_per_layer_gb + estimate_context_vram_gb(
            context_size, layers, structure.kv_dim, flash_attention)
        if cost_gb <= budget_gb:
            recommended_layers = layers
        else:
            break

    model_vram_gb = recommended_layers * vram_per_layer_gb
    context_vram_gb = estimate_context_vram_gb(context_size, recommended_layers, structure.kv_dim, flash_attention)
    return VramPlan(recommended_layers=recommended_layers, total_layers=total_layers,
                    estimated_vram_usage_gb=model_vram_gb + context_vram_gb, model_vram_gb=model_vram_gb,
                    context_vram_gb=context_vram_gb, headroom_gb=headroom_gb, compute_buffer_gb=compute_buffer_gb)

def calculate_optimal_gpu_layers(model_path: str, context_size: int, available_vram_gb: float,
                                 flash_attention: bool = False, acceleration: Optional[str] = None,
                                 session: Optional[requests.Session] = None) -> Result:
    if not model_path:
        raise ValueError("model_path is required")
    if context_size <= 0:
        raise ValueError("context_size must be positive")
    if available_vram_gb < 0:
        raise ValueError("available_vram_gb cannot be negative")
    try:
        file_size = model_file_size(model_path, session) * multi_part_count(model_path)
        structure = model_structure(load_model_metadata(model_path, session))
    except KeeperError as e_plan:
        logger.warning("GPU layer calculation failed for %s: %s", model_path, e_plan.message)
        return Result.err(e_plan)
    plan = plan_gpu_layers(file_size, structure, context_size, available_vram_gb, flash_attention, acceleration)
    logger.info("Recommended %d/%d GPU layers for %s (%.2f GB estimated)", plan.recommended_layers,
                plan.total_layers, os.path.basename(model_path), plan.estimated_vram_usage_gb)
    return Result.ok(plan)


# --- Model analysis ---

def format_parameter_count(params) -> Optional[str]:
    if not params:
        return None
    if params >= 1e9:
        return f"{params / 1e9:.1f}B"
    if params >= 1e6:
        return f"{params / 1e6:.1f}M"
    if params >= 1e3:
        return f"{params / 1e3:.1f}K"
    return str(params)

def format_context_length(length) -> Optional[str]:
    if not length:
        return None
    if length >= 1e6:
        return f"{length / 1e6:.1f}M"
    if length >= 1e3:
        return f"{length / 1e3:.0f}K"
    return str(length)

def analyze_gguf_model(model_path: str) -> Result:
    """Summary of a local GGUF model: identity, shape and rough memory needs."""
    try:
        file_size = model_file_size(model_path)
        metadata = load_model_metadata(model_path)
    except KeeperError as e_analyze:
        return Result.err(e_analyze)
    architecture = metadata.get("general.architecture")
    block_count = metadata.get(f"{architecture}.block_count")
    analysis = {
        "name": metadata.get("general.name"),
        "architecture": architecture,
        "file_size": file_size,
        "file_size_display": format_bytes(file_size),
        "parameter_count": format_parameter_count(metadata.get("general.parameter_count")),
        "context_length": format_context_length(metadata.get(f"{architecture}.context_length")),
        "layers": block_count,
        "expert_count": metadata.get(f"{architecture}.expert_count"),
        "full_gpu_vram": format_bytes(file_size * 1.1),
        "system_ram": format_bytes(file_size * 1.2),
        "vram_per_layer": format_bytes(file_size / block_count) if block_count else None,
    }
    return Result.ok(analysis)
