from __future__ import annotations

import io
import os
import struct
import zipfile
from pathlib import Path
from typing import Any, Dict, Optional

from koboldkeeper_assets import ReleaseAsset
from koboldkeeper_vram import (
    GGUF_MAGIC, GGUF_TYPE_ARRAY, GGUF_TYPE_FLOAT32, GGUF_TYPE_INT32, GGUF_TYPE_STRING,
    GGUF_TYPE_UINT32, GGUF_TYPE_UINT64,
)


def _gguf_string(value: str, length_format: str) -> bytes:
    data = value.encode("utf-8")
    return struct.pack(length_format, len(data)) + data


def _gguf_value(value: Any, length_format: str) -> bytes:
    if isinstance(value, str):
        return struct.pack("<I", GGUF_TYPE_STRING) + _gguf_string(value, length_format)
    if isinstance(value, float):
        return struct.pack("<I", GGUF_TYPE_FLOAT32) + struct.pack("<f", value)
    if isinstance(value, list):
        body = struct.pack("<I", GGUF_TYPE_INT32) + struct.pack(length_format, len(value))
        body += b"".join(struct.pack("<i", item) for item in value)
        return struct.pack("<I", GGUF_TYPE_ARRAY) + body
    if value >= 2 ** 32:
        return struct.pack("<I", GGUF_TYPE_UINT64) + struct.pack("<Q", value)
    return struct.pack("<I", GGUF_TYPE_UINT32) + struct.pack("<I", value)


def build_gguf(metadata: Dict[str, Any], version: int = 3, padding: int = 0) -> bytes:
    """A GGUF header with ``metadata`` and no tensors, followed by ``padding`` zero bytes."""

    length_format = "<I" if version == 1 else "<Q"
    out = io.BytesIO()
    out.write(struct.pack("<I", GGUF_MAGIC))
    out.write(struct.pack("<I", version))
    out.write(struct.pack(length_format, 0))
    out.write(struct.pack(length_format, len(metadata)))
    for key, value in metadata.items():
        out.write(_gguf_string(key, length_format))
        out.write(_gguf_value(value, length_format))
    out.write(b"\0" * padding)
    return out.getvalue()


def llama_metadata(layers: int = 32, embedding: int = 4096, heads: int = 32, kv_heads: int = 8) -> Dict[str, Any]:
    return {
        "general.architecture": "llama",
        "general.name": "Tiny Llama",
        "general.parameter_count": 7_000_000_000,
        "llama.context_length": 8192,
        "llama.block_count": layers,
        "llama.embedding_length": embedding,
        "llama.attention.head_count": heads,
        "llama.attention.head_count_kv": kv_heads,
        "tokenizer.ggml.token_type": [1, 1, 3],
    }


def write_gguf(path: Path, metadata: Optional[Dict[str, Any]] = None, size: int = 0) -> Path:
    header = build_gguf(metadata if metadata is not None else llama_metadata())
    path.write_bytes(header + b"\0" * max(0, size - len(header)))
    return path


def make_asset(name: str, url: str = "http://127.0.0.1:1/never", version: str = "1.80", size: int = 0) -> ReleaseAsset:
    return ReleaseAsset(name=name, url=url, size=size, version=version, platform_tag="linux")


def launcher_zip(launcher_name: str = "koboldcpp-launcher", wrap_dir: Optional[str] = None,
                 extra: Optional[Dict[str, bytes]] = None) -> bytes:
    """A zip archive holding an executable launcher script."""

    prefix = f"{wrap_dir}/" if wrap_dir else ""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        info = zipfile.ZipInfo(prefix + launcher_name)
        info.external_attr = (0o755 << 16)
        archive.writestr(info, "#!/bin/sh\necho 1.80.3\n")
        for name, data in (extra or {}).items():
            archive.writestr(prefix + name, data)
    return buffer.getvalue()


def place_backend(root: Path, name: str, version: Optional[str] = None) -> Path:
    """An installed backend directory as the install manager leaves it."""

    directory = root / name
    directory.mkdir(parents=True)
    launcher = directory / "koboldcpp-launcher"
    launcher.write_text("#!/bin/sh\necho 1.0\n")
    os.chmod(launcher, 0o755)
    if version:
        (directory / "koboldkeeper_install.json").write_text(
            '{"asset_name": "%s", "declared_version": "%s", "actual_version": "%s", "installed_at": 1.0}'
            % (name, version, version))
    return launcher
