from __future__ import annotations

import os
import tarfile
import time
import zipfile
from pathlib import Path

import pytest

from koboldkeeper_core import HttpError, NetworkError, TooManyRedirects, UnpackError
from koboldkeeper_download import Downloader, find_launcher, read_binary_version, unpack_artifact

from helpers import launcher_zip


PAYLOAD = os.urandom(256 * 1024)


def test_download_writes_file_and_reports_completion(http_server, tmp_path: Path) -> None:
    url = http_server.add("/koboldcpp-linux-x64", PAYLOAD)
    dest = tmp_path / "koboldcpp-linux-x64.packed"
    reports = []

    result = Downloader(chunk_size=16 * 1024).download(url, str(dest), reports.append)

    assert result.is_ok()
    assert dest.read_bytes() == PAYLOAD
    assert reports
    assert reports[-1].percent == 100.0
    assert reports[-1].downloaded_bytes == len(PAYLOAD)
    assert [r.downloaded_bytes for r in reports] == sorted(r.downloaded_bytes for r in reports)


def test_download_follows_redirects(http_server, tmp_path: Path) -> None:
    url = http_server.add_redirect_chain("/hop", 3, PAYLOAD)
    dest = tmp_path / "out.bin"

    result = Downloader().download(url, str(dest))

    assert result.is_ok()
    assert dest.read_bytes() == PAYLOAD


def test_download_allows_exactly_ten_redirects(http_server, tmp_path: Path) -> None:
    url = http_server.add_redirect_chain("/ten", 10, PAYLOAD)
    dest = tmp_path / "out.bin"

    result = Downloader().download(url, str(dest))

    assert result.is_ok()
    assert dest.read_bytes() == PAYLOAD


def test_download_gives_up_after_ten_redirects(http_server, tmp_path: Path) -> None:
    url = http_server.add_redirect_chain("/loop", 11, PAYLOAD)
    dest = tmp_path / "out.bin"

    result = Downloader().download(url, str(dest))

    assert isinstance(result.error, TooManyRedirects)
    assert not dest.exists()


def test_progress_reports_are_throttled(http_server, tmp_path: Path) -> None:
    body = PAYLOAD[:48 * 1024]
    url = http_server.add("/slow", body, piece_size=1024, piece_delay_s=0.02)
    dest = tmp_path / "out.bin"
    stamps = []

    def record(progress) -> None:
        stamps.append((time.monotonic(), progress.downloaded_bytes))

    result = Downloader(chunk_size=1024, progress_interval_s=0.2).download(url, str(dest), record)

    assert result.is_ok()
    assert stamps[-1][1] == len(body)
    assert 2 <= len(stamps) < len(body) // 1024
    intermediate = [t for t, _ in stamps[:-1]]
    gaps = [later - earlier for earlier, later in zip(intermediate, intermediate[1:])]
    assert all(gap >= 0.19 for gap in gaps)


def test_download_http_error(http_server, tmp_path: Path) -> None:
    dest = tmp_path / "out.bin"

    result = Downloader().download(http_server.url("/missing"), str(dest))

    assert isinstance(result.error, HttpError)
    assert result.error.status == 404
    assert not dest.exists()


def test_download_without_content_length_still_completes(http_server, tmp_path: Path) -> None:
    url = http_server.add("/stream", PAYLOAD, send_length=False)
    dest = tmp_path / "out.bin"
    reports = []

    result = Downloader().download(url, str(dest), reports.append)

    assert result.is_ok()
    assert dest.read_bytes() == PAYLOAD
    assert reports[-1].percent == 100.0


def test_cancelled_download_removes_partial_file(http_server, tmp_path: Path) -> None:
    url = http_server.add("/big", PAYLOAD)
    dest = tmp_path / "out.bin"
    downloader = Downloader(chunk_size=1024, progress_interval_s=0)

    def cancel_on_first_chunk(progress) -> None:
        downloader.cancel()

    result = downloader.download(url, str(dest), cancel_on_first_chunk)

    assert isinstance(result.error, NetworkError)
    assert "cancelled" in result.error.message
    assert not dest.exists()


def test_unpack_zip_flattens_wrapper_folder(tmp_path: Path) -> None:
    archive = tmp_path / "bundle.packed"
    archive.write_bytes(launcher_zip(wrap_dir="koboldcpp-1.80", extra={"_internal/ggml-cuda.so": b"x"}))
    target = tmp_path / "target"
    target.mkdir()

    unpack_artifact(str(archive), str(target))

    launcher = find_launcher(str(target), "linux")
    assert launcher == str(target / "koboldcpp-launcher")
    assert (target / "_internal" / "ggml-cuda.so").exists()
    if os.name == "posix":
        assert os.access(launcher, os.X_OK)


def test_unpack_rejects_zip_slip(tmp_path: Path) -> None:
    archive = tmp_path / "evil.packed"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("../escape.txt", "nope")
    target = tmp_path / "target"
    target.mkdir()

    with pytest.raises(UnpackError):
        unpack_artifact(str(archive), str(target))
    assert not (tmp_path / "escape.txt").exists()


def test_unpack_tar_archive(tmp_path: Path) -> None:
    source = tmp_path / "src"
    source.mkdir()
    (source / "koboldcpp-launcher").write_text("#!/bin/sh\n")
    archive = tmp_path / "bundle.tar.gz"
    with tarfile.open(archive, "w:gz") as tf:
        tf.add(source / "koboldcpp-launcher", arcname="koboldcpp-launcher")
    target = tmp_path / "target"
    target.mkdir()

    unpack_artifact(str(archive), str(target))

    assert (target / "koboldcpp-launcher").exists()


@pytest.mark.posix_only
def test_unpack_runs_packed_binary(tmp_path: Path) -> None:
    packed = tmp_path / "koboldcpp.packed"
    packed.write_text('#!/bin/sh\nmkdir -p "$2" && echo launcher > "$2/koboldcpp-launcher"\n')
    os.chmod(packed, 0o755)
    target = tmp_path / "target"

    unpack_artifact(str(packed), str(target))

    assert (target / "koboldcpp-launcher").read_text().strip() == "launcher"


@pytest.mark.posix_only
def test_unpack_failure_carries_output(tmp_path: Path) -> None:
    packed = tmp_path / "koboldcpp.packed"
    packed.write_text("#!/bin/sh\necho 'disk full' >&2\nexit 3\n")
    os.chmod(packed, 0o755)

    with pytest.raises(UnpackError, match="disk full"):
        unpack_artifact(str(packed), str(tmp_path / "target"))


@pytest.mark.posix_only
def test_read_binary_version_from_version_flag(tmp_path: Path) -> None:
    backend = tmp_path / "koboldcpp-linux-x64"
    backend.mkdir()
    launcher = backend / "koboldcpp-launcher"
    launcher.write_text("#!/bin/sh\necho '1.80.3'\n")
    os.chmod(launcher, 0o755)

    assert read_binary_version(str(launcher)) == "1.80.3"


def test_read_binary_version_falls_back_to_folder_suffix(tmp_path: Path) -> None:
    backend = tmp_path / "koboldcpp-linux-x64-1.79.1"
    backend.mkdir()
    launcher = backend / "koboldcpp-launcher"
    launcher.write_text("")

    assert read_binary_version(str(launcher)) == "1.79.1"
    assert read_binary_version(str(tmp_path / "missing")) is None
