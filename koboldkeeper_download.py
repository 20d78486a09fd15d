import os
import sys
import json
import time
import shutil
import logging
import tarfile
import zipfile
import threading
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Callable, List, Dict, Any

import requests

from koboldkeeper_core import (
    MAX_REDIRECTS, PROGRESS_INTERVAL_S, PACKED_SUFFIX, STAGING_SUFFIX, INTERNAL_DIR_NAME,
    KeeperError, NetworkError, TooManyRedirects, HttpError, FileSystemError, FileLockedError, UnpackError,
    LauncherNotFoundError, AlreadyDownloadingError, BackendInUseError,
    Result, EventBus, SettingsStore, new_id, filesystem_error_from_os,
    install_dir_name_for_asset, launcher_filenames, strip_version_suffix, version_suffix,
)
from koboldkeeper_assets import ReleaseAsset
from koboldkeeper_process import stop_processes_rooted_in, processes_rooted_in

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 64
DOWNLOAD_CONNECT_TIMEOUT_S = 15
DOWNLOAD_READ_TIMEOUT_S = 60
UNPACK_TIMEOUT_S = 60
VERSION_PROBE_TIMEOUT_S = 30
UPDATE_STOP_GRACE_S = 2.0
REMOVE_RETRY_DELAYS_S = (1.0, 2.0, 4.0)
INSTALL_MANIFEST_NAME = "koboldkeeper_install.json"


# --- Downloader ---

@dataclass
class DownloadProgress:
    percent: float
    downloaded_bytes: int
    total_bytes: int
    speed: float
    eta: Optional[float]


class _DownloadCancelled(Exception):
    pass


class Downloader:
    """Streams a URL to a file, following redirects and reporting throttled progress.

    The downloader keeps its own session, so its redirect cap does not apply
    to other requests.
    """

    def __init__(self, max_redirects: int = MAX_REDIRECTS,
                 progress_interval_s: float = PROGRESS_INTERVAL_S, chunk_size: int = DOWNLOAD_CHUNK_SIZE,
                 timeout=(DOWNLOAD_CONNECT_TIMEOUT_S, DOWNLOAD_READ_TIMEOUT_S)):
        self.session = requests.Session()
        self.session.max_redirects = max_redirects
        self.progress_interval_s = progress_interval_s
        self.chunk_size = chunk_size
        self.timeout = timeout
        self._cancel_event = threading.Event()

    def cancel(self):
        self._cancel_event.set()

    def download(self, url: str, dest_path: str,
                 on_progress: Optional[Callable[[DownloadProgress], None]] = None,
                 cancel_event: Optional[threading.Event] = None) -> Result:
        """Downloads ``url`` to ``dest_path``.

        A caller-owned ``cancel_event`` is honoured even when it was set before
        the call; without one, ``cancel()`` applies to the current download only.
        """
        if cancel_event is None:
            self._cancel_event.clear()
            cancel_event = self._cancel_event
        if cancel_event.is_set():
            return Result.err(NetworkError("Download cancelled."))
        logger.info("Downloading %s -> %s", url, dest_path)
        try:
            response = self.session.get(url, stream=True, allow_redirects=True, timeout=self.timeout)
        except requests.TooManyRedirects:
            return Result.err(TooManyRedirects(
                f"Too many redirects (more than {self.session.max_redirects}) while downloading. The download link may be broken."))
        except requests.Timeout:
            return Result.err(NetworkError("The download server did not respond in time. Check your connection and retry."))
        except requests.RequestException as e_req:
            return Result.err(NetworkError(f"Could not start the download: {e_req}"))

        with response:
            if not 200 <= response.status_code < 300:
                return Result.err(HttpError(response.status_code,
                                            f"Download failed: server responded with HTTP {response.status_code}."))

            total_bytes = int(response.headers.get("content-length") or 0)
            downloaded_bytes = 0
            started = time.monotonic()
            last_report = 0.0
            try:
                with open(dest_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if cancel_event.is_set():
                            raise _DownloadCancelled()
                        if not chunk:
                            continue
                        f.write(chunk)
                        downloaded_bytes += len(chunk)
                        now = time.monotonic()
                        if on_progress and now - last_report >= self.progress_interval_s:
                            last_report = now
                            on_progress(_progress(downloaded_bytes, total_bytes, now - started))
                    f.flush()
                    os.fsync(f.fileno())
                if total_bytes and downloaded_bytes < total_bytes:
                    raise NetworkError(
                        f"Download was interrupted ({downloaded_bytes} of {total_bytes} bytes received). Please retry.")
            except _DownloadCancelled:
                _remove_quietly(dest_path)
                logger.info("Download of %s cancelled", url)
                return Result.err(NetworkError("Download cancelled."))
            except NetworkError as e_net:
                _remove_quietly(dest_path)
                return Result.err(e_net)
            except requests.RequestException as e_stream:
                _remove_quietly(dest_path)
                return Result.err(NetworkError(f"Connection lost during download: {e_stream}"))
            except OSError as e_io:
                _remove_quietly(dest_path)
                return Result.err(filesystem_error_from_os(e_io, f"write {os.path.basename(dest_path)}"))

        if on_progress:
            on_progress(_progress(downloaded_bytes, total_bytes or downloaded_bytes, time.monotonic() - started))
        logger.info("Downloaded %d bytes to %s", downloaded_bytes, dest_path)
        return Result.ok(None)


def _progress(downloaded_bytes: int, total_bytes: int, elapsed: float) -> DownloadProgress:
    speed = downloaded_bytes / elapsed if elapsed > 0 else 0.0
    percent = min(100.0, downloaded_bytes / total_bytes * 100.0) if total_bytes else 0.0
    eta = (total_bytes - downloaded_bytes) / speed if total_bytes and speed > 0 else None
    return DownloadProgress(percent=percent, downloaded_bytes=downloaded_bytes, total_bytes=total_bytes,
                            speed=speed, eta=eta)

def _remove_quietly(path: str):
    try:
        if os.path.isdir(path):
            shutil.rmtree(path)
        elif os.path.exists(path):
            os.remove(path)
    except OSError as e_rm:
        logger.warning("Could not remove %s: %s", path, e_rm)


# --- Unpacking ---

def _is_within(root: str, path: str) -> bool:
    try:
        return os.path.commonpath([root, path]) == root
    except ValueError:
        return False

def _extract_zip_safely(archive_path: str, target_dir: str):
    root = os.path.realpath(target_dir)
    with zipfile.ZipFile(archive_path) as archive:
        for member in archive.infolist():
            destination = os.path.realpath(os.path.join(root, member.filename))
            if not _is_within(root, destination):
                raise UnpackError(f"Archive entry escapes the install directory: {member.filename}")
            archive.extract(member, root)
            # zip drops the executable bit unless it is restored from the unix mode
            mode = (member.external_attr >> 16) & 0o777
            if mode and not member.is_dir():
                os.chmod(destination, mode)

def _extract_tar_safely(archive_path: str, target_dir: str):
    root = os.path.realpath(target_dir)
    with tarfile.open(archive_path) as archive:
        members = archive.getmembers()
        for member in members:
            destination = os.path.realpath(os.path.join(root, member.name))
            if not _is_within(root, destination):
                raise UnpackError(f"Archive entry escapes the install directory: {member.name}")
            if member.issym() or member.islnk():
                base = os.path.dirname(destination) if member.issym() else root
                if not _is_within(root, os.path.realpath(os.path.join(base, member.linkname))):
                    raise UnpackError(f"Archive link points outside the install directory: {member.name}")
        archive.extractall(root, members=members)

def _flatten_single_root(target_dir: str):
    """Archives that wrap everything in one top folder are moved up a level."""
    entries = os.listdir(target_dir)
    if len(entries) != 1:
        return
    only = os.path.join(target_dir, entries[0])
    if not os.path.isdir(only) or entries[0] == INTERNAL_DIR_NAME:
        return
    for name in os.listdir(only):
        shutil.move(os.path.join(only, name), os.path.join(target_dir, name))
    os.rmdir(only)

def unpack_artifact(packed_path: str, target_dir: str, timeout: float = UNPACK_TIMEOUT_S):
    """Extracts a downloaded artifact into ``target_dir``.

    zip and tar archives are extracted in-process; anything else is treated as a
    packed KoboldCpp binary and asked to unpack itself with ``--unpack``.
    """
    try:
        if zipfile.is_zipfile(packed_path):
            _extract_zip_safely(packed_path, target_dir)
            _flatten_single_root(target_dir)
            return
        if tarfile.is_tarfile(packed_path):
            _extract_tar_safely(packed_path, target_dir)
            _flatten_single_root(target_dir)
            return
    except (zipfile.BadZipFile, tarfile.TarError, OSError) as e_archive:
        raise UnpackError(f"The downloaded archive is corrupt or unsupported: {e_archive}") from e_archive

    kwargs = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
    try:
        process = subprocess.run([packed_path, "--unpack", target_dir], capture_output=True, text=True,
                                 errors="replace", timeout=timeout, stdin=subprocess.DEVNULL, **kwargs)
    except subprocess.TimeoutExpired as e_timeout:
        raise UnpackError(f"Unpacking timed out after {int(timeout)}s.") from e_timeout
    except OSError as e_exec:
        raise UnpackError(f"Unpack failed: {e_exec}") from e_exec
    if process.returncode != 0:
        detail = (process.stderr or process.stdout or "").strip() or f"exit code {process.returncode}"
        raise UnpackError(f"Unpack failed: {detail}")

def find_launcher(directory: str, platform_name: Optional[str] = None) -> Optional[str]:
    for filename in launcher_filenames(platform_name):
        candidate = os.path.join(directory, filename)
        if os.path.isfile(candidate):
            return candidate
    return None

def read_binary_version(launcher_path: str, timeout: float = VERSION_PROBE_TIMEOUT_S) -> Optional[str]:
    """Version reported by ``--version``, else the install folder's version suffix."""
    if not os.path.isfile(launcher_path):
        return None
    folder_version = version_suffix(os.path.basename(os.path.dirname(launcher_path)))
    kwargs = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
    try:
        process = subprocess.run([launcher_path, "--version"], capture_output=True, text=True, errors="replace",
                                 timeout=timeout, stdin=subprocess.DEVNULL, **kwargs)
    except (subprocess.TimeoutExpired, OSError) as e_ver:
        logger.debug("Could not read version from %s: %s", launcher_path, e_ver)
        return folder_version
    for line in ((process.stdout or "") + (process.stderr or "")).strip().splitlines():
        token = line.strip().split()[0] if line.strip() else ""
        if _looks_like_version(token):
            return token
    return folder_version


def _looks_like_version(token: str) -> bool:
    head = token.split(".")
    return len(head) >= 2 and head[0].isdigit() and head[1][:1].isdigit()


# --- Install management ---

class JobState(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    UNPACKING = "unpacking"
    INSTALLED = "installed"
    FAILED = "failed"


@dataclass
class DownloadJob:
    job_id: str
    asset: ReleaseAsset
    state: JobState = JobState.PENDING
    progress_percent: float = 0.0
    error: Optional[str] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def active(self) -> bool:
        return self.state in (JobState.DOWNLOADING, JobState.UNPACKING)


@dataclass
class InstalledBackend:
    path: str
    declared_version: Optional[str]
    actual_version: Optional[str]
    installed_at: float
    display_name: str = ""
    is_current: bool = False

    @property
    def directory(self) -> str:
        return os.path.dirname(self.path)

    @property
    def version(self) -> str:
        return self.actual_version or self.declared_version or "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "declared_version": self.declared_version,
                "actual_version": self.actual_version, "installed_at": self.installed_at,
                "display_name": self.display_name, "is_current": self.is_current}


class InstallManager:
    """Download, unpack and place KoboldCpp backends under one install root.

    Only one install may run at a time; a second request is rejected, not queued.
    The previous directory of an update is removed only once the new binary is
    unpacked and found in a staging directory next to it.
    """

    def __init__(self, install_dir: str, settings: SettingsStore, events: Optional[EventBus] = None,
                 downloader: Optional[Downloader] = None, unpacker: Callable[[str, str], None] = unpack_artifact,
                 supervisor=None, on_changed: Optional[Callable[[str], None]] = None,
                 platform_name: Optional[str] = None, stop_grace_s: float = UPDATE_STOP_GRACE_S,
                 remove_retry_delays=REMOVE_RETRY_DELAYS_S, version_reader=read_binary_version):
        self.install_dir = install_dir
        self.settings = settings
        self.events = events or EventBus()
        self.downloader = downloader or Downloader()
        self.unpacker = unpacker
        self.supervisor = supervisor
        self.on_changed = on_changed
        self.platform_name = platform_name or sys.platform
        self.stop_grace_s = stop_grace_s
        self.remove_retry_delays = tuple(remove_retry_delays)
        self.version_reader = version_reader
        self._slot = threading.Lock()
        self._active_job: Optional[DownloadJob] = None

    # --- jobs ---

    def active_job(self) -> Optional[DownloadJob]:
        return self._active_job

    def is_downloading(self) -> bool:
        return self._active_job is not None

    def abort(self) -> bool:
        """Cancels the running install, if any. Stages not yet started are skipped."""
        job = self._active_job
        if job is None:
            return False
        logger.info("Aborting download job %s", job.job_id)
        job.cancel_event.set()
        return True

    def _check_cancelled(self, job: DownloadJob):
        if job.cancel_event.is_set():
            raise KeeperError(f"Install of {job.asset.name} was cancelled.")

    def _set_state(self, job: DownloadJob, state: JobState, error: Optional[str] = None):
        job.state = state
        job.error = error
        self.events.emit("download.state", job.job_id, state=state.value, asset=job.asset.name, error=error)

    def install_asset(self, asset: ReleaseAsset, is_update: bool = False, was_current_binary: bool = False,
                      job_id: Optional[str] = None) -> Result:
        if not isinstance(asset, ReleaseAsset):
            raise ValueError("install_asset expects a ReleaseAsset")
        if not self._slot.acquire(blocking=False):
            rejected = AlreadyDownloadingError()
            self.events.emit("download.failed", job_id or new_id(), asset=asset.name, error=rejected.message)
            return Result.err(rejected)
        job = DownloadJob(job_id=job_id or new_id(), asset=asset)
        try:
            self._active_job = job
            self.events.emit("download.started", job.job_id, asset=asset.name, version=asset.version,
                             is_update=is_update)
            try:
                backend = self._run_install(job, is_update, was_current_binary)
            except KeeperError as e_install:
                logger.error("Install of %s failed: %s", asset.name, e_install.message)
                self._set_state(job, JobState.FAILED, e_install.message)
                self.events.emit("download.failed", job.job_id, asset=asset.name, error=e_install.message)
                return Result.err(e_install)
            job.progress_percent = 100.0
            self._set_state(job, JobState.INSTALLED)
            self.events.emit("download.completed", job.job_id, asset=asset.name, path=backend.path)
            return Result.ok(backend)
        finally:
            self._active_job = None
            self._slot.release()

    def _run_install(self, job: DownloadJob, is_update: bool, was_current_binary: bool) -> InstalledBackend:
        asset = job.asset
        target_dir = os.path.join(self.install_dir, install_dir_name_for_asset(asset.name))
        staging_dir = target_dir + STAGING_SUFFIX
        packed_path = os.path.join(self.install_dir, asset.name + PACKED_SUFFIX)

        if os.path.exists(target_dir) and not is_update:
            raise FileSystemError("Installation directory already exists. Please uninstall the existing version first.")
        try:
            os.makedirs(self.install_dir, exist_ok=True)
        except OSError as e_mk:
            raise filesystem_error_from_os(e_mk, "create the install directory") from e_mk

        self._check_cancelled(job)
        self._set_state(job, JobState.DOWNLOADING)

        def report(progress: DownloadProgress):
            job.progress_percent = progress.percent
            self.events.emit("download.progress", job.job_id, percent=progress.percent,
                             downloaded_bytes=progress.downloaded_bytes, total_bytes=progress.total_bytes,
                             speed=progress.speed, eta=progress.eta)

        result = self.downloader.download(asset.url, packed_path, report, cancel_event=job.cancel_event)
        if result.is_err():
            raise result.error
        try:
            self._check_cancelled(job)
        except KeeperError:
            _remove_quietly(packed_path)
            raise
        if self.platform_name != "win32":
            try:
                os.chmod(packed_path, 0o755)
            except OSError as e_chmod:
                logger.warning("Failed to make %s executable: %s", packed_path, e_chmod)

        self._set_state(job, JobState.UNPACKING)
        try:
            launcher_in_staging = self._unpack_to_staging(packed_path, staging_dir)
        except KeeperError:
            _remove_quietly(staging_dir)
            raise
        finally:
            _remove_quietly(packed_path)

        try:
            self._check_cancelled(job)
        except KeeperError:
            _remove_quietly(staging_dir)
            raise
        if os.path.exists(target_dir):
            try:
                self._release_directory(target_dir, was_current_binary)
                self._remove_directory_with_retry(target_dir)
            except KeeperError:
                _remove_quietly(staging_dir)
                raise
        try:
            os.replace(staging_dir, target_dir)
        except OSError as e_mv:
            raise filesystem_error_from_os(e_mv, f"move the new backend into {target_dir}") from e_mv

        launcher_path = os.path.join(target_dir, os.path.basename(launcher_in_staging))
        actual_version = self.version_reader(launcher_path)
        installed_at = time.time()
        self._write_manifest(target_dir, asset, actual_version, installed_at)

        current = self.settings.get_current_binary_path()
        if not current or (is_update and was_current_binary):
            self.settings.set_current_binary_path(launcher_path)
        if self.on_changed:
            self.on_changed(launcher_path)

        logger.info("Installed %s %s at %s", asset.name, actual_version or asset.version, launcher_path)
        return InstalledBackend(path=launcher_path, declared_version=asset.version, actual_version=actual_version,
                                installed_at=installed_at, display_name=os.path.basename(target_dir),
                                is_current=self.settings.get_current_binary_path() == launcher_path)

    def _unpack_to_staging(self, packed_path: str, staging_dir: str) -> str:
        _remove_quietly(staging_dir)
        try:
            os.makedirs(staging_dir)
        except OSError as e_mk:
            raise filesystem_error_from_os(e_mk, "create the staging directory") from e_mk

        self.unpacker(packed_path, staging_dir)
        launcher = find_launcher(staging_dir, self.platform_name)
        if launcher is None and os.path.exists(packed_path):
            fallback = os.path.join(staging_dir, launcher_filenames(self.platform_name)[0])
            try:
                os.replace(packed_path, fallback)
                launcher = fallback
                logger.info("No launcher found after unpack, using the downloaded binary as %s", fallback)
            except OSError as e_mv:
                logger.error("Failed to rename binary as launcher: %s", e_mv)
        if launcher is None or not os.path.isfile(launcher):
            raise LauncherNotFoundError("Failed to find or create the KoboldCpp launcher in the downloaded files.")
        if self.platform_name != "win32":
            try:
                os.chmod(launcher, 0o755)
            except OSError as e_chmod:
                logger.warning("Failed to make launcher executable: %s", e_chmod)
        return launcher

    def _release_directory(self, directory: str, was_current_binary: bool):
        if was_current_binary and self.supervisor is not None:
            logger.info("Stopping KoboldCpp before replacing %s", directory)
            self.supervisor.terminate_foreground()
            time.sleep(self.stop_grace_s)
        leftovers = stop_processes_rooted_in(directory, timeout_s=self.stop_grace_s)
        if leftovers:
            pids = ", ".join(str(p.pid) for p in leftovers)
            raise FileLockedError(f"Files in {directory} are still in use (PID {pids}). "
                                  "Please ensure KoboldCpp is stopped and try again.")

    def _remove_directory_with_retry(self, directory: str):
        attempt = 0
        while True:
            try:
                shutil.rmtree(directory)
                return
            except FileNotFoundError:
                return
            except OSError as e_rm:
                if attempt >= len(self.remove_retry_delays):
                    logger.error("Failed to remove %s after %d retries: %s", directory, attempt, e_rm)
                    raise filesystem_error_from_os(e_rm, f"remove the previous installation at {directory}") from e_rm
                delay = self.remove_retry_delays[attempt]
                logger.warning("Removing %s failed (%s), retrying in %.0fs", directory, e_rm, delay)
                time.sleep(delay)
                attempt += 1

    def _write_manifest(self, target_dir: str, asset: ReleaseAsset, actual_version: Optional[str], installed_at: float):
        manifest = {"asset_name": asset.name, "declared_version": asset.version,
                    "actual_version": actual_version, "installed_at": installed_at}
        try:
            with open(os.path.join(target_dir, INSTALL_MANIFEST_NAME), "w", encoding="utf-8") as f:
                json.dump(manifest, f, indent=4)
        except OSError as e_write:
            logger.warning("Could not write install manifest in %s: %s", target_dir, e_write)

    # --- installed backends ---

    def list_installed(self) -> List[InstalledBackend]:
        if not os.path.isdir(self.install_dir):
            return []
        current = self.settings.get_current_binary_path()
        backends = []
        for entry in sorted(os.listdir(self.install_dir)):
            directory = os.path.join(self.install_dir, entry)
            if entry.endswith(STAGING_SUFFIX) or not os.path.isdir(directory):
                continue
            launcher = find_launcher(directory, self.platform_name)
            if launcher is None:
                continue
            manifest = _read_manifest(directory)
            actual_version = manifest.get("actual_version")
            if actual_version is None and not manifest:
                actual_version = self.version_reader(launcher)
            backends.append(InstalledBackend(
                path=launcher,
                declared_version=manifest.get("declared_version") or version_suffix(entry),
                actual_version=actual_version,
                installed_at=manifest.get("installed_at") or os.path.getmtime(directory),
                display_name=strip_version_suffix(entry),
                is_current=current is not None and _same_path(current, launcher),
            ))
        return backends

    def get_current(self) -> Optional[InstalledBackend]:
        """The current backend. A dangling pointer falls back to the first installed one or is cleared."""
        current = self.settings.get_current_binary_path()
        backends = self.list_installed()
        if current and os.path.exists(current):
            for backend in backends:
                if _same_path(backend.path, current):
                    return backend
        if backends:
            first = backends[0]
            logger.info("Current backend pointer is stale, switching to %s", first.path)
            self.settings.set_current_binary_path(first.path)
            first.is_current = True
            return first
        if current:
            self.settings.set_current_binary_path(None)
        return None

    def make_current(self, path: str) -> Result:
        backend = self._find_installed(path)
        if backend is None:
            return Result.err(LauncherNotFoundError(f"No installed backend found at {path}."))
        self.settings.set_current_binary_path(backend.path)
        backend.is_current = True
        logger.info("Current backend set to %s", backend.path)
        return Result.ok(backend)

    def delete_backend(self, path: str) -> Result:
        backend = self._find_installed(path)
        if backend is None:
            return Result.err(LauncherNotFoundError(f"No installed backend found at {path}."))
        if backend.is_current:
            return Result.err(BackendInUseError(
                "This is the current backend. Select a different backend before deleting it."))
        if self._active_job is not None and os.path.basename(backend.directory) == \
                install_dir_name_for_asset(self._active_job.asset.name):
            return Result.err(BackendInUseError("This backend is being updated. Wait for the download to finish."))
        running = processes_rooted_in(backend.directory)
        if running:
            return Result.err(BackendInUseError(
                f"KoboldCpp is still running from this backend (PID {running[0].pid}). Stop it first."))
        try:
            self._remove_directory_with_retry(backend.directory)
        except FileSystemError as e_fs:
            return Result.err(e_fs)
        if self.on_changed:
            self.on_changed(backend.path)
        logger.info("Deleted backend %s", backend.directory)
        return Result.ok(backend)

    def _find_installed(self, path: str) -> Optional[InstalledBackend]:
        for backend in self.list_installed():
            if _same_path(backend.path, path) or _same_path(backend.directory, path):
                return backend
        return None


def _read_manifest(directory: str) -> Dict[str, Any]:
    manifest_path = os.path.join(directory, INSTALL_MANIFEST_NAME)
    try:
        with open(manifest_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, ValueError):
        return {}

def _same_path(a: str, b: str) -> bool:
    return os.path.normcase(os.path.abspath(a)) == os.path.normcase(os.path.abspath(b))
