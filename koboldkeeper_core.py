import os
import sys
import re
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Optional, Tuple, Dict, List, Any, Callable, Generic, TypeVar

import appdirs
from rich.logging import RichHandler

logger = logging.getLogger(__name__)

# --- Appdirs Integration ---
APP_NAME = "KoboldKeeper"
APP_AUTHOR = "Viceman256"


def _get_user_app_config_dir():
    """Gets the user-specific configuration directory for the application."""
    return appdirs.user_config_dir(APP_NAME, APP_AUTHOR)

def _get_user_app_data_dir():
    """Gets the user-specific data directory for the application."""
    return appdirs.user_data_dir(APP_NAME, APP_AUTHOR)

def _get_user_app_log_dir():
    return appdirs.user_log_dir(APP_NAME, APP_AUTHOR)


# --- Constants and Configuration ---
_CONFIG_FILE_BASENAME = "koboldkeeper_config.json"
CONFIG_FILE = os.path.join(_get_user_app_config_dir(), _CONFIG_FILE_BASENAME)
LOG_FILE = os.path.join(_get_user_app_log_dir(), "koboldkeeper.log")
DEFAULT_INSTALL_DIR = os.path.join(_get_user_app_data_dir(), "backends")

CORE_VERSION = "1.0.0"

LAUNCHER_BASENAME = "koboldcpp-launcher"
INTERNAL_DIR_NAME = "_internal"
PACKED_SUFFIX = ".packed"
STAGING_SUFFIX = ".staging"

RELEASE_FEED_URL = "https://api.github.com/repos/LostRuins/koboldcpp/releases/latest"
ROCM_ASSET_NAME = "koboldcpp-linux-x64-rocm"
ROCM_ASSET_URL = "https://koboldai.org/cpplinuxrocm"

MAX_REDIRECTS = 10
PROGRESS_INTERVAL_S = 0.5
PROBE_TIMEOUT_S = 5
TERMINATE_TIMEOUT_MS = 5000
SHUTDOWN_CEILING_S = 10.0
UPDATE_INITIAL_DELAY_S = 1.0
UPDATE_INTERVAL_HOURS = 6
READY_MARKER = "Please connect to custom endpoint at"

DEFAULT_CONFIG_TEMPLATE = {
    "current_binary_path": None,
    "dismissed_updates": [],
    "install_dir": "",
    "log_level": "INFO",
    "update_check_interval_hours": UPDATE_INTERVAL_HOURS,
    "terminate_timeout_ms": TERMINATE_TIMEOUT_MS,
    "release_feed_url": RELEASE_FEED_URL,
    "launcher_core_version": CORE_VERSION,
}


def _version_tuple(version_str: str) -> Tuple[int, ...]:
    try:
        return tuple(int(part) for part in version_str.split("."))
    except ValueError:
        return (0, 0, 0)

def save_launcher_config(config_to_save: dict, config_file: Optional[str] = None) -> Tuple[bool, str]:
    target_file = config_file or CONFIG_FILE
    try:
        config_copy_for_saving = json.loads(json.dumps(config_to_save))
        if config_copy_for_saving.get("install_dir") == DEFAULT_INSTALL_DIR:
            config_copy_for_saving["install_dir"] = ""
        os.makedirs(os.path.dirname(os.path.abspath(target_file)), exist_ok=True)
        with open(target_file, 'w', encoding='utf-8') as f:
            json.dump(config_copy_for_saving, f, indent=4)
        return True, f"Configuration saved to {target_file}"
    except (OSError, TypeError, ValueError) as e:
        return False, f"Error saving configuration: {e}"

def load_config(config_file: Optional[str] = None) -> Tuple[dict, bool, str]:
    """Loads the launcher config, filling in template keys and migrating old versions.

    Returns (config, loaded_ok, message). A missing or corrupt file falls back to
    defaults, which are written back to disk.
    """
    target_file = config_file or CONFIG_FILE
    config_data = json.loads(json.dumps(DEFAULT_CONFIG_TEMPLATE))
    current_version_tuple = _version_tuple(CORE_VERSION)

    config_was_migrated_or_keys_added = False
    loaded_ok = False

    if os.path.exists(target_file):
        try:
            with open(target_file, 'r', encoding='utf-8') as f:
                user_config_loaded = json.load(f)
            if not isinstance(user_config_loaded, dict):
                raise ValueError("top-level JSON value is not an object")
            loaded_ok = True
            config_message = f"Successfully loaded configuration from {target_file}"

            loaded_version_str = str(user_config_loaded.get("launcher_core_version", "0.0.0"))
            if _version_tuple(loaded_version_str) < current_version_tuple:
                logger.info("Launcher configuration version mismatch (Loaded: %s, Current Template: %s). Migrating.",
                            loaded_version_str, CORE_VERSION)
                user_config_loaded["launcher_core_version"] = CORE_VERSION
                config_was_migrated_or_keys_added = True

            for key in DEFAULT_CONFIG_TEMPLATE:
                if key in user_config_loaded:
                    config_data[key] = user_config_loaded[key]
                else:
                    config_was_migrated_or_keys_added = True

            if not isinstance(config_data.get("dismissed_updates"), list):
                config_data["dismissed_updates"] = []
                config_was_migrated_or_keys_added = True

            if config_was_migrated_or_keys_added:
                save_ok, save_msg = save_launcher_config(config_data, target_file)
                if save_ok:
                    config_message += " (Config updated/migrated and saved)"
                else:
                    config_message += f" (Config updated/migrated but FAILED to save: {save_msg})"
        except (OSError, ValueError) as e_load:
            loaded_ok = False
            config_data = json.loads(json.dumps(DEFAULT_CONFIG_TEMPLATE))
            config_message = f"Error loading or processing {target_file}: {e_load}. Falling back to defaults."
            save_ok, save_msg = save_launcher_config(config_data, target_file)
            config_message += " (Saved default config)" if save_ok else f" (Failed to save default config: {save_msg})"
    else:
        config_message = f"No config file found at {target_file}. Using default settings and saving."
        save_ok, save_msg = save_launcher_config(config_data, target_file)
        if not save_ok:
            config_message += f" (Failed to save default config: {save_msg})"

    if not config_data.get("install_dir"):
        config_data["install_dir"] = DEFAULT_INSTALL_DIR
    return config_data, loaded_ok, config_message


# --- Settings accessors ---

class SettingsStore:
    """The two persisted settings the lifecycle core reads and writes."""

    def get_current_binary_path(self) -> Optional[str]:
        raise NotImplementedError

    def set_current_binary_path(self, path: Optional[str]) -> None:
        raise NotImplementedError

    def get_dismissed_updates(self) -> List[str]:
        raise NotImplementedError

    def set_dismissed_updates(self, keys: List[str]) -> None:
        raise NotImplementedError


class MemorySettingsStore(SettingsStore):
    def __init__(self, current_binary_path: Optional[str] = None, dismissed_updates: Optional[List[str]] = None):
        self._lock = threading.Lock()
        self._current = current_binary_path
        self._dismissed = list(dismissed_updates or [])

    def get_current_binary_path(self) -> Optional[str]:
        with self._lock:
            return self._current

    def set_current_binary_path(self, path: Optional[str]) -> None:
        with self._lock:
            self._current = path

    def get_dismissed_updates(self) -> List[str]:
        with self._lock:
            return list(self._dismissed)

    def set_dismissed_updates(self, keys: List[str]) -> None:
        with self._lock:
            self._dismissed = list(keys)


class JsonSettingsStore(MemorySettingsStore):
    """Settings backed by the launcher config dict; every write re-saves the file."""

    def __init__(self, config: dict, config_file: Optional[str] = None):
        super().__init__(config.get("current_binary_path"), config.get("dismissed_updates"))
        self.config = config
        self.config_file = config_file

    def _persist(self):
        self.config["current_binary_path"] = self._current
        self.config["dismissed_updates"] = list(self._dismissed)
        ok, message = save_launcher_config(self.config, self.config_file)
        if not ok:
            logger.warning(message)

    def set_current_binary_path(self, path: Optional[str]) -> None:
        with self._lock:
            self._current = path
            self._persist()

    def set_dismissed_updates(self, keys: List[str]) -> None:
        with self._lock:
            self._dismissed = list(keys)
            self._persist()


# --- Errors ---

class KeeperError(Exception):
    """Base for every failure surfaced to the caller. ``message`` is user-facing."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NetworkError(KeeperError):
    pass

class TooManyRedirects(NetworkError):
    pass

class HttpError(NetworkError):
    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(message or f"Server responded with HTTP {status}. Check your connection and try again.")
        self.status = status

class FileSystemError(KeeperError):
    pass

class FileLockedError(FileSystemError):
    pass

class PermissionDeniedError(FileSystemError):
    pass

class UnpackError(KeeperError):
    pass

class LauncherNotFoundError(KeeperError):
    pass

class AlreadyDownloadingError(KeeperError):
    def __init__(self, message: str = "A download is already in progress. Wait for it to finish or cancel it first."):
        super().__init__(message)


class BackendInUseError(KeeperError):
    pass

class CapabilityProbeError(KeeperError):
    pass

class ModelMetadataError(KeeperError):
    pass

class ProcessError(KeeperError):
    pass


def filesystem_error_from_os(exc: OSError, action: str) -> FileSystemError:
    """Maps an OSError raised while touching an install directory to an actionable error."""
    reason = exc.strerror or str(exc)
    winerror = getattr(exc, "winerror", None)
    if isinstance(exc, PermissionError) or winerror in (5, 32, 33):
        hint = "Stop KoboldCpp (and anything using its files), then retry."
        if winerror in (32, 33) or sys.platform == "win32":
            return FileLockedError(f"Could not {action}: {reason}. The files are in use. {hint}")
        return PermissionDeniedError(f"Could not {action}: {reason}. {hint}")
    return FileSystemError(f"Could not {action}: {reason}.")


# --- Result ---

T = TypeVar("T")
E = TypeVar("E")


@dataclass
class Result(Generic[T, E]):
    """Either a success value or an error."""

    value: Optional[T] = None
    error: Optional[E] = None

    @classmethod
    def ok(cls, value: T = None) -> "Result[T, E]":
        return cls(value=value)

    @classmethod
    def err(cls, error: E) -> "Result[T, E]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self.error is None

    def is_err(self) -> bool:
        return self.error is not None

    def unwrap(self) -> T:
        if self.error is not None:
            raise RuntimeError(f"Tried to unwrap error result: {self.error}")
        return self.value


# --- Events ---

@dataclass
class Event:
    topic: str
    source_id: str
    payload: Dict[str, Any] = field(default_factory=dict)


class EventBus:
    """Topic based publish/subscribe. Every event names the job or handle it came from."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[Tuple[str, Optional[str], Callable[[Event], None]]] = []

    def subscribe(self, topic: str, callback: Callable[[Event], None], source_id: Optional[str] = None) -> Callable[[], None]:
        """``topic`` may end in ``.*`` to match a namespace. Returns an unsubscribe function."""
        entry = (topic, source_id, callback)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe():
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)
        return unsubscribe

    def emit(self, topic: str, source_id: str, **payload) -> Event:
        event = Event(topic, source_id, payload)
        with self._lock:
            targets = [cb for t, sid, cb in self._subscribers
                       if _topic_matches(t, topic) and (sid is None or sid == source_id)]
        for callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber for '%s' failed", topic)
        return event


def _topic_matches(pattern: str, topic: str) -> bool:
    if pattern == "*" or pattern == topic:
        return True
    if pattern.endswith(".*"):
        return topic.startswith(pattern[:-1])
    return False

def new_id() -> str:
    return uuid.uuid4().hex


# --- Logging ---

def setup_logging(level: str = "INFO", log_file: Optional[str] = LOG_FILE, console: Any = None) -> logging.Logger:
    """Console logging through rich plus an optional plain-text log file."""
    root = logging.getLogger()
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        if getattr(handler, "_koboldkeeper", False):
            root.removeHandler(handler)
            handler.close()

    rich_handler = RichHandler(console=console, show_path=False, rich_tracebacks=True, markup=False)
    rich_handler.setLevel(numeric_level)
    rich_handler._koboldkeeper = True
    root.addHandler(rich_handler)

    if log_file:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e_log:
            logger.warning("Could not open log file %s: %s", log_file, e_log)
        else:
            file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
            file_handler.setLevel(numeric_level)
            file_handler._koboldkeeper = True
            root.addHandler(file_handler)
    return root


# --- Naming and version helpers ---

_ASSET_EXTENSION_RE = re.compile(r"\.(tar\.gz|zip|exe|dmg|AppImage)$", re.IGNORECASE)
_VERSION_SUFFIX_RE = re.compile(r"-(\d+\.\d+(?:\.\d+)?(?:\.[a-zA-Z0-9]+)*(?:-[a-zA-Z0-9]+)*)$")

def strip_asset_extensions(asset_name: str) -> str:
    return _ASSET_EXTENSION_RE.sub("", asset_name)

def strip_version_suffix(name: str) -> str:
    return _VERSION_SUFFIX_RE.sub("", name)

def version_suffix(name: str) -> Optional[str]:
    match = _VERSION_SUFFIX_RE.search(name)
    return match.group(1) if match else None

def install_dir_name_for_asset(asset_name: str) -> str:
    """Directory an asset installs into: archive suffix and version suffix removed."""
    name = strip_version_suffix(strip_asset_extensions(asset_name))
    # "foo.zip.exe" style double suffixes
    while _ASSET_EXTENSION_RE.search(name):
        name = strip_version_suffix(strip_asset_extensions(name))
    return name

def launcher_filenames(platform_name: Optional[str] = None) -> List[str]:
    platform_name = platform_name or sys.platform
    if platform_name == "win32":
        return [LAUNCHER_BASENAME + ".exe", LAUNCHER_BASENAME]
    return [LAUNCHER_BASENAME, LAUNCHER_BASENAME + ".exe"]

def display_name_from_path(binary_path: str) -> str:
    """Name of the install directory holding the launcher, version suffix removed."""
    parts = re.split(r"[/\\]", binary_path)
    for index, part in enumerate(parts):
        if index > 0 and part in (LAUNCHER_BASENAME, LAUNCHER_BASENAME + ".exe"):
            return strip_version_suffix(parts[index - 1])
    return os.path.basename(binary_path)

def _tokenize_version(version: str) -> List[Tuple[int, Any]]:
    tokens: List[Tuple[int, Any]] = []
    cleaned = version.strip()
    if cleaned[:1] in ("v", "V"):
        cleaned = cleaned[1:]
    for raw in cleaned.replace("-", ".").replace("+", ".").split("."):
        if not raw:
            continue
        if raw.isdigit():
            tokens.append((0, int(raw)))
        else:
            tokens.append((1, raw.lower()))
    return tokens

def compare_versions(version_a: str, version_b: str) -> int:
    """Returns -1, 0 or 1 as ``version_a`` is older, equal or newer than ``version_b``.

    Components compare numerically when both are digits; a textual component
    sorts after any number, and missing components count as 0.
    """
    a_tokens = _tokenize_version(version_a or "")
    b_tokens = _tokenize_version(version_b or "")
    for index in range(max(len(a_tokens), len(b_tokens))):
        a_token = a_tokens[index] if index < len(a_tokens) else (0, 0)
        b_token = b_tokens[index] if index < len(b_tokens) else (0, 0)
        if a_token != b_token:
            return 1 if a_token > b_token else -1
    return 0

# (pattern, replacement, count); count 0 replaces every occurrence
_DEVICE_NAME_REPLACEMENTS = [
    (re.compile(r"^AMD\s+", re.IGNORECASE), "", 1),
    (re.compile(r"^NVIDIA\s+", re.IGNORECASE), "", 1),
    (re.compile(r"^Intel\s+", re.IGNORECASE), "", 1),
    (re.compile(r"\s+Graphics", re.IGNORECASE), "", 1),
    (re.compile(r"\s+GPU", re.IGNORECASE), "", 1),
    (re.compile(r"\s+Processor", re.IGNORECASE), "", 1),
    (re.compile(r"\s+CPU", re.IGNORECASE), "", 1),
    (re.compile(r"GeForce\s+", re.IGNORECASE), "", 1),
    (re.compile(r"Radeon\s+", re.IGNORECASE), "", 1),
    (re.compile(r"\s+Series", re.IGNORECASE), "", 1),
    (re.compile(r"\s*[(\[{].*?[)\]}]\s*"), "", 0),
    (re.compile(r"\s*\d+-core\s*", re.IGNORECASE), "", 0),
    (re.compile(r"\s+"), " ", 0),
]

def format_device_name(device_name: str) -> str:
    for pattern, replacement, count in _DEVICE_NAME_REPLACEMENTS:
        device_name = pattern.sub(replacement, device_name, count=count)
    return device_name.strip()

def format_bytes(num_bytes: float) -> str:
    size = float(num_bytes or 0)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024.0:
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024.0
    return f"{size:.2f} TB"
