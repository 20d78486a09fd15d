import json
import logging
import threading
from dataclasses import dataclass
from typing import Optional, List, Iterable

from koboldkeeper_core import (
    UPDATE_INITIAL_DELAY_S, UPDATE_INTERVAL_HOURS,
    EventBus, SettingsStore, compare_versions, display_name_from_path, install_dir_name_for_asset,
)
from koboldkeeper_assets import ReleaseAsset, ReleaseFeed, resolve_assets
from koboldkeeper_download import InstalledBackend, InstallManager

logger = logging.getLogger(__name__)


@dataclass
class UpdateInfo:
    current_path: str
    current_version: str
    latest_asset: ReleaseAsset
    has_update: bool = True

    @property
    def dismissed_key(self) -> str:
        return dismissed_key(self.current_path, self.latest_asset.version)


def dismissed_key(current_path: str, target_version: str) -> str:
    return json.dumps([current_path, target_version])


def find_update(current: Optional[InstalledBackend], assets: Iterable[ReleaseAsset],
                dismissed: Iterable[str] = ()) -> Optional[UpdateInfo]:
    """Newer build of the same flavour as ``current``, unless the user skipped that version."""
    if current is None:
        return None
    current_name = display_name_from_path(current.path)
    matching = [a for a in assets if a.version and install_dir_name_for_asset(a.name) == current_name]
    if not matching:
        return None
    newest = matching[0]
    for asset in matching[1:]:
        if compare_versions(asset.version, newest.version) > 0:
            newest = asset
    if compare_versions(newest.version, current.version) <= 0:
        return None
    if dismissed_key(current.path, newest.version) in set(dismissed):
        logger.debug("Update to %s for %s was dismissed", newest.version, current.path)
        return None
    return UpdateInfo(current_path=current.path, current_version=current.version, latest_asset=newest)


class UpdateChecker:
    """Periodic check of the release feed against the current backend.

    The first check runs shortly after start, then on a fixed interval.
    """

    def __init__(self, feed: ReleaseFeed, install_manager: InstallManager, settings: SettingsStore,
                 events: Optional[EventBus] = None, initial_delay_s: float = UPDATE_INITIAL_DELAY_S,
                 interval_s: float = UPDATE_INTERVAL_HOURS * 3600, platform_name: Optional[str] = None):
        self.feed = feed
        self.install_manager = install_manager
        self.settings = settings
        self.events = events or EventBus()
        self.initial_delay_s = initial_delay_s
        self.interval_s = interval_s
        self.platform_name = platform_name
        self.last_update: Optional[UpdateInfo] = None
        self._check_lock = threading.Lock()
        self._timer_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._stopped = True

    def start(self):
        with self._timer_lock:
            if not self._stopped:
                return
            self._stopped = False
            self._schedule(self.initial_delay_s)

    def stop(self):
        with self._timer_lock:
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def running(self) -> bool:
        return not self._stopped

    def _schedule(self, delay_s: float):
        self._timer = threading.Timer(delay_s, self._on_timer)
        self._timer.daemon = True
        self._timer.start()

    def _on_timer(self):
        try:
            self.check_now()
        except Exception:
            logger.exception("Scheduled update check failed")
        with self._timer_lock:
            if not self._stopped:
                self._schedule(self.interval_s)

    def check_now(self, force_feed: bool = False) -> Optional[UpdateInfo]:
        """Returns the available update, or None. A check already in flight makes this a no-op."""
        if not self._check_lock.acquire(blocking=False):
            logger.debug("Update check already running")
            return None
        try:
            current = self.install_manager.get_current()
            if current is None:
                return None
            release_result = self.feed.fetch_latest(force=force_feed)
            if release_result.is_err():
                logger.info("Update check skipped: %s", release_result.error)
                return None
            assets: List[ReleaseAsset] = resolve_assets(release_result.value, self.platform_name)
            info = find_update(current, assets, self.settings.get_dismissed_updates())
            self.last_update = info
            if info is not None:
                logger.info("Update available for %s: %s -> %s", info.current_path,
                            info.current_version, info.latest_asset.version)
                self.events.emit("update.available", info.current_path, update=info)
            return info
        finally:
            self._check_lock.release()

    def dismiss(self, info: UpdateInfo):
        keys = list(self.settings.get_dismissed_updates())
        if info.dismissed_key not in keys:
            keys.append(info.dismissed_key)
            self.settings.set_dismissed_updates(keys)
        if self.last_update is not None and self.last_update.dismissed_key == info.dismissed_key:
            self.last_update = None
