import sys
import time
import logging
import threading
from typing import Optional, List, Dict, Callable

import requests

from koboldkeeper_core import (
    DEFAULT_INSTALL_DIR, RELEASE_FEED_URL, SHUTDOWN_CEILING_S, EventBus, JsonSettingsStore, Result, SettingsStore,
    LauncherNotFoundError, ProcessError, install_dir_name_for_asset, load_config, new_id,
)
from koboldkeeper_assets import ReleaseAsset, ReleaseFeed, resolve_assets, sort_assets
from koboldkeeper_download import Downloader, InstallManager, InstalledBackend
from koboldkeeper_hardware import HardwareCapabilityDetector, BackendCapabilityProbe, BackendOption
from koboldkeeper_process import ProcessSupervisor, select_terminator
from koboldkeeper_updates import UpdateChecker, UpdateInfo
from koboldkeeper_vram import calculate_optimal_gpu_layers, analyze_gguf_model

logger = logging.getLogger(__name__)


class BackendManager:
    """Owns every lifecycle component and cache for one launcher session."""

    def __init__(self, config: Optional[dict] = None, config_file: Optional[str] = None,
                 settings: Optional[SettingsStore] = None, install_dir: Optional[str] = None,
                 session: Optional[requests.Session] = None, platform_name: Optional[str] = None,
                 detector: Optional[HardwareCapabilityDetector] = None):
        if config is None:
            config, _, message = load_config(config_file)
            logger.debug(message)
        self.config = config
        self.platform_name = platform_name or sys.platform
        self.settings = settings or JsonSettingsStore(config, config_file)
        self.events = EventBus()
        self.session = session or requests.Session()

        self.feed = ReleaseFeed(config.get("release_feed_url") or RELEASE_FEED_URL,
                                session=self.session)
        self.downloader = Downloader()
        self.supervisor = ProcessSupervisor(events=self.events, terminator=select_terminator(self.platform_name),
                                            terminate_timeout_ms=int(config.get("terminate_timeout_ms") or 5000))
        self.detector = detector or HardwareCapabilityDetector(platform_name=self.platform_name)
        self.backend_probe = BackendCapabilityProbe(platform_name=self.platform_name)
        self.installs = InstallManager(install_dir or config.get("install_dir") or DEFAULT_INSTALL_DIR,
                                       self.settings, events=self.events,
                                       downloader=self.downloader, supervisor=self.supervisor,
                                       on_changed=self._on_backends_changed, platform_name=self.platform_name)
        interval_hours = float(config.get("update_check_interval_hours") or 6)
        self.updates = UpdateChecker(self.feed, self.installs, self.settings, events=self.events,
                                     interval_s=interval_hours * 3600, platform_name=self.platform_name)
        self._workers: Dict[str, threading.Thread] = {}

    def _on_backends_changed(self, binary_path: str):
        self.backend_probe.invalidate(binary_path)

    # --- releases and installs ---

    def available_assets(self, force: bool = False) -> Result:
        """Downloads offered for this host, recommended builds first."""
        release_result = self.feed.fetch_latest(force=force)
        if release_result.is_err():
            return release_result
        assets = resolve_assets(release_result.value, self.platform_name)
        return Result.ok(sort_assets(assets, self.detector.has_amd_gpu()))

    def find_asset(self, name: str, force: bool = False) -> Result:
        assets_result = self.available_assets(force=force)
        if assets_result.is_err():
            return assets_result
        for asset in assets_result.value:
            if asset.name == name:
                return Result.ok(asset)
        return Result.err(LauncherNotFoundError(f"No download named '{name}' in the latest release."))

    def install(self, asset: ReleaseAsset, is_update: bool = False) -> Result:
        was_current = False
        if is_update:
            current = self.installs.get_current()
            was_current = current is not None and current.display_name == install_dir_name_for_asset(asset.name)
        return self.installs.install_asset(asset, is_update=is_update, was_current_binary=was_current)

    def install_in_background(self, asset: ReleaseAsset, is_update: bool = False,
                              was_current_binary: bool = False) -> str:
        """Starts an install on a worker thread and returns its job id.

        Every outcome, including rejection while another install runs, arrives
        as a ``download.*`` event for that id.
        """
        for finished in [key for key, thread in self._workers.items() if not thread.is_alive()]:
            del self._workers[finished]
        job_id = new_id()
        worker = threading.Thread(target=self.installs.install_asset, name=f"install-{job_id[:8]}",
                                  args=(asset,), kwargs={"is_update": is_update, "job_id": job_id,
                                                         "was_current_binary": was_current_binary},
                                  daemon=True)
        self._workers[job_id] = worker
        worker.start()
        return job_id

    def apply_update(self, info: UpdateInfo) -> Result:
        current = self.installs.get_current()
        was_current = current is not None and current.path == info.current_path
        return self.installs.install_asset(info.latest_asset, is_update=True, was_current_binary=was_current)

    def list_backends(self) -> List[InstalledBackend]:
        return self.installs.list_installed()

    def current_backend(self) -> Optional[InstalledBackend]:
        return self.installs.get_current()

    # --- hardware ---

    def available_backends(self, include_disabled: bool = False) -> List[BackendOption]:
        current = self.installs.get_current()
        hardware = self.detector.detect_gpu_capabilities()
        return self.backend_probe.get_available_backends(current.path if current else None, hardware,
                                                         include_disabled=include_disabled,
                                                         cpu=self.detector.detect_cpu())

    def plan_gpu_layers(self, model_path: str, context_size: int, flash_attention: bool = False,
                        acceleration: Optional[str] = None, available_vram_gb: Optional[float] = None) -> Result:
        if available_vram_gb is None:
            available_vram_gb = self.detector.available_vram_gb() or 0.0
        return calculate_optimal_gpu_layers(model_path, context_size, available_vram_gb,
                                            flash_attention=flash_attention, acceleration=acceleration,
                                            session=self.session)

    def analyze_model(self, model_path: str) -> Result:
        return analyze_gguf_model(model_path)

    # --- processes ---

    def launch(self, argv: List[str], binary_path: Optional[str] = None) -> Result:
        if binary_path is None:
            current = self.installs.get_current()
            if current is None:
                return Result.err(ProcessError("No KoboldCpp backend is installed. Install one first."))
            binary_path = current.path
        return self.supervisor.launch(binary_path, argv)

    def check_for_updates(self) -> Optional[UpdateInfo]:
        return self.updates.check_now()

    # --- lifecycle ---

    def start(self):
        self.updates.start()

    def shutdown(self, ceiling_s: float = SHUTDOWN_CEILING_S) -> bool:
        """Stops the update timer, the running backend and any download.

        Returns False when some cleanup was still running at the ceiling; those
        threads are left behind as daemons.
        """
        logger.info("Shutting down backend manager")
        self.updates.stop()
        tasks: List[Callable[[], object]] = [self.supervisor.terminate_foreground, self.installs.abort]
        threads = [threading.Thread(target=task, name=f"shutdown-{index}", daemon=True)
                   for index, task in enumerate(tasks)]
        for thread in threads:
            thread.start()

        deadline = time.monotonic() + ceiling_s
        for thread in threads + list(self._workers.values()):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            thread.join(remaining)
        stragglers = [t.name for t in threads + list(self._workers.values()) if t.is_alive()]
        if stragglers:
            logger.warning("Shutdown ceiling of %.1fs reached, still running: %s", ceiling_s, ", ".join(stragglers))
            return False
        return True
