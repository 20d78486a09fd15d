from __future__ import annotations

import threading
from pathlib import Path

from koboldkeeper_core import AlreadyDownloadingError, EventBus, NetworkError, Result
from koboldkeeper_download import InstallManager

from helpers import launcher_zip, make_asset


class GatedDownloader:
    """Blocks inside download() until released or cancelled, so the slot stays taken."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0
        self._lock = threading.Lock()

    def download(self, url: str, dest_path: str, on_progress=None, cancel_event=None) -> Result:
        with self._lock:
            self.calls += 1
        self.entered.set()
        for _ in range(200):
            if self.release.wait(0.05):
                break
            if cancel_event is not None and cancel_event.is_set():
                return Result.err(NetworkError("Download cancelled."))
        Path(dest_path).write_bytes(launcher_zip())
        return Result.ok(None)


def test_concurrent_installs_allow_a_single_active_job(install_root: Path, settings) -> None:
    downloader = GatedDownloader()
    manager = InstallManager(str(install_root), settings, downloader=downloader, platform_name="linux",
                             version_reader=lambda path: None)
    results = []
    results_lock = threading.Lock()

    def start(index: int) -> None:
        result = manager.install_asset(make_asset(f"backend-{index}-linux-x64.zip"))
        with results_lock:
            results.append(result)

    first = threading.Thread(target=start, args=(0,))
    first.start()
    assert downloader.entered.wait(5)

    others = [threading.Thread(target=start, args=(i,)) for i in range(1, 8)]
    for thread in others:
        thread.start()
    for thread in others:
        thread.join(5)

    assert manager.is_downloading()
    assert manager.active_job().asset.name == "backend-0-linux-x64.zip"
    rejected = [r for r in results if isinstance(r.error, AlreadyDownloadingError)]
    assert len(rejected) == 7

    downloader.release.set()
    first.join(10)

    assert downloader.calls == 1
    assert sum(1 for r in results if r.is_ok()) == 1
    assert not manager.is_downloading()


def test_slot_is_free_again_after_a_job(install_root: Path, settings) -> None:
    downloader = GatedDownloader()
    downloader.release.set()
    manager = InstallManager(str(install_root), settings, downloader=downloader, platform_name="linux",
                             version_reader=lambda path: None)

    assert manager.install_asset(make_asset("a-linux-x64.zip")).is_ok()
    assert manager.install_asset(make_asset("b-linux-x64.zip")).is_ok()
    assert downloader.calls == 2


def test_rejected_install_reports_failure_for_its_job(install_root: Path, settings) -> None:
    downloader = GatedDownloader()
    events = EventBus()
    seen = []
    events.subscribe("download.*", lambda event: seen.append((event.topic, event.source_id)))
    manager = InstallManager(str(install_root), settings, events=events, downloader=downloader,
                             platform_name="linux", version_reader=lambda path: None)

    first = threading.Thread(target=manager.install_asset, args=(make_asset("a-linux-x64.zip"),))
    first.start()
    assert downloader.entered.wait(5)

    result = manager.install_asset(make_asset("b-linux-x64.zip"), job_id="second-job")

    downloader.release.set()
    first.join(10)
    assert isinstance(result.error, AlreadyDownloadingError)
    assert ("download.failed", "second-job") in seen


def test_abort_before_download_starts_skips_the_install(install_root: Path, settings) -> None:
    downloader = GatedDownloader()
    downloader.release.set()
    events = EventBus()
    manager = InstallManager(str(install_root), settings, events=events, downloader=downloader,
                             platform_name="linux", version_reader=lambda path: None)
    aborted = []

    def abort_on_start(event) -> None:
        aborted.append(manager.abort())

    events.subscribe("download.started", abort_on_start)

    result = manager.install_asset(make_asset("a-linux-x64.zip"))

    assert aborted == [True]
    assert result.is_err()
    assert "cancelled" in result.error.message
    assert downloader.calls == 0
    assert not (install_root / "a-linux-x64").exists()
    assert settings.get_current_binary_path() is None


def test_abort_during_download_leaves_no_install(install_root: Path, settings) -> None:
    downloader = GatedDownloader()
    manager = InstallManager(str(install_root), settings, downloader=downloader, platform_name="linux",
                             version_reader=lambda path: None)
    results = []
    worker = threading.Thread(target=lambda: results.append(manager.install_asset(make_asset("a-linux-x64.zip"))))
    worker.start()
    assert downloader.entered.wait(5)

    assert manager.abort()
    worker.join(10)

    assert isinstance(results[0].error, NetworkError)
    assert not (install_root / "a-linux-x64").exists()
    assert not manager.is_downloading()
