import sys
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

import requests

from koboldkeeper_core import (
    RELEASE_FEED_URL, ROCM_ASSET_NAME, ROCM_ASSET_URL,
    NetworkError, HttpError, Result, strip_asset_extensions,
)

logger = logging.getLogger(__name__)

FEED_COOLDOWN_S = 60.0
FEED_TIMEOUT_S = 15
ROCM_ASSET_SIZE_APPROX = 1024 * 1024 * 1024


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    url: str
    size: int
    version: str
    platform_tag: str


@dataclass
class Release:
    tag_name: str
    version: str
    assets: List[ReleaseAsset] = field(default_factory=list)


def platform_tag_for_asset(asset_name: str) -> str:
    """Best-effort platform of an asset, from the words in its name."""
    name = asset_name.lower()
    if "linux" in name or "ubuntu" in name:
        return "linux"
    if "macos" in name or "mac" in name or "darwin" in name:
        return "darwin"
    if "windows" in name or "win" in name or ".exe" in name:
        return "win32"
    return "any"

def is_asset_compatible_with_platform(asset_name: str, platform_name: str) -> bool:
    name = asset_name.lower()
    if platform_name == "win32":
        return "windows" in name or "win" in name or ".exe" in name
    if platform_name == "darwin":
        return "macos" in name or "mac" in name or "darwin" in name
    if platform_name.startswith("linux"):
        return "linux" in name or "ubuntu" in name
    return True

def parse_release(release_json: Dict[str, Any]) -> Release:
    """Builds a Release from the GitHub ``releases/latest`` JSON document."""
    if not isinstance(release_json, dict) or not release_json.get("tag_name"):
        raise ValueError("release document has no tag_name")
    tag_name = str(release_json["tag_name"])
    version = tag_name[1:] if tag_name.startswith("v") else tag_name
    assets = []
    for raw_asset in release_json.get("assets") or []:
        name = raw_asset.get("name")
        url = raw_asset.get("browser_download_url")
        if not name or not url:
            continue
        assets.append(ReleaseAsset(name=name, url=url, size=int(raw_asset.get("size") or 0),
                                   version=version, platform_tag=platform_tag_for_asset(name)))
    return Release(tag_name=tag_name, version=version, assets=assets)


class ReleaseFeed:
    """Client for the KoboldCpp release feed with a short cooldown cache.

    A rate-limited (403) or failed request falls back to the last good release.
    """

    def __init__(self, url: str = RELEASE_FEED_URL, session: Optional[requests.Session] = None,
                 cooldown_s: float = FEED_COOLDOWN_S):
        self.url = url
        self.session = session or requests.Session()
        self.cooldown_s = cooldown_s
        self._lock = threading.Lock()
        self._cached: Optional[Release] = None
        self._last_fetch = 0.0

    def fetch_latest(self, force: bool = False) -> Result:
        with self._lock:
            now = time.monotonic()
            if not force and self._cached is not None and now - self._last_fetch < self.cooldown_s:
                return Result.ok(self._cached)
            try:
                response = self.session.get(self.url, timeout=FEED_TIMEOUT_S,
                                            headers={"Accept": "application/vnd.github+json"})
            except requests.RequestException as e_req:
                logger.warning("Release feed request failed: %s", e_req)
                return self._cached_or_error(NetworkError(f"Could not reach the release feed: {e_req}"))

            if response.status_code == 403:
                logger.warning("GitHub API rate limit reached, using cached release data")
                return self._cached_or_error(HttpError(403, "GitHub API rate limit reached. Try again in a few minutes."))
            if not response.ok:
                return self._cached_or_error(HttpError(response.status_code))
            try:
                release = parse_release(response.json())
            except ValueError as e_parse:
                return self._cached_or_error(NetworkError(f"Release feed returned an unexpected document: {e_parse}"))

            self._cached = release
            self._last_fetch = now
            logger.debug("Fetched release %s with %d assets", release.tag_name, len(release.assets))
            return Result.ok(release)

    def _cached_or_error(self, error: NetworkError) -> Result:
        if self._cached is not None:
            return Result.ok(self._cached)
        return Result.err(error)


def rocm_asset(version: str) -> ReleaseAsset:
    return ReleaseAsset(name=ROCM_ASSET_NAME, url=ROCM_ASSET_URL, size=ROCM_ASSET_SIZE_APPROX,
                        version=version, platform_tag="linux")

def resolve_assets(release: Release, platform_name: Optional[str] = None) -> List[ReleaseAsset]:
    """Candidate downloads for the host: compatible feed assets plus the Linux ROCm build."""
    platform_name = platform_name or sys.platform
    candidates = [a for a in release.assets if is_asset_compatible_with_platform(a.name, platform_name)]
    if platform_name.startswith("linux") and not any(a.name == ROCM_ASSET_NAME for a in candidates):
        candidates.append(rocm_asset(release.version))
    return candidates

def is_asset_recommended(asset_name: str, has_amd_gpu: bool) -> bool:
    name = strip_asset_extensions(asset_name).lower()
    if has_amd_gpu and "rocm" in name:
        return True
    return (not has_amd_gpu and "rocm" not in name
            and not name.endswith("oldpc") and not name.endswith("nocuda"))

def sort_assets(assets: List[ReleaseAsset], has_amd_gpu: bool) -> List[ReleaseAsset]:
    """Recommended assets first, then by name."""
    return sorted(assets, key=lambda a: (0 if is_asset_recommended(a.name, has_amd_gpu) else 1, a.name))

def describe_asset(asset_name: str) -> str:
    name = strip_asset_extensions(asset_name).lower()
    if "rocm" in name:
        return "Optimized for AMD GPUs with ROCm support."
    if name.endswith("oldpc"):
        return "Meant for old PCs that cannot normally run the standard build."
    if name.endswith("nocuda"):
        return "Standard build with NVIDIA CUDA removed for minimal file size."
    return "Standard build that's ideal for most cases."
