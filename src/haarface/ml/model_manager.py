"""Cascade manager: download, parse, cache, and evict cascade models.

Handles downloading the stock OpenCV face cascades, honoring a local
cascade file override, caching parsed ``CascadeModel`` instances, and
TTL-based eviction of unused models.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from haarface.ml.cascade import load_cascade
from haarface.ml.errors import InvalidCascadeError

if TYPE_CHECKING:
    from haarface.config import Settings
    from haarface.ml.cascade import CascadeModel

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS: float = 30.0

_OPENCV_CASCADES_URL = "https://raw.githubusercontent.com/opencv/opencv/4.x/data/haarcascades"
_OPENCV_LICENSE = "Intel License Agreement (BSD-style)"


# ---------------------------------------------------------------------------
# Cascade registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CascadeSpec:
    """Static metadata for a downloadable cascade definition."""

    name: str
    url: str
    filename: str
    license: str


def _opencv_cascade(name: str, filename: str) -> CascadeSpec:
    return CascadeSpec(
        name=name,
        url=f"{_OPENCV_CASCADES_URL}/{filename}",
        filename=filename,
        license=_OPENCV_LICENSE,
    )


CASCADE_REGISTRY: dict[str, CascadeSpec] = {
    "frontalface_default": _opencv_cascade("frontalface_default", "haarcascade_frontalface_default.xml"),
    "frontalface_alt": _opencv_cascade("frontalface_alt", "haarcascade_frontalface_alt.xml"),
    "frontalface_alt2": _opencv_cascade("frontalface_alt2", "haarcascade_frontalface_alt2.xml"),
    "profileface": _opencv_cascade("profileface", "haarcascade_profileface.xml"),
}


@dataclass
class _CachedCascade:
    model: CascadeModel
    last_used: float


class CascadeManager:
    """Downloads, parses, caches, and evicts cascade models."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._cascades_dir = Path(settings.cascades_dir)

        self._lock = threading.Lock()
        self._cascades: dict[str, _CachedCascade] = {}
        self._cascade_paths: dict[str, Path] = {}
        self._download_locks: dict[str, threading.Lock] = {}

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, name: str) -> Path:
        """Return a local path for the cascade, downloading it if needed.

        The configured ``cascade_file`` replaces the file of the active
        cascade without any download.
        """
        override = self._settings.cascade_file
        if override is not None and name == self._settings.cascade_name:
            return Path(override)

        spec = self._get_spec(name)

        cached = self._cascade_paths.get(name)
        if cached is not None and cached.exists():
            return cached

        target = self._cascades_dir / spec.filename
        # One download per name; later callers find the finished file.
        with self._download_lock(name):
            if not target.exists():
                self._download(spec, target)
        self._cascade_paths[name] = target
        return target

    def get_cascade(self, name: str | None = None) -> CascadeModel:
        """Return a cached cascade model, loading it if needed.

        Args:
            name: Registry name; defaults to the configured ``cascade_name``.
        """
        name = name or self._settings.cascade_name
        self.unload_idle_cascades()

        with self._lock:
            cached = self._cascades.get(name)
            if cached is not None:
                cached.last_used = time.monotonic()
                return cached.model

        model = load_cascade(self.ensure_downloaded(name))

        with self._lock:
            # Another thread may have loaded it meanwhile.
            existing = self._cascades.get(name)
            if existing is not None:
                existing.last_used = time.monotonic()
                return existing.model
            self._cascades[name] = _CachedCascade(model=model, last_used=time.monotonic())
            logger.info("Cached cascade %s", name)
            return model

    def get_loaded_cascades(self) -> list[str]:
        """Return names of cascades currently held in memory."""
        with self._lock:
            return list(self._cascades.keys())

    def is_downloaded(self, name: str) -> bool:
        spec = self._get_spec(name)
        return (self._cascades_dir / spec.filename).exists()

    def unload_idle_cascades(self) -> None:
        """Drop cascades that have not been used within the configured TTL."""
        ttl = self._settings.cascade_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [name for name, cached in self._cascades.items() if (now - cached.last_used) > ttl]
            for name in expired:
                del self._cascades[name]
                logger.info("Evicted idle cascade %s", name)

    def shutdown(self) -> None:
        """Clear all cached cascades."""
        with self._lock:
            self._cascades.clear()
            logger.info("All cascades cleared")

    # -- Internal -----------------------------------------------------------

    def _download_lock(self, name: str) -> threading.Lock:
        with self._lock:
            return self._download_locks.setdefault(name, threading.Lock())

    @staticmethod
    def _get_spec(name: str) -> CascadeSpec:
        try:
            return CASCADE_REGISTRY[name]
        except KeyError:
            raise KeyError(f"Unknown cascade: {name}") from None

    @staticmethod
    def _download(spec: CascadeSpec, target: Path) -> None:
        try:
            response = httpx.get(spec.url, follow_redirects=True, timeout=DOWNLOAD_TIMEOUT_SECONDS)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise InvalidCascadeError(f"Cannot download cascade {spec.name}: {exc}") from exc

        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_suffix(target.suffix + ".part")
        partial.write_bytes(response.content)
        partial.replace(target)
        logger.info("Downloaded %s to %s", spec.name, target)
