"""Publisher-side manifest builder."""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .manifest import (
    Entry,
    Manifest,
    ManifestStore,
    compute_file_fingerprint,
    is_safe_relative_path,
)

logger = logging.getLogger("vcsync.sync.builder")

DEFAULT_MANIFEST_PATH = ".vcsync/manifest.json"
_GLOB_CHARS = set("*?[")


@dataclass
class CacheSettings:
    """What the publisher tracks and where the manifest is written."""

    tracked_dirs: Tuple[str, ...] = ()
    blacklist: Tuple[str, ...] = ()
    manifest_path: str = DEFAULT_MANIFEST_PATH

    def __post_init__(self) -> None:
        self.tracked_dirs = tuple(_tracked_dir(d) for d in self.tracked_dirs)
        self.blacklist = tuple(normalize_path(p) for p in self.blacklist)
        self.manifest_path = normalize_path(self.manifest_path)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "CacheSettings":
        raw = config.get("cache", {}) if config else {}
        return cls(
            tracked_dirs=tuple(raw.get("tracked_dirs", [])),
            blacklist=tuple(raw.get("blacklist", [])),
            manifest_path=str(raw.get("manifest_path", DEFAULT_MANIFEST_PATH)),
        )


@dataclass
class BuildReport:
    """Outcome of one builder run."""

    manifest: Manifest
    created: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.created or self.modified or self.removed)

    def summary(self) -> str:
        parts = []
        if self.created:
            parts.append(f"{len(self.created)} created")
        if self.modified:
            parts.append(f"{len(self.modified)} modified")
        if self.removed:
            parts.append(f"{len(self.removed)} removed")
        return ", ".join(parts) if parts else "no changes"


class CacheBuilder:
    """Scans tracked directories and rebuilds the manifest.

    Each tracked directory is scanned shallowly. The resulting manifest
    replaces the previous one wholesale, so files that disappeared from a
    tracked directory drop out of it.
    """

    def __init__(self, root_dir: Path, settings: CacheSettings):
        self.root_dir = Path(root_dir)
        self.settings = settings
        self.store = ManifestStore(self.root_dir / settings.manifest_path)
        self._exact_blacklist = {p for p in settings.blacklist if not _GLOB_CHARS & set(p)}
        self._pattern_blacklist = [p for p in settings.blacklist if _GLOB_CHARS & set(p)]

    def build(self) -> BuildReport:
        """Rebuild and persist the manifest, returning what changed."""
        if not self.root_dir.is_dir():
            raise NotADirectoryError(f"Project root '{self.root_dir}' is not a directory")

        previous = self.store.load()
        report = BuildReport(manifest=Manifest())

        # Everything is read before the manifest is written; an OSError here
        # leaves the previous manifest on disk untouched.
        for dir_name, file_path in self._iter_files():
            full_path = f"{dir_name}/{file_path.name}"
            fingerprint = compute_file_fingerprint(file_path)
            entry = self._next_entry(previous.get(full_path), dir_name, file_path.name, fingerprint, report)
            report.manifest.add(entry)

        report.removed = [p for p in previous.paths() if p not in report.manifest]
        self.store.save(report.manifest)
        logger.info(
            "Built manifest with %d files (%s)", len(report.manifest), report.summary()
        )
        return report

    def _next_entry(
        self,
        old: Optional[Entry],
        dir_name: str,
        file_name: str,
        fingerprint: str,
        report: BuildReport,
    ) -> Entry:
        full_path = f"{dir_name}/{file_name}"
        if old is None:
            report.created.append(full_path)
            return Entry(dir=dir_name, file=file_name, full_path=full_path, fingerprint=fingerprint)
        if old.fingerprint == fingerprint:
            return old
        report.modified.append(full_path)
        return Entry(
            dir=dir_name,
            file=file_name,
            full_path=full_path,
            fingerprint=fingerprint,
            version=old.version + 1,
        )

    def _iter_files(self) -> Iterator[Tuple[str, Path]]:
        """Yield ``(tracked_dir, file_path)`` for every trackable direct child."""
        for dir_name in self.settings.tracked_dirs:
            dir_path = self.root_dir / dir_name
            if not dir_path.exists():
                logger.info("Tracked directory %s does not exist; creating it", dir_name)
                dir_path.mkdir(parents=True, exist_ok=True)
                continue

            for file_path in sorted(dir_path.iterdir(), key=lambda p: p.name):
                if not file_path.is_file():
                    continue
                full_path = f"{dir_name}/{file_path.name}"
                if not is_safe_relative_path(full_path):
                    logger.warning("Skipping %s: name cannot be published as a manifest path", full_path)
                    continue
                if full_path == self.settings.manifest_path or self._is_blacklisted(full_path):
                    logger.debug("Skipping %s", full_path)
                    continue
                yield dir_name, file_path

    def _is_blacklisted(self, full_path: str) -> bool:
        if full_path in self._exact_blacklist:
            return True
        return any(fnmatch.fnmatchcase(full_path, pattern) for pattern in self._pattern_blacklist)


def normalize_path(raw: Any) -> str:
    """Return ``raw`` as a forward-slash path without empty or ``.`` segments."""
    parts = PurePosixPath(str(raw).replace("\\", "/")).parts
    return "/".join(part for part in parts if part not in ("/", "//", "."))


def _tracked_dir(raw: Any) -> str:
    text = str(raw).replace("\\", "/")
    dir_name = normalize_path(text)
    if text.startswith("/") or not is_safe_relative_path(dir_name):
        raise ValueError(f"Tracked directory {raw!r} must be a subdirectory of the project root")
    return dir_name


__all__ = ["BuildReport", "CacheBuilder", "CacheSettings", "DEFAULT_MANIFEST_PATH"]
