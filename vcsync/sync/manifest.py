"""Manifest data model, fingerprinting, and on-disk persistence."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import xxhash

logger = logging.getLogger("vcsync.sync.manifest")

REQUIRED_FIELDS = ("dir", "file", "fullPath", "fingerprint", "version")
EMPTY_MANIFEST_TEXT = "{}\n"


class ParseError(Exception):
    """Raised when manifest content cannot be turned into a Manifest."""


class MissingFieldError(ParseError):
    """Raised when a manifest entry lacks one of the required fields."""

    def __init__(self, path: str, field_name: str):
        super().__init__(f"Manifest entry '{path}' is missing required field '{field_name}'")
        self.path = path
        self.field_name = field_name


def compute_fingerprint(data: bytes) -> str:
    """Return the XXH3-64 hex digest of ``data``."""
    return xxhash.xxh3_64_hexdigest(data)


def compute_file_fingerprint(file_path: Path) -> str:
    """Fingerprint a file on disk, streaming it in chunks."""
    hasher = xxhash.xxh3_64()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


@dataclass
class Entry:
    """Tracked metadata for a single file."""

    dir: str  # Tracked directory, relative to the project root
    file: str  # File name inside ``dir``
    full_path: str  # Identity key: ``dir/file`` with forward slashes
    fingerprint: str
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dir": self.dir,
            "file": self.file,
            "fullPath": self.full_path,
            "fingerprint": self.fingerprint,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, key: str, data: Any) -> "Entry":
        if not isinstance(data, dict):
            raise ParseError(f"Manifest entry '{key}' must be a JSON object")
        for name in REQUIRED_FIELDS:
            if name not in data:
                raise MissingFieldError(key, name)
        for name in ("dir", "file", "fullPath", "fingerprint"):
            if not isinstance(data[name], str):
                raise ParseError(f"Manifest entry '{key}': field '{name}' must be a string")

        version = data["version"]
        if isinstance(version, bool) or not isinstance(version, int) or version < 0:
            raise ParseError(
                f"Manifest entry '{key}': field 'version' must be a non-negative integer"
            )

        full_path = data["fullPath"]
        if full_path != key:
            raise ParseError(f"Manifest key '{key}' does not match its fullPath '{full_path}'")
        if not is_safe_relative_path(full_path):
            raise ParseError(f"Manifest entry '{key}' is not a relative path inside the project")

        return cls(
            dir=data["dir"],
            file=data["file"],
            full_path=full_path,
            fingerprint=data["fingerprint"],
            version=version,
        )


@dataclass
class Manifest:
    """Mapping of ``fullPath`` to :class:`Entry`."""

    entries: Dict[str, Entry] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, full_path: object) -> bool:
        return full_path in self.entries

    def __iter__(self) -> Iterator[Entry]:
        """Entries in ``fullPath`` order."""
        return (self.entries[path] for path in self.paths())

    def get(self, full_path: str) -> Optional[Entry]:
        return self.entries.get(full_path)

    def add(self, entry: Entry) -> None:
        self.entries[entry.full_path] = entry

    def paths(self) -> List[str]:
        return sorted(self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {path: self.entries[path].to_dict() for path in sorted(self.entries)}

    @classmethod
    def from_dict(cls, data: Any) -> "Manifest":
        if not isinstance(data, dict):
            raise ParseError("Manifest must be a JSON object")
        manifest = cls()
        for key, value in data.items():
            manifest.add(Entry.from_dict(key, value))
        return manifest


def is_safe_relative_path(path: str) -> bool:
    """Return True for normalized forward-slash paths that stay under the root."""
    if not path or "\\" in path or path.startswith("/"):
        return False
    parts = path.split("/")
    return all(part not in ("", ".", "..") for part in parts)


def parse_manifest(raw: Union[bytes, str], source: str = "<memory>") -> Manifest:
    """Parse manifest JSON text, raising :class:`ParseError` on any problem."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Manifest {source} is not valid UTF-8: {e}") from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ParseError(f"Manifest {source} is not valid JSON: {e}") from e
    return Manifest.from_dict(data)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` without ever exposing a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class ManifestStore:
    """Loads and persists a manifest file.

    Args:
        path: Location of the manifest JSON file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Manifest:
        """Load the manifest, creating an empty one if the file is missing.

        Existing content that does not parse is an error; it is never
        replaced with an empty manifest.
        """
        if not self.path.exists():
            logger.info("No manifest at %s; creating an empty one", self.path)
            atomic_write_bytes(self.path, EMPTY_MANIFEST_TEXT.encode("utf-8"))
            return Manifest()

        raw = self.path.read_bytes()
        manifest = parse_manifest(raw, source=str(self.path))
        logger.debug("Loaded manifest %s (%d entries)", self.path, len(manifest))
        return manifest

    def save(self, manifest: Manifest) -> None:
        """Overwrite the manifest file with ``manifest``."""
        text = json.dumps(manifest.to_dict(), indent=2) + "\n"
        atomic_write_bytes(self.path, text.encode("utf-8"))
        logger.debug("Saved manifest to %s (%d entries)", self.path, len(manifest))

    def commit_raw(self, raw: bytes) -> Manifest:
        """Validate ``raw`` manifest bytes and store them verbatim."""
        manifest = parse_manifest(raw, source=str(self.path))
        atomic_write_bytes(self.path, raw)
        logger.debug("Committed manifest to %s (%d entries)", self.path, len(manifest))
        return manifest


__all__ = [
    "Entry",
    "Manifest",
    "ManifestStore",
    "MissingFieldError",
    "ParseError",
    "atomic_write_bytes",
    "compute_file_fingerprint",
    "compute_fingerprint",
    "is_safe_relative_path",
    "parse_manifest",
]
