"""Consumer-side sync executor."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .manifest import Entry, Manifest, ManifestStore, atomic_write_bytes, parse_manifest
from .protocol import ChangeSet, compute_change_set
from .remote import (
    DEFAULT_BACKOFF,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    NetworkError,
    RemoteFetcher,
)

logger = logging.getLogger("vcsync.sync.client")

ConfirmCallback = Callable[[ChangeSet], bool]
ProgressCallback = Callable[[str, int, int], None]


class SyncState(str, Enum):
    """States visited by :meth:`SyncExecutor.run`."""

    IDLE = "idle"
    FETCH_MANIFEST = "fetch_manifest"
    DIFF = "diff"
    NOTHING_TO_DO = "nothing_to_do"
    AWAIT_CONFIRM = "await_confirm"
    DENIED = "denied"
    DOWNLOADING = "downloading"
    ABORTED = "aborted"
    COMMITTING = "committing"
    DONE = "done"


@dataclass
class SyncSettings:
    """Settings for the consumer side."""

    base_url: str = ""
    manifest_path: str = ".vcsync/manifest.json"
    local_manifest_path: str = ".vcsync/local_manifest.json"
    temp_manifest_path: str = ".vcsync/remote_manifest.tmp.json"
    timeout: float = DEFAULT_TIMEOUT
    retries: int = DEFAULT_RETRIES
    backoff: float = DEFAULT_BACKOFF
    max_workers: int = 4

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        raw = config.get("update", {}) if config else {}
        return cls(
            base_url=str(raw.get("base_url", "")),
            manifest_path=str(raw.get("manifest_path", ".vcsync/manifest.json")),
            local_manifest_path=str(raw.get("local_manifest_path", ".vcsync/local_manifest.json")),
            temp_manifest_path=str(raw.get("temp_manifest_path", ".vcsync/remote_manifest.tmp.json")),
            timeout=float(raw.get("timeout", DEFAULT_TIMEOUT)),
            retries=int(raw.get("retries", DEFAULT_RETRIES)),
            backoff=float(raw.get("backoff", DEFAULT_BACKOFF)),
            max_workers=max(1, int(raw.get("max_workers", 4))),
        )


@dataclass
class SyncResult:
    """Result of a sync run."""

    state: SyncState
    history: List[SyncState] = field(default_factory=list)
    change_set: Optional[ChangeSet] = None
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    message: str = ""

    @property
    def success(self) -> bool:
        return self.state is SyncState.DONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "change_set": self.change_set.to_dict() if self.change_set else None,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "failed": self.failed,
            "message": self.message,
        }


@dataclass
class _Session:
    """Resources owned by one sync run."""

    temp_manifest: Path
    remote_raw: bytes = b""


class SyncExecutor:
    """Brings a local tree up to date with a published manifest.

    The local manifest and the tracked files are only touched once every
    file in the download set has been fetched. Any failure before that
    point leaves local state exactly as it was, so a run can simply be
    repeated.

    Args:
        root_dir: Local project root.
        settings: Consumer settings.
        fetcher: Source of the remote manifest and file bytes.
        confirm: Asked before mutating anything unless the run is forced.
        progress_callback: Receives ``(message, current, total)``.
    """

    def __init__(
        self,
        root_dir: Path,
        settings: SyncSettings,
        fetcher: RemoteFetcher,
        confirm: Optional[ConfirmCallback] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.root_dir = Path(root_dir)
        self.settings = settings
        self.fetcher = fetcher
        self.confirm = confirm
        self.progress_callback = progress_callback
        self.local_store = ManifestStore(self.root_dir / settings.local_manifest_path)

    def run(self, full_resync: bool = False, force: bool = False) -> SyncResult:
        """Execute one sync session.

        ``NetworkError`` for the manifest, ``ParseError`` and ``OSError``
        propagate; per-file fetch failures end in ``ABORTED`` instead.
        """
        result = SyncResult(state=SyncState.IDLE, history=[SyncState.IDLE])

        with self._session() as session:
            self._transition(result, SyncState.FETCH_MANIFEST)
            session.remote_raw = self.fetcher.fetch_manifest()
            atomic_write_bytes(session.temp_manifest, session.remote_raw)
            remote_manifest = parse_manifest(session.remote_raw, source="remote manifest")
            # A full resync never reads the local manifest, so it also
            # recovers a consumer whose local manifest no longer parses.
            local_manifest = Manifest() if full_resync else self.local_store.load()

            self._transition(result, SyncState.DIFF)
            changes = compute_change_set(local_manifest, remote_manifest, full_resync)
            result.change_set = changes
            logger.info("Change set (%d changes): %s", changes.total_changes, changes.summary())

            if changes.is_empty:
                self._transition(result, SyncState.NOTHING_TO_DO)
                return self._finish(result, SyncState.DONE, "Everything up to date")

            if not (force or full_resync):
                self._transition(result, SyncState.AWAIT_CONFIRM)
                if not self._ask(changes):
                    self._transition(result, SyncState.DENIED)
                    return self._finish(result, SyncState.DONE, "Update declined; nothing changed")

            self._transition(result, SyncState.DOWNLOADING)
            downloaded, failed = self._download(changes.download_set)
            if failed:
                result.failed = failed
                return self._finish(
                    result,
                    SyncState.ABORTED,
                    f"{len(failed)} of {len(changes.download_set)} downloads failed; nothing was changed",
                )

            self._transition(result, SyncState.COMMITTING)
            self._commit(changes, downloaded, session, result)
            return self._finish(result, SyncState.DONE, f"Applied {changes.summary()}")

    @contextmanager
    def _session(self) -> Iterator[_Session]:
        session = _Session(temp_manifest=self.root_dir / self.settings.temp_manifest_path)
        try:
            yield session
        finally:
            try:
                session.temp_manifest.unlink()
            except FileNotFoundError:
                pass

    def _ask(self, changes: ChangeSet) -> bool:
        if self.confirm is None:
            logger.info("No confirmation callback configured; treating as declined")
            return False
        return bool(self.confirm(changes))

    def _download(self, entries: List[Entry]) -> Tuple[Dict[str, bytes], Dict[str, str]]:
        """Fetch every entry, recording each outcome independently by path."""
        downloaded: Dict[str, bytes] = {}
        failed: Dict[str, str] = {}
        total = len(entries)
        if not total:
            return downloaded, failed

        workers = min(self.settings.max_workers, total)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                entry.full_path: executor.submit(self.fetcher.fetch_file, entry.full_path)
                for entry in entries
            }
            for index, (path, future) in enumerate(futures.items(), start=1):
                try:
                    downloaded[path] = future.result()
                except NetworkError as e:
                    failed[path] = e.reason
                    logger.error("Failed to download %s: %s", path, e.reason)
                except Exception as e:
                    failed[path] = str(e) or type(e).__name__
                    logger.exception("Unexpected error downloading %s", path)
                self._report_progress(f"Downloaded {path}", index, total)

        return downloaded, failed

    def _commit(
        self,
        changes: ChangeSet,
        downloaded: Dict[str, bytes],
        session: _Session,
        result: SyncResult,
    ) -> None:
        for entry in changes.delete_set:
            target = self.root_dir / entry.full_path
            try:
                target.unlink()
                logger.info("Deleted %s", entry.full_path)
            except FileNotFoundError:
                logger.debug("Already absent: %s", entry.full_path)
            result.deleted.append(entry.full_path)

        for entry in changes.to_create:
            atomic_write_bytes(self.root_dir / entry.full_path, downloaded[entry.full_path])
            result.created.append(entry.full_path)
        for entry in changes.to_update:
            atomic_write_bytes(self.root_dir / entry.full_path, downloaded[entry.full_path])
            result.updated.append(entry.full_path)

        self.local_store.commit_raw(session.remote_raw)
        logger.info("Local manifest replaced with remote snapshot")

    def _transition(self, result: SyncResult, state: SyncState) -> None:
        logger.debug("Sync state %s -> %s", result.state.value, state.value)
        result.state = state
        result.history.append(state)

    def _finish(self, result: SyncResult, state: SyncState, message: str) -> SyncResult:
        self._transition(result, state)
        result.message = message
        logger.info("Sync finished (%s): %s", state.value, message)
        return result

    def _report_progress(self, message: str, current: int, total: int) -> None:
        if self.progress_callback:
            self.progress_callback(message, current, total)
        logger.debug("Sync progress: %s (%d/%d)", message, current, total)


__all__ = ["SyncExecutor", "SyncResult", "SyncSettings", "SyncState"]
