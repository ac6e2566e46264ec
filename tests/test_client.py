"""Tests for the sync executor state machine."""

from __future__ import annotations

import http.client
import json
import threading
from pathlib import Path
from typing import Dict, Iterable, Optional

import pytest

from vcsync.sync.client import SyncExecutor, SyncSettings, SyncState
from vcsync.sync.manifest import Entry, ParseError, compute_fingerprint
from vcsync.sync.remote import HttpFetcher, NetworkError

LOCAL_MANIFEST = ".vcsync/local_manifest.json"
TEMP_MANIFEST = ".vcsync/remote_manifest.tmp.json"


class FakeFetcher:
    """In-memory stand-in for the remote."""

    def __init__(self, files: Dict[str, bytes], versions: Optional[Dict[str, int]] = None, fail=()):
        self.files = dict(files)
        self.versions = dict(versions or {})
        self.fail = set(fail)
        self.fetched = []
        self.manifest_error: Optional[Exception] = None
        self.raw_manifest: Optional[bytes] = None
        self._lock = threading.Lock()

    def manifest_bytes(self) -> bytes:
        if self.raw_manifest is not None:
            return self.raw_manifest
        data = {}
        for path, content in self.files.items():
            dir_name, _, file_name = path.rpartition("/")
            data[path] = Entry(
                dir=dir_name,
                file=file_name,
                full_path=path,
                fingerprint=compute_fingerprint(content),
                version=self.versions.get(path, 0),
            ).to_dict()
        return json.dumps(data, indent=2).encode("utf-8")

    def fetch_manifest(self) -> bytes:
        if self.manifest_error is not None:
            raise self.manifest_error
        return self.manifest_bytes()

    def fetch_file(self, relative_path: str) -> bytes:
        with self._lock:
            self.fetched.append(relative_path)
        if relative_path in self.fail:
            raise NetworkError(f"http://example.test/{relative_path}", "HTTP 500", status=500)
        return self.files[relative_path]


class ScriptedConfirm:
    def __init__(self, *answers: bool):
        self.answers = list(answers)
        self.calls = []

    def __call__(self, changes) -> bool:
        self.calls.append(changes)
        return self.answers.pop(0)


def _never_confirm(_changes) -> bool:
    raise AssertionError("confirmation should have been skipped")


class _Body:
    def __init__(self, data: bytes, truncated: bool):
        self.data = data
        self.truncated = truncated
        self.status = 200

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self) -> bytes:
        if self.truncated:
            raise http.client.IncompleteRead(self.data[:3], len(self.data) - 3)
        return self.data


class DroppingOpener:
    """Serves published bytes but cuts the connection on some paths."""

    def __init__(self, base_url: str, payloads: Dict[str, bytes], truncated: Iterable[str]):
        self.base_url = base_url
        self.payloads = payloads
        self.truncated = set(truncated)

    def __call__(self, request, timeout=None):
        path = request.full_url[len(self.base_url):]
        return _Body(self.payloads[path], path in self.truncated)


def _executor(root: Path, fetcher: FakeFetcher, confirm=None, **kwargs) -> SyncExecutor:
    settings = SyncSettings(base_url="http://example.test/", max_workers=kwargs.pop("max_workers", 4))
    return SyncExecutor(root, settings, fetcher, confirm=confirm, **kwargs)


def _snapshot(root: Path, paths: Iterable[str]) -> Dict[str, Optional[bytes]]:
    return {p: (root / p).read_bytes() if (root / p).exists() else None for p in paths}


def test_first_sync_downloads_everything_and_commits_remote_manifest(tmp_path: Path):
    fetcher = FakeFetcher({"src/Fruits/Banana": b"yellow", "src/Grains/Rice": b"white"})
    confirm = ScriptedConfirm(True)

    result = _executor(tmp_path, fetcher, confirm).run()

    assert result.success
    assert result.history == [
        SyncState.IDLE,
        SyncState.FETCH_MANIFEST,
        SyncState.DIFF,
        SyncState.AWAIT_CONFIRM,
        SyncState.DOWNLOADING,
        SyncState.COMMITTING,
        SyncState.DONE,
    ]
    assert sorted(result.created) == ["src/Fruits/Banana", "src/Grains/Rice"]
    assert (tmp_path / "src/Fruits/Banana").read_bytes() == b"yellow"
    assert (tmp_path / LOCAL_MANIFEST).read_bytes() == fetcher.manifest_bytes()
    assert not (tmp_path / TEMP_MANIFEST).exists()
    assert len(confirm.calls) == 1


def test_second_sync_against_same_remote_is_a_no_op(tmp_path: Path):
    fetcher = FakeFetcher({"src/a": b"1", "src/b": b"2"})
    _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()
    fetcher.fetched.clear()

    result = _executor(tmp_path, fetcher, _never_confirm).run()

    assert result.success
    assert SyncState.NOTHING_TO_DO in result.history
    assert result.change_set.is_empty
    assert fetcher.fetched == []


def test_updates_and_deletes_are_applied(tmp_path: Path):
    fetcher = FakeFetcher({"src/a": b"one", "src/c": b"gone soon"})
    _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()

    fetcher.files = {"src/a": b"two", "src/b": b"new"}
    fetcher.versions = {"src/a": 1}
    result = _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()

    assert result.success
    assert result.updated == ["src/a"]
    assert result.created == ["src/b"]
    assert result.deleted == ["src/c"]
    assert (tmp_path / "src/a").read_bytes() == b"two"
    assert not (tmp_path / "src/c").exists()


def test_missing_file_at_delete_time_is_not_an_error(tmp_path: Path):
    fetcher = FakeFetcher({"src/a": b"one", "src/c": b"three"})
    _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()
    (tmp_path / "src/c").unlink()

    fetcher.files = {"src/a": b"one"}
    result = _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()

    assert result.success
    assert result.deleted == ["src/c"]


def test_declining_leaves_everything_untouched(tmp_path: Path):
    fetcher = FakeFetcher({"src/a": b"one", "src/c": b"three"})
    _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()
    manifest_before = (tmp_path / LOCAL_MANIFEST).read_bytes()

    fetcher.files = {"src/a": b"two"}
    fetcher.versions = {"src/a": 1}
    fetcher.fetched.clear()
    result = _executor(tmp_path, fetcher, ScriptedConfirm(False)).run()

    assert result.state is SyncState.DONE
    assert SyncState.DENIED in result.history
    assert fetcher.fetched == []
    assert (tmp_path / LOCAL_MANIFEST).read_bytes() == manifest_before
    assert (tmp_path / "src/a").read_bytes() == b"one"
    assert (tmp_path / "src/c").exists()
    assert not (tmp_path / TEMP_MANIFEST).exists()


def test_any_failed_download_aborts_without_mutation(tmp_path: Path):
    fetcher = FakeFetcher({"src/a": b"one", "src/c": b"three"})
    _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()
    manifest_before = (tmp_path / LOCAL_MANIFEST).read_bytes()
    tracked = ["src/a", "src/b", "src/c", "src/d"]
    files_before = _snapshot(tmp_path, tracked)

    fetcher.files = {"src/a": b"two", "src/b": b"bee", "src/d": b"dee"}
    fetcher.versions = {"src/a": 1}
    fetcher.fail = {"src/b"}
    fetcher.fetched.clear()
    result = _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()

    assert result.state is SyncState.ABORTED
    assert not result.success
    assert list(result.failed) == ["src/b"]
    assert sorted(fetcher.fetched) == ["src/a", "src/b", "src/d"]
    assert (tmp_path / LOCAL_MANIFEST).read_bytes() == manifest_before
    assert _snapshot(tmp_path, tracked) == files_before
    assert not (tmp_path / TEMP_MANIFEST).exists()

    fetcher.fail = set()
    retry = _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()
    assert retry.success
    assert retry.change_set.to_dict() == result.change_set.to_dict()


def test_dropped_connection_is_recorded_against_its_path(tmp_path: Path):
    publisher = FakeFetcher({"src/a": b"apple", "src/b": b"banana bread"})
    payloads = dict(publisher.files)
    payloads[".vcsync/manifest.json"] = publisher.manifest_bytes()
    base_url = "http://example.test/"
    fetcher = HttpFetcher(
        base_url,
        ".vcsync/manifest.json",
        retries=0,
        opener=DroppingOpener(base_url, payloads, truncated=["src/b"]),
    )

    result = SyncExecutor(tmp_path, SyncSettings(base_url=base_url), fetcher).run(force=True)

    assert result.state is SyncState.ABORTED
    assert list(result.failed) == ["src/b"]
    assert not (tmp_path / "src/a").exists()
    assert json.loads((tmp_path / LOCAL_MANIFEST).read_text(encoding="utf-8")) == {}


def test_unexpected_fetcher_errors_are_recorded_against_their_path(tmp_path: Path):
    class BrokenFetcher(FakeFetcher):
        def fetch_file(self, relative_path: str) -> bytes:
            if relative_path == "src/b":
                raise RuntimeError("decoder exploded")
            return super().fetch_file(relative_path)

    fetcher = BrokenFetcher({"src/a": b"one", "src/b": b"two"})

    result = _executor(tmp_path, fetcher).run(force=True)

    assert result.state is SyncState.ABORTED
    assert result.failed == {"src/b": "decoder exploded"}
    assert not (tmp_path / "src/a").exists()


@pytest.mark.parametrize("max_workers", [1, 3, 8])
def test_failure_partition_does_not_depend_on_concurrency(tmp_path: Path, max_workers: int):
    files = {f"src/f{i:02d}": str(i).encode() for i in range(20)}
    fetcher = FakeFetcher(files, fail={"src/f03", "src/f11", "src/f19"})

    result = _executor(tmp_path, fetcher, ScriptedConfirm(True), max_workers=max_workers).run()

    assert result.state is SyncState.ABORTED
    assert set(result.failed) == {"src/f03", "src/f11", "src/f19"}
    assert len(fetcher.fetched) == 20
    assert not any((tmp_path / p).exists() for p in files)


def test_force_skips_confirmation(tmp_path: Path):
    fetcher = FakeFetcher({"src/a": b"one"})

    result = _executor(tmp_path, fetcher, _never_confirm).run(force=True)

    assert result.success
    assert SyncState.AWAIT_CONFIRM not in result.history


def test_full_resync_redownloads_and_ignores_local_manifest(tmp_path: Path):
    fetcher = FakeFetcher({"src/a": b"one"})
    _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()
    (tmp_path / "src/a").write_bytes(b"locally edited")
    (tmp_path / LOCAL_MANIFEST).write_text("{ corrupted", encoding="utf-8")
    (tmp_path / "src/extra").write_bytes(b"untracked")

    result = _executor(tmp_path, fetcher, _never_confirm).run(full_resync=True)

    assert result.success
    assert result.created == ["src/a"]
    assert result.change_set.to_delete == []
    assert (tmp_path / "src/a").read_bytes() == b"one"
    assert (tmp_path / "src/extra").exists()
    assert (tmp_path / LOCAL_MANIFEST).read_bytes() == fetcher.manifest_bytes()


def test_manifest_fetch_failure_is_fatal(tmp_path: Path):
    fetcher = FakeFetcher({"src/a": b"one"})
    fetcher.manifest_error = NetworkError("http://example.test/.vcsync/manifest.json", "HTTP 404", status=404)

    with pytest.raises(NetworkError):
        _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()

    assert not (tmp_path / LOCAL_MANIFEST).exists()
    assert not (tmp_path / TEMP_MANIFEST).exists()


def test_invalid_remote_manifest_is_fatal(tmp_path: Path):
    fetcher = FakeFetcher({})
    fetcher.raw_manifest = b'{"src/a": {"dir": "src"}}'

    with pytest.raises(ParseError):
        _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()

    assert not (tmp_path / TEMP_MANIFEST).exists()


def test_corrupt_local_manifest_is_fatal_without_refresh(tmp_path: Path):
    (tmp_path / ".vcsync").mkdir()
    (tmp_path / LOCAL_MANIFEST).write_text("garbage", encoding="utf-8")
    fetcher = FakeFetcher({"src/a": b"one"})

    with pytest.raises(ParseError):
        _executor(tmp_path, fetcher, ScriptedConfirm(True)).run()

    assert (tmp_path / LOCAL_MANIFEST).read_text(encoding="utf-8") == "garbage"


def test_progress_is_reported_for_each_download(tmp_path: Path):
    fetcher = FakeFetcher({"src/a": b"1", "src/b": b"2", "src/c": b"3"})
    calls = []

    _executor(
        tmp_path,
        fetcher,
        progress_callback=lambda msg, cur, total: calls.append((cur, total)),
    ).run(force=True)

    assert calls == [(1, 3), (2, 3), (3, 3)]


def test_settings_from_config():
    settings = SyncSettings.from_config(
        {"update": {"base_url": "https://example.test/", "timeout": 5, "max_workers": 0}}
    )

    assert settings.base_url == "https://example.test/"
    assert settings.timeout == 5.0
    assert settings.max_workers == 1
    assert settings.local_manifest_path == LOCAL_MANIFEST
