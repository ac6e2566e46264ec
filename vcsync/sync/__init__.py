"""Manifest building, reconciliation, and sync execution."""

from __future__ import annotations

from .manifest import (
    Entry,
    Manifest,
    ManifestStore,
    MissingFieldError,
    ParseError,
    compute_file_fingerprint,
    compute_fingerprint,
    parse_manifest,
)
from .builder import BuildReport, CacheBuilder, CacheSettings
from .protocol import ChangeSet, compute_change_set
from .remote import HttpFetcher, NetworkError, RemoteFetcher
from .client import SyncExecutor, SyncResult, SyncSettings, SyncState

__all__ = [
    # Manifest
    "Entry",
    "Manifest",
    "ManifestStore",
    "MissingFieldError",
    "ParseError",
    "compute_file_fingerprint",
    "compute_fingerprint",
    "parse_manifest",
    # Builder
    "BuildReport",
    "CacheBuilder",
    "CacheSettings",
    # Protocol
    "ChangeSet",
    "compute_change_set",
    # Remote
    "HttpFetcher",
    "NetworkError",
    "RemoteFetcher",
    # Client
    "SyncExecutor",
    "SyncResult",
    "SyncSettings",
    "SyncState",
]
