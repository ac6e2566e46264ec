"""Change-set computation between a local and a remote manifest."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .manifest import Entry, Manifest


@dataclass
class ChangeSet:
    """Entries to create, update and delete locally.

    ``to_create`` and ``to_update`` hold the remote entries; ``to_delete``
    holds the local entries whose paths the remote no longer tracks.
    """

    to_create: List[Entry] = field(default_factory=list)
    to_update: List[Entry] = field(default_factory=list)
    to_delete: List[Entry] = field(default_factory=list)

    @property
    def download_set(self) -> List[Entry]:
        return self.to_create + self.to_update

    @property
    def delete_set(self) -> List[Entry]:
        return list(self.to_delete)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)

    @property
    def total_changes(self) -> int:
        return len(self.to_create) + len(self.to_update) + len(self.to_delete)

    def summary(self) -> str:
        parts = []
        if self.to_create:
            parts.append(f"{len(self.to_create)} to create")
        if self.to_update:
            parts.append(f"{len(self.to_update)} to update")
        if self.to_delete:
            parts.append(f"{len(self.to_delete)} to delete")
        return ", ".join(parts) if parts else "no changes"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "to_create": [e.full_path for e in self.to_create],
            "to_update": [e.full_path for e in self.to_update],
            "to_delete": [e.full_path for e in self.to_delete],
        }


def compute_change_set(
    local_manifest: Manifest,
    remote_manifest: Manifest,
    full_resync: bool = False,
) -> ChangeSet:
    """Compute what has to change locally to match ``remote_manifest``.

    Only version numbers are compared; fingerprints were already compared
    when the publisher built the remote manifest. With ``full_resync`` the
    local manifest is ignored and every remote entry is created.
    """
    if full_resync:
        local_manifest = Manifest()

    changes = ChangeSet()

    for local_entry in local_manifest:
        remote_entry = remote_manifest.get(local_entry.full_path)
        if remote_entry is None:
            changes.to_delete.append(local_entry)
        elif remote_entry.version != local_entry.version:
            changes.to_update.append(remote_entry)

    for remote_entry in remote_manifest:
        if remote_entry.full_path not in local_manifest:
            changes.to_create.append(remote_entry)

    return changes


__all__ = ["ChangeSet", "compute_change_set"]
