"""
Snapshot merge -- reconcile local and remote without losing data.

Every keyed map is the union of both sides' keys. For a key present on
both sides the winner is the maximum under a per-section total order:

    items, themes, presets, collections, annotations, settings
        Last writer wins: greater ``updated_at``. On an exact tie a
        tombstone beats a live record, and any remaining tie is settled
        by canonical JSON order.

    positions
        Furthest progress wins: chapter, then block, then character
        offset, then ``updated_at``. A cleared position (tombstone)
        beats any live one, so a deleted document cannot come back
        through a stale device.

Archive items additionally keep the highest ``progress`` seen on
either side, whichever record wins otherwise.

Each winner is a maximum and progress is a running max, so merge is
commutative, associative and idempotent. A retry after a partial
failure can never make things worse.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

from .errors import ConflictError
from .models import (
    ArchiveItemRecord,
    PositionRecord,
    Record,
    Snapshot,
    schema_major,
)

logger = logging.getLogger("flowsync.merge")

MERGED_SECTIONS = (
    "items",
    "positions",
    "custom_themes",
    "presets",
    "collections",
    "annotations",
)

R = TypeVar("R", bound=Record)


@dataclass
class MergeConflict:
    """A key that both sides changed, and which side won.

    ``winner`` is "local", "remote", or "merged" when the result mixes
    both sides.
    """

    section: str
    key: str
    winner: str


@dataclass
class MergeReport:
    """Merged snapshot plus the conflicts resolved along the way."""

    merged: Snapshot
    conflicts: list[MergeConflict] = field(default_factory=list)


def _canonical(record: Record, exclude: Optional[set[str]] = None) -> str:
    return json.dumps(
        record.model_dump(mode="json", exclude=exclude),
        sort_keys=True,
        separators=(",", ":"),
    )


def _order_key(record: Record) -> tuple[Any, ...]:
    return (record.updated_at, record.tombstone, _canonical(record))


def _position_key(record: PositionRecord) -> tuple[Any, ...]:
    return (
        record.tombstone,
        record.chapter_index or 0,
        record.block_index,
        record.char_offset,
        record.updated_at,
        _canonical(record),
    )


def pick_winner(local: R, remote: R) -> R:
    """Return whichever record wins under last-writer-wins."""
    return remote if _order_key(remote) > _order_key(local) else local


def pick_position(local: PositionRecord, remote: PositionRecord) -> PositionRecord:
    """Return the position further into the document."""
    return remote if _position_key(remote) > _position_key(local) else local


def _further_progress(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _item_key(record: ArchiveItemRecord) -> tuple[Any, ...]:
    # progress is merged separately and must not decide the winner
    return (
        record.updated_at,
        record.tombstone,
        _canonical(record, exclude={"progress"}),
    )


def pick_item(
    local: ArchiveItemRecord, remote: ArchiveItemRecord
) -> ArchiveItemRecord:
    """Last writer wins, carrying the furthest progress of either side."""
    winner = remote if _item_key(remote) > _item_key(local) else local
    progress = _further_progress(local.progress, remote.progress)
    if progress != winner.progress:
        winner = winner.model_copy(update={"progress": progress})
    return winner


_PICKERS: dict[str, Callable[[Any, Any], Any]] = {
    "items": pick_item,
    "positions": pick_position,
}


def _side(winner: Record, ours: Record, theirs: Record) -> str:
    if winner == ours:
        return "local"
    if winner == theirs:
        return "remote"
    return "merged"


def _merge_map(
    section: str,
    local: dict[str, R],
    remote: dict[str, R],
    conflicts: list[MergeConflict],
) -> dict[str, R]:
    pick = _PICKERS.get(section, pick_winner)
    merged: dict[str, R] = {}
    for key in sorted(set(local) | set(remote)):
        ours = local.get(key)
        theirs = remote.get(key)
        if ours is None:
            merged[key] = theirs
        elif theirs is None:
            merged[key] = ours
        else:
            winner = pick(ours, theirs)
            merged[key] = winner
            if ours != theirs:
                conflicts.append(MergeConflict(
                    section=section,
                    key=key,
                    winner=_side(winner, ours, theirs),
                ))
    return merged


def merge_with_report(local: Snapshot, remote: Snapshot) -> MergeReport:
    """Merge two snapshots and report conflicting keys.

    Args:
        local: Snapshot read from this device.
        remote: Snapshot decoded from the remote store.

    Returns:
        MergeReport with the merged snapshot.

    Raises:
        ConflictError: If the schema major versions differ.
    """
    local_major = schema_major(local.schema_version)
    remote_major = schema_major(remote.schema_version)
    if local_major != remote_major:
        raise ConflictError(
            f"Cannot merge snapshots with schema versions "
            f"{local.schema_version} and {remote.schema_version}. "
            "Update FlowReader on every device."
        )

    conflicts: list[MergeConflict] = []
    newer = max(
        (local, remote), key=lambda s: (s.updated_at, s.device_id)
    )

    update = {
        section: _merge_map(
            section, getattr(local, section), getattr(remote, section), conflicts
        )
        for section in MERGED_SECTIONS
    }

    settings = pick_winner(local.settings, remote.settings)
    if local.settings != remote.settings:
        conflicts.append(MergeConflict(
            section="settings",
            key="settings",
            winner="remote" if settings is remote.settings else "local",
        ))
    update["settings"] = settings
    update["schema_version"] = max(local.schema_version, remote.schema_version)

    merged = newer.model_copy(update=update)
    if conflicts:
        logger.debug("Resolved %d merge conflicts", len(conflicts))
    return MergeReport(merged=merged, conflicts=conflicts)


class SnapshotMerger:
    """Stateless merger; a class so it can be swapped in tests."""

    def merge(self, local: Snapshot, remote: Snapshot) -> Snapshot:
        """Merge two snapshots. See module docstring for the rules."""
        return merge_with_report(local, remote).merged

    def merge_with_report(self, local: Snapshot, remote: Snapshot) -> MergeReport:
        """Merge two snapshots and return the conflicts as well."""
        return merge_with_report(local, remote)
