"""
Reconciliation: compute the operations that bring two file trees in line.

Both listings are keyed by path relative to their own root, so the same
relative path on each side refers to the same logical file. Change
detection is metadata-only: modification time, then size, then checksum.

A job's baseline records, per relative path, the fingerprint of each side
right after the last successful copy. A file whose two sides still match
their baseline is settled and left alone, which keeps passes idempotent
even when a backend stamps uploads with its own time instead of the
source's. When only one side moved away from its baseline, that side wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from relay.exceptions import InvalidRequestError
from relay.models import SyncMode
from relay.providers.base import FileDescriptor
from relay.providers.paths import relative_to

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE = "delete"


class Direction(str, Enum):
    SOURCE_TO_DESTINATION = "source_to_destination"
    DESTINATION_TO_SOURCE = "destination_to_source"


@dataclass(frozen=True)
class SyncOperation:
    """
    One planned action.

    ``file`` is the entry being copied (or deleted); ``target`` is its
    existing counterpart on the receiving side, if any.
    """

    type: OperationType
    relative_path: str
    direction: Direction
    file: FileDescriptor
    target: FileDescriptor | None = None

    @property
    def is_update(self) -> bool:
        return self.target is not None


def should_update(candidate: FileDescriptor, existing: FileDescriptor) -> bool:
    """
    True if ``candidate`` should replace ``existing``.

    A strictly newer modification time wins when both sides have one;
    otherwise differing sizes mean a change; otherwise differing checksums
    (when both sides report one) do.
    """
    if candidate.modified_at is not None and existing.modified_at is not None:
        return candidate.modified_at > existing.modified_at

    if candidate.size != existing.size:
        return True

    if candidate.checksum and existing.checksum:
        return candidate.checksum != existing.checksum

    return False


def fingerprint(entry: FileDescriptor) -> list | None:
    """JSON-friendly identity of a file's current content metadata."""
    if entry.is_directory:
        return None
    modified = entry.modified_at.isoformat() if entry.modified_at is not None else None
    return [entry.size, modified, entry.checksum]


def baseline_record(source: FileDescriptor, destination: FileDescriptor) -> dict:
    return {"source": fingerprint(source), "destination": fingerprint(destination)}


def compare_to_baseline(
    source: dict[str, FileDescriptor],
    destination: dict[str, FileDescriptor],
    baseline: dict | None,
) -> tuple[set[str], set[str], set[str]]:
    """
    Split the files present on both sides by how they moved since the baseline.

    Returns:
        (settled, changed only on the source, changed only on the destination)
    """
    settled, source_changed, destination_changed = set(), set(), set()
    for relative, entry in source.items():
        counterpart = destination.get(relative)
        known = (baseline or {}).get(relative)
        if not known or counterpart is None or not (entry.is_file and counterpart.is_file):
            continue

        source_moved = fingerprint(entry) != known.get("source")
        destination_moved = fingerprint(counterpart) != known.get("destination")
        if not source_moved and not destination_moved:
            settled.add(relative)
        elif source_moved and not destination_moved:
            source_changed.add(relative)
        elif destination_moved and not source_moved:
            destination_changed.add(relative)
    return settled, source_changed, destination_changed


def index_by_relative_path(entries: Iterable[FileDescriptor], root: str) -> dict[str, FileDescriptor]:
    index = {}
    for entry in entries:
        relative = relative_to(entry.path, root)
        if relative:
            index[relative] = entry
    return index


def _copy_pass(
    origin: dict[str, FileDescriptor],
    receiving: dict[str, FileDescriptor],
    op_type: OperationType,
    direction: Direction,
    skip: set[str] | None = None,
    force: set[str] | None = None,
) -> list[SyncOperation]:
    skip = skip or set()
    force = force or set()
    operations = []
    for relative, entry in origin.items():
        if relative in skip:
            continue
        counterpart = receiving.get(relative)

        if counterpart is None:
            operations.append(SyncOperation(op_type, relative, direction, entry))
            continue

        if entry.is_directory != counterpart.is_directory:
            logger.warning(f"Skipping {relative}: it is a file on one side and a folder on the other")
            continue

        if entry.is_file and (relative in force or should_update(entry, counterpart)):
            operations.append(SyncOperation(op_type, relative, direction, entry, counterpart))
    return operations


def _delete_pass(
    source: dict[str, FileDescriptor], destination: dict[str, FileDescriptor]
) -> list[SyncOperation]:
    orphans = sorted(relative for relative in destination if relative not in source)
    operations = []
    removed: list[str] = []
    for relative in orphans:
        # Deleting a folder removes its contents
        if any(relative.startswith(folder + "/") for folder in removed):
            continue
        entry = destination[relative]
        operations.append(
            SyncOperation(OperationType.DELETE, relative, Direction.SOURCE_TO_DESTINATION, entry)
        )
        if entry.is_directory:
            removed.append(relative)
    return operations


def plan_operations(
    mode: str,
    source: dict[str, FileDescriptor],
    destination: dict[str, FileDescriptor],
    baseline: dict | None = None,
) -> list[SyncOperation]:
    """
    Plan the operations for one reconciliation pass.

    Args:
        mode: one_way, two_way or mirror
        source: Source entries keyed by relative path, in walk order
        destination: Destination entries keyed by relative path, in walk order
        baseline: Fingerprints recorded by earlier passes, keyed by relative path

    Returns:
        Operations in execution order: copies (parents before children), then deletions

    Raises:
        InvalidRequestError: If the mode is unknown
    """
    settled, source_changed, destination_changed = compare_to_baseline(source, destination, baseline)

    if mode == SyncMode.TWO_WAY:
        uploads = _copy_pass(
            source,
            destination,
            OperationType.UPLOAD,
            Direction.SOURCE_TO_DESTINATION,
            skip=settled | destination_changed,
            force=source_changed,
        )
        uploaded = {operation.relative_path for operation in uploads}
        downloads = _copy_pass(
            destination,
            source,
            OperationType.DOWNLOAD,
            Direction.DESTINATION_TO_SOURCE,
            skip=uploaded | settled | source_changed,
            force=destination_changed,
        )
        return uploads + downloads

    uploads = _copy_pass(
        source,
        destination,
        OperationType.UPLOAD,
        Direction.SOURCE_TO_DESTINATION,
        skip=settled,
        force=source_changed,
    )

    if mode == SyncMode.ONE_WAY:
        return uploads

    if mode == SyncMode.MIRROR:
        return uploads + _delete_pass(source, destination)

    raise InvalidRequestError(f"Unknown sync mode '{mode}'")
