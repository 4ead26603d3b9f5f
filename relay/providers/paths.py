"""
Central path handling for remote storage paths.

All remote paths are absolute, use "/" as separator and never contain
parent-directory segments.
"""

from __future__ import annotations

from relay.providers.errors import InvalidPathError

SEPARATOR = "/"
ROOT = "/"


def normalize_path(path: str | None) -> str:
    """
    Normalize a remote path.

    Trims whitespace, rejects ".." segments, forces a single leading
    separator, collapses duplicate separators and drops a trailing one.
    Empty input means the root.

    Raises:
        InvalidPathError: If the path contains a parent-directory segment
    """
    raw = (path or "").strip()
    segments = raw.split(SEPARATOR)

    if any(segment.strip() == ".." for segment in segments):
        raise InvalidPathError(f"Path traversal is not allowed: {raw!r}")

    parts = [segment for segment in segments if segment and segment != "."]
    return SEPARATOR + SEPARATOR.join(parts)


def join_path(base: str, *parts: str) -> str:
    return normalize_path(SEPARATOR.join([base, *parts]))


def parent_of(path: str) -> str:
    normalized = normalize_path(path)
    if normalized == ROOT:
        return ROOT
    return normalized.rsplit(SEPARATOR, 1)[0] or ROOT


def basename(path: str) -> str:
    return normalize_path(path).rsplit(SEPARATOR, 1)[-1]


def ancestors(path: str) -> list[str]:
    """Return every ancestor of ``path`` below the root, outermost first."""
    normalized = normalize_path(path)
    parts = [part for part in normalized.split(SEPARATOR) if part]
    return [SEPARATOR + SEPARATOR.join(parts[:i]) for i in range(1, len(parts))]


def relative_to(path: str, root: str) -> str:
    """
    Return ``path`` relative to ``root`` without a leading separator.

    Raises:
        InvalidPathError: If ``path`` is not inside ``root``
    """
    path = normalize_path(path)
    root = normalize_path(root)

    if path == root:
        return ""
    if root == ROOT:
        return path[1:]
    if path.startswith(root + SEPARATOR):
        return path[len(root) + 1:]
    raise InvalidPathError(f"{path} is not inside {root}")
