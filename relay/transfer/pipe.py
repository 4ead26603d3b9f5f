"""
Streaming primitives shared by the transfer and sync engines.

A file moves from ``download_file`` to ``upload_file`` through a
CountingReader, so memory use stays bounded by the backends' chunk sizes
whatever the file size.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import BinaryIO, Callable

from relay.execution import CancellationToken
from relay.providers.base import FileDescriptor, StorageProvider, UploadOptions
from relay.providers.errors import AlreadyExistsError, FileSizeLimitError, IntegrityMismatchError
from relay.providers.paths import ancestors, normalize_path

logger = logging.getLogger(__name__)

MD5_PATTERN = re.compile(r"^[0-9a-fA-F]{32}$")


class CountingReader:
    """
    Stream wrapper that counts bytes and hashes content as it is read.

    ``on_chunk`` receives the size of every chunk; the cancellation token is
    checked before each read so a cancel request stops the copy mid-file.
    """

    def __init__(
        self,
        stream: BinaryIO,
        on_chunk: Callable[[int], None] | None = None,
        token: CancellationToken | None = None,
    ):
        self._stream = stream
        self._on_chunk = on_chunk
        self._token = token
        self._hasher = hashlib.md5()
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        if self._token is not None:
            self._token.check_cancelled()
        data = self._stream.read(size)
        if data:
            self._hasher.update(data)
            self.bytes_read += len(data)
            if self._on_chunk is not None:
                self._on_chunk(len(data))
        return data

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    @property
    def md5(self) -> str:
        return self._hasher.hexdigest()

    def close(self) -> None:
        self._stream.close()

    def __enter__(self) -> "CountingReader":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def verify_copy(source: FileDescriptor, reader: CountingReader) -> None:
    """
    Compare what was streamed against the source descriptor.

    Byte counts are compared when the source size is known; content is
    compared when the source exposes an MD5 checksum.

    Raises:
        IntegrityMismatchError: If either comparison fails
    """
    if source.size is not None and reader.bytes_read != source.size:
        raise IntegrityMismatchError(
            f"{source.path}: expected {source.size} bytes, transferred {reader.bytes_read}"
        )
    if source.checksum and MD5_PATTERN.match(source.checksum):
        if reader.md5.lower() != source.checksum.lower():
            raise IntegrityMismatchError(
                f"{source.path}: checksum mismatch (expected {source.checksum}, got {reader.md5})"
            )


def require_operation(provider: StorageProvider, operation: str) -> None:
    if not provider.supports(operation):
        raise provider.unsupported(operation)


def check_upload_accepted(destination: StorageProvider, entry: FileDescriptor) -> None:
    """Refuse a copy up front when the destination's capabilities rule it out."""
    require_operation(destination, "upload_file")
    limit = destination.capabilities.max_file_size
    if limit is not None and entry.size is not None and entry.size > limit:
        raise FileSizeLimitError(
            f"{entry.name} is {entry.size} bytes; "
            f"{destination.display_name or destination.provider_type} accepts at most {limit}",
            provider_type=destination.provider_type,
        )


def pipe_file(
    source: StorageProvider,
    destination: StorageProvider,
    entry: FileDescriptor,
    target_path: str,
    *,
    overwrite: bool = False,
    preserve_timestamps: bool = True,
    verify_integrity: bool = False,
    on_chunk: Callable[[int], None] | None = None,
    token: CancellationToken | None = None,
) -> int:
    """
    Stream one file from ``source`` to ``destination``.

    Returns:
        Number of bytes transferred

    Raises:
        UnsupportedOperationError: If ``destination`` does not accept uploads
        FileSizeLimitError: If the file exceeds the destination's size cap
    """
    check_upload_accepted(destination, entry)
    options = UploadOptions(
        mime_type=entry.mime_type,
        size=entry.size,
        overwrite=overwrite,
        modified_at=entry.modified_at if preserve_timestamps else None,
    )

    with CountingReader(source.download_file(entry.path), on_chunk=on_chunk, token=token) as reader:
        destination.upload_file(target_path, reader, options)
        if verify_integrity:
            verify_copy(entry, reader)

    logger.debug(f"Copied {entry.path} -> {target_path} ({reader.bytes_read} bytes)")
    return reader.bytes_read


def ensure_folder(provider: StorageProvider, path: str, known: set[str] | None = None) -> None:
    """
    Create ``path`` on ``provider`` unless it already exists.

    Backends without folder support create parents implicitly on upload,
    so nothing is done for them.
    """
    path = normalize_path(path)
    if path == "/" or (known is not None and path in known):
        return
    if not provider.supports("create_folder"):
        return
    try:
        provider.create_folder(path)
    except AlreadyExistsError:
        pass
    if known is not None:
        known.add(path)


def ensure_parent_folders(provider: StorageProvider, path: str, known: set[str] | None = None) -> None:
    """Create every missing ancestor folder of ``path``, outermost first."""
    for folder in ancestors(path):
        ensure_folder(provider, folder, known)
