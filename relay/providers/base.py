"""
Uniform contract every storage backend implements.

A provider is created unauthenticated by the factory, then
``authenticate(credentials, config)`` establishes a session. Backends
declare a static capability set; operations outside it raise
UnsupportedOperationError.
"""

from __future__ import annotations

import fnmatch
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import BinaryIO, Callable, Iterable, Iterator

from django.utils.dateparse import parse_datetime

from relay.providers.errors import (
    AuthenticationError,
    NotFoundError,
    ProviderError,
    UnsupportedOperationError,
)
from relay.providers.paths import normalize_path
from relay.providers.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
DEFAULT_SEARCH_DEPTH = 3


class AuthKind(str, Enum):
    OAUTH = "oauth"
    BASIC = "basic"
    ACCOUNT = "account"
    API_KEY = "api_key"


# Credential fields each authentication kind must carry
REQUIRED_CREDENTIAL_FIELDS = {
    AuthKind.OAUTH: ("access_token", "refresh_token", "expires_at"),
    AuthKind.BASIC: ("endpoint", "username", "password"),
    AuthKind.ACCOUNT: ("host", "port", "secure", "username", "password"),
    AuthKind.API_KEY: ("api_key",),
}


class FileKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass
class FileDescriptor:
    """Normalized view of one remote file or directory."""

    id: str
    name: str
    path: str
    kind: FileKind = FileKind.FILE
    size: int | None = None
    mime_type: str | None = None
    modified_at: datetime | None = None
    checksum: str | None = None

    def __post_init__(self):
        self.kind = FileKind(self.kind)
        if self.kind == FileKind.DIRECTORY:
            self.size = None
            self.checksum = None

    @property
    def is_directory(self) -> bool:
        return self.kind == FileKind.DIRECTORY

    @property
    def is_file(self) -> bool:
        return self.kind == FileKind.FILE


@dataclass
class FileFilter:
    """
    Per-job filter rules.

    Patterns are shell globs matched case-insensitively against the entry
    name. Directories are only subject to exclude patterns so that a
    recursive walk can still descend into them.
    """

    include_patterns: list[str] = field(default_factory=list)
    exclude_patterns: list[str] = field(default_factory=list)
    min_size: int | None = None
    max_size: int | None = None
    modified_after: datetime | None = None
    modified_before: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "FileFilter":
        data = data or {}
        return cls(
            include_patterns=list(data.get("include_patterns") or []),
            exclude_patterns=list(data.get("exclude_patterns") or []),
            min_size=data.get("min_size"),
            max_size=data.get("max_size"),
            modified_after=_as_datetime(data.get("modified_after")),
            modified_before=_as_datetime(data.get("modified_before")),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("modified_after", "modified_before"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @property
    def is_empty(self) -> bool:
        return self == FileFilter()

    def matches(self, entry: FileDescriptor) -> bool:
        name = entry.name.lower()

        if any(fnmatch.fnmatchcase(name, pattern.lower()) for pattern in self.exclude_patterns):
            return False
        if entry.is_directory:
            return True

        if self.include_patterns and not any(
            fnmatch.fnmatchcase(name, pattern.lower()) for pattern in self.include_patterns
        ):
            return False

        if entry.size is not None:
            if self.min_size is not None and entry.size < self.min_size:
                return False
            if self.max_size is not None and entry.size > self.max_size:
                return False

        if entry.modified_at is not None:
            if self.modified_after is not None and entry.modified_at < self.modified_after:
                return False
            if self.modified_before is not None and entry.modified_at > self.modified_before:
                return False

        return True


def _as_datetime(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return parse_datetime(str(value))


@dataclass
class UploadOptions:
    mime_type: str | None = None
    size: int | None = None
    overwrite: bool = False
    chunk_size: int | None = None
    modified_at: datetime | None = None


@dataclass
class Quota:
    total: int | None = None
    used: int = 0
    available: int | None = None


@dataclass(frozen=True)
class ProviderCapabilities:
    upload: bool = True
    download: bool = True
    delete: bool = True
    folders: bool = True
    move: bool = False
    copy: bool = False
    resume: bool = False
    chunked_upload: bool = False
    search: bool = True
    quota: bool = False
    max_file_size: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


# Contract operation -> capability flag guarding it
OPERATION_CAPABILITIES = {
    "upload_file": "upload",
    "download_file": "download",
    "delete_file": "delete",
    "create_folder": "folders",
    "move_file": "move",
    "copy_file": "copy",
    "search_files": "search",
    "get_quota": "quota",
}


class StorageProvider(ABC):
    """
    Base class for storage backends.

    Subclasses implement ``_connect`` and ``_check_access`` plus the abstract file
    operations. Optional operations (move, copy, quota) raise
    UnsupportedOperationError unless overridden.
    """

    provider_type: str = ""
    display_name: str = ""
    auth_kind: AuthKind = AuthKind.BASIC
    capabilities: ProviderCapabilities = ProviderCapabilities()

    def __init__(self, config: dict | None = None):
        self.config = dict(config or {})
        self.credentials: dict | None = None
        self.retry_policy = RetryPolicy.from_config(self.config)
        # Called with the new credential dict when the backend refreshes tokens
        self.credentials_listener: Callable[[dict], None] | None = None
        self._authenticated = False

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    def authenticate(self, credentials: dict, config: dict | None = None) -> None:
        """
        Establish a session with the backend.

        On failure the provider is left unauthenticated and the error
        propagates (normally an AuthenticationError).
        """
        if config:
            self.config.update(config)
            self.retry_policy = RetryPolicy.from_config(self.config)

        self._authenticated = False
        self.credentials = dict(credentials or {})
        try:
            self._connect(self.credentials)
        except Exception:
            self.credentials = None
            raise
        self._authenticated = True
        logger.debug(f"Authenticated {self.provider_type} provider")

    def test_connection(self) -> bool:
        """Cheap read-only call; returns False instead of raising on ordinary failures."""
        if not self._authenticated:
            return False
        try:
            self._check_access()
        except ProviderError as e:
            logger.warning(f"Connection test failed for {self.provider_type}: {e}")
            return False
        return True

    def ensure_authenticated(self) -> None:
        if not self._authenticated:
            raise AuthenticationError(
                "Provider is not authenticated", provider_type=self.provider_type
            )

    def supports(self, operation: str) -> bool:
        flag = OPERATION_CAPABILITIES.get(operation)
        if flag is None:
            return hasattr(self, operation)
        return bool(getattr(self.capabilities, flag))

    def unsupported(self, operation: str) -> UnsupportedOperationError:
        return UnsupportedOperationError(operation, provider_type=self.provider_type)

    def notify_credentials_changed(self) -> None:
        if self.credentials_listener is not None and self.credentials is not None:
            self.credentials_listener(dict(self.credentials))

    @staticmethod
    def apply_filters(
        entries: Iterable[FileDescriptor], filters: FileFilter | None
    ) -> list[FileDescriptor]:
        if filters is None:
            return list(entries)
        return [entry for entry in entries if filters.matches(entry)]

    @abstractmethod
    def _connect(self, credentials: dict) -> None:
        """Validate credentials and open the backend session."""

    @abstractmethod
    def _check_access(self) -> None:
        """Perform a cheap read-only request, raising ProviderError on failure."""

    @abstractmethod
    def list_files(self, path: str, filters: FileFilter | None = None) -> list[FileDescriptor]:
        """List the immediate children of a directory."""

    @abstractmethod
    def get_file_info(self, path: str) -> FileDescriptor:
        """Stat a single entry, raising NotFoundError if it does not exist."""

    @abstractmethod
    def create_folder(self, path: str) -> FileDescriptor:
        """Create a directory whose parent exists."""

    @abstractmethod
    def download_file(self, path: str) -> BinaryIO:
        """Open a readable binary stream over the file's content."""

    @abstractmethod
    def upload_file(
        self, path: str, stream: BinaryIO, options: UploadOptions | None = None
    ) -> FileDescriptor:
        """Write ``stream`` to ``path``. Without overwrite an existing file raises AlreadyExistsError."""

    @abstractmethod
    def delete_file(self, path: str) -> None:
        """Delete a file or directory (recursively)."""

    def move_file(self, source_path: str, destination_path: str) -> FileDescriptor:
        raise self.unsupported("move_file")

    def copy_file(self, source_path: str, destination_path: str) -> FileDescriptor:
        raise self.unsupported("copy_file")

    def get_quota(self) -> Quota:
        raise self.unsupported("get_quota")

    def search_files(
        self,
        query: str,
        path: str | None = None,
        filters: FileFilter | None = None,
    ) -> list[FileDescriptor]:
        """
        Find entries whose name contains ``query`` (case-insensitive).

        The default implementation walks the tree below ``path`` to a bounded
        depth; backends with a native search endpoint override it.
        """
        if not self.supports("search_files"):
            raise self.unsupported("search_files")
        needle = query.lower()
        return [
            entry
            for entry in self.walk(path or "/", filters, max_depth=DEFAULT_SEARCH_DEPTH)
            if needle in entry.name.lower()
        ]

    def walk(
        self,
        path: str = "/",
        filters: FileFilter | None = None,
        max_depth: int | None = None,
    ) -> Iterator[FileDescriptor]:
        """
        Yield every entry below ``path`` depth-first, directories before their contents.

        ``max_depth`` of 1 lists only the immediate children.
        """
        yield from self._walk(normalize_path(path), filters, max_depth, 1)

    def _walk(self, path, filters, max_depth, depth):
        for entry in self.list_files(path, filters):
            yield entry
            if entry.is_directory and (max_depth is None or depth < max_depth):
                yield from self._walk(entry.path, filters, max_depth, depth + 1)

    def exists(self, path: str) -> bool:
        try:
            self.get_file_info(path)
        except NotFoundError:
            return False
        return True
