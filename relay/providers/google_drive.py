"""
Google Drive storage backend.

Provides OAuth helpers for creating connections, path-to-id resolution,
listing, streamed download (with Google Docs export), resumable upload,
move/copy and quota lookups over the Drive v3 API.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from io import BytesIO
from typing import BinaryIO, Iterator

from django.conf import settings
from django.utils import timezone
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload, MediaUpload

from relay.providers.base import (
    DEFAULT_CHUNK_SIZE,
    AuthKind,
    FileDescriptor,
    FileFilter,
    FileKind,
    ProviderCapabilities,
    Quota,
    StorageProvider,
    UploadOptions,
)
from relay.providers.errors import (
    AlreadyExistsError,
    AuthenticationError,
    InsufficientStorageError,
    InvalidOperationError,
    NetworkError,
    NotFoundError,
    ProviderError,
    RateLimitError,
    error_from_status,
    parse_retry_after,
)
from relay.providers.paths import ROOT, basename, join_path, normalize_path, parent_of
from relay.providers.retry import retry_call
from relay.providers.streams import ChunkedReader

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/userinfo.email",
]

TOKEN_URI = "https://oauth2.googleapis.com/token"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
FILE_FIELDS = "id,name,mimeType,size,modifiedTime,md5Checksum,parents,trashed"

# Refresh tokens that expire within this window before using them
REFRESH_BUFFER = timedelta(minutes=5)

# Google Docs MIME types that need export
GOOGLE_DOC_TYPES = {
    "application/vnd.google-apps.document": (
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        ".docx",
    ),
    "application/vnd.google-apps.spreadsheet": (
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        ".xlsx",
    ),
    "application/vnd.google-apps.presentation": (
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        ".pptx",
    ),
    "application/vnd.google-apps.drawing": ("application/pdf", ".pdf"),
}

# MIME types that cannot be downloaded (shortcuts, etc.)
NON_DOWNLOADABLE_TYPES = {
    FOLDER_MIME_TYPE,
    "application/vnd.google-apps.shortcut",
    "application/vnd.google-apps.form",
    "application/vnd.google-apps.map",
    "application/vnd.google-apps.site",
}

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
STORAGE_REASONS = {"storageQuotaExceeded", "quotaExceeded"}


@dataclass
class DriveFile:
    """Represents a file from Google Drive."""

    id: str
    name: str
    mime_type: str
    size: int | None
    modified_time: datetime | None
    md5_checksum: str | None
    parents: list[str]

    @classmethod
    def from_api_response(cls, data: dict) -> "DriveFile":
        """Create DriveFile from Google API response."""
        modified = data.get("modifiedTime")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", ""),
            size=int(data["size"]) if "size" in data else None,
            modified_time=datetime.fromisoformat(modified.replace("Z", "+00:00"))
            if modified
            else None,
            md5_checksum=data.get("md5Checksum"),
            parents=data.get("parents", []),
        )

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @property
    def is_google_doc(self) -> bool:
        return self.mime_type in GOOGLE_DOC_TYPES

    @property
    def is_downloadable(self) -> bool:
        return self.mime_type not in NON_DOWNLOADABLE_TYPES

    @property
    def export_mime_type(self) -> str | None:
        """Return the export MIME type for Google Docs, or None if not a Doc."""
        if self.mime_type in GOOGLE_DOC_TYPES:
            return GOOGLE_DOC_TYPES[self.mime_type][0]
        return None

    def to_descriptor(self, path: str) -> FileDescriptor:
        return FileDescriptor(
            id=self.id,
            name=self.name,
            path=path,
            kind=FileKind.DIRECTORY if self.is_folder else FileKind.FILE,
            size=self.size,
            mime_type=self.export_mime_type or self.mime_type,
            modified_at=self.modified_time,
            checksum=self.md5_checksum,
        )


ROOT_FOLDER = DriveFile(
    id="root",
    name="",
    mime_type=FOLDER_MIME_TYPE,
    size=None,
    modified_time=None,
    md5_checksum=None,
    parents=[],
)


class StreamingMediaUpload(MediaUpload):
    """
    Resumable upload body read sequentially from a non-seekable stream.

    MediaIoBaseUpload needs to seek to learn the size up front; this keeps
    only the current chunk in memory and reports the size as unknown, so the
    upload finishes when a short chunk is read.
    """

    def __init__(self, stream: BinaryIO, mimetype: str, chunksize: int = DEFAULT_CHUNK_SIZE):
        super().__init__()
        self._stream = stream
        self._mimetype = mimetype
        self._chunksize = chunksize
        self._offset = 0
        self._window = b""

    def chunksize(self):
        return self._chunksize

    def mimetype(self):
        return self._mimetype

    def size(self):
        return None

    def resumable(self):
        return True

    def has_stream(self):
        return False

    def getbytes(self, begin, length):
        skip = begin - self._offset
        if skip < 0 or skip > len(self._window):
            raise InvalidOperationError(
                f"Cannot rewind streaming upload to byte {begin} (buffered from {self._offset})"
            )
        self._window = self._window[skip:]
        self._offset = begin

        while len(self._window) < length:
            data = self._stream.read(length - len(self._window))
            if not data:
                break
            self._window += data
        return self._window[:length]


def create_oauth_flow(state: str | None = None) -> Flow:
    """
    Create an OAuth flow for Google Drive authentication.

    Args:
        state: Optional state parameter for CSRF protection

    Returns:
        Configured OAuth Flow object
    """
    client_config = {
        "web": {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": TOKEN_URI,
            "redirect_uris": [settings.GOOGLE_REDIRECT_URI],
        }
    }
    flow = Flow.from_client_config(client_config, scopes=SCOPES, state=state)
    flow.redirect_uri = settings.GOOGLE_REDIRECT_URI
    return flow


def get_authorization_url(state: str | None = None) -> tuple[str, str]:
    """
    Generate the Google OAuth authorization URL.

    Returns:
        Tuple of (authorization_url, state)
    """
    flow = create_oauth_flow(state)
    return flow.authorization_url(
        access_type="offline",
        include_granted_scopes="true",
        prompt="consent",
    )


def exchange_code_for_credentials(code: str) -> dict:
    """
    Exchange an authorization code for a connection credential blob.

    Returns:
        Dict with access_token, refresh_token, expires_at (ISO string) and email
    """
    flow = create_oauth_flow()
    flow.fetch_token(code=code)
    credentials = flow.credentials

    service = build("oauth2", "v2", credentials=credentials, cache_discovery=False)
    user_info = service.userinfo().get().execute()

    expiry = credentials.expiry
    return {
        "access_token": credentials.token,
        "refresh_token": credentials.refresh_token,
        "expires_at": expiry.replace(tzinfo=dt_timezone.utc).isoformat() if expiry else None,
        "email": user_info.get("email"),
    }


def _parse_expiry(value) -> datetime | None:
    """Parse a stored expiry into an aware UTC datetime."""
    if not value:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if timezone.is_naive(value):
        value = value.replace(tzinfo=dt_timezone.utc)
    return value.astimezone(dt_timezone.utc)


def _escape_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveProvider(StorageProvider):
    """
    Provider for Google Drive.

    Paths are resolved to file ids by walking names from "My Drive". When
    the access token is refreshed the new credentials are handed to
    ``credentials_listener`` so they can be written back to the secrets file.
    """

    provider_type = "google_drive"
    display_name = "Google Drive"
    auth_kind = AuthKind.OAUTH
    capabilities = ProviderCapabilities(
        move=True,
        copy=True,
        resume=True,
        chunked_upload=True,
        search=True,
        quota=True,
        max_file_size=5 * 1024 ** 4,
    )

    def __init__(self, config: dict | None = None):
        super().__init__(config)
        self._credentials: Credentials | None = None
        self._service = None
        self._path_cache: dict[str, DriveFile] = {}
        self._last_token: str | None = None

    @property
    def chunk_size(self) -> int:
        return int(self.config.get("chunk_size", DEFAULT_CHUNK_SIZE))

    def _connect(self, credentials: dict) -> None:
        expires_at = _parse_expiry(credentials.get("expires_at"))
        self._credentials = Credentials(
            token=credentials.get("access_token"),
            refresh_token=credentials.get("refresh_token"),
            token_uri=TOKEN_URI,
            client_id=credentials.get("client_id") or settings.GOOGLE_CLIENT_ID,
            client_secret=credentials.get("client_secret") or settings.GOOGLE_CLIENT_SECRET,
            scopes=SCOPES,
            # google-auth compares expiry against naive UTC
            expiry=expires_at.replace(tzinfo=None) if expires_at else None,
        )
        self._last_token = self._credentials.token
        self.refresh_token_if_needed(expires_at)
        self._service = build("drive", "v3", credentials=self._credentials, cache_discovery=False)
        self._path_cache = {ROOT: ROOT_FOLDER}

    def refresh_token_if_needed(self, expires_at: datetime | None) -> bool:
        """
        Refresh the access token if expired or expiring soon.

        Returns:
            True if token was refreshed, False otherwise

        Raises:
            AuthenticationError: If refresh fails
        """
        if expires_at and expires_at > timezone.now() + REFRESH_BUFFER:
            return False

        if not self._credentials.refresh_token:
            raise AuthenticationError(
                "No refresh token available", provider_type=self.provider_type
            )

        try:
            self._credentials.refresh(Request())
        except RefreshError as e:
            logger.error(f"Google Drive token refresh failed: {e}")
            raise AuthenticationError(
                f"Token refresh failed: {e}", provider_type=self.provider_type
            ) from e

        self._record_credentials()
        logger.info("Refreshed Google Drive access token")
        return True

    def _record_credentials(self) -> None:
        """Push refreshed tokens back into ``self.credentials`` and notify the listener."""
        credentials = self._credentials
        if credentials is None or credentials.token == self._last_token:
            return
        self._last_token = credentials.token
        expiry = credentials.expiry
        self.credentials.update({
            "access_token": credentials.token,
            "refresh_token": credentials.refresh_token or self.credentials.get("refresh_token"),
            "expires_at": expiry.replace(tzinfo=dt_timezone.utc).isoformat() if expiry else None,
        })
        self.notify_credentials_changed()

    def _translate_http_error(self, error: HttpError, path: str | None = None) -> ProviderError:
        status = int(getattr(error.resp, "status", 0) or 0)
        reason = _http_error_reason(error)
        message = f"Drive API error {status} ({reason or 'no reason'})"
        logger.debug(f"{message}: {error}")

        if status in (403, 429) and reason in RATE_LIMIT_REASONS:
            return RateLimitError(
                message,
                retry_after=parse_retry_after(error.resp.get("retry-after")),
                provider_type=self.provider_type,
                status_code=status,
            )
        if status == 403 and reason in STORAGE_REASONS:
            return InsufficientStorageError(
                message, provider_type=self.provider_type, status_code=status
            )
        return error_from_status(
            status,
            message,
            provider_type=self.provider_type,
            retry_after=parse_retry_after(error.resp.get("retry-after")),
            path=path,
        )

    def _execute(self, request, path: str | None = None, idempotent: bool = True):
        """Execute an API request, mapping errors and retrying idempotent calls."""

        def run():
            try:
                return request.execute()
            except HttpError as e:
                raise self._translate_http_error(e, path) from e
            except RefreshError as e:
                raise AuthenticationError(
                    f"Token refresh failed: {e}", provider_type=self.provider_type
                ) from e
            except OSError as e:
                raise NetworkError(
                    f"Drive request failed: {e}", provider_type=self.provider_type
                ) from e
            finally:
                self._record_credentials()

        if idempotent:
            return retry_call(run, policy=self.retry_policy)
        return run()

    def _check_access(self) -> None:
        self._execute(self._service.about().get(fields="user"))

    def _find_child(self, parent: DriveFile, name: str) -> DriveFile | None:
        query = (
            f"'{parent.id}' in parents and name = '{_escape_query(name)}' and trashed = false"
        )
        response = self._execute(
            self._service.files().list(
                q=query,
                pageSize=10,
                fields=f"files({FILE_FIELDS})",
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            )
        )
        files = response.get("files", [])
        return DriveFile.from_api_response(files[0]) if files else None

    def _resolve(self, path: str) -> DriveFile:
        """Resolve a path to its Drive file, walking from the root."""
        target = normalize_path(path)
        cached = self._path_cache.get(target)
        if cached is not None:
            return cached

        parent = self._resolve(parent_of(target))
        if not parent.is_folder:
            raise NotFoundError(path=target, provider_type=self.provider_type)

        child = self._find_child(parent, basename(target))
        if child is None:
            raise NotFoundError(path=target, provider_type=self.provider_type)

        self._path_cache[target] = child
        return child

    def _forget(self, path: str) -> None:
        target = normalize_path(path)
        for cached in list(self._path_cache):
            if cached != ROOT and (cached == target or cached.startswith(target + "/")):
                del self._path_cache[cached]

    def _iter_folder(self, folder: DriveFile) -> Iterator[DriveFile]:
        page_token = None
        while True:
            params = {
                "q": f"'{folder.id}' in parents and trashed = false",
                "pageSize": 1000,
                "fields": f"nextPageToken,files({FILE_FIELDS})",
                "supportsAllDrives": True,
                "includeItemsFromAllDrives": True,
            }
            if page_token:
                params["pageToken"] = page_token

            response = self._execute(self._service.files().list(**params))
            for data in response.get("files", []):
                yield DriveFile.from_api_response(data)

            page_token = response.get("nextPageToken")
            if not page_token:
                break

    def list_files(self, path: str, filters: FileFilter | None = None) -> list[FileDescriptor]:
        self.ensure_authenticated()
        target = normalize_path(path)
        folder = self._resolve(target)
        if not folder.is_folder:
            raise InvalidOperationError(f"{target} is not a folder", provider_type=self.provider_type)

        entries = []
        for drive_file in self._iter_folder(folder):
            if not drive_file.is_folder and not drive_file.is_downloadable:
                continue
            child_path = join_path(target, drive_file.name)
            self._path_cache[child_path] = drive_file
            entries.append(drive_file.to_descriptor(child_path))

        entries.sort(key=lambda entry: entry.path)
        return self.apply_filters(entries, filters)

    def get_file_info(self, path: str) -> FileDescriptor:
        self.ensure_authenticated()
        target = normalize_path(path)
        return self._resolve(target).to_descriptor(target)

    def create_folder(self, path: str) -> FileDescriptor:
        self.ensure_authenticated()
        target = normalize_path(path)
        parent = self._resolve(parent_of(target))
        if self._find_child(parent, basename(target)) is not None:
            raise AlreadyExistsError(path=target, provider_type=self.provider_type)

        response = self._execute(
            self._service.files().create(
                body={"name": basename(target), "mimeType": FOLDER_MIME_TYPE, "parents": [parent.id]},
                fields=FILE_FIELDS,
                supportsAllDrives=True,
            ),
            idempotent=False,
        )
        folder = DriveFile.from_api_response(response)
        self._path_cache[target] = folder
        return folder.to_descriptor(target)

    def _iter_media(self, request) -> Iterator[bytes]:
        buffer = BytesIO()
        downloader = MediaIoBaseDownload(buffer, request, chunksize=self.chunk_size)

        done = False
        while not done:
            try:
                status, done = downloader.next_chunk()
            except HttpError as e:
                raise self._translate_http_error(e) from e
            if status:
                logger.debug(f"Download progress: {int(status.progress() * 100)}%")

            data = buffer.getvalue()
            if data:
                yield data
            buffer.seek(0)
            buffer.truncate()

    def download_file(self, path: str) -> BinaryIO:
        self.ensure_authenticated()
        target = normalize_path(path)
        drive_file = self._resolve(target)

        if drive_file.is_folder or not drive_file.is_downloadable:
            raise InvalidOperationError(
                f"File type {drive_file.mime_type} cannot be downloaded",
                provider_type=self.provider_type,
            )

        files = self._service.files()
        if drive_file.is_google_doc:
            request = files.export_media(fileId=drive_file.id, mimeType=drive_file.export_mime_type)
        else:
            request = files.get_media(fileId=drive_file.id, supportsAllDrives=True)

        return ChunkedReader(self._iter_media(request))

    def upload_file(
        self, path: str, stream: BinaryIO, options: UploadOptions | None = None
    ) -> FileDescriptor:
        self.ensure_authenticated()
        options = options or UploadOptions()
        target = normalize_path(path)
        parent = self._resolve(parent_of(target))

        existing = self._find_child(parent, basename(target))
        if existing is not None and not options.overwrite:
            raise AlreadyExistsError(path=target, provider_type=self.provider_type)

        mime_type = options.mime_type or "application/octet-stream"
        chunk_size = options.chunk_size or self.chunk_size
        if stream.seekable():
            media = MediaIoBaseUpload(stream, mimetype=mime_type, chunksize=chunk_size, resumable=True)
        else:
            media = StreamingMediaUpload(stream, mime_type, chunksize=chunk_size)

        body = {"name": basename(target)}
        if options.modified_at is not None:
            body["modifiedTime"] = options.modified_at.astimezone(dt_timezone.utc).isoformat()

        files = self._service.files()
        if existing is not None:
            request = files.update(
                fileId=existing.id, body=body, media_body=media, fields=FILE_FIELDS, supportsAllDrives=True
            )
        else:
            body["parents"] = [parent.id]
            request = files.create(body=body, media_body=media, fields=FILE_FIELDS, supportsAllDrives=True)

        uploaded = DriveFile.from_api_response(self._execute(request, target, idempotent=False))
        self._path_cache[target] = uploaded
        return uploaded.to_descriptor(target)

    def delete_file(self, path: str) -> None:
        self.ensure_authenticated()
        target = normalize_path(path)
        if target == ROOT:
            raise InvalidOperationError("Refusing to delete the Drive root")
        drive_file = self._resolve(target)
        self._execute(
            self._service.files().delete(fileId=drive_file.id, supportsAllDrives=True), target
        )
        self._forget(target)

    def move_file(self, source_path: str, destination_path: str) -> FileDescriptor:
        self.ensure_authenticated()
        source = normalize_path(source_path)
        destination = normalize_path(destination_path)
        drive_file = self._resolve(source)
        new_parent = self._resolve(parent_of(destination))
        if self._find_child(new_parent, basename(destination)) is not None:
            raise AlreadyExistsError(path=destination, provider_type=self.provider_type)

        response = self._execute(
            self._service.files().update(
                fileId=drive_file.id,
                addParents=new_parent.id,
                removeParents=",".join(drive_file.parents),
                body={"name": basename(destination)},
                fields=FILE_FIELDS,
                supportsAllDrives=True,
            ),
            idempotent=False,
        )
        self._forget(source)
        moved = DriveFile.from_api_response(response)
        self._path_cache[destination] = moved
        return moved.to_descriptor(destination)

    def copy_file(self, source_path: str, destination_path: str) -> FileDescriptor:
        self.ensure_authenticated()
        destination = normalize_path(destination_path)
        drive_file = self._resolve(source_path)
        if drive_file.is_folder:
            raise InvalidOperationError("Drive cannot copy folders", provider_type=self.provider_type)
        new_parent = self._resolve(parent_of(destination))
        if self._find_child(new_parent, basename(destination)) is not None:
            raise AlreadyExistsError(path=destination, provider_type=self.provider_type)

        response = self._execute(
            self._service.files().copy(
                fileId=drive_file.id,
                body={"name": basename(destination), "parents": [new_parent.id]},
                fields=FILE_FIELDS,
                supportsAllDrives=True,
            ),
            idempotent=False,
        )
        copied = DriveFile.from_api_response(response)
        self._path_cache[destination] = copied
        return copied.to_descriptor(destination)

    def get_quota(self) -> Quota:
        self.ensure_authenticated()
        about = self._execute(self._service.about().get(fields="storageQuota"))
        quota = about.get("storageQuota", {})
        used = int(quota.get("usage", 0))
        if "limit" not in quota:
            return Quota(total=None, used=used, available=None)
        total = int(quota["limit"])
        return Quota(total=total, used=used, available=max(total - used, 0))


def _http_error_reason(error: HttpError) -> str:
    try:
        payload = json.loads(error.content.decode("utf-8"))
        return payload["error"]["errors"][0]["reason"]
    except (AttributeError, ValueError, KeyError, IndexError, TypeError):
        return ""
