"""
Synology NAS storage backend.

Talks to the DSM File Station web API over a requests session. Every call
goes to ``/webapi/entry.cgi`` with ``api``, ``version`` and ``method`` query
parameters plus the session id obtained from ``SYNO.API.Auth``. DSM answers
HTTP 200 for most failures and reports them as a numeric code in the JSON
envelope, so errors are mapped from that code rather than the status.
"""

from __future__ import annotations

import logging
from datetime import datetime
from datetime import timezone as dt_timezone
from typing import BinaryIO

import requests
from django.utils import timezone

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
    APIError,
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    FileSizeLimitError,
    InsufficientStorageError,
    InvalidOperationError,
    InvalidPathError,
    NetworkError,
    NotFoundError,
    ProviderError,
    ServiceUnavailableError,
    error_from_status,
    parse_retry_after,
)
from relay.providers.paths import ROOT, basename, join_path, normalize_path, parent_of
from relay.providers.retry import retried
from relay.providers.streams import ChunkedReader

logger = logging.getLogger(__name__)

USER_AGENT = "cloudrelay-synology/1.0"
AUTH_PATH = "/webapi/auth.cgi"
ENTRY_PATH = "/webapi/entry.cgi"
ADDITIONAL = '["real_path","size","time","type"]'
LIST_PAGE_SIZE = 1000
MAX_FILE_SIZE = 2 * 1024 * 1024 * 1024

# Codes shared by every DSM API
SESSION_CODES = {106, 107, 119}
PERMISSION_CODES = {105}
# SYNO.API.Auth login codes
LOGIN_CODES = {400, 401, 402, 403, 404, 406}
# SYNO.FileStation codes
NOT_FOUND_CODES = {408}
EXISTS_CODES = {414, 1100}
NO_SPACE_CODES = {415, 416}
BAD_PATH_CODES = {418, 419}
DENIED_CODES = {407}


def error_from_code(code, message: str = "", *, provider_type: str | None = None, path: str | None = None) -> ProviderError:
    """Map a DSM error code from a File Station response onto the error taxonomy."""
    common = {"provider_type": provider_type}
    message = message or f"Synology API error {code}"

    if code in SESSION_CODES:
        return AuthenticationError(message, **common)
    if code in PERMISSION_CODES or code in DENIED_CODES:
        return AuthorizationError(message, **common)
    if code in NOT_FOUND_CODES:
        return NotFoundError(message, path=path, **common)
    if code in EXISTS_CODES:
        return AlreadyExistsError(message, path=path, **common)
    if code in NO_SPACE_CODES:
        return InsufficientStorageError(message, **common)
    if code in BAD_PATH_CODES:
        return InvalidPathError(message, **common)
    if code == 100:
        return ServiceUnavailableError(message, **common)
    return APIError(message, **common)


def _entry_code(data: dict):
    errors = (data.get("error") or {}).get("errors") or []
    for item in errors:
        if "code" in item:
            return item["code"]
    return (data.get("error") or {}).get("code")


class SynologyProvider(StorageProvider):
    """
    Provider for Synology DiskStation File Station.

    Credentials: ``host``, ``port`` (default 5001), ``secure`` (default
    True), ``username``, ``password``.
    Config: ``timeout`` (seconds), ``chunk_size`` (bytes), ``verify_tls``,
    retry settings.
    """

    provider_type = "synology"
    display_name = "Synology NAS"
    auth_kind = AuthKind.ACCOUNT
    capabilities = ProviderCapabilities(
        move=True,
        copy=True,
        resume=False,
        chunked_upload=False,
        search=True,
        quota=True,
        max_file_size=MAX_FILE_SIZE,
    )

    def __init__(self, config: dict | None = None, session: requests.Session | None = None):
        super().__init__(config)
        self._session = session
        self.base_url: str | None = None
        self.sid: str | None = None
        self.syno_token: str | None = None

    @property
    def timeout(self) -> float:
        return float(self.config.get("timeout", 30))

    @property
    def chunk_size(self) -> int:
        return int(self.config.get("chunk_size", DEFAULT_CHUNK_SIZE))

    def _connect(self, credentials: dict) -> None:
        host = (credentials.get("host") or "").strip()
        if not host or not credentials.get("username") or not credentials.get("password"):
            raise ConfigurationError(
                "Synology requires host, username and password", provider_type=self.provider_type
            )

        secure = credentials.get("secure", True) not in (False, "false", "0", 0)
        port = int(credentials.get("port") or (5001 if secure else 5000))
        self.base_url = f"{'https' if secure else 'http'}://{host}:{port}"

        session = self._session or requests.Session()
        session.headers.update({"User-Agent": USER_AGENT})
        session.verify = bool(self.config.get("verify_tls", True))
        self._session = session

        self._login()

    def _check_access(self) -> None:
        self._call("SYNO.FileStation.Info", "get", 2)

    def _login(self) -> None:
        data = self._get(AUTH_PATH, {
            "api": "SYNO.API.Auth",
            "version": 6,
            "method": "login",
            "account": self.credentials.get("username", ""),
            "passwd": self.credentials.get("password", ""),
            "session": "FileStation",
            "format": "sid",
        })
        if not data.get("success"):
            code = _entry_code(data)
            if code in LOGIN_CODES or code in SESSION_CODES:
                raise AuthenticationError(
                    f"Synology login failed with code {code}", provider_type=self.provider_type
                )
            raise error_from_code(code, f"Synology login failed with code {code}", provider_type=self.provider_type)

        payload = data.get("data") or {}
        self.sid = payload.get("sid")
        self.syno_token = payload.get("synotoken")
        logger.info(f"Logged in to Synology at {self.base_url}")

    def logout(self) -> None:
        """End the DSM session. Failures are logged and ignored."""
        if not self.sid:
            return
        try:
            self._get(AUTH_PATH, {
                "api": "SYNO.API.Auth",
                "version": 6,
                "method": "logout",
                "session": "FileStation",
                "_sid": self.sid,
            })
        except ProviderError as e:
            logger.warning(f"Synology logout failed: {e}")
        self.sid = None
        self.syno_token = None
        self._authenticated = False

    def _send(self, method: str, url_path: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self._session.request(method, self.base_url + url_path, **kwargs)
        except requests.Timeout as e:
            raise NetworkError(
                f"{method} {url_path} timed out", provider_type=self.provider_type
            ) from e
        except requests.RequestException as e:
            raise NetworkError(
                f"{method} {url_path} failed: {e}", provider_type=self.provider_type
            ) from e

        if response.status_code >= 400:
            logger.debug(
                f"Synology {method} {url_path} returned {response.status_code}: {response.text[:500]}"
            )
            raise error_from_status(
                response.status_code,
                f"{method} {url_path} returned {response.status_code}",
                provider_type=self.provider_type,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        return response

    def _get(self, url_path: str, params: dict) -> dict:
        response = self._send("GET", url_path, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise APIError(
                f"Malformed Synology response: {e}", provider_type=self.provider_type
            ) from e

    def _call(self, api: str, method: str, version: int, params: dict | None = None, path: str | None = None) -> dict:
        """
        Call a File Station method and return its ``data`` payload.

        An expired session is renewed once by logging in again.
        """
        query = {"api": api, "version": version, "method": method, **(params or {})}
        data = self._get(ENTRY_PATH, {**query, "_sid": self.sid})
        if not data.get("success") and _entry_code(data) in SESSION_CODES:
            logger.info(f"Synology session expired (code {_entry_code(data)}), logging in again")
            self._login()
            data = self._get(ENTRY_PATH, {**query, "_sid": self.sid})

        if not data.get("success"):
            code = _entry_code(data)
            raise error_from_code(
                code, f"{api}.{method} failed with code {code}", provider_type=self.provider_type, path=path
            )
        return data.get("data") or {}

    def _to_descriptor(self, item: dict) -> FileDescriptor:
        path = normalize_path(item.get("path") or "/")
        is_directory = bool(item.get("isdir"))
        additional = item.get("additional") or {}
        times = additional.get("time") or {}
        return FileDescriptor(
            id=path,
            name=item.get("name") or basename(path),
            path=path,
            kind=FileKind.DIRECTORY if is_directory else FileKind.FILE,
            size=None if is_directory else int(additional.get("size") or 0),
            modified_at=_from_epoch(times.get("mtime")),
        )

    @retried
    def _list_page(self, path: str, offset: int) -> dict:
        return self._call("SYNO.FileStation.List", "list", 2, {
            "folder_path": path,
            "offset": offset,
            "limit": LIST_PAGE_SIZE,
            "sort_by": "name",
            "additional": ADDITIONAL,
        }, path=path)

    def list_files(self, path: str, filters: FileFilter | None = None) -> list[FileDescriptor]:
        self.ensure_authenticated()
        target = normalize_path(path)
        if target == ROOT:
            data = self._call("SYNO.FileStation.List", "list_share", 2, {"additional": ADDITIONAL})
            items = data.get("shares") or []
        else:
            items = []
            while True:
                data = self._list_page(target, len(items))
                page = data.get("files") or []
                items.extend(page)
                if not page or len(items) >= int(data.get("total") or 0):
                    break

        entries = sorted((self._to_descriptor(item) for item in items), key=lambda entry: entry.path)
        return self.apply_filters(entries, filters)

    @retried
    def get_file_info(self, path: str) -> FileDescriptor:
        self.ensure_authenticated()
        target = normalize_path(path)
        data = self._call("SYNO.FileStation.List", "getinfo", 2, {
            "path": target,
            "additional": ADDITIONAL,
        }, path=target)
        files = data.get("files") or []
        # Missing paths come back as an entry carrying only an error code
        if not files or "code" in files[0]:
            raise NotFoundError(path=target, provider_type=self.provider_type)
        return self._to_descriptor(files[0])

    def create_folder(self, path: str) -> FileDescriptor:
        self.ensure_authenticated()
        target = normalize_path(path)
        if target == ROOT or parent_of(target) == ROOT:
            raise InvalidOperationError(
                "Shared folders cannot be created through File Station",
                provider_type=self.provider_type,
            )
        if self.exists(target):
            raise AlreadyExistsError(path=target, provider_type=self.provider_type)

        data = self._call("SYNO.FileStation.CreateFolder", "create", 2, {
            "folder_path": parent_of(target),
            "name": basename(target),
            "force_parent": "false",
        }, path=parent_of(target))
        folders = data.get("folders") or []
        if folders and "path" in folders[0]:
            return self._to_descriptor({**folders[0], "isdir": True})
        return FileDescriptor(
            id=target,
            name=basename(target),
            path=target,
            kind=FileKind.DIRECTORY,
            modified_at=timezone.now(),
        )

    @retried
    def _open_download(self, path: str) -> requests.Response:
        response = self._send("GET", ENTRY_PATH, params={
            "api": "SYNO.FileStation.Download",
            "version": 2,
            "method": "download",
            "path": path,
            "mode": "download",
            "_sid": self.sid,
        }, stream=True)
        # DSM reports download errors as a JSON body instead of file content
        if response.headers.get("Content-Type", "").startswith("application/json"):
            data = response.json()
            response.close()
            code = _entry_code(data)
            raise error_from_code(code, f"Download of {path} failed with code {code}", provider_type=self.provider_type, path=path)
        return response

    def download_file(self, path: str) -> BinaryIO:
        self.ensure_authenticated()
        target = normalize_path(path)
        response = self._open_download(target)
        return ChunkedReader(
            response.iter_content(chunk_size=self.chunk_size),
            on_close=response.close,
        )

    def upload_file(
        self, path: str, stream: BinaryIO, options: UploadOptions | None = None
    ) -> FileDescriptor:
        """
        Upload through ``SYNO.FileStation.Upload`` as a multipart form.

        The parent folder must already exist. ``modified_at`` is sent as the
        ``mtime`` field in milliseconds, which File Station stores on the file.
        """
        self.ensure_authenticated()
        options = options or UploadOptions()
        target = normalize_path(path)
        if target == ROOT or parent_of(target) == ROOT:
            raise InvalidOperationError(
                "Files must be uploaded inside a shared folder", provider_type=self.provider_type
            )
        if options.size is not None and options.size > MAX_FILE_SIZE:
            raise FileSizeLimitError(
                f"File size {options.size} exceeds the Synology limit of {MAX_FILE_SIZE}",
                provider_type=self.provider_type,
            )

        form = {
            "api": "SYNO.FileStation.Upload",
            "version": "2",
            "method": "upload",
            "path": parent_of(target),
            "create_parents": "false",
            "overwrite": "true" if options.overwrite else "false",
        }
        if options.modified_at is not None:
            form["mtime"] = str(int(options.modified_at.timestamp() * 1000))
        params = {"_sid": self.sid}
        if self.syno_token:
            params["SynoToken"] = self.syno_token

        response = self._send(
            "POST",
            ENTRY_PATH,
            params=params,
            data=form,
            files={"file": (basename(target), stream, options.mime_type or "application/octet-stream")},
            timeout=self.timeout * 3,
        )
        data = response.json()
        if not data.get("success"):
            code = _entry_code(data)
            raise error_from_code(code, f"Upload of {target} failed with code {code}", provider_type=self.provider_type, path=target)

        return FileDescriptor(
            id=target,
            name=basename(target),
            path=target,
            size=options.size,
            mime_type=options.mime_type,
            modified_at=options.modified_at or timezone.now(),
        )

    @retried
    def _delete(self, path: str) -> None:
        self._call("SYNO.FileStation.Delete", "delete", 2, {
            "path": path,
            "recursive": "true",
        }, path=path)

    def delete_file(self, path: str) -> None:
        self.ensure_authenticated()
        target = normalize_path(path)
        if target == ROOT:
            raise InvalidOperationError("Refusing to delete the root folder")
        self._delete(target)

    def _transfer(self, source_path: str, destination_path: str, remove_source: bool) -> FileDescriptor:
        self.ensure_authenticated()
        source = normalize_path(source_path)
        destination = normalize_path(destination_path)
        if self.exists(destination):
            raise AlreadyExistsError(path=destination, provider_type=self.provider_type)

        self._call("SYNO.FileStation.CopyMove", "start", 3, {
            "path": source,
            "dest_folder_path": parent_of(destination),
            "overwrite": "false",
            "remove_src": "true" if remove_source else "false",
        }, path=source)

        # CopyMove keeps the source name; a different target name needs a rename
        landed = join_path(parent_of(destination), basename(source))
        if basename(source) != basename(destination):
            self._call("SYNO.FileStation.Rename", "rename", 2, {
                "path": landed,
                "name": basename(destination),
            }, path=landed)
        return self.get_file_info(destination)

    def move_file(self, source_path: str, destination_path: str) -> FileDescriptor:
        return self._transfer(source_path, destination_path, remove_source=True)

    def copy_file(self, source_path: str, destination_path: str) -> FileDescriptor:
        return self._transfer(source_path, destination_path, remove_source=False)

    @retried
    def get_quota(self) -> Quota:
        self.ensure_authenticated()
        data = self._call("SYNO.Core.System", "info", 1, {"type": "storage"})
        total = used = 0
        for volume in data.get("vol_info") or []:
            total += _parse_int(volume.get("total_size"))
            used += _parse_int(volume.get("used_size"))
        if not total:
            return Quota(total=None, used=used, available=None)
        return Quota(total=total, used=used, available=max(total - used, 0))


def _from_epoch(value) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _parse_int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
