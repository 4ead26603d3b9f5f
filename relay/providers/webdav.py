"""
WebDAV storage backend.

Speaks plain RFC 4918 over a requests session: PROPFIND for listing and
stat, MKCOL, GET, PUT, DELETE, MOVE and COPY, plus the RFC 4331 quota
properties where the server exposes them.
"""

from __future__ import annotations

import logging
from email.utils import parsedate_to_datetime
from typing import BinaryIO, Iterator
from urllib.parse import quote, unquote, urlsplit
from xml.etree import ElementTree

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
    ConfigurationError,
    InvalidOperationError,
    NetworkError,
    NotFoundError,
    error_from_status,
    parse_retry_after,
)
from relay.providers.paths import ROOT, basename, normalize_path, parent_of
from relay.providers.retry import retried
from relay.providers.streams import ChunkedReader

logger = logging.getLogger(__name__)

DAV = "{DAV:}"
USER_AGENT = "cloudrelay-webdav/1.0"

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:resourcetype/><d:getcontentlength/><d:getlastmodified/>"
    "<d:getcontenttype/><d:getetag/>"
    "</d:prop></d:propfind>"
)

QUOTA_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:quota-available-bytes/><d:quota-used-bytes/>"
    "</d:prop></d:propfind>"
)

# ownCloud/Nextcloud extension for setting the stored modification time on PUT
MTIME_HEADER = "X-OC-Mtime"


class SizedBody:
    """
    Streaming request body with a known length.

    requests frames an iterable that reports ``len()`` with Content-Length
    and sends it as-is. A bare generator would be sent with
    Transfer-Encoding: chunked instead.
    """

    def __init__(self, chunks: Iterator[bytes], size: int):
        self.chunks = chunks
        self.size = size

    def __len__(self) -> int:
        return self.size

    def __iter__(self) -> Iterator[bytes]:
        return iter(self.chunks)


class WebDAVProvider(StorageProvider):
    """
    Provider for WebDAV endpoints (Nextcloud, ownCloud, NAS appliances).

    Credentials: ``endpoint``, ``username``, ``password``.
    Config: ``timeout`` (seconds), ``chunk_size`` (bytes), retry settings.
    """

    provider_type = "webdav"
    display_name = "WebDAV"
    auth_kind = AuthKind.BASIC
    capabilities = ProviderCapabilities(
        move=True,
        copy=True,
        resume=False,
        chunked_upload=True,
        search=True,
        quota=True,
    )

    def __init__(self, config: dict | None = None, session: requests.Session | None = None):
        super().__init__(config)
        self._session = session
        self.base_url: str | None = None

    @property
    def timeout(self) -> float:
        return float(self.config.get("timeout", 30))

    @property
    def chunk_size(self) -> int:
        return int(self.config.get("chunk_size", DEFAULT_CHUNK_SIZE))

    def _connect(self, credentials: dict) -> None:
        endpoint = (credentials.get("endpoint") or "").strip()
        if not endpoint:
            raise ConfigurationError(
                "WebDAV endpoint is required", provider_type=self.provider_type
            )

        self.base_url = endpoint.rstrip("/")
        session = self._session or requests.Session()
        session.auth = (credentials.get("username", ""), credentials.get("password", ""))
        session.headers.update({"User-Agent": USER_AGENT})
        self._session = session

        # A depth-0 PROPFIND on the root validates both reachability and credentials
        self._propfind(ROOT, depth="0")

    def _check_access(self) -> None:
        self._propfind(ROOT, depth="0")

    def _url(self, path: str) -> str:
        return self.base_url + quote(normalize_path(path), safe="/")

    def _base_path(self) -> str:
        return unquote(urlsplit(self.base_url).path).rstrip("/")

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        """Send a request and translate failures onto the error taxonomy."""
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self._session.request(method, self._url(path), **kwargs)
        except requests.Timeout as e:
            raise NetworkError(
                f"{method} {path} timed out", provider_type=self.provider_type
            ) from e
        except requests.RequestException as e:
            raise NetworkError(
                f"{method} {path} failed: {e}", provider_type=self.provider_type
            ) from e

        if response.status_code >= 400:
            logger.debug(
                f"WebDAV {method} {path} returned {response.status_code}: {response.text[:500]}"
            )
            raise error_from_status(
                response.status_code,
                f"{method} {path} returned {response.status_code}",
                provider_type=self.provider_type,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                path=path,
            )
        return response

    @retried
    def _propfind(self, path: str, depth: str = "1", body: str = PROPFIND_BODY) -> list[FileDescriptor]:
        response = self._request(
            "PROPFIND",
            path,
            data=body.encode("utf-8"),
            headers={"Depth": depth, "Content-Type": "application/xml; charset=utf-8"},
        )
        return self._parse_multistatus(response.content)

    def _href_to_path(self, href: str) -> str:
        path = unquote(urlsplit(href).path)
        base_path = self._base_path()
        if base_path and (path == base_path or path.startswith(base_path + "/")):
            path = path[len(base_path):]
        return normalize_path(path)

    def _parse_multistatus(self, content: bytes) -> list[FileDescriptor]:
        try:
            root = ElementTree.fromstring(content)
        except ElementTree.ParseError as e:
            raise APIError(
                f"Malformed PROPFIND response: {e}", provider_type=self.provider_type
            ) from e

        entries = []
        for response in root.iter(f"{DAV}response"):
            href = response.findtext(f"{DAV}href")
            if not href:
                continue
            prop = self._successful_prop(response)
            if prop is None:
                continue

            path = self._href_to_path(href)
            is_directory = prop.find(f"{DAV}resourcetype/{DAV}collection") is not None
            length = prop.findtext(f"{DAV}getcontentlength")
            modified = prop.findtext(f"{DAV}getlastmodified")

            entries.append(FileDescriptor(
                id=path,
                name=basename(path) if path != ROOT else "",
                path=path,
                kind=FileKind.DIRECTORY if is_directory else FileKind.FILE,
                size=int(length) if length and length.strip().isdigit() else None,
                mime_type=prop.findtext(f"{DAV}getcontenttype") or None,
                modified_at=_parse_http_date(modified),
            ))
        return entries

    @staticmethod
    def _successful_prop(response):
        for propstat in response.findall(f"{DAV}propstat"):
            status = propstat.findtext(f"{DAV}status") or ""
            if " 200 " in f"{status} ":
                return propstat.find(f"{DAV}prop")
        return None

    def list_files(self, path: str, filters: FileFilter | None = None) -> list[FileDescriptor]:
        self.ensure_authenticated()
        target = normalize_path(path)
        entries = [entry for entry in self._propfind(target, depth="1") if entry.path != target]
        entries.sort(key=lambda entry: entry.path)
        return self.apply_filters(entries, filters)

    def get_file_info(self, path: str) -> FileDescriptor:
        self.ensure_authenticated()
        target = normalize_path(path)
        entries = self._propfind(target, depth="0")
        if not entries:
            raise NotFoundError(path=target, provider_type=self.provider_type)
        return entries[0]

    def create_folder(self, path: str) -> FileDescriptor:
        self.ensure_authenticated()
        target = normalize_path(path)
        try:
            self._request("MKCOL", target)
        except APIError as e:
            if e.status_code == 405:
                raise AlreadyExistsError(path=target, provider_type=self.provider_type) from e
            raise
        except AlreadyExistsError as e:
            # MKCOL answers 409 when an intermediate collection is missing
            raise NotFoundError(
                f"Parent folder of {target} does not exist",
                path=parent_of(target),
                provider_type=self.provider_type,
            ) from e

        return FileDescriptor(
            id=target,
            name=basename(target),
            path=target,
            kind=FileKind.DIRECTORY,
            modified_at=timezone.now(),
        )

    @retried
    def _open_download(self, path: str) -> requests.Response:
        return self._request("GET", path, stream=True)

    def download_file(self, path: str) -> BinaryIO:
        self.ensure_authenticated()
        target = normalize_path(path)
        response = self._open_download(target)
        return ChunkedReader(
            response.iter_content(chunk_size=self.chunk_size),
            on_close=response.close,
        )

    def _iter_upload(self, stream: BinaryIO, chunk_size: int) -> Iterator[bytes]:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            yield chunk

    def upload_file(
        self, path: str, stream: BinaryIO, options: UploadOptions | None = None
    ) -> FileDescriptor:
        """
        PUT the stream to ``path``.

        Without ``overwrite`` the request carries ``If-None-Match: *`` so the
        server refuses to replace an existing resource (412). A known size is
        sent as Content-Length; an unknown one falls back to chunked encoding.
        ``modified_at`` is passed as ``X-OC-Mtime``, which ownCloud and
        Nextcloud honour; other servers keep their own upload time.
        """
        self.ensure_authenticated()
        options = options or UploadOptions()
        target = normalize_path(path)
        if target == ROOT:
            raise InvalidOperationError("Cannot upload to the root path")

        headers = {"Content-Type": options.mime_type or "application/octet-stream"}
        if not options.overwrite:
            headers["If-None-Match"] = "*"
        if options.modified_at is not None:
            headers[MTIME_HEADER] = str(int(options.modified_at.timestamp()))

        chunks = self._iter_upload(stream, options.chunk_size or self.chunk_size)
        if options.size is None:
            body = chunks
        elif options.size == 0:
            body = b""
        else:
            body = SizedBody(chunks, options.size)

        try:
            response = self._request("PUT", target, data=body, headers=headers)
        except AlreadyExistsError as e:
            if e.status_code == 409:
                raise NotFoundError(
                    f"Parent folder of {target} does not exist",
                    path=parent_of(target),
                    provider_type=self.provider_type,
                ) from e
            raise

        mtime_accepted = response.headers.get(MTIME_HEADER, "").lower() == "accepted"
        return FileDescriptor(
            id=target,
            name=basename(target),
            path=target,
            size=options.size,
            mime_type=options.mime_type,
            modified_at=options.modified_at if mtime_accepted else timezone.now(),
        )

    @retried
    def _delete(self, path: str) -> None:
        self._request("DELETE", path)

    def delete_file(self, path: str) -> None:
        self.ensure_authenticated()
        target = normalize_path(path)
        if target == ROOT:
            raise InvalidOperationError("Refusing to delete the root collection")
        self._delete(target)

    def _transfer(self, method: str, source_path: str, destination_path: str) -> FileDescriptor:
        self.ensure_authenticated()
        source = normalize_path(source_path)
        destination = normalize_path(destination_path)
        self._request(
            method,
            source,
            headers={"Destination": self._url(destination), "Overwrite": "F"},
        )
        return self.get_file_info(destination)

    def move_file(self, source_path: str, destination_path: str) -> FileDescriptor:
        return self._transfer("MOVE", source_path, destination_path)

    def copy_file(self, source_path: str, destination_path: str) -> FileDescriptor:
        return self._transfer("COPY", source_path, destination_path)

    @retried
    def get_quota(self) -> Quota:
        self.ensure_authenticated()
        response = self._request(
            "PROPFIND",
            ROOT,
            data=QUOTA_BODY.encode("utf-8"),
            headers={"Depth": "0", "Content-Type": "application/xml; charset=utf-8"},
        )
        root = ElementTree.fromstring(response.content)
        available = _parse_int(root.findtext(f".//{DAV}quota-available-bytes"))
        used = _parse_int(root.findtext(f".//{DAV}quota-used-bytes")) or 0

        # Negative values mean the server does not track the quota
        if available is None or available < 0:
            return Quota(total=None, used=used, available=None)
        return Quota(total=used + available, used=used, available=available)


def _parse_http_date(value: str | None):
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None
