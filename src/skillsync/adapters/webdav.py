"""
WebDAV adapter -- Nextcloud, ownCloud, Nutstore and friends.

PUT/GET/DELETE move payloads, PROPFIND lists and probes, MKCOL creates
parent collections. The checksum and caller metadata ride in a JSON
sidecar at ``<path>.meta`` because plain WebDAV has nowhere else to
keep them.
"""

from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from email.utils import parsedate_to_datetime
from typing import Any, Optional
from urllib.parse import quote, unquote, urlparse

import requests

from ..models import WebDAVConfig, utcnow
from .base import (
    AdapterError,
    AdapterErrorCode,
    AdapterNotConnectedError,
    CloudAdapter,
    DownloadResult,
    RemoteItem,
    UploadResult,
    sha256_hex,
)

logger = logging.getLogger("skillsync.adapters.webdav")

META_SUFFIX = ".meta"
DAV_NS = "{DAV:}"
PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:displayname/><d:getcontentlength/><d:getcontenttype/>"
    "<d:getlastmodified/><d:getetag/><d:resourcetype/>"
    "</d:prop></d:propfind>"
)


class WebDAVAdapter(CloudAdapter):
    """Basic-auth WebDAV backend.

    Args:
        config: WebDAV configuration.
        session: Optional pre-built requests session.
    """

    provider = "webdav"

    def __init__(
        self, config: WebDAVConfig, session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(config)
        self._session = session
        self._owns_session = session is None
        self._server = ""
        self._base_path = ""

    # -- connection ---------------------------------------------------------

    def _connect(self) -> None:
        if not self.config.endpoint or not self.config.username:
            raise self._error(
                "endpoint and username are required", AdapterErrorCode.INVALID_CONFIG,
            )
        parsed = urlparse(self.config.endpoint)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise self._error(
                f"Invalid WebDAV endpoint: {self.config.endpoint}",
                AdapterErrorCode.INVALID_CONFIG,
            )

        self._server = self.config.endpoint.rstrip("/")
        base = self.config.base_path.strip("/")
        self._base_path = f"/{base}" if base else ""
        if self._session is None:
            self._session = requests.Session()
            self._owns_session = True
        self._session.auth = (self.config.username, self.config.password)

        try:
            response = self._request(
                "PROPFIND", self._base_path or "/", headers={"Depth": "0"},
            )
        except AdapterError as exc:
            raise self._error(
                f"Failed to connect to WebDAV server: {exc.message}",
                AdapterErrorCode.CONNECTION_FAILED, exc,
            ) from exc

        if response.status_code == 401:
            raise self._error(
                "Invalid WebDAV credentials", AdapterErrorCode.AUTHENTICATION_FAILED,
            )
        if response.status_code == 404 and self._base_path:
            self._ensure_collection(self._base_path)
        elif response.status_code not in (200, 207):
            raise self._error(
                f"Failed to connect to WebDAV server: HTTP {response.status_code}",
                AdapterErrorCode.CONNECTION_FAILED,
            )

    def _disconnect(self) -> None:
        if self._session is not None and self._owns_session:
            self._session.close()
            self._session = None
        self._server = ""
        self._base_path = ""

    # -- operations ---------------------------------------------------------

    def _upload(
        self, key: str, data: bytes, checksum: str, metadata: dict[str, Any],
    ) -> UploadResult:
        path = self._remote_path(key)
        parent = path.rsplit("/", 1)[0]
        if parent:
            self._ensure_collection(parent)

        response = self._request(
            "PUT", path, data=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        if response.status_code not in (200, 201, 204):
            raise self._classify(response)

        sidecar = json.dumps({"checksum": checksum, "metadata": metadata})
        response = self._request(
            "PUT", path + META_SUFFIX, data=sidecar.encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        if response.status_code not in (200, 201, 204):
            raise self._classify(response)

        return UploadResult(
            success=True, key=key, size=len(data), checksum=checksum,
            uploaded_at=utcnow(),
        )

    def _download(self, key: str) -> DownloadResult:
        path = self._remote_path(key)
        response = self._request("GET", path)
        if response.status_code != 200:
            raise self._classify(response)
        data = response.content

        sidecar = self._read_sidecar(path)
        last_modified = response.headers.get("Last-Modified")
        return DownloadResult(
            success=True,
            data=data,
            size=len(data),
            checksum=sidecar.get("checksum") or sha256_hex(data),
            last_modified=_parse_http_date(last_modified),
            metadata=sidecar.get("metadata") or {},
        )

    def _list(self, prefix: str) -> list[RemoteItem]:
        # Listing starts at the deepest collection the prefix names.
        start = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        items: list[RemoteItem] = []
        pending = [start]
        seen: set[str] = set()
        while pending:
            rel_dir = pending.pop()
            if rel_dir in seen:
                continue
            seen.add(rel_dir)
            for rel, is_dir, size, modified in self._propfind(rel_dir):
                if is_dir:
                    pending.append(rel)
                    continue
                if rel.endswith(META_SUFFIX):
                    continue
                sidecar = self._read_sidecar(self._remote_path(rel))
                items.append(RemoteItem(
                    key=rel,
                    name=rel.rsplit("/", 1)[-1],
                    size=size,
                    last_modified=modified,
                    checksum=sidecar.get("checksum"),
                    metadata=sidecar.get("metadata") or {},
                ))
        return sorted(items, key=lambda item: item.key)

    def _delete(self, key: str) -> bool:
        path = self._remote_path(key)
        response = self._request("DELETE", path)
        if response.status_code not in (200, 204):
            raise self._classify(response)
        try:
            self._request("DELETE", path + META_SUFFIX)
        except AdapterError as exc:
            logger.warning("Could not remove sidecar for %s: %s", key, exc)
        return True

    # -- helpers ------------------------------------------------------------

    def _remote_path(self, key: str) -> str:
        if not key:
            return self._base_path
        return f"{self._base_path}/{key}"

    def _relative_key(self, href: str) -> str:
        path = unquote(urlparse(href).path)
        server_root = urlparse(self._server).path.rstrip("/")
        if server_root and path.startswith(server_root):
            path = path[len(server_root):]
        if self._base_path and path.startswith(self._base_path):
            path = path[len(self._base_path):]
        return path.strip("/")

    def _propfind(self, rel_dir: str) -> list[tuple[str, bool, int, Any]]:
        """Children of a collection as (key, is_dir, size, last_modified)."""
        response = self._request(
            "PROPFIND", self._remote_path(rel_dir) or "/",
            headers={"Depth": "1", "Content-Type": "application/xml"},
            data=PROPFIND_BODY.encode("utf-8"),
        )
        if response.status_code == 404:
            return []
        if response.status_code not in (200, 207):
            raise self._classify(response)

        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as exc:
            raise self._error(
                "Malformed PROPFIND response", AdapterErrorCode.UNKNOWN_ERROR, exc,
            ) from exc

        entries = []
        for node in root.iter(f"{DAV_NS}response"):
            href = node.findtext(f"{DAV_NS}href") or ""
            rel = self._relative_key(href)
            if rel == rel_dir:
                continue
            is_dir = node.find(f".//{DAV_NS}resourcetype/{DAV_NS}collection") is not None
            length = node.findtext(f".//{DAV_NS}getcontentlength") or "0"
            modified = node.findtext(f".//{DAV_NS}getlastmodified")
            entries.append((
                rel,
                is_dir,
                int(length) if length.isdigit() else 0,
                _parse_http_date(modified),
            ))
        return entries

    def _read_sidecar(self, path: str) -> dict[str, Any]:
        try:
            response = self._request("GET", path + META_SUFFIX)
        except AdapterError as exc:
            logger.debug("No sidecar for %s: %s", path, exc)
            return {}
        if response.status_code != 200:
            return {}
        try:
            sidecar = json.loads(response.content)
        except ValueError:
            logger.warning("Unreadable sidecar for %s", path)
            return {}
        if not isinstance(sidecar, dict):
            logger.warning("Sidecar for %s is not an object", path)
            return {}
        return sidecar

    def _ensure_collection(self, path: str) -> None:
        current = ""
        for part in [p for p in path.split("/") if p]:
            current += f"/{part}"
            probe = self._request("PROPFIND", current, headers={"Depth": "0"})
            if probe.status_code != 404:
                continue
            response = self._request("MKCOL", current)
            if response.status_code not in (200, 201, 405):
                raise self._error(
                    f"Failed to create collection {current}",
                    AdapterErrorCode.PERMISSION_DENIED,
                )

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        if self._session is None:
            raise AdapterNotConnectedError(self.provider)
        url = self._server + quote(path or "/")
        try:
            return self._session.request(
                method, url, timeout=self.config.timeout, **kwargs,
            )
        except requests.Timeout as exc:
            raise self._error(
                f"{method} {path} timed out", AdapterErrorCode.TIMEOUT, exc,
            ) from exc
        except requests.RequestException as exc:
            raise self._error(
                f"{method} {path} failed: {exc}", AdapterErrorCode.NETWORK_ERROR, exc,
            ) from exc

    def _classify(self, response: requests.Response) -> AdapterError:
        status = response.status_code
        message = f"HTTP {status}: {response.reason or ''}".strip()
        codes = {
            401: AdapterErrorCode.AUTHENTICATION_FAILED,
            403: AdapterErrorCode.PERMISSION_DENIED,
            404: AdapterErrorCode.NOT_FOUND,
            429: AdapterErrorCode.RATE_LIMITED,
            507: AdapterErrorCode.QUOTA_EXCEEDED,
        }
        return self._error(message, codes.get(status, AdapterErrorCode.UNKNOWN_ERROR))


def _parse_http_date(value: Optional[str]):
    if not value:
        return utcnow()
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return utcnow()
