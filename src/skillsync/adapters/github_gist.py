"""
GitHub Gist adapter -- one gist per stored key.

Gist filenames are charset-restricted, so the logical key and the
upload checksum travel in the gist description as JSON::

    {"ccjk": true, "key": "skills/foo.json", "checksum": "<sha256>", "metadata": {...}}

That JSON never leaves this module: it is parsed into a
``GistDescriptor`` the moment a response arrives.

Rate limits are watched on every response. A 403 with no quota left is
RATE_LIMITED (with the reset time), never a plain permission error, and
requests made while the quota is known to be exhausted either wait for
the reset or fail fast when the wait would be too long.
"""

from __future__ import annotations

import base64
import binascii
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import requests
from pydantic import BaseModel, Field, ValidationError

from ..models import GitHubGistConfig, utcnow
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

logger = logging.getLogger("skillsync.adapters.github_gist")

PER_PAGE = 100
API_VERSION = "2022-11-28"


class GistDescriptor(BaseModel):
    """Structured form of the JSON kept in a gist's description."""

    ccjk: bool = True
    key: str
    checksum: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def parse(cls, description: Optional[str]) -> Optional["GistDescriptor"]:
        """Parse a description; None for gists this tool did not write."""
        if not description:
            return None
        try:
            descriptor = cls.model_validate_json(description)
        except ValidationError:
            return None
        if not descriptor.ccjk or not descriptor.key:
            return None
        return descriptor


@dataclass
class RateLimitInfo:
    limit: Optional[int]
    remaining: int
    reset: int

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset, tz=timezone.utc)


def key_to_filename(key: str) -> str:
    return key.replace("/", "_") + ".b64"


class GitHubGistAdapter(CloudAdapter):
    """Stores items as base64 files in private (by default) gists.

    Args:
        config: Gist configuration.
        session: Optional pre-built requests session.
    """

    provider = "github-gist"

    def __init__(
        self,
        config: GitHubGistConfig,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(config)
        self._session = session
        self._owns_session = session is None
        self._base_url = config.api_base_url.rstrip("/")
        self._gists: dict[str, str] = {}
        self._rate_limit: Optional[RateLimitInfo] = None
        self._slots = threading.BoundedSemaphore(config.max_in_flight)
        self._lock = threading.Lock()
        self._sleep = time.sleep

    # -- connection ---------------------------------------------------------

    def _connect(self) -> None:
        token = self.config.resolve_token()
        if not token:
            raise self._error("GitHub token is required", AdapterErrorCode.INVALID_CONFIG)

        self._base_url = self.config.api_base_url.rstrip("/")
        self._slots = threading.BoundedSemaphore(self.config.max_in_flight)
        if self._session is None:
            self._session = requests.Session()
            self._owns_session = True
        self._session.headers.update({
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {token}",
            "X-GitHub-Api-Version": API_VERSION,
        })

        try:
            response = self._request("GET", "/user")
        except AdapterError as exc:
            if exc.code in (AdapterErrorCode.NETWORK_ERROR, AdapterErrorCode.TIMEOUT):
                raise self._error(
                    f"Failed to connect to GitHub: {exc.message}",
                    AdapterErrorCode.CONNECTION_FAILED, exc,
                ) from exc
            raise

        if response.status_code == 401:
            raise self._error("Invalid GitHub token", AdapterErrorCode.AUTHENTICATION_FAILED)
        if response.status_code != 200:
            error = self._classify(response)
            if error.code == AdapterErrorCode.RATE_LIMITED:
                raise error
            raise self._error(
                f"Failed to connect to GitHub: HTTP {response.status_code}",
                AdapterErrorCode.CONNECTION_FAILED,
            )
        login = response.json().get("login", "?")
        logger.info("Authenticated to GitHub as %s", login)

    def _disconnect(self) -> None:
        if self._session is not None and self._owns_session:
            self._session.close()
            self._session = None
        with self._lock:
            self._gists.clear()
            self._rate_limit = None

    def get_rate_limit_info(self) -> Optional[RateLimitInfo]:
        return self._rate_limit

    # -- operations ---------------------------------------------------------

    def _upload(
        self, key: str, data: bytes, checksum: str, metadata: dict[str, Any],
    ) -> UploadResult:
        filename = key_to_filename(key)
        descriptor = GistDescriptor(key=key, checksum=checksum, metadata=metadata)
        files = {filename: {"content": base64.b64encode(data).decode("ascii")}}

        with self._lock:
            gist_id = self._gists.get(key)

        response = None
        if gist_id:
            response = self._request(
                "PATCH", f"/gists/{gist_id}",
                json={"description": descriptor.model_dump_json(), "files": files},
            )
            if response.status_code == 404:
                logger.info("Gist %s for %s vanished, recreating", gist_id, key)
                with self._lock:
                    self._gists.pop(key, None)
                response = None
        if response is None:
            response = self._request(
                "POST", "/gists",
                json={
                    "description": descriptor.model_dump_json(),
                    "public": not self.config.is_private,
                    "files": files,
                },
            )

        if response.status_code not in (200, 201):
            raise self._classify(response)

        gist = response.json()
        with self._lock:
            self._gists[key] = gist["id"]

        return UploadResult(
            success=True,
            key=key,
            size=len(data),
            checksum=checksum,
            uploaded_at=gist.get("updated_at") or utcnow(),
        )

    def _download(self, key: str) -> DownloadResult:
        gist_id = self._gist_id(key)
        response = self._request("GET", f"/gists/{gist_id}")
        if response.status_code != 200:
            raise self._classify(response)

        gist = response.json()
        filename = key_to_filename(key)
        gist_file = (gist.get("files") or {}).get(filename)
        if not gist_file:
            raise self._error(
                f"File not found in gist: {filename}", AdapterErrorCode.NOT_FOUND,
            )

        if gist_file.get("truncated") and gist_file.get("raw_url"):
            raw = self._request("GET", gist_file["raw_url"])
            if raw.status_code != 200:
                raise self._classify(raw)
            encoded = raw.text
        else:
            encoded = gist_file.get("content") or ""

        try:
            data = base64.b64decode(encoded, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise self._error(
                f"Corrupt payload in gist {gist_id}", AdapterErrorCode.UNKNOWN_ERROR, exc,
            ) from exc

        descriptor = GistDescriptor.parse(gist.get("description"))
        return DownloadResult(
            success=True,
            data=data,
            size=len(data),
            checksum=descriptor.checksum if descriptor else sha256_hex(data),
            last_modified=gist.get("updated_at") or utcnow(),
            metadata=descriptor.metadata if descriptor else {},
        )

    def _list(self, prefix: str) -> list[RemoteItem]:
        cache: dict[str, str] = {}
        items: list[RemoteItem] = []
        page = 1
        while True:
            response = self._request(
                "GET", "/gists", params={"per_page": PER_PAGE, "page": page},
            )
            if response.status_code != 200:
                raise self._classify(response)
            batch = response.json()
            for gist in batch:
                self._collect(gist, cache, items)
            if len(batch) < PER_PAGE:
                break
            page += 1

        pinned = self.config.gist_id
        if pinned and pinned not in cache.values():
            response = self._request("GET", f"/gists/{pinned}")
            if response.status_code == 200:
                self._collect(response.json(), cache, items)
            else:
                logger.warning(
                    "Pinned gist %s unavailable (HTTP %s)", pinned, response.status_code,
                )

        with self._lock:
            self._gists = cache
        return items

    def _delete(self, key: str) -> bool:
        gist_id = self._gist_id(key)
        response = self._request("DELETE", f"/gists/{gist_id}")
        if response.status_code not in (200, 204):
            raise self._classify(response)
        with self._lock:
            self._gists.pop(key, None)
        return True

    # -- helpers ------------------------------------------------------------

    def _gist_id(self, key: str) -> str:
        with self._lock:
            gist_id = self._gists.get(key)
        if not gist_id:
            raise self._error(f"Item not found: {key}", AdapterErrorCode.NOT_FOUND)
        return gist_id

    def _collect(
        self, gist: dict[str, Any], cache: dict[str, str], items: list[RemoteItem],
    ) -> None:
        descriptor = GistDescriptor.parse(gist.get("description"))
        if descriptor is None:
            return
        filename = key_to_filename(descriptor.key)
        gist_file = (gist.get("files") or {}).get(filename) or {}
        cache[descriptor.key] = gist["id"]
        items.append(RemoteItem(
            key=descriptor.key,
            name=filename,
            size=gist_file.get("size", 0),
            last_modified=gist.get("updated_at") or utcnow(),
            checksum=descriptor.checksum,
            metadata=descriptor.metadata,
        ))

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        """Authenticated call with in-flight cap and rate-limit tracking."""
        self._wait_for_rate_limit()
        url = path if path.startswith("http") else self._base_url + path
        if self._session is None:
            raise AdapterNotConnectedError(self.provider)
        with self._slots:
            try:
                response = self._session.request(
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
        self._update_rate_limit(response)
        return response

    def _wait_for_rate_limit(self) -> None:
        with self._lock:
            info = self._rate_limit
        if info is None or info.remaining > 0:
            return
        wait = info.reset - time.time()
        if wait <= 0:
            return
        if wait > self.config.max_rate_limit_wait:
            raise self._error(
                f"Rate limited. Reset in {int(wait) + 1} seconds",
                AdapterErrorCode.RATE_LIMITED,
                reset_at=info.reset_at,
            )
        logger.warning("GitHub rate limit exhausted, waiting %.0fs for reset", wait)
        self._sleep(wait)
        with self._lock:
            if self._rate_limit is info:
                self._rate_limit = None

    def _update_rate_limit(self, response: requests.Response) -> None:
        headers = response.headers
        remaining = headers.get("x-ratelimit-remaining")
        reset = headers.get("x-ratelimit-reset")
        if remaining is None or reset is None:
            return
        limit = headers.get("x-ratelimit-limit")
        try:
            info = RateLimitInfo(
                limit=int(limit) if limit is not None else None,
                remaining=int(remaining),
                reset=int(reset),
            )
        except ValueError:
            return
        with self._lock:
            self._rate_limit = info

    def _classify(self, response: requests.Response) -> AdapterError:
        message = _response_message(response)
        status = response.status_code
        if status == 401:
            return self._error(message, AdapterErrorCode.AUTHENTICATION_FAILED)
        if status in (403, 429):
            info = self._rate_limit
            if status == 429 or (info is not None and info.remaining == 0):
                return self._error(
                    message,
                    AdapterErrorCode.RATE_LIMITED,
                    reset_at=info.reset_at if info else None,
                )
            return self._error(message, AdapterErrorCode.PERMISSION_DENIED)
        if status == 404:
            return self._error(message, AdapterErrorCode.NOT_FOUND)
        if status == 422:
            return self._error(message, AdapterErrorCode.INVALID_CONFIG)
        return self._error(f"HTTP {status}: {message}", AdapterErrorCode.UNKNOWN_ERROR)


def _response_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text or str(response.status_code)
