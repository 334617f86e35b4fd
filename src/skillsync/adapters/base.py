"""
Cloud adapter contract -- the one interface every remote backend speaks.

The base class owns the bookkeeping every backend would otherwise
repeat: key normalization, the connected guard, checksumming and the
listing cache primed on connect. Subclasses implement the ``_``-prefixed
hooks against their own wire protocol.
"""

from __future__ import annotations

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models import utcnow

logger = logging.getLogger("skillsync.adapters")

_REPEATED_SLASHES = re.compile(r"/{2,}")


class AdapterErrorCode(str, Enum):
    """Backend failure taxonomy."""

    CONNECTION_FAILED = "CONNECTION_FAILED"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    INVALID_CONFIG = "INVALID_CONFIG"
    NOT_CONNECTED = "NOT_CONNECTED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class AdapterError(Exception):
    """Raised by adapters for any backend failure.

    Attributes:
        message: Human-readable description.
        code: Classification used by the engine's retry policy.
        provider: Backend that raised it.
        cause: Underlying exception, if any.
        reset_at: When a rate limit lifts (RATE_LIMITED only).
    """

    def __init__(
        self,
        message: str,
        code: AdapterErrorCode,
        provider: str,
        cause: Optional[BaseException] = None,
        reset_at: Optional[datetime] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.provider = provider
        self.cause = cause
        self.reset_at = reset_at

    def __str__(self) -> str:
        return f"[{self.provider}] {self.code.value}: {self.message}"


class AdapterNotConnectedError(AdapterError):
    """Raised when an operation is attempted before ``connect``."""

    def __init__(self, provider: str) -> None:
        super().__init__(
            f"{provider} adapter is not connected",
            AdapterErrorCode.NOT_CONNECTED,
            provider,
        )


class UploadResult(BaseModel):
    success: bool
    key: str
    size: int
    checksum: str
    uploaded_at: datetime


class DownloadResult(BaseModel):
    success: bool
    data: bytes
    size: int
    checksum: str
    last_modified: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class RemoteItem(BaseModel):
    """One entry of a remote listing."""

    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    size: int = 0
    is_directory: bool = False
    last_modified: datetime = Field(default_factory=utcnow)
    checksum: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def normalize_key(key: str) -> str:
    """Canonical form of a storage key.

    Backslashes become ``/``, leading and trailing slashes are stripped
    and runs of slashes collapse to one, so ``\\a\\\\b\\``, ``/a/b/``
    and ``a//b`` all become ``a/b``.
    """
    key = key.replace("\\", "/")
    key = _REPEATED_SLASHES.sub("/", key)
    return key.strip("/")


def sha256_hex(data: bytes) -> str:
    """SHA-256 hex digest of a payload."""
    return hashlib.sha256(data).hexdigest()


class CloudAdapter(ABC):
    """Abstract remote storage backend.

    Args:
        config: Provider configuration for this backend.
    """

    provider: str = "abstract"

    def __init__(self, config: Any) -> None:
        self.config = config
        self._connected = False
        self._listing: list[RemoteItem] = []

    # -- connection ---------------------------------------------------------

    def connect(self, config: Any = None) -> None:
        """Establish and verify the connection, then prime the listing cache.

        Args:
            config: Optional replacement configuration.

        Raises:
            AdapterError: AUTHENTICATION_FAILED, CONNECTION_FAILED or
                INVALID_CONFIG.
        """
        if config is not None:
            self.config = config
        self._connect()
        self._connected = True
        try:
            self._listing = self.list("")
        except AdapterError:
            self._connected = False
            self._disconnect()
            raise
        logger.info(
            "Connected to %s (%d remote item(s))",
            self.provider, len(self._listing),
        )

    def disconnect(self) -> None:
        """Release session and cached listing state."""
        self._disconnect()
        self._connected = False
        self._listing = []

    def is_connected(self) -> bool:
        return self._connected

    @property
    def cached_listing(self) -> list[RemoteItem]:
        """Listing as of the last ``list("")`` call."""
        return list(self._listing)

    def test_connection(self) -> bool:
        """Cheap liveness probe; never raises."""
        if not self._connected:
            return False
        try:
            self.list("")
        except AdapterError as exc:
            logger.warning("Connection test failed for %s: %s", self.provider, exc)
            return False
        return True

    # -- operations ---------------------------------------------------------

    def upload(
        self, key: str, data: bytes, metadata: Optional[dict[str, Any]] = None,
    ) -> UploadResult:
        """Store ``data`` under ``key`` together with its SHA-256."""
        self._ensure_connected()
        key = normalize_key(key)
        checksum = sha256_hex(data)
        return self._upload(key, data, checksum, dict(metadata or {}))

    def download(self, key: str) -> DownloadResult:
        """Fetch a payload and the checksum recorded at upload time.

        Callers verify the checksum themselves.
        """
        self._ensure_connected()
        return self._download(normalize_key(key))

    def list(self, prefix: str = "") -> list[RemoteItem]:
        """All remote entries whose normalized key starts with ``prefix``."""
        self._ensure_connected()
        prefix = normalize_key(prefix)
        items = [
            item for item in self._list(prefix)
            if item.key.startswith(prefix)
        ]
        if not prefix:
            self._listing = items
        return items

    def delete(self, key: str) -> bool:
        self._ensure_connected()
        return self._delete(normalize_key(key))

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise AdapterNotConnectedError(self.provider)

    def _error(
        self,
        message: str,
        code: AdapterErrorCode,
        cause: Optional[BaseException] = None,
        reset_at: Optional[datetime] = None,
    ) -> AdapterError:
        return AdapterError(message, code, self.provider, cause, reset_at)

    # -- backend hooks ------------------------------------------------------

    @abstractmethod
    def _connect(self) -> None:
        """Verify credentials and reachability."""

    def _disconnect(self) -> None:
        """Drop backend session state. Default: nothing to drop."""

    @abstractmethod
    def _upload(
        self, key: str, data: bytes, checksum: str, metadata: dict[str, Any],
    ) -> UploadResult:
        """Write payload, checksum and metadata for a normalized key."""

    @abstractmethod
    def _download(self, key: str) -> DownloadResult:
        """Read a payload for a normalized key."""

    @abstractmethod
    def _list(self, prefix: str) -> list[RemoteItem]:
        """List entries; may over-return, the base class filters."""

    @abstractmethod
    def _delete(self, key: str) -> bool:
        """Remove a normalized key. Raise NOT_FOUND when absent."""
