"""
Local filesystem adapter -- the reference backend.

Payloads live under ``base_dir`` at their key; each one has a
``<key>.meta.json`` sidecar holding the checksum recorded at upload
time and the caller's metadata. Good for USB drives, NAS mounts and
for exercising the engine without a network.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..models import LocalConfig, utcnow
from .base import (
    AdapterErrorCode,
    AdapterNotConnectedError,
    CloudAdapter,
    DownloadResult,
    RemoteItem,
    UploadResult,
    sha256_hex,
)

logger = logging.getLogger("skillsync.adapters.local")

META_SUFFIX = ".meta.json"


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class LocalAdapter(CloudAdapter):
    """Directory-backed adapter."""

    provider = "local"

    def __init__(self, config: LocalConfig) -> None:
        super().__init__(config)
        self.root: Path | None = None

    def _connect(self) -> None:
        if self.config.base_dir is None or not str(self.config.base_dir).strip():
            raise self._error("base_dir is required", AdapterErrorCode.INVALID_CONFIG)
        root = Path(self.config.base_dir).expanduser()
        try:
            root.mkdir(parents=True, exist_ok=True)
        except PermissionError as exc:
            raise self._error(
                f"Cannot create {root}", AdapterErrorCode.PERMISSION_DENIED, exc,
            ) from exc
        except OSError as exc:
            raise self._error(
                f"Cannot use {root}: {exc}", AdapterErrorCode.CONNECTION_FAILED, exc,
            ) from exc
        if not root.is_dir():
            raise self._error(
                f"{root} is not a directory", AdapterErrorCode.INVALID_CONFIG,
            )
        self.root = root

    def _disconnect(self) -> None:
        self.root = None

    def _path(self, key: str) -> Path:
        if self.root is None:
            raise AdapterNotConnectedError(self.provider)
        return self.root / key

    def _upload(
        self, key: str, data: bytes, checksum: str, metadata: dict[str, Any],
    ) -> UploadResult:
        path = self._path(key)
        uploaded_at = utcnow()
        sidecar = {
            "checksum": checksum,
            "metadata": metadata,
            "uploaded_at": uploaded_at.isoformat(),
        }
        try:
            _atomic_write(path, data)
            _atomic_write(
                path.with_name(path.name + META_SUFFIX),
                json.dumps(sidecar, indent=2).encode("utf-8"),
            )
        except PermissionError as exc:
            raise self._error(
                f"Permission denied writing {key}",
                AdapterErrorCode.PERMISSION_DENIED, exc,
            ) from exc
        except OSError as exc:
            raise self._error(
                f"Write failed for {key}: {exc}", AdapterErrorCode.UNKNOWN_ERROR, exc,
            ) from exc

        logger.debug("Stored %s (%d bytes)", key, len(data))
        return UploadResult(
            success=True,
            key=key,
            size=len(data),
            checksum=checksum,
            uploaded_at=uploaded_at,
        )

    def _read_sidecar(self, path: Path) -> dict[str, Any]:
        meta_path = path.with_name(path.name + META_SUFFIX)
        if not meta_path.exists():
            return {}
        try:
            sidecar = json.loads(meta_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Unreadable sidecar %s: %s", meta_path, exc)
            return {}
        return sidecar if isinstance(sidecar, dict) else {}

    def _download(self, key: str) -> DownloadResult:
        path = self._path(key)
        if not path.is_file():
            raise self._error(f"Item not found: {key}", AdapterErrorCode.NOT_FOUND)
        try:
            data = path.read_bytes()
        except PermissionError as exc:
            raise self._error(
                f"Permission denied reading {key}",
                AdapterErrorCode.PERMISSION_DENIED, exc,
            ) from exc
        except OSError as exc:
            raise self._error(
                f"Read failed for {key}: {exc}", AdapterErrorCode.UNKNOWN_ERROR, exc,
            ) from exc

        sidecar = self._read_sidecar(path)
        return DownloadResult(
            success=True,
            data=data,
            size=len(data),
            checksum=sidecar.get("checksum") or sha256_hex(data),
            last_modified=datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc),
            metadata=sidecar.get("metadata") or {},
        )

    def _list(self, prefix: str) -> list[RemoteItem]:
        if self.root is None:
            raise AdapterNotConnectedError(self.provider)
        items = []
        for path in sorted(self.root.rglob("*")):
            if not path.is_file():
                continue
            if path.name.endswith(META_SUFFIX) or path.name.startswith(".tmp-"):
                continue
            key = path.relative_to(self.root).as_posix()
            if not key.startswith(prefix):
                continue
            sidecar = self._read_sidecar(path)
            stat = path.stat()
            items.append(RemoteItem(
                key=key,
                name=path.name,
                size=stat.st_size,
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                checksum=sidecar.get("checksum"),
                metadata=sidecar.get("metadata") or {},
            ))
        return items

    def _delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.is_file():
            raise self._error(f"Item not found: {key}", AdapterErrorCode.NOT_FOUND)
        try:
            path.unlink()
            path.with_name(path.name + META_SUFFIX).unlink(missing_ok=True)
        except OSError as exc:
            raise self._error(
                f"Delete failed for {key}: {exc}", AdapterErrorCode.PERMISSION_DENIED, exc,
            ) from exc
        return True
