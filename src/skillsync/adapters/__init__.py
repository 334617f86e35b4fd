"""
Remote storage adapters.

Backends:
    local        -- a plain directory (USB drive, NAS mount, tests)
    github-gist  -- one private gist per item
    webdav       -- Nextcloud, ownCloud and other WebDAV servers
    s3           -- AWS S3 and S3-compatible object stores
"""

from __future__ import annotations

from typing import Any, Callable

from ..models import GitHubGistConfig, LocalConfig, S3Config, WebDAVConfig
from .base import (
    AdapterError,
    AdapterErrorCode,
    AdapterNotConnectedError,
    CloudAdapter,
    DownloadResult,
    RemoteItem,
    UploadResult,
    normalize_key,
)


def _local(config: LocalConfig) -> CloudAdapter:
    from .local import LocalAdapter

    return LocalAdapter(config)


def _gist(config: GitHubGistConfig) -> CloudAdapter:
    from .github_gist import GitHubGistAdapter

    return GitHubGistAdapter(config)


def _webdav(config: WebDAVConfig) -> CloudAdapter:
    from .webdav import WebDAVAdapter

    return WebDAVAdapter(config)


def _s3(config: S3Config) -> CloudAdapter:
    from .s3 import S3Adapter

    return S3Adapter(config)


_FACTORIES: dict[str, Callable[[Any], CloudAdapter]] = {
    "local": _local,
    "github-gist": _gist,
    "webdav": _webdav,
    "s3": _s3,
}


def create_adapter(config: Any) -> CloudAdapter:
    """Instantiate the adapter for a provider configuration.

    Args:
        config: One of the provider config models.

    Returns:
        An unconnected adapter.

    Raises:
        ValueError: If the provider is not supported.
    """
    provider = getattr(config, "provider", None)
    factory = _FACTORIES.get(provider)
    if factory is None:
        raise ValueError(f"Unknown provider: {provider}")
    return factory(config)


__all__ = [
    "AdapterError",
    "AdapterErrorCode",
    "AdapterNotConnectedError",
    "CloudAdapter",
    "DownloadResult",
    "RemoteItem",
    "UploadResult",
    "create_adapter",
    "normalize_key",
]
