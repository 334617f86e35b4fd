"""
Sync data models -- items, changes, conflicts, configuration and state.

Everything the engine passes between its layers is a pydantic model,
so the same shapes serialize to the checkpoint, the state file and the
remote payloads without hand-written codecs.
"""

from __future__ import annotations

import hashlib
import os
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def compute_content_hash(content: str) -> str:
    """SHA-256 hex digest of an item's serialized content.

    Args:
        content: The opaque payload string.

    Returns:
        Hex-encoded digest; a pure function of ``content``.
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class SyncableItemType(str, Enum):
    """Artifact families the engine knows how to sync."""

    SKILLS = "skills"
    WORKFLOWS = "workflows"
    SETTINGS = "settings"
    MCP_CONFIGS = "mcp-configs"


class SyncDirection(str, Enum):
    """Which way data is allowed to flow in a pass."""

    PUSH = "push"
    PULL = "pull"
    BIDIRECTIONAL = "bidirectional"


class ConflictStrategy(str, Enum):
    """How colliding changes are settled."""

    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    NEWEST_WINS = "newest-wins"
    SMART_MERGE = "smart-merge"
    MANUAL = "manual"


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    CONFLICT = "conflict"
    ERROR = "error"


class ChangeType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ChangeSource(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class ResolutionOutcome(str, Enum):
    """Final word on a conflict."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGED = "merged"


class SyncErrorCode(str, Enum):
    """Per-item error codes attached to a SyncResult.

    The first four are the engine's own; the rest pass adapter
    codes through unchanged.
    """

    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    QUOTA_ERROR = "QUOTA_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_CONFIG = "INVALID_CONFIG"
    NOT_CONNECTED = "NOT_CONNECTED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


# ---------------------------------------------------------------------------
# Items and changes
# ---------------------------------------------------------------------------


class SyncableItem(BaseModel):
    """One unit of sync.

    Frozen: a new version is always a new object. ``content`` is None
    only for a header rebuilt from remote listing metadata or from the
    checkpoint, before (or instead of) fetching the payload.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    type: SyncableItemType
    name: str
    content: Optional[str] = None
    content_hash: str = ""
    version: int = 1
    last_modified: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _derive_hash(cls, data: Any) -> Any:
        # The hash always follows the content; a stored hash is only
        # trusted for headers, which carry no content.
        if isinstance(data, dict) and isinstance(data.get("content"), str):
            data = {**data, "content_hash": compute_content_hash(data["content"])}
        return data

    @classmethod
    def create(
        cls,
        item_id: str,
        item_type: SyncableItemType,
        name: str,
        content: str,
        version: int = 1,
        last_modified: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> "SyncableItem":
        """Build an item with its hash computed from ``content``."""
        return cls(
            id=item_id,
            type=item_type,
            name=name,
            content=content,
            content_hash=compute_content_hash(content),
            version=version,
            last_modified=last_modified or utcnow(),
            metadata=metadata or {},
        )

    @property
    def remote_key(self) -> str:
        return remote_key_for(self.type, self.id)

    @property
    def is_header(self) -> bool:
        return self.content is None

    def hash_is_valid(self) -> bool:
        """Whether ``content_hash`` really is the digest of ``content``."""
        return (
            self.content is not None
            and compute_content_hash(self.content) == self.content_hash
        )

    def next_version(
        self, content: Optional[str] = None, version: Optional[int] = None,
    ) -> "SyncableItem":
        """Return a new item one version on, optionally with new content."""
        body = self.content if content is None else content
        update: dict[str, Any] = {
            "content": body,
            "version": version if version is not None else self.version + 1,
            "last_modified": utcnow(),
        }
        if body is not None:
            update["content_hash"] = compute_content_hash(body)
        return self.model_copy(update=update)

    def side_channel(self) -> dict[str, Any]:
        """Descriptor stored next to the remote payload."""
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "content_hash": self.content_hash,
            "version": self.version,
            "last_modified": self.last_modified.isoformat(),
        }

    @classmethod
    def from_side_channel(cls, data: dict[str, Any]) -> "SyncableItem":
        """Rebuild an item header from a remote descriptor."""
        return cls(
            id=data["id"],
            type=SyncableItemType(data["type"]),
            name=data.get("name") or data["id"],
            content=None,
            content_hash=data["content_hash"],
            version=int(data.get("version", 1)),
            last_modified=data.get("last_modified") or utcnow(),
        )


def remote_key_for(item_type: SyncableItemType, item_id: str) -> str:
    """Storage key of an item: ``<type>/<id>.json``."""
    return f"{item_type.value}/{item_id}.json"


def parse_remote_key(key: str) -> Optional[tuple[SyncableItemType, str]]:
    """Inverse of :func:`remote_key_for`; None for foreign keys."""
    head, _, tail = key.partition("/")
    if not tail.endswith(".json"):
        return None
    try:
        item_type = SyncableItemType(head)
    except ValueError:
        return None
    return item_type, tail[: -len(".json")]


class Change(BaseModel):
    """A create/update/delete delta observed on one side."""

    id: str = Field(default_factory=new_id)
    type: ChangeType
    item: SyncableItem
    timestamp: datetime = Field(default_factory=utcnow)
    source: ChangeSource


class SyncConflict(BaseModel):
    """A local and a remote change to the same item with different content."""

    id: str = Field(default_factory=new_id)
    item_id: str
    item_type: SyncableItemType
    local_item: SyncableItem
    remote_item: SyncableItem
    local_change: Change
    remote_change: Change
    detected_at: datetime = Field(default_factory=utcnow)
    resolved: bool = False
    resolution: Optional[ResolutionOutcome] = None
    strategy: Optional[ConflictStrategy] = None
    merged_item: Optional[SyncableItem] = None
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class SyncConfig(BaseModel):
    """Immutable per-pass configuration."""

    model_config = ConfigDict(frozen=True)

    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    conflict_strategy: ConflictStrategy = ConflictStrategy.NEWEST_WINS
    max_retries: int = Field(default=3, ge=1)
    retry_delay_ms: int = Field(default=1000, ge=0)
    item_types: tuple[SyncableItemType, ...] = tuple(SyncableItemType)
    max_workers: int = Field(default=4, ge=1)


class LocalConfig(BaseModel):
    """Plain directory used as the remote. For NAS mounts and tests."""

    provider: Literal["local"] = "local"
    base_dir: Optional[Path] = None
    timeout: float = 30.0
    max_retries: int = 3


class GitHubGistConfig(BaseModel):
    """GitHub Gist storage; one gist per item."""

    provider: Literal["github-gist"] = "github-gist"
    token: Optional[str] = None
    token_env_var: Optional[str] = None
    is_private: bool = True
    gist_id: Optional[str] = None
    api_base_url: str = "https://api.github.com"
    timeout: float = 30.0
    max_in_flight: int = Field(default=4, ge=1)
    max_rate_limit_wait: float = 60.0

    def resolve_token(self) -> str:
        """Explicit token first, then the configured environment variable."""
        if self.token:
            return self.token
        if self.token_env_var:
            return os.environ.get(self.token_env_var, "")
        return ""


class WebDAVConfig(BaseModel):
    """WebDAV server (Nextcloud, ownCloud, Nutstore, ...)."""

    provider: Literal["webdav"] = "webdav"
    endpoint: str
    username: str
    password: str
    base_path: str = ""
    timeout: float = 30.0


class S3Config(BaseModel):
    """AWS S3 or any S3-compatible store (MinIO, R2, ...)."""

    provider: Literal["s3"] = "s3"
    endpoint: Optional[str] = None
    token: str
    secret_key: str
    bucket: str
    region: str = "us-east-1"
    prefix: str = ""
    timeout: float = 30.0


ProviderConfig = Annotated[
    Union[LocalConfig, GitHubGistConfig, WebDAVConfig, S3Config],
    Field(discriminator="provider"),
]

_provider_config_adapter: TypeAdapter[Any] = TypeAdapter(ProviderConfig)


def parse_provider_config(
    provider: str, credentials: Optional[dict[str, Any]] = None,
) -> Union[LocalConfig, GitHubGistConfig, WebDAVConfig, S3Config]:
    """Validate a provider name plus credential mapping into a config.

    Raises:
        pydantic.ValidationError: If the provider is unknown or a
            required credential is missing.
    """
    data = dict(credentials or {})
    data["provider"] = provider
    return _provider_config_adapter.validate_python(data)


class Settings(BaseModel):
    """On-disk settings: which remote, and default pass options."""

    provider: Optional[ProviderConfig] = None
    sync: SyncConfig = Field(default_factory=SyncConfig)


# ---------------------------------------------------------------------------
# State and results
# ---------------------------------------------------------------------------


class SyncStats(BaseModel):
    """Cumulative counters across passes."""

    total_synced: int = 0
    pushed: int = 0
    pulled: int = 0
    conflicts_resolved: int = 0
    failures: int = 0
    total_duration_ms: int = 0


class SyncState(BaseModel):
    """Engine state persisted between runs."""

    status: SyncStatus = SyncStatus.IDLE
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    progress: int = 0
    conflicts: list[SyncConflict] = Field(default_factory=list)
    stats: SyncStats = Field(default_factory=SyncStats)


class SyncError(BaseModel):
    """A per-item failure recorded in a SyncResult."""

    code: SyncErrorCode
    message: str
    item_id: Optional[str] = None
    cause: Optional[str] = None


class SyncResult(BaseModel):
    """Everything one pass did, or in a dry run, would do."""

    success: bool = False
    direction: SyncDirection
    pushed: list[SyncableItem] = Field(default_factory=list)
    pulled: list[SyncableItem] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    conflicts: list[SyncConflict] = Field(default_factory=list)
    errors: list[SyncError] = Field(default_factory=list)
    duration_ms: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    dry_run: bool = False
    cancelled: bool = False
