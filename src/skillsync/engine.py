"""
Sync Engine -- orchestrates change detection, conflict resolution and transfer.

One pass:

    local items  --detect-->  local changes  --\
                                               pair by id --> plan --> upload / download / delete
    remote list  --detect-->  remote changes --/

The checkpoint records what every item looked like at the last sync;
both sides are diffed against it. Pulled items and local deletions are
handed to the item store in one batch, and the checkpoint is committed
once, at the end of the pass.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union

import backoff
import yaml
from pydantic import ValidationError

from . import SKILLSYNC_HOME
from .adapters import AdapterError, AdapterErrorCode, CloudAdapter, create_adapter
from .adapters.base import RemoteItem, sha256_hex
from .checkpoint import (
    CHECKPOINT_FILE,
    CheckpointEntry,
    CheckpointStore,
    FileCheckpointStore,
    MemoryCheckpointStore,
)
from .detector import ChangeDetector
from .models import (
    Change,
    ChangeSource,
    ChangeType,
    ConflictStrategy,
    ResolutionOutcome,
    Settings,
    SyncableItem,
    SyncableItemType,
    SyncConfig,
    SyncConflict,
    SyncDirection,
    SyncError,
    SyncErrorCode,
    SyncResult,
    SyncState,
    SyncStatus,
    parse_provider_config,
    parse_remote_key,
    utcnow,
)
from .resolver import (
    ConflictPreview,
    ConflictResolver,
    MergeConflictError,
    Resolution,
    merge_contents,
)
from .stores import DirectoryItemStore, ItemStore

logger = logging.getLogger("skillsync.engine")

MAX_BACKOFF_MS = 30_000
CONFIG_FILE = "config.yaml"
STATE_FILE = "state.json"

TERMINAL_CODES = frozenset({
    AdapterErrorCode.AUTHENTICATION_FAILED,
    AdapterErrorCode.INVALID_CONFIG,
})

# Settings land before the MCP configs and skills that depend on them.
_TYPE_PRIORITY = {
    SyncableItemType.SETTINGS: 1,
    SyncableItemType.MCP_CONFIGS: 2,
    SyncableItemType.SKILLS: 3,
    SyncableItemType.WORKFLOWS: 4,
}

_ERROR_CODE_MAP = {
    AdapterErrorCode.TIMEOUT: SyncErrorCode.TIMEOUT_ERROR,
    AdapterErrorCode.QUOTA_EXCEEDED: SyncErrorCode.QUOTA_ERROR,
    AdapterErrorCode.CONNECTION_FAILED: SyncErrorCode.NETWORK_ERROR,
    AdapterErrorCode.NETWORK_ERROR: SyncErrorCode.NETWORK_ERROR,
}

ProgressCallback = Callable[[int, Optional[str]], None]


class SyncInProgressError(RuntimeError):
    """Raised when a pass is requested while another one is running."""


class ConflictNotFoundError(LookupError):
    """Raised when resolving a conflict id the engine does not know."""


class ItemValidationError(ValueError):
    """A downloaded payload failed checksum or hash verification."""


def backoff_delay(attempt: int, retry_delay_ms: int) -> int:
    """Delay in milliseconds before retrying after failed ``attempt``.

    ``retry_delay_ms * 2**(attempt - 1)``, capped at 30 seconds.
    """
    return min(retry_delay_ms * 2 ** (attempt - 1), MAX_BACKOFF_MS)


def _log_backoff(details: dict[str, Any]) -> None:
    exc = details["exception"]
    logger.debug(
        "Attempt %d failed (%s), retrying in %.1f s",
        details["tries"], exc.code.value, details["wait"],
    )


def to_sync_error(exc: AdapterError, item_id: Optional[str] = None) -> SyncError:
    """Map an adapter failure onto the per-item error taxonomy."""
    code = _ERROR_CODE_MAP.get(exc.code) or SyncErrorCode(exc.code.value)
    return SyncError(
        code=code,
        message=exc.message,
        item_id=item_id,
        cause=str(exc.cause) if exc.cause else None,
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def load_settings(home: Path) -> Settings:
    """Load ``config.yaml`` from ``home``; defaults when absent or invalid."""
    config_file = Path(home) / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return Settings.model_validate(data)
        except (yaml.YAMLError, ValueError) as exc:
            logger.warning("Failed to load settings from %s: %s", config_file, exc)
    return Settings()


def save_settings(home: Path, settings: Settings) -> None:
    """Persist settings to ``config.yaml`` under ``home``."""
    home = Path(home)
    home.mkdir(parents=True, exist_ok=True)
    data = settings.model_dump(mode="json", exclude_none=True)
    (home / CONFIG_FILE).write_text(
        yaml.safe_dump(data, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )


# ---------------------------------------------------------------------------
# Pass plumbing
# ---------------------------------------------------------------------------


class _OpKind(str, Enum):
    PUSH = "push"
    PULL = "pull"
    DELETE_REMOTE = "delete-remote"
    DELETE_LOCAL = "delete-local"
    SAVE_LOCAL = "save-local"
    CHECKPOINT = "checkpoint"
    FORGET = "forget"


@dataclass
class _Op:
    """One planned step for one item."""

    kind: _OpKind
    item: SyncableItem
    version: Optional[int] = None
    write_back: bool = False
    checksum: Optional[str] = None
    conflict: Optional[SyncConflict] = None
    chosen: bool = False


@dataclass
class _Outcome:
    op: _Op
    applied: bool = False
    item: Optional[SyncableItem] = None
    checksum: Optional[str] = None
    error: Optional[SyncError] = None


@dataclass
class _Pass:
    config: SyncConfig
    result: SyncResult
    dry_run: bool
    force: bool
    cancel: Optional[threading.Event]
    checksums: dict[str, Optional[str]] = field(default_factory=dict)
    ops: list[_Op] = field(default_factory=list)
    carry: list[SyncConflict] = field(default_factory=list)

    @property
    def push_ok(self) -> bool:
        return self.config.direction in (SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL)

    @property
    def pull_ok(self) -> bool:
        return self.config.direction in (SyncDirection.PULL, SyncDirection.BIDIRECTIONAL)

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


class SyncEngine:
    """Drives sync passes between an item store and one remote adapter.

    Args:
        item_store: Local artifacts.
        home: Directory for ``state.json`` and ``checkpoint.json``.
            Nothing is persisted when None.
        config: Default pass configuration.
        adapter: Remote backend; see also :meth:`configure`.
        checkpoint: Checkpoint store override.
        resolver: Conflict resolver override.
        on_progress: Called with (percent, item id) as items complete.
    """

    def __init__(
        self,
        item_store: ItemStore,
        home: Optional[Path] = None,
        config: Optional[SyncConfig] = None,
        adapter: Optional[CloudAdapter] = None,
        checkpoint: Optional[CheckpointStore] = None,
        resolver: Optional[ConflictResolver] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.item_store = item_store
        self.home = Path(home).expanduser() if home is not None else None
        self.config = config or SyncConfig()
        self.adapter = adapter
        if checkpoint is not None:
            self.checkpoint = checkpoint
        elif self.home is not None:
            self.checkpoint = FileCheckpointStore(self.home / CHECKPOINT_FILE)
        else:
            self.checkpoint = MemoryCheckpointStore()
        self.resolver = resolver or ConflictResolver()
        self.on_progress = on_progress
        self._lock = threading.Lock()
        self.state = self._load_state()

    @classmethod
    def from_home(
        cls,
        home: Optional[Path] = None,
        items: Optional[ItemStore] = None,
        **kwargs: Any,
    ) -> "SyncEngine":
        """Build an engine from the settings stored under ``home``."""
        home = Path(home or SKILLSYNC_HOME).expanduser()
        settings = load_settings(home)
        engine = cls(
            item_store=items or DirectoryItemStore(home / "items"),
            home=home,
            config=settings.sync,
            **kwargs,
        )
        if settings.provider is not None:
            engine.configure(settings.provider)
        return engine

    # -- state --------------------------------------------------------------

    def _load_state(self) -> SyncState:
        if self.home is None:
            return SyncState()
        state_file = self.home / STATE_FILE
        if not state_file.exists():
            return SyncState()
        try:
            state = SyncState.model_validate_json(state_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load sync state: %s", exc)
            return SyncState()
        if state.status == SyncStatus.SYNCING:
            logger.info("Previous pass did not finish; resetting status to idle")
            state.status = SyncStatus.IDLE
            state.progress = 0
        return state

    def _save_state(self) -> None:
        if self.home is None:
            return
        self.home.mkdir(parents=True, exist_ok=True)
        (self.home / STATE_FILE).write_text(
            self.state.model_dump_json(indent=2), encoding="utf-8",
        )

    def get_sync_state(self) -> SyncState:
        return self.state.model_copy(deep=True)

    def get_conflicts(self) -> list[SyncConflict]:
        """Conflicts awaiting a decision or awaiting application."""
        return [c.model_copy(deep=True) for c in self.state.conflicts]

    def reset_state(self) -> None:
        """Forget all sync history: state, conflicts and the checkpoint."""
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("sync already in progress")
        try:
            self.state = SyncState()
            self.checkpoint.clear()
            self.checkpoint.commit()
            self._save_state()
        finally:
            self._lock.release()
        logger.info("Sync state reset")

    # -- adapter ------------------------------------------------------------

    def configure(self, provider_config: Any) -> None:
        """Switch to the backend described by ``provider_config``."""
        if self.adapter is not None and self.adapter.is_connected():
            self.adapter.disconnect()
        self.adapter = create_adapter(provider_config)
        logger.info("Configured %s provider", provider_config.provider)

    def test_connection(self) -> bool:
        if self.adapter is None:
            return False
        if not self.adapter.is_connected():
            try:
                self.adapter.connect()
            except AdapterError as exc:
                logger.warning("Connection test failed: %s", exc)
                return False
        return self.adapter.test_connection()

    def shutdown(self) -> None:
        """Disconnect the adapter."""
        if self.adapter is not None and self.adapter.is_connected():
            self.adapter.disconnect()

    # -- conflicts ----------------------------------------------------------

    def resolve_conflict(
        self,
        conflict_id: str,
        outcome: Union[ResolutionOutcome, str],
        merged_item: Optional[SyncableItem] = None,
    ) -> SyncConflict:
        """Record a decision for a pending conflict.

        The decision is applied on the next pass that lets the winning
        side flow.

        Args:
            conflict_id: Conflict id (or the conflicting item's id).
            outcome: ``local``, ``remote`` or ``merged``.
            merged_item: Merged content for ``merged``. When omitted the
                engine attempts a smart merge itself.

        Returns:
            The updated conflict.

        Raises:
            ConflictNotFoundError: If no pending conflict matches.
            ValueError: If a merge was requested and cannot be produced.
            SyncInProgressError: If a pass is running.
        """
        outcome = ResolutionOutcome(outcome)
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("sync already in progress")
        try:
            index, conflict = self._find_conflict(conflict_id)
            if outcome == ResolutionOutcome.MERGED:
                merged_item = self._merged_item(conflict, merged_item)
            updated = conflict.model_copy(update={
                "resolved": True,
                "resolution": outcome,
                "strategy": ConflictStrategy.MANUAL,
                "merged_item": merged_item,
                "reason": None,
            })
            self.state.conflicts[index] = updated
            if self.state.status == SyncStatus.CONFLICT and not any(
                not c.resolved for c in self.state.conflicts
            ):
                self.state.status = SyncStatus.IDLE
            self._save_state()
        finally:
            self._lock.release()
        logger.info("Conflict %s on %s resolved as %s", updated.id, updated.item_id, outcome.value)
        return updated.model_copy(deep=True)

    def _find_conflict(self, conflict_id: str) -> tuple[int, SyncConflict]:
        for index, conflict in enumerate(self.state.conflicts):
            if conflict.id == conflict_id or conflict.item_id == conflict_id:
                return index, conflict
        raise ConflictNotFoundError(f"No pending conflict {conflict_id}")

    def _merged_item(
        self, conflict: SyncConflict, merged_item: Optional[SyncableItem],
    ) -> SyncableItem:
        if merged_item is not None:
            if merged_item.id != conflict.item_id or merged_item.type != conflict.item_type:
                raise ValueError("merged item does not match the conflicting item")
            return merged_item
        if ChangeType.DELETE in (conflict.local_change.type, conflict.remote_change.type):
            raise ValueError("cannot merge an edit with a deletion")

        remote = self._fetched_remote(conflict)
        entry = self.checkpoint.get(conflict.item_id)
        try:
            content = merge_contents(
                conflict.local_item, remote, entry.content if entry else None,
            )
        except MergeConflictError as exc:
            raise ValueError(f"automatic merge failed: {exc}") from exc
        return conflict.local_item.next_version(content=content)

    def preview_conflict(self, conflict_id: str) -> ConflictPreview:
        """Diff a pending conflict and show what each strategy would do.

        Downloads the remote side when the conflict holds only its header.

        Raises:
            ConflictNotFoundError: If no pending conflict matches.
            AdapterError: If the remote item cannot be fetched.
            ValueError: If no provider is configured or the download
                fails verification.
        """
        _, conflict = self._find_conflict(conflict_id)
        conflict = conflict.model_copy(update={"remote_item": self._fetched_remote(conflict)})
        entry = self.checkpoint.get(conflict.item_id)
        return self.resolver.preview(conflict, entry.content if entry else None)

    def _fetched_remote(self, conflict: SyncConflict) -> SyncableItem:
        remote = conflict.remote_item
        if remote.content is not None or conflict.remote_change.type == ChangeType.DELETE:
            return remote
        if self.adapter is None:
            raise ValueError("no provider configured to fetch the remote item")
        if not self.adapter.is_connected():
            self.adapter.connect()
        remote, _ = self._fetch(remote, self.config)
        return remote

    # -- passes -------------------------------------------------------------

    def push(self, **kwargs: Any) -> SyncResult:
        return self.perform_sync(
            self.config.model_copy(update={"direction": SyncDirection.PUSH}), **kwargs,
        )

    def pull(self, **kwargs: Any) -> SyncResult:
        return self.perform_sync(
            self.config.model_copy(update={"direction": SyncDirection.PULL}), **kwargs,
        )

    def perform_sync(
        self,
        config: Optional[SyncConfig] = None,
        *,
        dry_run: bool = False,
        force: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> SyncResult:
        """Run one sync pass.

        Args:
            config: Pass options; the engine default when None.
            dry_run: Plan only. No adapter mutations and no local,
                checkpoint or state writes. Smart merges still download
                the remote side so the plan matches a real pass.
            force: Apply the conflict strategy without recording conflicts.
            cancel: Set to stop between items.

        Returns:
            What the pass did (or would do).

        Raises:
            SyncInProgressError: If another pass is running.
        """
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("sync already in progress")
        try:
            ctx = _Pass(
                config=config or self.config,
                result=SyncResult(
                    direction=(config or self.config).direction, dry_run=dry_run,
                ),
                dry_run=dry_run,
                force=force,
                cancel=cancel,
            )
            try:
                return self._run(ctx)
            except Exception:
                if not dry_run:
                    self.state.status = SyncStatus.ERROR
                    self._save_state()
                raise
        finally:
            self._lock.release()

    def _run(self, ctx: _Pass) -> SyncResult:
        started = time.monotonic()
        result = ctx.result
        if not ctx.dry_run:
            self.state.status = SyncStatus.SYNCING
            self.state.progress = 0
            self._save_state()

        if self.adapter is None:
            result.errors.append(SyncError(
                code=SyncErrorCode.INVALID_CONFIG, message="no provider configured",
            ))
            return self._finish(ctx, started, aborted=True)

        try:
            if not self.adapter.is_connected():
                self.adapter.connect()
            listing = self.adapter.list("")
        except AdapterError as exc:
            logger.error("Sync aborted: %s", exc)
            result.errors.append(to_sync_error(exc))
            return self._finish(ctx, started, aborted=True)

        detector = ChangeDetector(ctx.config.item_types)
        local_items = self.item_store.list_items(ctx.config.item_types)
        remote_items = self._remote_headers(listing, ctx)
        local_changes = detector.detect(local_items, self.checkpoint, ChangeSource.LOCAL)
        remote_changes = detector.detect(remote_items, self.checkpoint, ChangeSource.REMOTE)

        self._plan(ctx, local_changes, remote_changes)

        if ctx.dry_run:
            self._report_plan(ctx)
            self._progress(ctx, 100, None)
            return self._finish(ctx, started)

        outcomes = self._execute(ctx)
        self._apply(ctx, outcomes)
        return self._finish(ctx, started)

    def _remote_headers(self, listing: list[RemoteItem], ctx: _Pass) -> list[SyncableItem]:
        headers = []
        for remote in listing:
            parsed = parse_remote_key(remote.key)
            if parsed is None:
                continue
            try:
                header = SyncableItem.from_side_channel(remote.metadata)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Ignoring remote %s without item metadata: %s", remote.key, exc)
                continue
            if (header.type, header.id) != parsed:
                logger.warning("Ignoring remote %s: metadata names %s", remote.key, header.remote_key)
                continue
            ctx.checksums[header.id] = remote.checksum
            headers.append(header)
        return headers

    # -- planning -----------------------------------------------------------

    def _plan(
        self, ctx: _Pass, local_changes: list[Change], remote_changes: list[Change],
    ) -> None:
        local_by_id = {change.item.id: change for change in local_changes}
        remote_by_id = {change.item.id: change for change in remote_changes}

        for change in local_changes:
            if change.item.id in remote_by_id or not ctx.push_ok:
                continue
            kind = _OpKind.DELETE_REMOTE if change.type == ChangeType.DELETE else _OpKind.PUSH
            ctx.ops.append(_Op(kind, change.item))

        for change in remote_changes:
            if change.item.id in local_by_id or not ctx.pull_ok:
                continue
            kind = _OpKind.DELETE_LOCAL if change.type == ChangeType.DELETE else _OpKind.PULL
            ctx.ops.append(_Op(kind, change.item))

        conflicts = self.resolver.find_conflicts(local_changes, remote_changes)
        conflicting = {conflict.item_id for conflict in conflicts}
        for change in local_changes:
            remote = remote_by_id.get(change.item.id)
            if remote is not None and change.item.id not in conflicting:
                self._plan_convergence(ctx, change, remote)

        previous = {c.item_id: c for c in self.state.conflicts}
        for conflict in conflicts:
            self._plan_conflict(ctx, conflict, previous.get(conflict.item_id))
        ctx.ops.sort(key=lambda op: _TYPE_PRIORITY.get(op.item.type, 6))

    def _plan_convergence(self, ctx: _Pass, local: Change, remote: Change) -> None:
        """Both sides changed to the same content."""
        local_deleted = local.type == ChangeType.DELETE
        remote_deleted = remote.type == ChangeType.DELETE
        if local_deleted and remote_deleted:
            ctx.ops.append(_Op(_OpKind.FORGET, local.item))
        elif local_deleted:
            if ctx.push_ok:
                ctx.ops.append(_Op(_OpKind.DELETE_REMOTE, remote.item))
        elif remote_deleted:
            if ctx.pull_ok:
                ctx.ops.append(_Op(_OpKind.DELETE_LOCAL, local.item))
        elif local.item.version == remote.item.version:
            ctx.ops.append(_Op(
                _OpKind.CHECKPOINT, local.item, checksum=ctx.checksums.get(local.item.id),
            ))
        elif local.item.version > remote.item.version:
            if ctx.push_ok:
                ctx.ops.append(_Op(_OpKind.PUSH, local.item))
        elif ctx.pull_ok:
            adopted = local.item.model_copy(update={
                "version": remote.item.version,
                "last_modified": remote.item.last_modified,
            })
            ctx.ops.append(_Op(
                _OpKind.SAVE_LOCAL, adopted, checksum=ctx.checksums.get(local.item.id),
            ))

    def _plan_conflict(
        self, ctx: _Pass, conflict: SyncConflict, previous: Optional[SyncConflict],
    ) -> None:
        chosen = previous if previous is not None and previous.resolved else None
        if previous is not None:
            conflict = conflict.model_copy(update={
                "id": previous.id, "detected_at": previous.detected_at,
            })

        if chosen is not None:
            resolution = self.resolver.choose(
                conflict, chosen.resolution, chosen.merged_item,
            )
            strategy = ConflictStrategy.MANUAL
        else:
            strategy = ctx.config.conflict_strategy
            if ctx.force and strategy == ConflictStrategy.MANUAL:
                strategy = ConflictStrategy.LOCAL_WINS
            if strategy == ConflictStrategy.SMART_MERGE:
                fetched = self._with_remote_content(ctx, conflict)
                if fetched is None:
                    return
                conflict = fetched
            entry = self.checkpoint.get(conflict.item_id)
            resolution = self.resolver.resolve(
                conflict, strategy, entry.content if entry else None,
            )
            if resolution.is_manual and ctx.force:
                resolution = self.resolver.resolve(conflict, ConflictStrategy.NEWEST_WINS)
                strategy = ConflictStrategy.NEWEST_WINS

        if resolution.is_manual:
            self._record_pending(ctx, conflict, strategy, resolution.reason)
            return

        outcome = resolution.outcome
        bidirectional = ctx.config.direction == SyncDirection.BIDIRECTIONAL
        flows = {
            ResolutionOutcome.LOCAL: ctx.push_ok,
            ResolutionOutcome.REMOTE: ctx.pull_ok,
            ResolutionOutcome.MERGED: bidirectional,
        }[outcome]

        record = conflict.model_copy(update={
            "resolved": True,
            "resolution": outcome,
            "strategy": strategy,
            "merged_item": resolution.item if outcome == ResolutionOutcome.MERGED else None,
            "reason": None,
        })

        if not flows:
            if chosen is not None:
                ctx.result.conflicts.append(record)
                ctx.carry.append(record)
                return
            reason = (
                "a merge needs a bidirectional pass"
                if outcome == ResolutionOutcome.MERGED
                else f"{outcome.value} side wins but this is a {ctx.config.direction.value} pass"
            )
            self._record_pending(ctx, conflict, strategy, reason, carry=False)
            return

        if not ctx.force or chosen is not None:
            ctx.result.conflicts.append(record)
        op = self._resolution_op(conflict, resolution)
        op.conflict = record
        op.chosen = chosen is not None
        ctx.ops.append(op)

    def _record_pending(
        self,
        ctx: _Pass,
        conflict: SyncConflict,
        strategy: ConflictStrategy,
        reason: Optional[str],
        carry: bool = True,
    ) -> None:
        record = conflict.model_copy(update={
            "resolved": False, "strategy": strategy, "reason": reason,
        })
        ctx.result.conflicts.append(record)
        if carry:
            ctx.carry.append(record)

    @staticmethod
    def _resolution_op(conflict: SyncConflict, resolution: Resolution) -> _Op:
        if resolution.outcome == ResolutionOutcome.REMOTE:
            if resolution.item is None:
                return _Op(_OpKind.DELETE_LOCAL, conflict.local_item)
            return _Op(
                _OpKind.PULL, conflict.remote_item,
                version=resolution.item.version, write_back=True,
            )
        if resolution.item is None:
            return _Op(_OpKind.DELETE_REMOTE, conflict.remote_item)
        return _Op(_OpKind.PUSH, resolution.item, write_back=True)

    def _with_remote_content(
        self, ctx: _Pass, conflict: SyncConflict,
    ) -> Optional[SyncConflict]:
        """Fill in the remote item's content so it can be merged."""
        if conflict.remote_change.type == ChangeType.DELETE:
            return conflict
        try:
            remote, _ = self._fetch(conflict.remote_item, ctx.config)
        except AdapterError as exc:
            ctx.result.errors.append(to_sync_error(exc, conflict.item_id))
            return None
        except ItemValidationError as exc:
            ctx.result.errors.append(SyncError(
                code=SyncErrorCode.VALIDATION_ERROR, message=str(exc),
                item_id=conflict.item_id,
            ))
            return None
        return conflict.model_copy(update={"remote_item": remote})

    def _report_plan(self, ctx: _Pass) -> None:
        result = ctx.result
        for op in ctx.ops:
            if op.kind == _OpKind.PUSH:
                result.pushed.append(op.item)
            elif op.kind == _OpKind.PULL:
                planned = op.item
                if op.version is not None:
                    planned = planned.model_copy(update={"version": op.version})
                result.pulled.append(planned)
            elif op.kind in (_OpKind.DELETE_REMOTE, _OpKind.DELETE_LOCAL):
                result.deleted.append(op.item.id)

    # -- execution ----------------------------------------------------------

    def _execute(self, ctx: _Pass) -> list[_Outcome]:
        total = len(ctx.ops)
        if not total:
            self._progress(ctx, 100, None)
            return []
        outcomes = []
        with ThreadPoolExecutor(
            max_workers=ctx.config.max_workers, thread_name_prefix="skillsync",
        ) as pool:
            futures = [pool.submit(self._run_op, ctx, op) for op in ctx.ops]
            for done, future in enumerate(futures, start=1):
                outcome = future.result()
                outcomes.append(outcome)
                self._progress(ctx, done * 100 // total, outcome.op.item.id)
        return outcomes

    def _run_op(self, ctx: _Pass, op: _Op) -> _Outcome:
        if ctx.cancelled:
            return _Outcome(op)
        try:
            if op.kind == _OpKind.PUSH:
                checksum = self._upload(op.item, ctx.config)
                return _Outcome(op, True, op.item, checksum)
            if op.kind == _OpKind.PULL:
                item, checksum = self._fetch(op.item, ctx.config)
                if op.version is not None:
                    item = item.next_version(version=op.version)
                if op.write_back:
                    checksum = self._upload(item, ctx.config)
                return _Outcome(op, True, item, checksum)
            if op.kind == _OpKind.DELETE_REMOTE:
                key = op.item.remote_key
                self._with_retry(ctx.config, lambda: self.adapter.delete(key), delete=True)
                return _Outcome(op, True)
        except AdapterError as exc:
            logger.warning("%s of %s failed: %s", op.kind.value, op.item.id, exc)
            return _Outcome(op, error=to_sync_error(exc, op.item.id))
        except ItemValidationError as exc:
            logger.warning("Rejected %s: %s", op.item.id, exc)
            return _Outcome(op, error=SyncError(
                code=SyncErrorCode.VALIDATION_ERROR, message=str(exc), item_id=op.item.id,
            ))
        return _Outcome(op, True, op.item, op.checksum)

    def _upload(self, item: SyncableItem, config: SyncConfig) -> str:
        payload = item.model_dump_json().encode("utf-8")
        uploaded = self._with_retry(
            config,
            lambda: self.adapter.upload(item.remote_key, payload, item.side_channel()),
        )
        return uploaded.checksum

    def _fetch(
        self, header: SyncableItem, config: SyncConfig,
    ) -> tuple[SyncableItem, str]:
        """Download and verify the full item behind a header."""
        key = header.remote_key
        downloaded = self._with_retry(config, lambda: self.adapter.download(key))
        if sha256_hex(downloaded.data) != downloaded.checksum:
            raise ItemValidationError(f"checksum mismatch for {key}")
        try:
            item = SyncableItem.model_validate_json(downloaded.data)
        except ValidationError as exc:
            raise ItemValidationError(f"invalid payload for {key}: {exc}") from exc
        if (
            item.id != header.id
            or not item.hash_is_valid()
            or item.content_hash != header.content_hash
        ):
            raise ItemValidationError(f"content hash mismatch for {key}")
        return item, downloaded.checksum

    def _with_retry(
        self, config: SyncConfig, call: Callable[[], Any], delete: bool = False,
    ) -> Any:
        """Run ``call``, retrying retryable adapter failures with backoff.

        Waits are ``retry_delay_ms * 2**(attempt-1)`` capped at 30 s,
        without jitter; terminal codes give up immediately.
        """

        def terminal(exc: AdapterError) -> bool:
            return exc.code in TERMINAL_CODES or (
                delete and exc.code == AdapterErrorCode.NOT_FOUND
            )

        retrying = backoff.on_exception(
            backoff.expo,
            AdapterError,
            max_tries=config.max_retries,
            giveup=terminal,
            on_backoff=_log_backoff,
            jitter=None,
            logger=None,
            base=2,
            factor=config.retry_delay_ms / 1000,
            max_value=MAX_BACKOFF_MS / 1000,
        )(call)
        return retrying()

    def _progress(self, ctx: _Pass, percent: int, item_id: Optional[str]) -> None:
        if not ctx.dry_run:
            self.state.progress = percent
        if self.on_progress is not None:
            self.on_progress(percent, item_id)

    # -- bookkeeping --------------------------------------------------------

    def _apply(self, ctx: _Pass, outcomes: list[_Outcome]) -> None:
        """Flush local writes and stage checkpoint updates for applied items."""
        result = ctx.result
        saved: list[SyncableItem] = []
        removed: list[SyncableItem] = []
        updates: dict[str, Optional[CheckpointEntry]] = {}
        settled: list[_Outcome] = []

        for outcome in outcomes:
            op = outcome.op
            if outcome.error is not None:
                result.errors.append(outcome.error)
            elif not outcome.applied:
                result.cancelled = True
            if outcome.error is not None or not outcome.applied:
                if op.chosen and op.conflict is not None:
                    ctx.carry.append(op.conflict)
                continue

            item = outcome.item
            if op.kind == _OpKind.PUSH:
                result.pushed.append(item)
                if op.write_back:
                    saved.append(item)
                updates[item.id] = CheckpointEntry.from_item(item, outcome.checksum)
            elif op.kind == _OpKind.PULL:
                result.pulled.append(item)
                saved.append(item)
                updates[item.id] = CheckpointEntry.from_item(item, outcome.checksum)
            elif op.kind == _OpKind.SAVE_LOCAL:
                saved.append(item)
                updates[item.id] = CheckpointEntry.from_item(item, outcome.checksum)
            elif op.kind == _OpKind.CHECKPOINT:
                updates[item.id] = CheckpointEntry.from_item(item, outcome.checksum)
            elif op.kind == _OpKind.DELETE_REMOTE:
                result.deleted.append(op.item.id)
                updates[op.item.id] = None
            elif op.kind == _OpKind.DELETE_LOCAL:
                result.deleted.append(op.item.id)
                removed.append(op.item)
                updates[op.item.id] = None
            else:
                updates[op.item.id] = None
            settled.append(outcome)

        if saved or removed:
            try:
                self.item_store.apply(saved, removed)
            except OSError as exc:
                logger.error("Local store write failed: %s", exc)
                result.errors.append(SyncError(
                    code=SyncErrorCode.UNKNOWN_ERROR,
                    message=f"local store write failed: {exc}",
                    cause=str(exc),
                ))
                for item in saved + removed:
                    updates.pop(item.id, None)
                touched = {item.id for item in saved + removed}
                settled = [o for o in settled if o.op.item.id not in touched]

        for item_id, entry in updates.items():
            if entry is None:
                self.checkpoint.delete(item_id)
            else:
                self.checkpoint.set(item_id, entry)
        self.checkpoint.commit()

        resolved = sum(1 for o in settled if o.op.conflict is not None)
        self.state.stats.conflicts_resolved += resolved

    def _finish(self, ctx: _Pass, started: float, aborted: bool = False) -> SyncResult:
        result = ctx.result
        result.completed_at = utcnow()
        result.duration_ms = int((time.monotonic() - started) * 1000)
        result.success = not result.errors

        if not ctx.dry_run:
            state = self.state
            stats = state.stats
            stats.failures += len(result.errors)
            stats.total_duration_ms += result.duration_ms
            if not aborted:
                state.conflicts = ctx.carry
                stats.pushed += len(result.pushed)
                stats.pulled += len(result.pulled)
                stats.total_synced += (
                    len(result.pushed) + len(result.pulled) + len(result.deleted)
                )
                state.last_sync_at = result.completed_at
            if result.errors:
                state.status = SyncStatus.ERROR
                state.last_error = result.errors[0].message
            elif any(not c.resolved for c in state.conflicts):
                state.status = SyncStatus.CONFLICT
                state.last_error = None
            else:
                state.status = SyncStatus.IDLE
                state.last_error = None
            self._save_state()

        logger.info(
            "Sync %s%s: %d pushed, %d pulled, %d deleted, %d conflict(s), %d error(s) in %d ms",
            result.direction.value,
            " (dry run)" if ctx.dry_run else "",
            len(result.pushed), len(result.pulled), len(result.deleted),
            len(result.conflicts), len(result.errors), result.duration_ms,
        )
        return result


def configure_sync_engine(
    provider: str,
    credentials: Optional[dict[str, Any]] = None,
    home: Optional[Path] = None,
    items: Optional[ItemStore] = None,
    **kwargs: Any,
) -> SyncEngine:
    """Validate provider credentials, store them and build an engine.

    Args:
        provider: ``local``, ``github-gist``, ``webdav`` or ``s3``.
        credentials: Provider-specific settings.
        home: Settings/state directory. Defaults to SKILLSYNC_HOME.
        items: Local item store. Defaults to ``<home>/items``.

    Returns:
        A new engine with the provider configured (not yet connected).

    Raises:
        pydantic.ValidationError: If the credentials do not fit the provider.
    """
    provider_config = parse_provider_config(provider, credentials)
    home = Path(home or SKILLSYNC_HOME).expanduser()
    settings = load_settings(home)
    settings.provider = provider_config
    save_settings(home, settings)
    logger.info("Saved %s provider settings to %s", provider, home / CONFIG_FILE)
    return SyncEngine.from_home(home, items=items, **kwargs)
