"""
Conflict resolution -- settle a local and a remote edit of the same item.

Strategies:
    local-wins    -- keep the local item
    remote-wins   -- keep the remote item
    newest-wins   -- later ``last_modified`` wins, local on a tie
    smart-merge   -- JSON objects merge field by field, text merges
                     line by line against the last synced content
    manual        -- leave it for a person

Every automatic outcome is a new item one version past both sides, so
it propagates like any other edit.

``preview`` tries every automatic strategy on a conflict without
recording anything, alongside a key or line diff of the two sides.
"""

from __future__ import annotations

import difflib
import json
import logging
import threading
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from .models import (
    Change,
    ChangeType,
    ConflictStrategy,
    ResolutionOutcome,
    SyncableItem,
    SyncConflict,
    utcnow,
)

logger = logging.getLogger("skillsync.resolver")

Hunk = tuple[int, int, list[str]]


class MergeConflictError(Exception):
    """Both sides edited overlapping regions."""


class Resolution(BaseModel):
    """Outcome of resolving one conflict.

    ``outcome`` is None when the conflict needs a manual decision.
    ``item`` is None when the winning side is a deletion.
    """

    conflict_id: str
    item_id: str
    strategy: ConflictStrategy
    outcome: Optional[ResolutionOutcome] = None
    item: Optional[SyncableItem] = None
    reason: Optional[str] = None
    resolved_at: datetime = Field(default_factory=utcnow)

    @property
    def is_manual(self) -> bool:
        return self.outcome is None


class ContentDiff(BaseModel):
    """How the remote content differs from the local content.

    JSON objects are compared key by key, nested keys as dotted paths;
    anything else line by line. Additions are what the remote has and
    the local side lacks.
    """

    kind: Literal["json", "text"]
    additions: list[str] = Field(default_factory=list)
    deletions: list[str] = Field(default_factory=list)
    modifications: list[str] = Field(default_factory=list)

    @property
    def summary(self) -> str:
        parts = [
            f"{sign}{len(entries)} {label}(s)"
            for sign, entries, label in (
                ("+", self.additions, "addition"),
                ("-", self.deletions, "deletion"),
                ("~", self.modifications, "modification"),
            )
            if entries
        ]
        return ", ".join(parts) if parts else "no changes"


class ConflictPreview(BaseModel):
    """What every automatic strategy would make of one conflict."""

    conflict_id: str
    item_id: str
    diff: Optional[ContentDiff] = None
    outcomes: dict[ConflictStrategy, Resolution] = Field(default_factory=dict)


def _is_delete(change: Change) -> bool:
    return change.type == ChangeType.DELETE


def _newest_side(conflict: SyncConflict) -> ResolutionOutcome:
    if conflict.remote_item.last_modified > conflict.local_item.last_modified:
        return ResolutionOutcome.REMOTE
    return ResolutionOutcome.LOCAL


class ConflictResolver:
    """Finds and settles conflicts; keeps a history of what it decided."""

    def __init__(self) -> None:
        self._history: list[Resolution] = []
        self._lock = threading.Lock()

    @property
    def history(self) -> list[Resolution]:
        with self._lock:
            return list(self._history)

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    def find_conflicts(
        self,
        local_changes: Iterable[Change],
        remote_changes: Iterable[Change],
    ) -> list[SyncConflict]:
        """Pair changes by item id; equal content hashes are not conflicts."""
        remote_by_id = {change.item.id: change for change in remote_changes}
        conflicts = []
        for local in local_changes:
            remote = remote_by_id.get(local.item.id)
            if remote is None:
                continue
            if local.item.content_hash == remote.item.content_hash:
                continue
            conflicts.append(SyncConflict(
                item_id=local.item.id,
                item_type=local.item.type,
                local_item=local.item,
                remote_item=remote.item,
                local_change=local,
                remote_change=remote,
            ))
        return conflicts

    def resolve(
        self,
        conflict: SyncConflict,
        strategy: ConflictStrategy,
        base: Optional[str] = None,
    ) -> Resolution:
        """Apply ``strategy`` to ``conflict``.

        Args:
            conflict: The colliding pair.
            strategy: How to settle it.
            base: Content both sides last agreed on, for text merges.

        Returns:
            The resolution; ``is_manual`` when no automatic answer exists.
        """
        if strategy == ConflictStrategy.LOCAL_WINS:
            resolution = self._pick(conflict, strategy, ResolutionOutcome.LOCAL)
        elif strategy == ConflictStrategy.REMOTE_WINS:
            resolution = self._pick(conflict, strategy, ResolutionOutcome.REMOTE)
        elif strategy == ConflictStrategy.NEWEST_WINS:
            resolution = self._pick(conflict, strategy, _newest_side(conflict))
        elif strategy == ConflictStrategy.SMART_MERGE:
            resolution = self._merge(conflict, base)
        else:
            resolution = Resolution(
                conflict_id=conflict.id,
                item_id=conflict.item_id,
                strategy=strategy,
                reason="manual resolution requested",
            )

        return self._record(conflict, resolution)

    def choose(
        self,
        conflict: SyncConflict,
        outcome: ResolutionOutcome,
        merged_item: Optional[SyncableItem] = None,
    ) -> Resolution:
        """Turn a decision made by a person into a resolution.

        Args:
            conflict: The conflict being settled.
            outcome: Which side won, or ``merged``.
            merged_item: The merged content; required for ``merged``.

        Raises:
            ValueError: If ``merged`` is chosen without a merged item.
        """
        if outcome != ResolutionOutcome.MERGED:
            resolution = self._pick(conflict, ConflictStrategy.MANUAL, outcome)
            return self._record(conflict, resolution)
        if merged_item is None:
            raise ValueError("a merged outcome needs a merged item")
        resolution = Resolution(
            conflict_id=conflict.id,
            item_id=conflict.item_id,
            strategy=ConflictStrategy.MANUAL,
            outcome=outcome,
            item=merged_item.next_version(version=_next_version(conflict)),
        )
        return self._record(conflict, resolution)

    def preview(
        self, conflict: SyncConflict, base: Optional[str] = None,
    ) -> ConflictPreview:
        """Diff both sides and try each automatic strategy.

        Nothing is added to the history. ``diff`` is None while either
        side is only a header.
        """
        local_body = _body(conflict.local_change, conflict.local_item)
        remote_body = _body(conflict.remote_change, conflict.remote_item)
        diff = None
        if local_body is not None and remote_body is not None:
            diff = diff_contents(local_body, remote_body)
        return ConflictPreview(
            conflict_id=conflict.id,
            item_id=conflict.item_id,
            diff=diff,
            outcomes={
                ConflictStrategy.LOCAL_WINS: self._pick(
                    conflict, ConflictStrategy.LOCAL_WINS, ResolutionOutcome.LOCAL,
                ),
                ConflictStrategy.REMOTE_WINS: self._pick(
                    conflict, ConflictStrategy.REMOTE_WINS, ResolutionOutcome.REMOTE,
                ),
                ConflictStrategy.NEWEST_WINS: self._pick(
                    conflict, ConflictStrategy.NEWEST_WINS, _newest_side(conflict),
                ),
                ConflictStrategy.SMART_MERGE: self._merge(conflict, base),
            },
        )

    def _record(self, conflict: SyncConflict, resolution: Resolution) -> Resolution:
        with self._lock:
            self._history.append(resolution)
        logger.debug(
            "Conflict %s on %s: %s -> %s",
            conflict.id, conflict.item_id, resolution.strategy.value,
            resolution.outcome.value if resolution.outcome else "manual",
        )
        return resolution

    # -- strategies ---------------------------------------------------------

    def _pick(
        self,
        conflict: SyncConflict,
        strategy: ConflictStrategy,
        outcome: ResolutionOutcome,
    ) -> Resolution:
        if outcome == ResolutionOutcome.LOCAL:
            change, winner = conflict.local_change, conflict.local_item
        else:
            change, winner = conflict.remote_change, conflict.remote_item
        item = None
        if not _is_delete(change):
            item = winner.next_version(version=_next_version(conflict))
        return Resolution(
            conflict_id=conflict.id,
            item_id=conflict.item_id,
            strategy=strategy,
            outcome=outcome,
            item=item,
        )

    def _merge(self, conflict: SyncConflict, base: Optional[str]) -> Resolution:
        manual = Resolution(
            conflict_id=conflict.id,
            item_id=conflict.item_id,
            strategy=ConflictStrategy.SMART_MERGE,
        )
        if _is_delete(conflict.local_change) or _is_delete(conflict.remote_change):
            return manual.model_copy(update={"reason": "deleted on one side"})

        local, remote = conflict.local_item, conflict.remote_item
        if local.content is None or remote.content is None:
            return manual.model_copy(update={"reason": "content not available"})

        try:
            content = merge_contents(local, remote, base)
        except MergeConflictError as exc:
            return manual.model_copy(update={"reason": str(exc)})

        merged = local.next_version(content=content, version=_next_version(conflict))
        return manual.model_copy(update={
            "outcome": ResolutionOutcome.MERGED,
            "item": merged,
        })


def _next_version(conflict: SyncConflict) -> int:
    return max(conflict.local_item.version, conflict.remote_item.version) + 1


def _as_object(content: str) -> Optional[dict[str, Any]]:
    try:
        value = json.loads(content)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def merge_contents(
    local: SyncableItem, remote: SyncableItem, base: Optional[str],
) -> str:
    """Merge two full items' contents.

    JSON objects on both sides merge shallowly: keys from either side
    are kept and a key both sides set differently goes to the newer
    item (local on a tie). Anything else is merged line by line.

    Raises:
        MergeConflictError: If the edits overlap.
    """
    if local.content is None or remote.content is None:
        raise MergeConflictError("content not available")
    local_obj = _as_object(local.content)
    remote_obj = _as_object(remote.content)
    if local_obj is not None and remote_obj is not None:
        remote_newer = remote.last_modified > local.last_modified
        merged = dict(local_obj)
        for key, value in remote_obj.items():
            if key not in merged or remote_newer:
                merged[key] = value
        return json.dumps(merged, indent=2, ensure_ascii=False)

    if base is None:
        raise MergeConflictError("no common base for a text merge")
    return three_way_merge(base, local.content, remote.content)


def _body(change: Change, item: SyncableItem) -> Optional[str]:
    return "" if _is_delete(change) else item.content


def diff_contents(local: str, remote: str) -> ContentDiff:
    """Compare two contents, as JSON objects when both parse as one."""
    local_obj = _as_object(local)
    remote_obj = _as_object(remote)
    if local_obj is not None and remote_obj is not None:
        diff = ContentDiff(kind="json")
        _diff_objects(local_obj, remote_obj, "", diff)
        return diff

    diff = ContentDiff(kind="text")
    local_lines = local.splitlines()
    remote_lines = remote.splitlines()
    matcher = difflib.SequenceMatcher(None, local_lines, remote_lines, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag in ("replace", "delete"):
            diff.deletions.extend(local_lines[i1:i2])
        if tag in ("replace", "insert"):
            diff.additions.extend(remote_lines[j1:j2])
    return diff


def _diff_objects(
    local: dict[str, Any], remote: dict[str, Any], prefix: str, diff: ContentDiff,
) -> None:
    for key, value in remote.items():
        path = prefix + key
        if key not in local:
            diff.additions.append(path)
        elif isinstance(value, dict) and isinstance(local[key], dict):
            _diff_objects(local[key], value, path + ".", diff)
        elif value != local[key]:
            diff.modifications.append(path)
    diff.deletions.extend(prefix + key for key in local if key not in remote)


def _hunks(base: list[str], other: list[str]) -> list[Hunk]:
    matcher = difflib.SequenceMatcher(None, base, other, autojunk=False)
    return [
        (i1, i2, other[j1:j2])
        for tag, i1, i2, j1, j2 in matcher.get_opcodes()
        if tag != "equal"
    ]


def _collide(a: Hunk, b: Hunk) -> bool:
    a_start, a_end, a_lines = a
    b_start, b_end, b_lines = b
    if a_start == b_start:
        return (a_end, a_lines) != (b_end, b_lines)
    if max(a_start, b_start) < min(a_end, b_end):
        return True
    # An insertion strictly inside the other hunk's range.
    if a_start == a_end and b_start < a_start < b_end:
        return True
    return b_start == b_end and a_start < b_start < a_end


def three_way_merge(base: str, local: str, remote: str) -> str:
    """Line-based merge of two edits of ``base``.

    Non-overlapping edits combine; an identical edit made on both sides
    is applied once.

    Raises:
        MergeConflictError: If the two sides touch overlapping lines.
    """
    base_lines = base.splitlines(keepends=True)
    local_hunks = _hunks(base_lines, local.splitlines(keepends=True))
    remote_hunks = _hunks(base_lines, remote.splitlines(keepends=True))

    hunks = list(local_hunks)
    for theirs in remote_hunks:
        if theirs in local_hunks:
            continue
        for ours in local_hunks:
            if _collide(ours, theirs):
                raise MergeConflictError(
                    f"overlapping edits at lines {ours[0] + 1}-{max(ours[1], ours[0] + 1)}"
                )
        hunks.append(theirs)

    merged: list[str] = []
    position = 0
    for start, end, lines in sorted(hunks, key=lambda hunk: (hunk[0], hunk[1])):
        merged.extend(base_lines[position:start])
        merged.extend(lines)
        position = end
    merged.extend(base_lines[position:])
    return "".join(merged)
