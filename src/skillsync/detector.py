"""
Change detection -- diff a set of items against the checkpoint.

The same algorithm runs over the local items and over the remote
listing (rebuilt into item headers), producing one list of changes
per side.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Optional

from .checkpoint import CheckpointStore
from .models import Change, ChangeSource, ChangeType, SyncableItem, SyncableItemType

logger = logging.getLogger("skillsync.detector")


class ChangeDetector:
    """Classifies items as created, updated or deleted since the last sync.

    Args:
        item_types: Types in scope. Checkpoint entries of other types are
            ignored, so narrowing a pass never reports them as deleted.
    """

    def __init__(self, item_types: Optional[Iterable[SyncableItemType]] = None) -> None:
        self.item_types = frozenset(item_types or SyncableItemType)

    def detect(
        self,
        items: Iterable[SyncableItem],
        checkpoint: CheckpointStore,
        source: ChangeSource,
    ) -> list[Change]:
        """Diff ``items`` against ``checkpoint``.

        An id missing from the checkpoint is a create; a differing hash
        or version is an update; a checkpointed id missing from
        ``items`` is a delete whose item is rebuilt from the entry.

        Returns:
            Creates, then updates, then deletes, each sorted by item id.
        """
        current = {
            item.id: item for item in items if item.type in self.item_types
        }
        entries = {
            item_id: entry
            for item_id, entry in checkpoint.entries().items()
            if entry.item_type in self.item_types
        }

        creates: list[Change] = []
        updates: list[Change] = []
        deletes: list[Change] = []

        for item_id in sorted(current):
            item = current[item_id]
            entry = entries.get(item_id)
            if entry is None:
                creates.append(Change(type=ChangeType.CREATE, item=item, source=source))
            elif (
                entry.content_hash != item.content_hash
                or entry.version != item.version
            ):
                updates.append(Change(type=ChangeType.UPDATE, item=item, source=source))

        for item_id in sorted(set(entries) - set(current)):
            deletes.append(Change(
                type=ChangeType.DELETE,
                item=entries[item_id].to_item(item_id),
                source=source,
            ))

        changes = creates + updates + deletes
        if changes:
            logger.debug(
                "%s: %d create(s), %d update(s), %d delete(s)",
                source.value, len(creates), len(updates), len(deletes),
            )
        return changes
