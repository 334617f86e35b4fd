"""
Local item stores -- where syncable artifacts live on this machine.

The engine never enumerates skills, workflows or settings itself; it
asks an ``ItemStore`` for the current items and hands back everything
a pass pulled or deleted in a single ``apply`` call.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .models import SyncableItem, SyncableItemType

logger = logging.getLogger("skillsync.stores")


class ItemStore(ABC):
    """Collaborator boundary for locally stored items."""

    @abstractmethod
    def list_items(self, item_types: Iterable[SyncableItemType]) -> list[SyncableItem]:
        """Return every local item of the given types."""

    @abstractmethod
    def apply(
        self, saved: Sequence[SyncableItem], deleted: Sequence[SyncableItem],
    ) -> None:
        """Write pulled items and remove deleted ones in one batch.

        Args:
            saved: Items to create or overwrite.
            deleted: Items (possibly headers) to remove.
        """


class MemoryItemStore(ItemStore):
    """Dict-backed store used by tests and embedding callers."""

    def __init__(self, items: Optional[Iterable[SyncableItem]] = None) -> None:
        self._items: dict[str, SyncableItem] = {}
        for item in items or []:
            self._items[item.id] = item
        self.apply_calls = 0

    def put(self, item: SyncableItem) -> None:
        self._items[item.id] = item

    def remove(self, item_id: str) -> None:
        self._items.pop(item_id, None)

    def get(self, item_id: str) -> Optional[SyncableItem]:
        return self._items.get(item_id)

    def list_items(self, item_types: Iterable[SyncableItemType]) -> list[SyncableItem]:
        wanted = set(item_types)
        return [item for item in self._items.values() if item.type in wanted]

    def apply(
        self, saved: Sequence[SyncableItem], deleted: Sequence[SyncableItem],
    ) -> None:
        self.apply_calls += 1
        for item in saved:
            self._items[item.id] = item
        for item in deleted:
            self._items.pop(item.id, None)


class DirectoryItemStore(ItemStore):
    """Items as JSON files under ``<root>/<type>/<id>.json``.

    Each file holds the whole item (content plus version bookkeeping),
    so a pulled item reads back exactly as it was written.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    def _path(self, item: SyncableItem) -> Path:
        return self.root / item.type.value / f"{item.id}.json"

    def list_items(self, item_types: Iterable[SyncableItemType]) -> list[SyncableItem]:
        items = []
        for item_type in item_types:
            type_dir = self.root / item_type.value
            if not type_dir.is_dir():
                continue
            for path in sorted(type_dir.glob("*.json")):
                try:
                    item = SyncableItem.model_validate_json(path.read_text(encoding="utf-8"))
                except (OSError, ValidationError) as exc:
                    logger.warning("Skipping unreadable item %s: %s", path, exc)
                    continue
                if item.type != item_type or item.id != path.stem:
                    logger.warning("Skipping misplaced item %s", path)
                    continue
                items.append(item)
        return items

    def apply(
        self, saved: Sequence[SyncableItem], deleted: Sequence[SyncableItem],
    ) -> None:
        for item in saved:
            path = self._path(item)
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(item.model_dump_json(indent=2))
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        for item in deleted:
            self._path(item).unlink(missing_ok=True)
        if saved or deleted:
            logger.debug(
                "Applied %d saved and %d deleted item(s) under %s",
                len(saved), len(deleted), self.root,
            )
