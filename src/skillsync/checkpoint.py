"""
Sync checkpoint -- what each item looked like at the last successful sync.

Both change detectors diff against this snapshot. Writes are staged in
memory and land on disk only on ``commit()``, as one atomic rewrite of
``checkpoint.json``, so a crash mid-pass leaves the previous snapshot
intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from .models import SyncableItem, SyncableItemType, remote_key_for, utcnow

logger = logging.getLogger("skillsync.checkpoint")

CHECKPOINT_FILE = "checkpoint.json"


class CheckpointEntry(BaseModel):
    """Snapshot of one item at its last sync.

    ``content`` is the agreed content at that point and serves as the
    base for three-way merges.
    """

    item_type: SyncableItemType
    name: str
    content_hash: str
    version: int
    remote_key: str
    last_modified: datetime = Field(default_factory=utcnow)
    checksum: Optional[str] = None
    content: Optional[str] = None

    @classmethod
    def from_item(
        cls, item: SyncableItem, checksum: Optional[str] = None,
    ) -> "CheckpointEntry":
        return cls(
            item_type=item.type,
            name=item.name,
            content_hash=item.content_hash,
            version=item.version,
            remote_key=remote_key_for(item.type, item.id),
            last_modified=item.last_modified,
            checksum=checksum,
            content=item.content,
        )

    def to_item(self, item_id: str) -> SyncableItem:
        """Header-or-full item as it stood at the checkpoint."""
        return SyncableItem(
            id=item_id,
            type=self.item_type,
            name=self.name,
            content=self.content,
            content_hash=self.content_hash,
            version=self.version,
            last_modified=self.last_modified,
        )


class CheckpointStore(ABC):
    """Map of item id to :class:`CheckpointEntry`."""

    def __init__(self) -> None:
        self._entries: dict[str, CheckpointEntry] = {}

    def get(self, item_id: str) -> Optional[CheckpointEntry]:
        return self._entries.get(item_id)

    def set(self, item_id: str, entry: CheckpointEntry) -> None:
        self._entries[item_id] = entry

    def delete(self, item_id: str) -> None:
        self._entries.pop(item_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def entries(self) -> dict[str, CheckpointEntry]:
        """Copy of all entries, keyed by item id."""
        return dict(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._entries

    @abstractmethod
    def commit(self) -> None:
        """Persist staged entries."""


class MemoryCheckpointStore(CheckpointStore):
    """In-process checkpoint; ``commit`` only counts calls."""

    def __init__(self, entries: Optional[dict[str, CheckpointEntry]] = None) -> None:
        super().__init__()
        self._entries.update(entries or {})
        self.commits = 0

    def commit(self) -> None:
        self.commits += 1


class FileCheckpointStore(CheckpointStore):
    """JSON-file checkpoint rewritten atomically on commit.

    Args:
        path: Location of ``checkpoint.json``.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Unreadable checkpoint %s, starting fresh: %s", self.path, exc)
            return
        if not isinstance(raw, dict):
            logger.warning("Malformed checkpoint %s, starting fresh", self.path)
            return
        for item_id, data in raw.items():
            try:
                self._entries[item_id] = CheckpointEntry.model_validate(data)
            except ValidationError as exc:
                logger.warning("Dropping bad checkpoint entry %s: %s", item_id, exc)

    def commit(self) -> None:
        payload = {
            item_id: entry.model_dump(mode="json")
            for item_id, entry in sorted(self._entries.items())
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".checkpoint-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug("Checkpoint committed (%d entries)", len(payload))
