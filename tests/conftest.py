"""Shared test fixtures for skillsync."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest


BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def sync_home(tmp_path: Path) -> Path:
    """Provide a temporary skillsync home directory."""
    home = tmp_path / ".skillsync"
    home.mkdir()
    return home


@pytest.fixture
def remote_dir(tmp_path: Path) -> Path:
    """Directory standing in for the remote store."""
    remote = tmp_path / "remote"
    remote.mkdir()
    return remote


@pytest.fixture
def make_item():
    """Factory for SyncableItems with controllable timestamps."""
    from skillsync.models import SyncableItem, SyncableItemType

    def _make(
        item_id: str = "skill-a",
        content: str = '{"name": "a"}',
        version: int = 1,
        minutes: int = 0,
        item_type: SyncableItemType = SyncableItemType.SKILLS,
    ) -> SyncableItem:
        return SyncableItem.create(
            item_id,
            item_type,
            item_id.replace("-", " ").title(),
            content,
            version=version,
            last_modified=BASE_TIME + timedelta(minutes=minutes),
        )

    return _make


@pytest.fixture
def local_adapter(remote_dir: Path):
    """Unconnected filesystem adapter over ``remote_dir``."""
    from skillsync.adapters.local import LocalAdapter
    from skillsync.models import LocalConfig

    return LocalAdapter(LocalConfig(base_dir=remote_dir))


@pytest.fixture
def make_engine(remote_dir: Path):
    """Factory for an engine on its own machine, sharing ``remote_dir``.

    Every engine gets a fresh memory item store and checkpoint and a
    zero-delay retry policy.
    """
    from skillsync.adapters.local import LocalAdapter
    from skillsync.checkpoint import MemoryCheckpointStore
    from skillsync.engine import SyncEngine
    from skillsync.models import LocalConfig, SyncConfig
    from skillsync.stores import MemoryItemStore

    def _make(items=(), adapter=None, **config):
        config.setdefault("retry_delay_ms", 0)
        return SyncEngine(
            item_store=MemoryItemStore(items),
            config=SyncConfig(**config),
            adapter=adapter or LocalAdapter(LocalConfig(base_dir=remote_dir)),
            checkpoint=MemoryCheckpointStore(),
        )

    return _make


@pytest.fixture
def retry_sleeps():
    """Record retry waits (seconds) instead of sleeping."""
    waits: list[float] = []
    with patch("time.sleep", side_effect=waits.append):
        yield waits
