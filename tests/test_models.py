"""
Tests for skillsync data models.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError


class TestSyncableItem:
    """Hashing, versioning and the remote side channel."""

    def test_hash_is_pure_function_of_content(self, make_item):
        a = make_item("one", content="same body", minutes=0)
        b = make_item("two", content="same body", minutes=30, version=7)
        assert a.content_hash == b.content_hash
        assert len(a.content_hash) == 64

    def test_hash_derived_when_omitted(self):
        from skillsync.models import SyncableItem, compute_content_hash

        item = SyncableItem(id="x", type="skills", name="X", content="hello")
        assert item.content_hash == compute_content_hash("hello")
        assert item.hash_is_valid()

    def test_stale_hash_replaced_on_load(self):
        from skillsync.models import SyncableItem, compute_content_hash

        item = SyncableItem(
            id="x", type="skills", name="X",
            content="new body", content_hash=compute_content_hash("old body"),
        )
        assert item.content_hash == compute_content_hash("new body")

        raw = item.model_dump_json().replace("new body", "edited body")
        reloaded = SyncableItem.model_validate_json(raw)
        assert reloaded.content_hash == compute_content_hash("edited body")

    def test_header_keeps_its_hash(self):
        from skillsync.models import SyncableItem

        header = SyncableItem(id="x", type="skills", name="X", content_hash="ab" * 32)
        assert header.content_hash == "ab" * 32

    def test_item_is_frozen(self, make_item):
        item = make_item()
        with pytest.raises(ValidationError):
            item.version = 2

    def test_next_version_recomputes_hash(self, make_item):
        item = make_item(content="old")
        newer = item.next_version(content="new", version=5)

        assert newer.version == 5
        assert newer.content == "new"
        assert newer.hash_is_valid()
        assert newer.content_hash != item.content_hash
        assert newer.last_modified > item.last_modified
        assert item.content == "old"

    def test_side_channel_round_trip(self, make_item):
        from skillsync.models import SyncableItem

        item = make_item(version=3)
        header = SyncableItem.from_side_channel(item.side_channel())

        assert header.is_header
        assert header.id == item.id
        assert header.type == item.type
        assert header.content_hash == item.content_hash
        assert header.version == 3
        assert header.last_modified == item.last_modified

    def test_tampered_hash_is_invalid(self, make_item):
        item = make_item().model_copy(update={"content_hash": "0" * 64})
        assert not item.hash_is_valid()


class TestRemoteKeys:
    """Remote key layout."""

    def test_remote_key_layout(self, make_item):
        from skillsync.models import SyncableItemType

        item = make_item("cfg", item_type=SyncableItemType.MCP_CONFIGS)
        assert item.remote_key == "mcp-configs/cfg.json"

    def test_parse_remote_key(self):
        from skillsync.models import SyncableItemType, parse_remote_key

        assert parse_remote_key("workflows/deploy.json") == (
            SyncableItemType.WORKFLOWS, "deploy",
        )

    @pytest.mark.parametrize("key", ["notes/x.json", "skills/x.txt", "x.json"])
    def test_parse_foreign_keys(self, key):
        from skillsync.models import parse_remote_key

        assert parse_remote_key(key) is None


class TestProviderConfig:
    """Discriminated provider configuration."""

    def test_parse_gist_config(self):
        from skillsync.models import GitHubGistConfig, parse_provider_config

        config = parse_provider_config("github-gist", {"token": "ghp_x"})
        assert isinstance(config, GitHubGistConfig)
        assert config.is_private is True

    def test_parse_s3_requires_bucket(self):
        from skillsync.models import parse_provider_config

        with pytest.raises(ValidationError):
            parse_provider_config("s3", {"token": "a", "secret_key": "b"})

    def test_unknown_provider_rejected(self):
        from skillsync.models import parse_provider_config

        with pytest.raises(ValidationError):
            parse_provider_config("dropbox", {})

    def test_token_env_var_fallback(self, monkeypatch):
        from skillsync.models import GitHubGistConfig

        monkeypatch.setenv("SKILLSYNC_TEST_TOKEN", "from-env")
        config = GitHubGistConfig(token_env_var="SKILLSYNC_TEST_TOKEN")
        assert config.resolve_token() == "from-env"
        assert GitHubGistConfig(token="explicit", token_env_var="X").resolve_token() == "explicit"


class TestSyncConfig:
    """Defaults and validation of pass options."""

    def test_defaults(self):
        from skillsync.models import (
            ConflictStrategy,
            SyncableItemType,
            SyncConfig,
            SyncDirection,
        )

        config = SyncConfig()
        assert config.direction == SyncDirection.BIDIRECTIONAL
        assert config.conflict_strategy == ConflictStrategy.NEWEST_WINS
        assert config.max_retries == 3
        assert config.retry_delay_ms == 1000
        assert set(config.item_types) == set(SyncableItemType)

    def test_max_retries_must_be_positive(self):
        from skillsync.models import SyncConfig

        with pytest.raises(ValidationError):
            SyncConfig(max_retries=0)
