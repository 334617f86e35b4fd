"""
Tests for the adapter contract, exercised through the filesystem adapter.
"""

from __future__ import annotations

from pathlib import Path

import pytest


class TestNormalizeKey:
    """Key normalization."""

    @pytest.mark.parametrize("raw", ["\\a\\\\b\\", "/a/b/", "a//b", "a/b"])
    def test_variants_collapse(self, raw):
        from skillsync.adapters import normalize_key

        assert normalize_key(raw) == "a/b"

    def test_empty_key(self):
        from skillsync.adapters import normalize_key

        assert normalize_key("///") == ""


class TestLocalAdapter:
    """Filesystem backend behaviour."""

    def test_round_trip(self, local_adapter):
        local_adapter.connect()
        uploaded = local_adapter.upload("skills/a.json", b"payload", {"id": "a"})
        downloaded = local_adapter.download(uploaded.key)

        assert downloaded.data == b"payload"
        assert downloaded.checksum == uploaded.checksum
        assert downloaded.metadata == {"id": "a"}
        assert uploaded.size == 7

    def test_keys_normalized_before_storage(self, local_adapter, remote_dir: Path):
        local_adapter.connect()
        result = local_adapter.upload("\\skills\\\\a.json", b"x")

        assert result.key == "skills/a.json"
        assert (remote_dir / "skills" / "a.json").read_bytes() == b"x"
        assert local_adapter.download("/skills/a.json/").data == b"x"

    def test_list_filters_prefix_and_hides_sidecars(self, local_adapter):
        local_adapter.connect()
        local_adapter.upload("skills/a.json", b"1", {"v": 1})
        local_adapter.upload("workflows/b.json", b"2")

        keys = [item.key for item in local_adapter.list("skills")]
        assert keys == ["skills/a.json"]
        everything = local_adapter.list()
        assert sorted(item.key for item in everything) == [
            "skills/a.json", "workflows/b.json",
        ]
        assert everything[0].checksum is not None

    def test_connect_primes_listing_cache(self, local_adapter, remote_dir: Path):
        local_adapter.connect()
        local_adapter.upload("skills/a.json", b"1")
        local_adapter.disconnect()

        local_adapter.connect()
        assert [item.key for item in local_adapter.cached_listing] == ["skills/a.json"]

    def test_operations_require_connection(self, local_adapter):
        from skillsync.adapters import AdapterErrorCode, AdapterNotConnectedError

        with pytest.raises(AdapterNotConnectedError) as exc_info:
            local_adapter.upload("k", b"x")
        assert exc_info.value.code == AdapterErrorCode.NOT_CONNECTED
        assert not local_adapter.is_connected()

    def test_internals_require_connection(self, local_adapter):
        from skillsync.adapters import AdapterNotConnectedError

        with pytest.raises(AdapterNotConnectedError):
            local_adapter._path("skills/a.json")
        with pytest.raises(AdapterNotConnectedError):
            local_adapter._list("")

    def test_non_object_sidecar_ignored(self, local_adapter, remote_dir: Path):
        from skillsync.adapters.base import sha256_hex

        local_adapter.connect()
        local_adapter.upload("skills/a.json", b"payload", {"id": "a"})
        (remote_dir / "skills" / "a.json.meta.json").write_text("[1, 2]")

        downloaded = local_adapter.download("skills/a.json")
        assert downloaded.metadata == {}
        assert downloaded.checksum == sha256_hex(b"payload")
        assert local_adapter.list()[0].metadata == {}

    def test_missing_download_is_not_found(self, local_adapter):
        from skillsync.adapters import AdapterError, AdapterErrorCode

        local_adapter.connect()
        with pytest.raises(AdapterError) as exc_info:
            local_adapter.download("skills/missing.json")
        assert exc_info.value.code == AdapterErrorCode.NOT_FOUND

    def test_delete(self, local_adapter, remote_dir: Path):
        from skillsync.adapters import AdapterError, AdapterErrorCode

        local_adapter.connect()
        local_adapter.upload("skills/a.json", b"x")
        assert local_adapter.delete("skills/a.json") is True
        assert not (remote_dir / "skills" / "a.json").exists()
        assert not (remote_dir / "skills" / "a.json.meta.json").exists()

        with pytest.raises(AdapterError) as exc_info:
            local_adapter.delete("skills/a.json")
        assert exc_info.value.code == AdapterErrorCode.NOT_FOUND

    def test_missing_base_dir_is_invalid_config(self):
        from skillsync.adapters import AdapterError, AdapterErrorCode
        from skillsync.adapters.local import LocalAdapter
        from skillsync.models import LocalConfig

        adapter = LocalAdapter(LocalConfig())
        with pytest.raises(AdapterError) as exc_info:
            adapter.connect()
        assert exc_info.value.code == AdapterErrorCode.INVALID_CONFIG
        assert not adapter.is_connected()

    def test_base_dir_that_is_a_file(self, tmp_path: Path):
        from skillsync.adapters import AdapterError
        from skillsync.adapters.local import LocalAdapter
        from skillsync.models import LocalConfig

        target = tmp_path / "file"
        target.write_text("not a dir")
        with pytest.raises(AdapterError):
            LocalAdapter(LocalConfig(base_dir=target)).connect()

    def test_test_connection(self, local_adapter):
        assert local_adapter.test_connection() is False
        local_adapter.connect()
        assert local_adapter.test_connection() is True


class TestCreateAdapter:
    """Provider dispatch."""

    def test_dispatch_by_provider(self, tmp_path: Path):
        from skillsync.adapters import create_adapter
        from skillsync.adapters.github_gist import GitHubGistAdapter
        from skillsync.adapters.local import LocalAdapter
        from skillsync.adapters.s3 import S3Adapter
        from skillsync.adapters.webdav import WebDAVAdapter
        from skillsync.models import parse_provider_config

        cases = {
            "local": ({"base_dir": str(tmp_path)}, LocalAdapter),
            "github-gist": ({"token": "t"}, GitHubGistAdapter),
            "webdav": (
                {"endpoint": "https://dav.example", "username": "u", "password": "p"},
                WebDAVAdapter,
            ),
            "s3": ({"token": "a", "secret_key": "b", "bucket": "c"}, S3Adapter),
        }
        for provider, (credentials, cls) in cases.items():
            adapter = create_adapter(parse_provider_config(provider, credentials))
            assert isinstance(adapter, cls)
            assert adapter.provider == provider

    def test_unknown_provider(self):
        from types import SimpleNamespace

        from skillsync.adapters import create_adapter

        with pytest.raises(ValueError, match="Unknown provider"):
            create_adapter(SimpleNamespace(provider="ftp"))
