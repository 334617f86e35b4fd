"""
Tests for the S3 adapter with boto3.client patched to an in-memory bucket.
"""

from __future__ import annotations

import io
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError


def _client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakePaginator:
    def __init__(self, client):
        self.client = client

    def paginate(self, Bucket, Prefix=""):
        keys = sorted(k for k in self.client.objects if k.startswith(Prefix))
        # Two pages to exercise pagination.
        half = len(keys) // 2
        for chunk in (keys[:half], keys[half:]):
            yield {"Contents": [
                {"Key": k, "Size": len(self.client.objects[k][0]),
                 "LastModified": datetime(2026, 3, 1, tzinfo=timezone.utc)}
                for k in chunk
            ]}


class FakeS3:
    """Single-bucket stand-in for a boto3 S3 client."""

    def __init__(self, bucket="skills-bucket"):
        self.bucket = bucket
        self.objects: dict[str, tuple[bytes, dict]] = {}
        self.fail_with = None

    def _check(self, Bucket, operation):
        if self.fail_with is not None:
            raise self.fail_with
        if Bucket != self.bucket:
            raise _client_error("NoSuchBucket", operation)

    def head_bucket(self, Bucket):
        self._check(Bucket, "HeadBucket")
        return {}

    def put_object(self, Bucket, Key, Body, ContentType=None, Metadata=None):
        self._check(Bucket, "PutObject")
        self.objects[Key] = (Body, dict(Metadata or {}))
        return {"ETag": '"x"'}

    def get_object(self, Bucket, Key):
        self._check(Bucket, "GetObject")
        if Key not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        body, meta = self.objects[Key]
        return {"Body": io.BytesIO(body), "Metadata": meta,
                "LastModified": datetime(2026, 3, 1, tzinfo=timezone.utc)}

    def head_object(self, Bucket, Key):
        self._check(Bucket, "HeadObject")
        if Key not in self.objects:
            raise _client_error("404", "HeadObject")
        return {"Metadata": self.objects[Key][1]}

    def delete_object(self, Bucket, Key):
        self._check(Bucket, "DeleteObject")
        self.objects.pop(Key, None)
        return {}

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return FakePaginator(self)


@pytest.fixture
def fake_s3():
    client = FakeS3()
    with patch("skillsync.adapters.s3.boto3.client", return_value=client) as factory:
        client.factory = factory
        yield client


@pytest.fixture
def make_adapter(fake_s3):
    from skillsync.adapters.s3 import S3Adapter
    from skillsync.models import S3Config

    def _make(**overrides):
        config = {"token": "AKIA", "secret_key": "s3cr3t", "bucket": "skills-bucket",
                  "prefix": "team/skillsync"}
        config.update(overrides)
        return S3Adapter(S3Config(**config))

    return _make


class TestS3Adapter:
    """Object storage behaviour and error mapping."""

    def test_client_configuration(self, make_adapter, fake_s3):
        make_adapter(endpoint="https://minio.local:9000", region="eu-west-1").connect()

        kwargs = fake_s3.factory.call_args.kwargs
        assert fake_s3.factory.call_args.args == ("s3",)
        assert kwargs["endpoint_url"] == "https://minio.local:9000"
        assert kwargs["aws_access_key_id"] == "AKIA"
        assert kwargs["aws_secret_access_key"] == "s3cr3t"
        assert kwargs["region_name"] == "eu-west-1"

    def test_round_trip_under_prefix(self, make_adapter, fake_s3):
        adapter = make_adapter()
        adapter.connect()
        uploaded = adapter.upload("skills/a.json", b"payload", {"id": "a", "name": "Ünïcode"})

        body, meta = fake_s3.objects["team/skillsync/skills/a.json"]
        assert body == b"payload"
        assert meta["sha256"] == uploaded.checksum
        assert meta["skillsync-meta"].isascii()

        downloaded = adapter.download("skills/a.json")
        assert downloaded.data == b"payload"
        assert downloaded.checksum == uploaded.checksum
        assert downloaded.metadata == {"id": "a", "name": "Ünïcode"}

    def test_list_strips_prefix_and_reads_metadata(self, make_adapter):
        adapter = make_adapter()
        adapter.connect()
        adapter.upload("skills/a.json", b"1", {"id": "a"})
        adapter.upload("skills/b.json", b"22", {"id": "b"})
        adapter.upload("workflows/c.json", b"333")

        listing = adapter.list()
        assert [item.key for item in listing] == [
            "skills/a.json", "skills/b.json", "workflows/c.json",
        ]
        assert listing[1].metadata == {"id": "b"}
        assert listing[2].size == 3
        assert [item.key for item in adapter.list("skills")] == [
            "skills/a.json", "skills/b.json",
        ]

    def test_missing_key(self, make_adapter):
        from skillsync.adapters import AdapterError, AdapterErrorCode

        adapter = make_adapter()
        adapter.connect()
        with pytest.raises(AdapterError) as exc_info:
            adapter.download("skills/none.json")
        assert exc_info.value.code == AdapterErrorCode.NOT_FOUND

        with pytest.raises(AdapterError) as exc_info:
            adapter.delete("skills/none.json")
        assert exc_info.value.code == AdapterErrorCode.NOT_FOUND

    def test_delete(self, make_adapter, fake_s3):
        adapter = make_adapter()
        adapter.connect()
        adapter.upload("skills/a.json", b"x")
        assert adapter.delete("skills/a.json") is True
        assert fake_s3.objects == {}

    def test_wrong_bucket_is_invalid_config(self, make_adapter):
        from skillsync.adapters import AdapterError, AdapterErrorCode

        with pytest.raises(AdapterError) as exc_info:
            make_adapter(bucket="other").connect()
        assert exc_info.value.code == AdapterErrorCode.INVALID_CONFIG

    def test_bad_credentials(self, make_adapter, fake_s3):
        from skillsync.adapters import AdapterError, AdapterErrorCode

        fake_s3.fail_with = _client_error("InvalidAccessKeyId", "HeadBucket")
        with pytest.raises(AdapterError) as exc_info:
            make_adapter().connect()
        assert exc_info.value.code == AdapterErrorCode.AUTHENTICATION_FAILED

    def test_unreachable_endpoint(self, make_adapter, fake_s3):
        from skillsync.adapters import AdapterError, AdapterErrorCode

        fake_s3.fail_with = EndpointConnectionError(endpoint_url="https://minio.local")
        with pytest.raises(AdapterError) as exc_info:
            make_adapter().connect()
        assert exc_info.value.code == AdapterErrorCode.CONNECTION_FAILED

    @pytest.mark.parametrize("error, code", [
        (_client_error("SlowDown", "PutObject"), "RATE_LIMITED"),
        (_client_error("AccessDenied", "PutObject"), "PERMISSION_DENIED"),
        (_client_error("QuotaExceeded", "PutObject"), "QUOTA_EXCEEDED"),
        (ReadTimeoutError(endpoint_url="https://s3"), "TIMEOUT"),
        (EndpointConnectionError(endpoint_url="https://s3"), "NETWORK_ERROR"),
    ])
    def test_operation_errors(self, make_adapter, fake_s3, error, code):
        from skillsync.adapters import AdapterError

        adapter = make_adapter()
        adapter.connect()
        fake_s3.fail_with = error
        with pytest.raises(AdapterError) as exc_info:
            adapter.upload("skills/a.json", b"x")
        assert exc_info.value.code.value == code

    def test_missing_credentials(self, make_adapter, fake_s3):
        from skillsync.adapters import AdapterError, AdapterErrorCode

        with pytest.raises(AdapterError) as exc_info:
            make_adapter(secret_key="").connect()
        assert exc_info.value.code == AdapterErrorCode.INVALID_CONFIG
        fake_s3.factory.assert_not_called()
