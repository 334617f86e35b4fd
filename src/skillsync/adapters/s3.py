"""
S3 adapter -- AWS S3 and S3-compatible stores (MinIO, R2, Wasabi).

boto3 does the SigV4 signing. The payload checksum and the caller's
metadata are kept in object user metadata (``x-amz-meta-*``), so a
listing plus one HEAD per object is enough to describe the remote.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from ..models import S3Config, utcnow
from .base import (
    AdapterError,
    AdapterErrorCode,
    CloudAdapter,
    DownloadResult,
    RemoteItem,
    UploadResult,
    sha256_hex,
)

logger = logging.getLogger("skillsync.adapters.s3")

CHECKSUM_FIELD = "sha256"
METADATA_FIELD = "skillsync-meta"

_CLIENT_ERROR_CODES = {
    "InvalidAccessKeyId": AdapterErrorCode.AUTHENTICATION_FAILED,
    "SignatureDoesNotMatch": AdapterErrorCode.AUTHENTICATION_FAILED,
    "ExpiredToken": AdapterErrorCode.AUTHENTICATION_FAILED,
    "AccessDenied": AdapterErrorCode.PERMISSION_DENIED,
    "403": AdapterErrorCode.PERMISSION_DENIED,
    "NoSuchKey": AdapterErrorCode.NOT_FOUND,
    "NotFound": AdapterErrorCode.NOT_FOUND,
    "404": AdapterErrorCode.NOT_FOUND,
    "NoSuchBucket": AdapterErrorCode.INVALID_CONFIG,
    "InvalidBucketName": AdapterErrorCode.INVALID_CONFIG,
    "SlowDown": AdapterErrorCode.RATE_LIMITED,
    "Throttling": AdapterErrorCode.RATE_LIMITED,
    "RequestLimitExceeded": AdapterErrorCode.RATE_LIMITED,
    "QuotaExceeded": AdapterErrorCode.QUOTA_EXCEEDED,
    "RequestTimeout": AdapterErrorCode.TIMEOUT,
}


class S3Adapter(CloudAdapter):
    """Bucket-backed adapter; every key lives under ``config.prefix``."""

    provider = "s3"

    def __init__(self, config: S3Config) -> None:
        super().__init__(config)
        self._client: Any = None

    def _connect(self) -> None:
        if not self.config.bucket:
            raise self._error("bucket is required", AdapterErrorCode.INVALID_CONFIG)
        if not self.config.token or not self.config.secret_key:
            raise self._error(
                "access key and secret key are required",
                AdapterErrorCode.INVALID_CONFIG,
            )

        self._client = boto3.client(
            "s3",
            endpoint_url=self.config.endpoint or None,
            aws_access_key_id=self.config.token,
            aws_secret_access_key=self.config.secret_key,
            region_name=self.config.region,
            config=BotoConfig(
                connect_timeout=self.config.timeout,
                read_timeout=self.config.timeout,
                retries={"max_attempts": 1},
            ),
        )

        try:
            self._client.head_bucket(Bucket=self.config.bucket)
        except ClientError as exc:
            code = self._client_error_code(exc)
            if code in (
                AdapterErrorCode.AUTHENTICATION_FAILED,
                AdapterErrorCode.PERMISSION_DENIED,
            ):
                raise self._error(
                    f"S3 rejected credentials for bucket {self.config.bucket}",
                    AdapterErrorCode.AUTHENTICATION_FAILED, exc,
                ) from exc
            if code == AdapterErrorCode.NOT_FOUND:
                code = AdapterErrorCode.INVALID_CONFIG
            if code != AdapterErrorCode.INVALID_CONFIG:
                code = AdapterErrorCode.CONNECTION_FAILED
            raise self._error(
                f"Cannot open bucket {self.config.bucket}: {exc}", code, exc,
            ) from exc
        except BotoCoreError as exc:
            raise self._error(
                f"Failed to connect to S3: {exc}",
                AdapterErrorCode.CONNECTION_FAILED, exc,
            ) from exc

    def _disconnect(self) -> None:
        self._client = None

    # -- operations ---------------------------------------------------------

    def _upload(
        self, key: str, data: bytes, checksum: str, metadata: dict[str, Any],
    ) -> UploadResult:
        try:
            self._client.put_object(
                Bucket=self.config.bucket,
                Key=self._object_key(key),
                Body=data,
                ContentType="application/octet-stream",
                Metadata={
                    CHECKSUM_FIELD: checksum,
                    METADATA_FIELD: json.dumps(metadata, ensure_ascii=True),
                },
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, f"upload {key}") from exc
        return UploadResult(
            success=True, key=key, size=len(data), checksum=checksum,
            uploaded_at=utcnow(),
        )

    def _download(self, key: str) -> DownloadResult:
        try:
            response = self._client.get_object(
                Bucket=self.config.bucket, Key=self._object_key(key),
            )
            data = response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, f"download {key}") from exc

        user_meta = response.get("Metadata") or {}
        return DownloadResult(
            success=True,
            data=data,
            size=len(data),
            checksum=user_meta.get(CHECKSUM_FIELD) or sha256_hex(data),
            last_modified=response.get("LastModified") or utcnow(),
            metadata=_decode_metadata(user_meta),
        )

    def _list(self, prefix: str) -> list[RemoteItem]:
        items = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            pages = paginator.paginate(
                Bucket=self.config.bucket, Prefix=self._object_key(prefix),
            )
            for page in pages:
                for obj in page.get("Contents") or []:
                    key = self._logical_key(obj["Key"])
                    if not key:
                        continue
                    head = self._client.head_object(
                        Bucket=self.config.bucket, Key=obj["Key"],
                    )
                    user_meta = head.get("Metadata") or {}
                    items.append(RemoteItem(
                        key=key,
                        name=key.rsplit("/", 1)[-1],
                        size=obj.get("Size", 0),
                        last_modified=obj.get("LastModified") or utcnow(),
                        checksum=user_meta.get(CHECKSUM_FIELD),
                        metadata=_decode_metadata(user_meta),
                    ))
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, f"list {prefix or '/'}") from exc
        return items

    def _delete(self, key: str) -> bool:
        object_key = self._object_key(key)
        try:
            # S3 deletes are idempotent; probe first so absence is reported.
            self._client.head_object(Bucket=self.config.bucket, Key=object_key)
            self._client.delete_object(Bucket=self.config.bucket, Key=object_key)
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, f"delete {key}") from exc
        return True

    # -- helpers ------------------------------------------------------------

    def _object_key(self, key: str) -> str:
        prefix = self.config.prefix.strip("/")
        if not prefix:
            return key
        return f"{prefix}/{key}" if key else f"{prefix}/"

    def _logical_key(self, object_key: str) -> str:
        prefix = self.config.prefix.strip("/")
        if prefix and object_key.startswith(prefix + "/"):
            return object_key[len(prefix) + 1:]
        return object_key

    @staticmethod
    def _client_error_code(exc: ClientError) -> AdapterErrorCode:
        code = str(exc.response.get("Error", {}).get("Code", ""))
        return _CLIENT_ERROR_CODES.get(code, AdapterErrorCode.UNKNOWN_ERROR)

    def _translate(self, exc: Exception, action: str) -> AdapterError:
        if isinstance(exc, ClientError):
            return self._error(
                f"S3 {action} failed: {exc}", self._client_error_code(exc), exc,
            )
        if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError)):
            return self._error(f"S3 {action} timed out", AdapterErrorCode.TIMEOUT, exc)
        if isinstance(exc, EndpointConnectionError):
            return self._error(
                f"S3 {action} failed: {exc}", AdapterErrorCode.NETWORK_ERROR, exc,
            )
        return self._error(f"S3 {action} failed: {exc}", AdapterErrorCode.UNKNOWN_ERROR, exc)


def _decode_metadata(user_meta: dict[str, str]) -> dict[str, Any]:
    raw = user_meta.get(METADATA_FIELD)
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring unreadable object metadata")
        return {}
    return decoded if isinstance(decoded, dict) else {}
