from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from common.errors import (
    AuthExpiredError,
    DocumentFormatError,
    NetworkError,
    NotFoundError,
    RemoteError,
)
from state.models import EncryptedBlob, RemoteMetadata

from .base import RemoteBlobClient, dump_blob_json


# Environment variable names for convenience configuration
ENV_BUCKET = "JOURNAL_STATE_BUCKET"
ENV_PREFIX = "JOURNAL_STATE_PREFIX"

META_UPDATED_AT = "updated-at"
META_DEVICE_ID = "device-id"

_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")
_AUTH_CODES = (
    "AccessDenied",
    "403",
    "ExpiredToken",
    "ExpiredTokenException",
    "InvalidAccessKeyId",
    "InvalidToken",
    "SignatureDoesNotMatch",
    "TokenRefreshRequired",
)


def _error_code(e: ClientError) -> Optional[str]:
    return e.response.get("Error", {}).get("Code")


def _translate(e: Exception, what: str) -> RemoteError:
    """Map botocore failures onto the remote error taxonomy."""
    if isinstance(e, ClientError):
        code = _error_code(e)
        if code in _NOT_FOUND_CODES:
            return NotFoundError(f"{what}: no remote blob")
        if code in _AUTH_CODES:
            return AuthExpiredError(f"{what}: S3 rejected credentials ({code})")
        return NetworkError(f"{what}: S3 error ({code})")
    return NetworkError(f"{what}: {e}")


@dataclass
class S3ObjectRef:
    bucket: str
    key: str


class S3BlobClient(RemoteBlobClient):
    """
    S3-backed Remote Blob Client: one JSON object per owner.

    Usage
    - Object key is `{prefix}{owner}.json`; the body is the EncryptedBlob JSON.
    - `updated-at` and `device-id` are also written as object user metadata so
      `get_metadata()` is a HEAD request that never transfers the payload.
    - boto3 is synchronous; each call runs in a worker thread.

    Environment variables (optional)
    - `JOURNAL_STATE_BUCKET`: S3 bucket for the blobs
    - `JOURNAL_STATE_PREFIX`: key prefix (default: "journal/")
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        prefix: str = "journal/",
        region_name: Optional[str] = None,
    ) -> None:
        self._s3: Any = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._prefix = prefix

    # -------- Construction helpers --------
    @classmethod
    def from_env(cls) -> "S3BlobClient":
        bucket = os.environ.get(ENV_BUCKET)
        if not bucket:
            raise RuntimeError(
                f"Missing required environment variables for S3 blob store: {ENV_BUCKET}"
            )
        prefix = os.environ.get(ENV_PREFIX) or "journal/"
        return cls(bucket=bucket, prefix=prefix)

    def object_ref(self, owner: str) -> S3ObjectRef:
        if not owner:
            raise ValueError("owner is required")
        return S3ObjectRef(bucket=self._bucket, key=f"{self._prefix}{owner}.json")

    # -------- Core operations --------
    async def get_metadata(self, owner: str) -> Optional[RemoteMetadata]:
        ref = self.object_ref(owner)
        try:
            resp = await asyncio.to_thread(self._s3.head_object, Bucket=ref.bucket, Key=ref.key)
        except (ClientError, BotoCoreError) as e:
            err = _translate(e, "head_object")
            if isinstance(err, NotFoundError):
                return None
            raise err from e

        meta: Dict[str, str] = resp.get("Metadata") or {}
        raw_time = meta.get(META_UPDATED_AT)
        if raw_time:
            updated_at = datetime.fromisoformat(raw_time)
        else:
            # Objects written by other tools only carry S3's own timestamp
            updated_at = resp["LastModified"]
        return RemoteMetadata(updated_at=updated_at, device_id=meta.get(META_DEVICE_ID))

    async def fetch(self, owner: str) -> EncryptedBlob:
        ref = self.object_ref(owner)
        try:
            resp = await asyncio.to_thread(self._s3.get_object, Bucket=ref.bucket, Key=ref.key)
            body = await asyncio.to_thread(resp["Body"].read)
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, "get_object") from e

        try:
            return EncryptedBlob.model_validate(json.loads(body.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as ex:
            raise DocumentFormatError("Remote blob is not valid JSON") from ex

    async def upsert(self, owner: str, blob: EncryptedBlob) -> Optional[RemoteMetadata]:
        ref = self.object_ref(owner)
        metadata = {META_UPDATED_AT: blob.updated_at.isoformat()}
        if blob.device_id:
            metadata[META_DEVICE_ID] = blob.device_id
        try:
            await asyncio.to_thread(
                self._s3.put_object,
                Bucket=ref.bucket,
                Key=ref.key,
                Body=dump_blob_json(blob),
                ContentType="application/json",
                Metadata=metadata,
            )
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, "put_object") from e
        # S3 keeps the client stamp; LastModified only has second precision
        return None


__all__ = ["S3BlobClient", "S3ObjectRef"]
