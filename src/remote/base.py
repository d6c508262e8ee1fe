from __future__ import annotations

import abc
import json
from typing import Optional

from common.errors import AuthError, AuthExpiredError, NetworkError, NotFoundError, RemoteError
from state.models import EncryptedBlob, RemoteMetadata


class RemoteBlobClient(abc.ABC):
    """
    One opaque blob per authenticated owner.

    Implementations
    - `get_metadata(owner)`: cheap freshness check; None when no blob exists.
    - `fetch(owner)`: full blob; raises NotFoundError when absent.
    - `upsert(owner, blob)`: idempotent create-or-replace. Returns metadata
      carrying the server-assigned `updated_at` when the store has one, else
      None (callers then use the blob's own client stamp).

    All calls may suspend and may fail with AuthExpiredError or NetworkError.
    """

    @abc.abstractmethod
    async def get_metadata(self, owner: str) -> Optional[RemoteMetadata]:
        raise NotImplementedError

    @abc.abstractmethod
    async def fetch(self, owner: str) -> EncryptedBlob:
        raise NotImplementedError

    @abc.abstractmethod
    async def upsert(self, owner: str, blob: EncryptedBlob) -> Optional[RemoteMetadata]:
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release transport resources; default is a no-op."""

    async def __aenter__(self) -> "RemoteBlobClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def dump_blob_json(blob: EncryptedBlob) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(
        blob.model_dump(mode="json", by_alias=True), separators=(",", ":"), sort_keys=True
    ).encode("utf-8")


__all__ = [
    "RemoteBlobClient",
    "dump_blob_json",
    "RemoteError",
    "NotFoundError",
    "AuthError",
    "AuthExpiredError",
    "NetworkError",
]
