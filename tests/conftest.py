from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import pytest

from common.encryption import encrypt
from remote.base import RemoteBlobClient
from state.local_store import LocalDocumentStore, LocalStorage
from state.models import Document, EncryptedBlob, RemoteMetadata


# Low KDF cost keeps the suite fast; the format records the count per message
FAST_ITERATIONS = 1_000
OWNER = "owner-1"
PASSPHRASE = "correct horse battery staple"
T0 = datetime(2024, 3, 4, 9, 0, 0, tzinfo=timezone.utc)


class MemoryRemote(RemoteBlobClient):
    """In-memory blob store with failure injection and an optional gate.

    - `fail_with`: raised by every call until reset to None.
    - `gate`: when set, every call waits on it, keeping the request in flight.
    - `server_time`: when set, upsert reports it as the server-assigned time.
    """

    def __init__(self) -> None:
        self.blobs: Dict[str, EncryptedBlob] = {}
        self.calls: List[str] = []
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.server_time: Optional[datetime] = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def _tick(self, name: str) -> None:
        self.calls.append(name)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.gate is not None:
                await self.gate.wait()
            if self.fail_with is not None:
                raise self.fail_with
        finally:
            self.in_flight -= 1

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def get_metadata(self, owner: str) -> Optional[RemoteMetadata]:
        await self._tick("get_metadata")
        blob = self.blobs.get(owner)
        if blob is None:
            return None
        return RemoteMetadata(updated_at=blob.updated_at, device_id=blob.device_id)

    async def fetch(self, owner: str) -> EncryptedBlob:
        from common.errors import NotFoundError

        await self._tick("fetch")
        blob = self.blobs.get(owner)
        if blob is None:
            raise NotFoundError(owner)
        return blob

    async def upsert(self, owner: str, blob: EncryptedBlob) -> Optional[RemoteMetadata]:
        await self._tick("upsert")
        if self.server_time is not None:
            blob = blob.model_copy(update={"updated_at": self.server_time})
        self.blobs[owner] = blob
        if self.server_time is None:
            return None
        return RemoteMetadata(updated_at=self.server_time, device_id=blob.device_id)

    def seed(
        self,
        document: Document,
        *,
        owner: str = OWNER,
        passphrase: str = PASSPHRASE,
        updated_at: datetime = T0,
        device_id: Optional[str] = "other-device",
    ) -> EncryptedBlob:
        blob = EncryptedBlob(
            payload=encrypt(document, passphrase, iterations=FAST_ITERATIONS),
            updated_at=updated_at,
            device_id=device_id,
        )
        self.blobs[owner] = blob
        return blob


@pytest.fixture
def memory_remote() -> MemoryRemote:
    return MemoryRemote()


@pytest.fixture
def make_store(tmp_path) -> Callable[..., LocalDocumentStore]:
    def _make(name: str = "device") -> LocalDocumentStore:
        return LocalDocumentStore(LocalStorage(tmp_path / name / "local_storage.json"))

    return _make


@pytest.fixture
def store(make_store) -> LocalDocumentStore:
    return make_store()
