from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from common.errors import (
    AuthExpiredError,
    DocumentFormatError,
    NetworkError,
    NotFoundError,
    RemoteError,
)
from state.models import EncryptedBlob, RemoteMetadata

from .base import RemoteBlobClient


DEFAULT_TABLE = "user_journal_data"
# Device tag read from inside the blob, aliased to a flat column
METADATA_COLUMNS = "updated_at,device_id:data->>deviceId"


class SupabaseBlobClient(RemoteBlobClient):
    """
    Remote Blob Client over a Supabase (PostgREST) table.

    Table layout: `user_journal_data(user_id pk, data jsonb, updated_at timestamptz)`.
    The uploader's device tag travels inside `data` as `deviceId`.

    Notes
    - `get_metadata` selects `updated_at` plus the JSON path `data->>deviceId`,
      so polling never transfers the encrypted payload.
    - `upsert` relies on `on_conflict=user_id` with merge-duplicates, giving one
      row per owner. When the table assigns `updated_at` itself, the returned
      representation carries the server time.
    - No retries: a failed call surfaces once and the next sync trigger retries.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        access_token: Optional[str] = None,
        table: str = DEFAULT_TABLE,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        if not api_key:
            raise ValueError("api_key is required")
        self._table = table
        self._api_key = api_key
        self._access_token = access_token or api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            timeout=timeout,
        )

    def set_access_token(self, token: str) -> None:
        """Swap in a refreshed session token after re-authentication."""
        self._access_token = token

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # --------------- Public API ---------------
    async def get_metadata(self, owner: str) -> Optional[RemoteMetadata]:
        rows = await self._select(owner, METADATA_COLUMNS)
        if not rows:
            return None
        row = rows[0]
        try:
            return RemoteMetadata(updated_at=row["updated_at"], device_id=row.get("device_id"))
        except (KeyError, ValidationError) as ex:
            raise DocumentFormatError("Malformed metadata row from Supabase") from ex

    async def fetch(self, owner: str) -> EncryptedBlob:
        rows = await self._select(owner, "data,updated_at")
        if not rows:
            raise NotFoundError(f"No remote blob for owner {owner}")
        row = rows[0]
        data = row.get("data")
        if not isinstance(data, dict):
            raise DocumentFormatError("Remote row has no blob payload")
        # The row's timestamp is authoritative over the one embedded in the blob
        merged: Dict[str, Any] = {**data}
        if row.get("updated_at"):
            merged["updatedAt"] = row["updated_at"]
        try:
            return EncryptedBlob.model_validate(merged)
        except ValidationError as ex:
            raise DocumentFormatError("Remote blob does not match the expected shape") from ex

    async def upsert(self, owner: str, blob: EncryptedBlob) -> Optional[RemoteMetadata]:
        body = {
            "user_id": owner,
            "data": blob.model_dump(mode="json", by_alias=True),
            "updated_at": blob.updated_at.isoformat(),
        }
        resp = await self._send(
            "POST",
            f"/{self._table}",
            params={"on_conflict": "user_id"},
            json=body,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        rows = self._json_rows(resp)
        if not rows or not rows[0].get("updated_at"):
            return None
        try:
            return RemoteMetadata(updated_at=rows[0]["updated_at"], device_id=blob.device_id)
        except ValidationError as ex:
            raise DocumentFormatError("Malformed upsert response from Supabase") from ex

    # --------------- Internal ---------------
    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._access_token}",
        }

    async def _select(self, owner: str, columns: str) -> List[Dict[str, Any]]:
        if not owner:
            raise ValueError("owner is required")
        resp = await self._send(
            "GET",
            f"/{self._table}",
            params={"user_id": f"eq.{owner}", "select": columns, "limit": "1"},
        )
        return self._json_rows(resp)

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(
                method,
                url,
                params=params,
                json=json,
                headers={**self._headers(), **(headers or {})},
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise NetworkError(f"Supabase request failed: {exc}") from exc

        if resp.status_code in (200, 201, 204):
            return resp
        if resp.status_code in (401, 403):
            raise AuthExpiredError(f"HTTP {resp.status_code} from Supabase")
        if resp.status_code in (408, 429) or resp.status_code >= 500:
            raise NetworkError(f"HTTP {resp.status_code} from Supabase")
        raise RemoteError(f"HTTP {resp.status_code} from Supabase: {resp.text[:200]}")

    @staticmethod
    def _json_rows(resp: httpx.Response) -> List[Dict[str, Any]]:
        if resp.status_code == 204 or not resp.content:
            return []
        try:
            payload = resp.json()
        except ValueError as exc:
            raise DocumentFormatError("Failed to parse JSON from Supabase") from exc
        if isinstance(payload, dict):
            payload = [payload]
        if not isinstance(payload, list):
            raise DocumentFormatError("Unexpected response shape from Supabase")
        return [row for row in payload if isinstance(row, dict)]


__all__ = ["SupabaseBlobClient"]
