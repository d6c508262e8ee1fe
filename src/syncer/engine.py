from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from common.encryption import KDF_ITERATIONS, decrypt, encrypt
from common.errors import (
    AuthExpiredError,
    DecryptionError,
    DocumentFormatError,
    JournalSyncError,
    NetworkError,
    NotFoundError,
    RemoteError,
)
from remote.base import RemoteBlobClient
from state.local_store import LocalDocumentStore
from state.merge import merge_documents
from state.models import Document, EncryptedBlob, RemoteMetadata

from .session import AuthSession, PassphraseSession


logger = logging.getLogger(__name__)


DEFAULT_DEBOUNCE_SECONDS = 5.0
DEFAULT_POLL_INTERVAL_SECONDS = 120.0
DEFAULT_CLOCK_SKEW_TOLERANCE = timedelta(seconds=2)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(t: datetime) -> datetime:
    return t if t.tzinfo is not None else t.replace(tzinfo=timezone.utc)


class SyncStatus(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    SYNCING = "syncing"
    CONFLICT_PENDING = "conflict_pending"


class Resolution(str, Enum):
    FORCE_UPLOAD = "force_upload"
    OVERWRITE_LOCAL = "overwrite_local"
    MERGE = "merge"


class NoticeKind(str, Enum):
    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    MERGED = "merged"
    REMOTE_NEWER = "remote_newer"
    CONFLICT = "conflict"
    PASSPHRASE_REQUIRED = "passphrase_required"
    DECRYPTION_FAILED = "decryption_failed"
    AUTH_EXPIRED = "auth_expired"
    NETWORK_ERROR = "network_error"
    NO_REMOTE_COPY = "no_remote_copy"
    ERROR = "error"


@dataclass(frozen=True)
class Conflict:
    local_time: Optional[datetime]
    remote_time: datetime


@dataclass(frozen=True)
class SyncState:
    """Snapshot of the engine; replaced wholesale on every transition."""

    dirty: bool = False
    syncing: bool = False
    last_synced_at: Optional[datetime] = None
    conflict: Optional[Conflict] = None

    @property
    def status(self) -> SyncStatus:
        if self.syncing:
            return SyncStatus.SYNCING
        if self.conflict is not None:
            return SyncStatus.CONFLICT_PENDING
        if self.dirty:
            return SyncStatus.DIRTY
        return SyncStatus.CLEAN


@dataclass(frozen=True)
class Notice:
    kind: NoticeKind
    message: str
    error: Optional[BaseException] = None


@dataclass
class SyncConfig:
    """
    Engine tuning.

    - debounce_seconds: quiet period after the last mutation before auto-upload.
    - poll_interval_seconds: remote version check period; None disables polling.
    - clock_skew_tolerance: slack applied when a remote blob carries no device tag.
    - conflict_policy: resolve conflicts automatically with this strategy
      instead of waiting for the user.
    - kdf_iterations: PBKDF2 rounds used for new uploads.
    - auto_upload: upload automatically when the debounce timer fires; manual
      operations and dirty tracking are unaffected when off.
    """

    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    poll_interval_seconds: Optional[float] = DEFAULT_POLL_INTERVAL_SECONDS
    clock_skew_tolerance: timedelta = DEFAULT_CLOCK_SKEW_TOLERANCE
    conflict_policy: Optional[Resolution] = None
    kdf_iterations: int = KDF_ITERATIONS
    auto_upload: bool = True


class Command(str, Enum):
    AUTO_UPLOAD = "auto_upload"
    UPLOAD = "upload"
    FORCE_UPLOAD = "force_upload"
    DOWNLOAD = "download"
    POLL = "poll"
    INITIAL_SYNC = "initial_sync"
    RESOLVE = "resolve"


@dataclass
class _Request:
    command: Command
    resolution: Optional[Resolution]
    future: "asyncio.Future[SyncState]" = field(repr=False)


Listener = Callable[[SyncState, Optional[Notice]], None]


class SyncEngine:
    """
    Offline-first reconciliation of the local Document with one remote blob.

    Model
    - A single worker task drains a command queue, so every network round trip
      (metadata, fetch, upsert) is strictly serialized. A command that is
      already queued is coalesced with the new request instead of queued twice.
    - Local mutations never wait: `notify_mutation()` (wired to the local
      store's change listener) sets `dirty` and restarts the debounce timer.
      When the timer fires it enqueues an auto-upload, which is skipped while
      a conflict is pending.
    - Failures from the codec or the remote store become state transitions
      plus a Notice for subscribers; they are never raised to callers.

    Usage
        async with SyncEngine(store, remote, auth, passphrase) as engine:
            engine.subscribe(lambda state, notice: ...)
            await engine.upload()
    """

    def __init__(
        self,
        store: LocalDocumentStore,
        remote: RemoteBlobClient,
        auth: AuthSession,
        passphrase: PassphraseSession,
        *,
        config: Optional[SyncConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._remote = remote
        self._auth = auth
        self._passphrase = passphrase
        self._config = config or SyncConfig()
        self._auto_upload = self._config.auto_upload
        self._clock = clock
        self._device_id = store.device_id()
        self._listeners: List[Listener] = []

        owner = auth.owner
        self._state = SyncState(
            dirty=store.has_pending_changes(),
            last_synced_at=store.last_synced_at(owner) if owner else None,
        )
        self._generation = 0

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional["asyncio.Queue[_Request]"] = None
        self._pending: Dict[Tuple[Command, Optional[Resolution]], "asyncio.Future[SyncState]"] = {}
        self._worker: Optional[asyncio.Task] = None
        self._poller: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None

        self._detach_store = store.add_change_listener(lambda _doc: self.notify_mutation())
        self._detach_auth = auth.add_listener(self._on_auth_change)

    # -------- Lifecycle --------
    async def start(self) -> None:
        if self._worker is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="journal-sync-worker")
        if self._config.poll_interval_seconds:
            self._poller = asyncio.create_task(self._poll_loop(), name="journal-sync-poller")
        self._bootstrap()

    async def stop(self) -> None:
        self._cancel_debounce()
        tasks = [t for t in (self._poller, self._worker) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._poller = None
        self._worker = None
        if self._queue is not None:
            while not self._queue.empty():
                req = self._queue.get_nowait()
                if not req.future.done():
                    req.future.set_result(self._state)
                self._queue.task_done()
        self._pending.clear()
        self._queue = None
        self._loop = None

    def close(self) -> None:
        """Detach from the store and auth session."""
        self._detach_store()
        self._detach_auth()

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # -------- Observation --------
    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def status(self) -> SyncStatus:
        return self._state.status

    @property
    def device_id(self) -> str:
        return self._device_id

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener(state, notice)`; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # -------- Inputs --------
    def notify_mutation(self) -> None:
        """Record a local edit: mark dirty and (re)start the debounce timer."""
        self._generation += 1
        if not self._state.dirty:
            self._store.set_pending_changes(True)
            self._set_state(replace(self._state, dirty=True))
        self._arm_debounce()

    def set_passphrase(self, passphrase: str) -> None:
        self._passphrase.set(passphrase)
        self._bootstrap()

    def set_auto_upload(self, enabled: bool) -> None:
        """Turn debounced auto-upload on or off at runtime."""
        self._auto_upload = enabled
        if not enabled:
            self._cancel_debounce()
        elif self._state.dirty:
            self._arm_debounce()

    def request_poll(self) -> None:
        """Fire-and-forget remote version check (window focus, app resume)."""
        if self._queue is not None:
            self._enqueue(Command.POLL)

    async def upload(self) -> SyncState:
        """Manual backup, with the pre-upload conflict check."""
        return await self._submit(Command.UPLOAD)

    async def force_upload(self) -> SyncState:
        return await self._submit(Command.FORCE_UPLOAD)

    async def download(self) -> SyncState:
        """Restore from the cloud, replacing the local Document."""
        return await self._submit(Command.DOWNLOAD)

    async def poll(self) -> SyncState:
        return await self._submit(Command.POLL)

    async def resolve(self, resolution: Resolution) -> SyncState:
        return await self._submit(Command.RESOLVE, Resolution(resolution))

    async def wait_idle(self) -> None:
        """Wait until every queued command has been processed."""
        if self._queue is not None:
            await self._queue.join()

    # -------- Queue plumbing --------
    def _enqueue(
        self, command: Command, resolution: Optional[Resolution] = None
    ) -> "asyncio.Future[SyncState]":
        if self._queue is None or self._loop is None:
            raise RuntimeError("SyncEngine is not running; use 'async with engine' or await start()")
        if self._worker is not None and self._worker.done():
            raise RuntimeError("SyncEngine worker has stopped unexpectedly")
        key = (command, resolution)
        queued = self._pending.get(key)
        if queued is not None and not queued.done():
            return queued
        fut: "asyncio.Future[SyncState]" = self._loop.create_future()
        self._pending[key] = fut
        self._queue.put_nowait(_Request(command=command, resolution=resolution, future=fut))
        return fut

    async def _submit(self, command: Command, resolution: Optional[Resolution] = None) -> SyncState:
        # Shielded: a cancelled caller must not cancel a request shared by others
        return await asyncio.shield(self._enqueue(command, resolution))

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            req = await self._queue.get()
            key = (req.command, req.resolution)
            if self._pending.get(key) is req.future:
                del self._pending[key]
            try:
                await self._dispatch(req)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.exception("Unexpected failure while handling %s", req.command.value)
                self._set_state(
                    replace(self._state, syncing=False),
                    Notice(NoticeKind.ERROR, "Sync failed unexpectedly", ex),
                )
            finally:
                if not req.future.done():
                    req.future.set_result(self._state)
                self._queue.task_done()

    async def _dispatch(self, req: _Request) -> None:
        handlers: Dict[Command, Callable[[], Awaitable[None]]] = {
            Command.AUTO_UPLOAD: self._handle_auto_upload,
            Command.UPLOAD: self._handle_upload,
            Command.FORCE_UPLOAD: self._handle_force_upload,
            Command.DOWNLOAD: self._handle_download,
            Command.POLL: self._handle_poll,
            Command.INITIAL_SYNC: self._handle_initial_sync,
        }
        if req.command is Command.RESOLVE:
            assert req.resolution is not None
            await self._handle_resolve(req.resolution)
            return
        await handlers[req.command]()

    async def _poll_loop(self) -> None:
        interval = float(self._config.poll_interval_seconds or 0)
        while True:
            await asyncio.sleep(interval)
            if self._auth.is_logged_in and self._passphrase.is_set and self._state.conflict is None:
                self._enqueue(Command.POLL)

    # -------- Debounce --------
    def _arm_debounce(self) -> None:
        if self._loop is None or not self._auto_upload:
            return
        self._cancel_debounce()
        self._timer = self._loop.call_later(self._config.debounce_seconds, self._on_debounce_elapsed)

    def _cancel_debounce(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_debounce_elapsed(self) -> None:
        self._timer = None
        if self._queue is not None and self._auto_upload:
            self._enqueue(Command.AUTO_UPLOAD)

    # -------- Session transitions --------
    def _on_auth_change(self, owner: Optional[str]) -> None:
        if owner is None:
            self._logout()
        else:
            self._bootstrap()

    def _logout(self) -> None:
        self._cancel_debounce()
        self._passphrase.clear()
        # Local document and the persisted pending flag stay as they are
        self._set_state(SyncState())
        logger.info("Logged out; sync paused")

    def _bootstrap(self) -> None:
        owner = self._auth.owner
        if owner is None:
            return
        self._set_state(
            replace(
                self._state,
                dirty=self._state.dirty or self._store.has_pending_changes(),
                last_synced_at=self._store.last_synced_at(owner),
            )
        )
        if not self._passphrase.is_set:
            self._notify(NoticeKind.PASSPHRASE_REQUIRED, "Enter the encryption passphrase to enable sync")
            return
        if self._queue is None:
            return
        if self._state.last_synced_at is None:
            self._enqueue(Command.INITIAL_SYNC)
        else:
            self._enqueue(Command.POLL)
        if self._state.dirty:
            self._arm_debounce()

    def _credentials(self) -> Optional[Tuple[str, str]]:
        owner = self._auth.owner
        if owner is None:
            logger.debug("Sync skipped: not logged in")
            return None
        passphrase = self._passphrase.get()
        if passphrase is None:
            self._notify(NoticeKind.PASSPHRASE_REQUIRED, "Enter the encryption passphrase to enable sync")
            return None
        return owner, passphrase

    # -------- Command handlers --------
    async def _handle_auto_upload(self) -> None:
        if not self._state.dirty:
            return
        if self._state.conflict is not None:
            logger.debug("Auto-upload suppressed while a conflict is pending")
            return
        creds = self._credentials()
        if creds is None:
            return
        await self._upload(*creds, check_conflict=True)

    async def _handle_upload(self) -> None:
        if self._state.conflict is not None:
            self._notify(NoticeKind.CONFLICT, "Resolve the pending conflict before uploading")
            return
        creds = self._credentials()
        if creds is None:
            return
        await self._upload(*creds, check_conflict=True)

    async def _handle_force_upload(self) -> None:
        creds = self._credentials()
        if creds is None:
            return
        await self._upload(*creds, check_conflict=False)

    async def _handle_download(self) -> None:
        creds = self._credentials()
        if creds is None:
            return
        await self._overwrite_local(*creds)

    async def _handle_poll(self) -> None:
        if self._state.conflict is not None:
            return
        creds = self._credentials()
        if creds is None:
            return
        owner, _ = creds
        self._begin_syncing()
        try:
            meta = await self._remote.get_metadata(owner)
        except JournalSyncError as ex:
            self._fail(ex)
            return
        self._end_syncing()
        if meta is None or not self._is_foreign_newer(meta):
            return
        if self._state.dirty:
            await self._enter_conflict(meta)
        else:
            self._notify(NoticeKind.REMOTE_NEWER, "A newer copy is available in the cloud")

    async def _handle_initial_sync(self) -> None:
        if self._state.last_synced_at is not None:
            await self._handle_poll()
            return
        creds = self._credentials()
        if creds is None:
            return
        owner, passphrase = creds
        self._begin_syncing()
        try:
            meta = await self._remote.get_metadata(owner)
        except JournalSyncError as ex:
            self._fail(ex)
            return
        self._end_syncing()

        own_copy = meta is not None and meta.device_id == self._device_id
        if meta is None or own_copy:
            if self._state.dirty:
                await self._upload(owner, passphrase, check_conflict=False)
            elif own_copy:
                await self._overwrite_local(owner, passphrase)
            return
        if self._state.dirty:
            await self._enter_conflict(meta)
        else:
            await self._overwrite_local(owner, passphrase)

    async def _handle_resolve(self, resolution: Resolution) -> None:
        if self._state.conflict is None:
            logger.info("Ignoring %s: no conflict pending", resolution.value)
            return
        creds = self._credentials()
        if creds is None:
            return
        await self._apply_resolution(resolution, *creds)

    async def _apply_resolution(self, resolution: Resolution, owner: str, passphrase: str) -> None:
        logger.info("Resolving conflict with %s", resolution.value)
        if resolution is Resolution.FORCE_UPLOAD:
            await self._upload(owner, passphrase, check_conflict=False)
        elif resolution is Resolution.OVERWRITE_LOCAL:
            await self._overwrite_local(owner, passphrase)
        else:
            await self._merge(owner, passphrase)

    # -------- Operations --------
    async def _upload(self, owner: str, passphrase: str, *, check_conflict: bool) -> None:
        self._begin_syncing()
        generation = self._generation
        try:
            if check_conflict:
                meta = await self._remote.get_metadata(owner)
                if meta is not None and self._is_foreign_newer(meta):
                    self._end_syncing()
                    await self._enter_conflict(meta)
                    return
            document = self._store.load()
            stamp = self._clock()
            # PBKDF2 runs in a worker thread
            payload = await asyncio.to_thread(
                encrypt, document, passphrase, iterations=self._config.kdf_iterations
            )
            blob = EncryptedBlob(
                payload=payload,
                updated_at=stamp,
                device_id=self._device_id,
            )
            stored = await self._remote.upsert(owner, blob)
        except JournalSyncError as ex:
            self._fail(ex)
            return

        if self._auth.owner != owner:
            self._end_syncing()
            return
        self._mark_synced(
            owner,
            stored.updated_at if stored is not None else stamp,
            generation,
            Notice(NoticeKind.UPLOADED, "Local data encrypted and backed up to the cloud"),
        )

    async def _fetch_document(self, owner: str, passphrase: str) -> Tuple[Document, EncryptedBlob]:
        blob = await self._remote.fetch(owner)
        return await self._unwrap(blob, passphrase), blob

    async def _unwrap(self, blob: EncryptedBlob, passphrase: str) -> Document:
        if blob.is_encrypted:
            if not isinstance(blob.payload, str):
                raise DocumentFormatError("Encrypted blob has no ciphertext payload")
            return await asyncio.to_thread(decrypt, blob.payload, passphrase)
        # Backups written before encryption carry the document as-is
        try:
            return Document.model_validate(blob.payload)
        except ValidationError as ex:
            raise DocumentFormatError("Legacy plaintext blob is not a valid document") from ex

    async def _overwrite_local(self, owner: str, passphrase: str) -> None:
        self._begin_syncing()
        try:
            document, blob = await self._fetch_document(owner, passphrase)
        except NotFoundError:
            self._end_syncing()
            self._notify(NoticeKind.NO_REMOTE_COPY, "No cloud copy exists yet")
            return
        except JournalSyncError as ex:
            self._fail(ex)
            return

        if self._auth.owner != owner:
            self._end_syncing()
            return
        self._store.replace(document)
        # Edits made while the fetch was in flight are discarded too
        self._mark_synced(
            owner,
            blob.updated_at,
            self._generation,
            Notice(NoticeKind.DOWNLOADED, "Cloud data restored to this device"),
        )

    async def _merge(self, owner: str, passphrase: str) -> None:
        self._begin_syncing()
        try:
            remote_doc, blob = await self._fetch_document(owner, passphrase)
        except NotFoundError:
            # Nothing to merge with; the local copy becomes the remote one
            self._end_syncing()
            await self._upload(owner, passphrase, check_conflict=False)
            return
        except JournalSyncError as ex:
            self._fail(ex)
            return

        if self._auth.owner != owner:
            self._end_syncing()
            return
        local_doc = self._store.load()
        merged = merge_documents(local_doc, remote_doc, self._state.last_synced_at, blob.updated_at)
        self._store.replace(merged)
        self._end_syncing()
        self._notify(NoticeKind.MERGED, "Local and cloud data merged")
        await self._upload(owner, passphrase, check_conflict=False)

    # -------- Transitions --------
    def _is_foreign_newer(self, meta: RemoteMetadata) -> bool:
        """True when the remote copy was written by another device after our watermark."""
        if meta.device_id is not None and meta.device_id == self._device_id:
            return False
        watermark = self._state.last_synced_at
        if watermark is None:
            return True
        # Tagged blobs compare exactly; untagged ones may be our own write
        # stamped by a different clock, hence the tolerance.
        tolerance = timedelta(0) if meta.device_id else self._config.clock_skew_tolerance
        return _aware(meta.updated_at) > _aware(watermark) + tolerance

    async def _enter_conflict(self, meta: RemoteMetadata) -> None:
        conflict = Conflict(local_time=self._state.last_synced_at, remote_time=meta.updated_at)
        logger.warning(
            "Sync conflict: remote %s is newer than local watermark %s",
            meta.updated_at.isoformat(),
            conflict.local_time.isoformat() if conflict.local_time else "never",
        )
        self._set_state(
            replace(self._state, syncing=False, conflict=conflict),
            Notice(NoticeKind.CONFLICT, "The cloud copy was changed on another device"),
        )
        policy = self._config.conflict_policy
        if policy is not None:
            creds = self._credentials()
            if creds is not None:
                await self._apply_resolution(policy, *creds)

    def _mark_synced(self, owner: str, when: datetime, generation: int, notice: Notice) -> None:
        still_dirty = self._generation != generation
        self._store.set_last_synced_at(owner, when)
        self._store.set_pending_changes(still_dirty)
        self._set_state(
            replace(self._state, syncing=False, dirty=still_dirty, last_synced_at=when, conflict=None),
            notice,
        )
        logger.debug("Synced at %s (dirty=%s)", when.isoformat(), still_dirty)
        if still_dirty:
            self._arm_debounce()

    def _fail(self, ex: JournalSyncError) -> None:
        self._end_syncing()
        if isinstance(ex, AuthExpiredError):
            logger.warning("Remote rejected credentials: %s", ex)
            self._notify(NoticeKind.AUTH_EXPIRED, "Session expired; sign in again", ex)
            self._auth.sign_out()
        elif isinstance(ex, DecryptionError):
            logger.warning("Could not decrypt the cloud copy: %s", ex)
            self._passphrase.clear()
            self._notify(NoticeKind.DECRYPTION_FAILED, "Wrong passphrase or damaged cloud data", ex)
        elif isinstance(ex, (NetworkError, RemoteError)):
            logger.warning("Remote store unavailable: %s", ex)
            self._notify(NoticeKind.NETWORK_ERROR, "Cloud sync failed; will retry on the next change", ex)
        else:
            logger.warning("Sync failed: %s", ex)
            self._notify(NoticeKind.ERROR, str(ex), ex)

    def _begin_syncing(self) -> None:
        if not self._state.syncing:
            self._set_state(replace(self._state, syncing=True))

    def _end_syncing(self) -> None:
        if self._state.syncing:
            self._set_state(replace(self._state, syncing=False))

    def _notify(self, kind: NoticeKind, message: str, error: Optional[BaseException] = None) -> None:
        self._emit(Notice(kind, message, error))

    def _set_state(self, state: SyncState, notice: Optional[Notice] = None) -> None:
        self._state = state
        self._emit(notice)

    def _emit(self, notice: Optional[Notice]) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state, notice)
            except Exception:
                logger.exception("Sync listener raised")


__all__ = [
    "SyncEngine",
    "SyncConfig",
    "SyncState",
    "SyncStatus",
    "Conflict",
    "Resolution",
    "Notice",
    "NoticeKind",
]
