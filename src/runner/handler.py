from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from common.errors import MigrationError
from remote.base import RemoteBlobClient
from remote.s3_store import S3BlobClient
from remote.supabase import SupabaseBlobClient
from state.local_store import LocalDocumentStore, LocalStorage
from syncer.engine import Notice, Resolution, SyncConfig, SyncEngine, SyncState
from syncer.session import AuthSession, PassphraseSession


logger = logging.getLogger(__name__)


# Environment configuration
ENV_STORAGE_PATH = "JOURNAL_STORAGE_PATH"  # optional; defaults to JOURNAL_STORAGE_DIR or .journal/
ENV_REMOTE = "JOURNAL_REMOTE"  # "s3" (default) or "supabase"
ENV_OWNER = "JOURNAL_OWNER_ID"
ENV_PASSPHRASE = "JOURNAL_PASSPHRASE"
ENV_ACCESS_TOKEN = "JOURNAL_ACCESS_TOKEN"  # optional; Supabase user session token
ENV_SUPABASE_URL = "SUPABASE_URL"
ENV_SUPABASE_KEY = "SUPABASE_ANON_KEY"
ENV_DEBOUNCE = "JOURNAL_DEBOUNCE_SECONDS"
ENV_POLL = "JOURNAL_POLL_SECONDS"
ENV_SKEW = "JOURNAL_CLOCK_SKEW_SECONDS"
ENV_CONFLICT_POLICY = "JOURNAL_CONFLICT_POLICY"  # optional: force_upload | overwrite_local | merge

ACTIONS = ("sync", "upload", "force-upload", "download", "merge", "overwrite-local")


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _float_env(name: str) -> Optional[float]:
    raw = _getenv(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError as ex:
        raise RuntimeError(f"Invalid number for {name}: {raw!r}") from ex


def load_config() -> SyncConfig:
    """Build engine tuning from environment overrides on top of the defaults."""
    cfg = SyncConfig()
    debounce = _float_env(ENV_DEBOUNCE)
    if debounce is not None:
        cfg.debounce_seconds = debounce
    poll = _float_env(ENV_POLL)
    if poll is not None:
        cfg.poll_interval_seconds = poll if poll > 0 else None
    skew = _float_env(ENV_SKEW)
    if skew is not None:
        cfg.clock_skew_tolerance = timedelta(seconds=skew)
    policy = _getenv(ENV_CONFLICT_POLICY)
    if policy is not None:
        try:
            cfg.conflict_policy = Resolution(policy)
        except ValueError as ex:
            raise RuntimeError(f"Invalid {ENV_CONFLICT_POLICY}: {policy!r}") from ex
    return cfg


def build_remote() -> RemoteBlobClient:
    backend = (_getenv(ENV_REMOTE, "s3") or "s3").lower()
    if backend == "s3":
        return S3BlobClient.from_env()
    if backend == "supabase":
        url = _require(_getenv(ENV_SUPABASE_URL), ENV_SUPABASE_URL)
        key = _require(_getenv(ENV_SUPABASE_KEY), ENV_SUPABASE_KEY)
        return SupabaseBlobClient(url, key, access_token=_getenv(ENV_ACCESS_TOKEN))
    raise RuntimeError(f"Unknown {ENV_REMOTE}: {backend!r} (expected 's3' or 'supabase')")


def build_store() -> LocalDocumentStore:
    return LocalDocumentStore(LocalStorage(_getenv(ENV_STORAGE_PATH)))


async def run_once_async(
    action: str = "sync",
    *,
    store: Optional[LocalDocumentStore] = None,
    remote: Optional[RemoteBlobClient] = None,
    config: Optional[SyncConfig] = None,
) -> Dict[str, Any]:
    """
    Run one headless reconciliation pass and return a summary.

    - Resolves owner and passphrase from env; builds store/remote unless injected.
    - Runs the legacy migration (a failure is reported, not fatal).
    - Starts the engine, which performs its initial sync or version check,
      then applies `action`:
      - "sync": upload when local changes are pending and no conflict exists.
      - "upload" / "force-upload" / "download": the matching manual operation.
      - "merge" / "overwrite-local": resolve a pending conflict.

    Returns: {"ok", "status", "dirty", "last_synced_at", "conflict", "notices", "migration_warning"}.
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown action {action!r}; expected one of {', '.join(ACTIONS)}")

    owner = _require(_getenv(ENV_OWNER), ENV_OWNER)
    passphrase = _require(_getenv(ENV_PASSPHRASE), ENV_PASSPHRASE)

    store = store or build_store()
    migration_warning: Optional[str] = None
    try:
        store.run_migration()
    except MigrationError as ex:
        logger.warning("Legacy data left unmigrated: %s", ex)
        migration_warning = str(ex)

    auth = AuthSession(owner)
    secrets = PassphraseSession()
    secrets.set(passphrase)

    # One-shot runs never poll in the background
    cfg = replace(config or load_config(), poll_interval_seconds=None)
    notices: List[Notice] = []

    def _collect(_state: SyncState, notice: Optional[Notice]) -> None:
        if notice is not None:
            notices.append(notice)

    async with (remote or build_remote()) as client:
        engine = SyncEngine(store, client, auth, secrets, config=cfg)
        engine.subscribe(_collect)
        try:
            async with engine:
                await engine.wait_idle()
                state = engine.state
                if action == "sync":
                    if state.dirty and state.conflict is None and auth.is_logged_in:
                        await engine.upload()
                elif action == "upload":
                    await engine.upload()
                elif action == "force-upload":
                    await engine.force_upload()
                elif action == "download":
                    await engine.download()
                elif action == "merge":
                    await engine.resolve(Resolution.MERGE)
                else:
                    await engine.resolve(Resolution.OVERWRITE_LOCAL)
                await engine.wait_idle()
        finally:
            engine.close()

    final = engine.state
    failures = {"auth_expired", "decryption_failed", "network_error", "error"}
    return {
        "ok": not any(n.kind.value in failures for n in notices),
        "status": final.status.value,
        "dirty": final.dirty,
        "last_synced_at": final.last_synced_at.isoformat() if final.last_synced_at else None,
        "conflict": (
            {
                "local_time": final.conflict.local_time.isoformat() if final.conflict.local_time else None,
                "remote_time": final.conflict.remote_time.isoformat(),
            }
            if final.conflict
            else None
        ),
        "notices": [n.kind.value for n in notices],
        "migration_warning": migration_warning,
    }


def run_once(action: str = "sync") -> Dict[str, Any]:
    return asyncio.run(run_once_async(action))


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile the local class journal with its cloud copy.")
    parser.add_argument("action", nargs="?", default="sync", choices=ACTIONS)
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    result = run_once(args.action)
    print(json.dumps(result, indent=2))
    return 0 if result["ok"] else 1


__all__ = ["run_once", "run_once_async", "load_config", "build_remote", "main"]
