"""
Offline-first sync engine and the session collaborators it depends on.
"""

from .engine import (
    Conflict,
    Notice,
    NoticeKind,
    Resolution,
    SyncConfig,
    SyncEngine,
    SyncState,
    SyncStatus,
)
from .session import AuthSession, PassphraseSession

__all__ = [
    "AuthSession",
    "Conflict",
    "Notice",
    "NoticeKind",
    "PassphraseSession",
    "Resolution",
    "SyncConfig",
    "SyncEngine",
    "SyncState",
    "SyncStatus",
]
