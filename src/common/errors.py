from __future__ import annotations


class JournalSyncError(RuntimeError):
    """Base error for the journal sync stack."""


class DecryptionError(JournalSyncError):
    """Wrong passphrase or corrupted ciphertext."""


class DocumentFormatError(JournalSyncError):
    """Decrypted (or stored) content is not a valid Document."""


class RemoteError(JournalSyncError):
    """Base error for remote blob stores."""


class NotFoundError(RemoteError):
    """No remote blob exists for the owner."""


class AuthExpiredError(RemoteError):
    """The remote store rejected the call for authentication reasons."""


class NetworkError(RemoteError):
    """Transport failure, timeout or transient server error."""


class MigrationError(JournalSyncError):
    """Legacy local data could not be migrated; the raw keys are left as-is."""


# Name used by the remote contract for upsert failures
AuthError = AuthExpiredError


__all__ = [
    "JournalSyncError",
    "DecryptionError",
    "DocumentFormatError",
    "RemoteError",
    "NotFoundError",
    "AuthExpiredError",
    "AuthError",
    "NetworkError",
    "MigrationError",
]
