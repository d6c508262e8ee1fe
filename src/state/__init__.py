"""
Document models, local persistence and the merge policy.

The Document is stored as one JSON value in durable local storage and,
when cloud sync is enabled, mirrored as a Fernet-encrypted blob.
"""

from .models import Document, EncryptedBlob, RemoteMetadata

__all__ = ["Document", "EncryptedBlob", "RemoteMetadata"]
