from __future__ import annotations

import base64
import binascii
import json
import os

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from state.models import Document

from .errors import DecryptionError, DocumentFormatError


FORMAT_TAG = "v1"
SALT_BYTES = 16
KDF_ITERATIONS = 200_000
# Upper bound accepted from a ciphertext header
MAX_KDF_ITERATIONS = 10_000_000


def _derive_fernet(passphrase: str, salt: bytes, *, iterations: int = KDF_ITERATIONS) -> Fernet:
    """Derive a Fernet key from the user's passphrase and a per-message salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))
    return Fernet(key)


def _dump_document_json(document: Document) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(
        document.to_json_dict(), separators=(",", ":"), sort_keys=True
    ).encode("utf-8")


def _load_document_json(data: bytes) -> Document:
    raw = json.loads(data.decode("utf-8"))
    return Document.model_validate(raw)


def encrypt(document: Document, passphrase: str, *, iterations: int = KDF_ITERATIONS) -> str:
    """Encrypt `document` with a key derived from `passphrase`.

    Output layout: ``v1:<kdf iterations>:<urlsafe-b64 salt>:<fernet token>``.
    A fresh salt and Fernet IV are drawn per call, so equal inputs give
    different ciphertexts.
    """
    if not passphrase:
        raise ValueError("passphrase is required")
    if not 0 < iterations <= MAX_KDF_ITERATIONS:
        raise ValueError(f"iterations must be between 1 and {MAX_KDF_ITERATIONS}")
    salt = os.urandom(SALT_BYTES)
    token = _derive_fernet(passphrase, salt, iterations=iterations).encrypt(
        _dump_document_json(document)
    )
    salt_b64 = base64.urlsafe_b64encode(salt).decode("ascii")
    return f"{FORMAT_TAG}:{iterations}:{salt_b64}:{token.decode('ascii')}"


def decrypt(ciphertext: str, passphrase: str) -> Document:
    """Decrypt a ciphertext produced by `encrypt`.

    Raises:
    - DecryptionError when the passphrase is wrong or the ciphertext is damaged.
    - DocumentFormatError when decryption succeeds but the plaintext is not a Document.
    """
    if not passphrase:
        raise ValueError("passphrase is required")
    parts = ciphertext.split(":", 3) if isinstance(ciphertext, str) else []
    if len(parts) != 4 or parts[0] != FORMAT_TAG:
        raise DecryptionError("Ciphertext is corrupted or in an unknown format")
    try:
        iterations = int(parts[1])
        salt = base64.urlsafe_b64decode(parts[2].encode("ascii"))
    except (binascii.Error, ValueError) as ex:
        raise DecryptionError("Ciphertext header is corrupted") from ex
    if not 0 < iterations <= MAX_KDF_ITERATIONS or len(salt) != SALT_BYTES:
        raise DecryptionError("Ciphertext header is corrupted")

    try:
        plaintext = _derive_fernet(passphrase, salt, iterations=iterations).decrypt(
            parts[3].encode("ascii")
        )
    except (InvalidToken, ValueError) as ex:
        raise DecryptionError("Wrong passphrase or corrupted ciphertext") from ex

    try:
        return _load_document_json(plaintext)
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as ex:
        raise DocumentFormatError("Decrypted payload is not a valid document") from ex


__all__ = ["encrypt", "decrypt", "DecryptionError", "DocumentFormatError"]
