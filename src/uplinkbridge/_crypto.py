"""Internal cryptographic helpers for encrypting the stored OAuth token."""

from __future__ import annotations

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import HKDF
from Crypto.Random import get_random_bytes

KEY_SIZE = 16  # AES-128
NONCE_SIZE = 12
TAG_SIZE = 16


def derive_key(client_secret: str, client_id: str) -> bytes:
    """Derive the 128-bit token key from the OAuth client credentials.

    The client secret is the key material and the client id the salt, so a
    token written by one application registration cannot be read by another.
    """
    key: bytes = HKDF(
        client_secret.encode("utf-8"),
        KEY_SIZE,
        client_id.encode("utf-8"),
        SHA256,
    )
    return key


def seal(plaintext: bytes, key: bytes) -> bytes:
    """AES/GCM encryption with a random nonce.

    Returns ``nonce | tag | ciphertext``.
    """
    nonce = get_random_bytes(NONCE_SIZE)
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    return nonce + tag + ciphertext


def open_sealed(blob: bytes, key: bytes) -> bytes:
    """Reverse :func:`seal`.

    Raises :class:`ValueError` if the blob is truncated, was sealed with a
    different key, or has been tampered with.
    """
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise ValueError("Sealed data is too short.")
    nonce = blob[:NONCE_SIZE]
    tag = blob[NONCE_SIZE : NONCE_SIZE + TAG_SIZE]
    ciphertext = blob[NONCE_SIZE + TAG_SIZE :]
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    result: bytes = cipher.decrypt_and_verify(ciphertext, tag)
    return result
