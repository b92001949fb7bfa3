# backend/services/encryption.py

"""
Payload encryption helpers. Clients encrypt each transaction with
AES-256-GCM under a key derived from their passphrase and per-user salt
(PBKDF2-HMAC-SHA256). The ciphertext travels as base64(iv + ciphertext+tag).
The server only decrypts to apply lot logic; it never stores the key.
"""

import base64
import binascii
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from backend.constants import IV_LENGTH, KEY_LENGTH, PBKDF2_ITERATIONS, SALT_LENGTH


class DecryptionError(ValueError):
    """Wrong key, corrupted ciphertext, or not valid base64."""


# === Key handling ===

def generate_salt() -> str:
    """Random per-user salt, hex encoded for storage on the user row."""
    return secrets.token_hex(SALT_LENGTH)


def derive_key(passphrase: str, salt: str | bytes) -> bytes:
    if isinstance(salt, str):
        salt = bytes.fromhex(salt)
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
        backend=default_backend(),
    )
    return kdf.derive(passphrase.encode("utf-8"))


# === Public API ===

def encrypt_string(plaintext: str, key: bytes) -> str:
    iv = secrets.token_bytes(IV_LENGTH)
    ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(iv + ciphertext).decode("ascii")


def decrypt_string(ciphertext_b64: str, key: bytes) -> str:
    """
    Reverse of encrypt_string. Every failure mode surfaces as DecryptionError
    so callers can treat it as bad client data.
    """
    try:
        blob = base64.b64decode(ciphertext_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError("Ciphertext is not valid base64.") from e

    if len(blob) <= IV_LENGTH:
        raise DecryptionError("Ciphertext is too short.")

    iv, ciphertext = blob[:IV_LENGTH], blob[IV_LENGTH:]
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
    except (InvalidTag, ValueError) as e:
        raise DecryptionError("Failed to decrypt payload. Wrong passphrase?") from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted payload is not UTF-8 text.") from e
