"""Symmetric encryption for custodial key material at rest.

AES-256-CBC with PKCS7 padding. The key is SHA-256 of the configured secret.
Current ciphertexts are ``iv_hex:ciphertext_hex`` with a random IV per value;
older records carry only ``ciphertext_hex`` and were written with an all-zero IV.
"""

import hashlib
import os
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from src.config import config

IV_LENGTH = 16
LEGACY_IV = bytes(IV_LENGTH)


def derive_key(secret: Optional[str] = None) -> bytes:
    """Hash the configured secret down to a 32-byte AES key."""
    secret = secret if secret is not None else config.wallet_encryption_key
    return hashlib.sha256(secret.encode("utf-8")).digest()


def _encrypt(plaintext: str, key: bytes, iv: bytes) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def encrypt_secret(plaintext: str, secret: Optional[str] = None) -> str:
    """Encrypt a private key or mnemonic into the ``iv_hex:ciphertext_hex`` format."""
    iv = os.urandom(IV_LENGTH)
    ciphertext = _encrypt(plaintext, derive_key(secret), iv)
    return f"{iv.hex()}:{ciphertext.hex()}"


def encrypt_secret_legacy(plaintext: str, secret: Optional[str] = None) -> str:
    """Fixed-IV format kept only so old records can be produced in tests and migrations."""
    return _encrypt(plaintext, derive_key(secret), LEGACY_IV).hex()


def decrypt_secret(encrypted: str, secret: Optional[str] = None) -> str:
    """Decrypt either ciphertext format.

    Raises:
        ValueError: If the value is not valid hex, has a bad IV, or fails to unpad.
    """
    if ":" in encrypted:
        iv_hex, ciphertext_hex = encrypted.split(":", 1)
        iv = bytes.fromhex(iv_hex)
        if len(iv) != IV_LENGTH:
            raise ValueError("Invalid IV length in encrypted value")
    else:
        iv, ciphertext_hex = LEGACY_IV, encrypted

    ciphertext = bytes.fromhex(ciphertext_hex)
    if not ciphertext or len(ciphertext) % IV_LENGTH:
        raise ValueError("Ciphertext is not a whole number of AES blocks")

    decryptor = Cipher(algorithms.AES(derive_key(secret)), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    plaintext = unpadder.update(padded) + unpadder.finalize()
    return plaintext.decode("utf-8")
