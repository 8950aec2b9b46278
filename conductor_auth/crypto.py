"""Credential cipher.

Layout: salt(16) || iv(16) || AES-256-CBC ciphertext (PKCS7), with the AES key
derived from the master key by PBKDF2-SHA256.
"""

import os
import secrets

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from conductor_core.exceptions import CredentialDecryptionError

SALT_SIZE = 16
IV_SIZE = 16
KEY_SIZE = 32


def generate_master_key() -> str:
    """Return a fresh 256-bit key as hex."""
    return secrets.token_hex(KEY_SIZE)


def derive_key(secret: str | bytes, salt: bytes, rounds: int) -> bytes:
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=rounds,
    )
    return kdf.derive(secret)


def encrypt_with_key(plaintext: bytes, secret: str | bytes, rounds: int) -> bytes:
    """Encrypt `plaintext` under `secret` with a fresh salt and IV."""
    salt = os.urandom(SALT_SIZE)
    iv = os.urandom(IV_SIZE)
    key = derive_key(secret, salt, rounds)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return salt + iv + encryptor.update(padded) + encryptor.finalize()


def decrypt_with_key(blob: bytes, secret: str | bytes, rounds: int) -> bytes:
    """Inverse of encrypt_with_key.

    Raises:
        CredentialDecryptionError: truncated blob, wrong key or bad padding
    """
    header = SALT_SIZE + IV_SIZE
    if len(blob) <= header or (len(blob) - header) % IV_SIZE:
        raise CredentialDecryptionError("Encrypted payload is truncated")

    salt, iv, ciphertext = blob[:SALT_SIZE], blob[SALT_SIZE:header], blob[header:]
    key = derive_key(secret, salt, rounds)

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise CredentialDecryptionError("Failed to decrypt credential payload") from e
