"""Master key file.

The key file holds the master key encrypted under a wrapping key derived from
host identifiers, written owner read/write only.
"""

import getpass
import hashlib
import os
import platform
import socket
from pathlib import Path

from conductor_auth.crypto import decrypt_with_key, encrypt_with_key
from conductor_core.exceptions import ConfigurationError, CredentialDecryptionError

KEY_FILE_MODE = 0o600
# Wrapping key is already high-entropy; the KDF only needs to bind salt.
WRAP_ROUNDS = 10_000


def host_wrapping_key() -> str:
    """Derive the host-bound wrapping secret."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = str(os.getuid()) if hasattr(os, "getuid") else "unknown"
    material = f"{socket.gethostname()}:{user}:{platform.system()}:mcp-conductor"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def staged_path(path: Path) -> Path:
    return path.with_name(path.name + ".new")


def load_master_key(path: Path) -> str | None:
    """Read and unwrap the master key, or None if the file is absent.

    Raises:
        ConfigurationError: file exists but cannot be unwrapped on this host
    """
    if not path.exists():
        return None
    try:
        key = decrypt_with_key(path.read_bytes(), host_wrapping_key(), WRAP_ROUNDS)
        return key.decode("utf-8")
    except (OSError, CredentialDecryptionError, UnicodeDecodeError) as e:
        raise ConfigurationError(
            f"Master key file {path} is unreadable on this host", path=str(path)
        ) from e


def write_key_file(path: Path, master_key: str) -> None:
    """Write the wrapped key to `path` with mode 0600."""
    path.parent.mkdir(parents=True, exist_ok=True)
    blob = encrypt_with_key(master_key.encode("utf-8"), host_wrapping_key(), WRAP_ROUNDS)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, KEY_FILE_MODE)
    with os.fdopen(fd, "wb") as f:
        f.write(blob)
        f.flush()
        os.fsync(f.fileno())
    os.chmod(path, KEY_FILE_MODE)


def save_master_key(path: Path, master_key: str) -> None:
    write_key_file(path, master_key)


def stage_master_key(path: Path, master_key: str) -> Path:
    """Write the next key beside the live one without replacing it."""
    staged = staged_path(path)
    write_key_file(staged, master_key)
    return staged


def commit_staged_key(path: Path) -> None:
    """Atomically replace the live key file with the staged one."""
    os.replace(staged_path(path), path)


def discard_staged_key(path: Path) -> None:
    staged_path(path).unlink(missing_ok=True)
