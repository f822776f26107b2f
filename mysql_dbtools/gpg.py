"""Symmetric AES-256 encryption through ``gpg``.

The passphrase is written to gpg's stdin (``--passphrase-fd 0``) rather than
passed as an argument.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from .errors import CommandFailed, EncryptionError
from .runner import ProcessRunner, TickCallback

log = logging.getLogger(__name__)

GPG_SUFFIX = ".gpg"

BASE_ARGS = ["gpg", "--batch", "--yes", "--quiet", "--pinentry-mode", "loopback", "--passphrase-fd", "0"]


def _args(*extra: str) -> List[str]:
    return BASE_ARGS + list(extra)


def encrypt_file(runner: ProcessRunner, path: Path, password: str, on_tick: Optional[TickCallback] = None) -> Path:
    """Encrypt ``path`` to ``path.gpg`` and delete the plaintext."""
    encrypted = path.with_name(path.name + GPG_SUFFIX)
    cmd = _args("--symmetric", "--cipher-algo", "AES256", "--output", str(encrypted), str(path))
    try:
        runner.run(cmd, on_tick=on_tick, input=password)
    except CommandFailed as e:
        encrypted.unlink(missing_ok=True)
        raise EncryptionError(f"gpg encryption failed for {path.name}: {e}") from e
    path.unlink()
    log.debug("Encrypted %s", encrypted)
    return encrypted


def decrypt_file(
    runner: ProcessRunner,
    path: Path,
    password: str,
    dest_dir: Path,
    on_tick: Optional[TickCallback] = None,
) -> Path:
    """Decrypt ``x.gpg`` into ``dest_dir/x``."""
    name = path.name[: -len(GPG_SUFFIX)] if path.name.endswith(GPG_SUFFIX) else path.name + ".dec"
    decrypted = dest_dir / name
    cmd = _args("--decrypt", "--output", str(decrypted), str(path))
    try:
        runner.run(cmd, on_tick=on_tick, input=password)
    except CommandFailed as e:
        if decrypted.exists():
            decrypted.unlink()
        raise EncryptionError(f"Could not decrypt {path.name} (wrong password?): {e}") from e
    return decrypted
