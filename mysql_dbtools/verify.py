"""Archive integrity checks (no database needed)."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from . import gpg
from .archive import Archiver
from .config import VerifyOptions
from .errors import ArchiveError, ConfigurationError, EncryptionError
from .fsutil import work_dir
from .naming import resolve_password
from .runner import ProcessRunner

log = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (".sql", ".zst", ".gz", ".zip", ".gpg")


class VerifyService:
    def __init__(self, runner: Optional[ProcessRunner] = None, archiver: Optional[Archiver] = None) -> None:
        self.runner = runner or ProcessRunner()
        self.archiver = archiver or Archiver(self.runner)

    def verify(self, options: VerifyOptions) -> List[Path]:
        """Validate a single archive or every archive in a directory; return what was checked."""
        path = options.path
        log.info("Verifying %s", path)
        if path.is_dir():
            files = sorted(p for p in path.iterdir() if p.is_file() and p.suffix.lower() in ARCHIVE_SUFFIXES)
            if not files:
                raise ArchiveError(f"No archives found in {path}")
            for f in files:
                self.verify_file(f, options.password, options.db_password)
            return files
        if not path.is_file():
            raise ConfigurationError(f"Target not found: {path}")
        self.verify_file(path, options.password, options.db_password)
        return [path]

    def verify_file(self, path: Path, password: Optional[str], db_password: Optional[str]) -> None:
        if path.name.lower().endswith(gpg.GPG_SUFFIX):
            derived = resolve_password(path, password, db_password)
            if derived is None:
                raise EncryptionError(f"{path.name} is encrypted; pass a password or the database password")
            with work_dir("dbtools-verify-") as work:
                decrypted = gpg.decrypt_file(self.runner, path, derived, work)
                if not self.archiver.validate_archive(decrypted):
                    raise ArchiveError(f"Archive validation failed after decryption: {path}")
            return

        if path.suffix.lower() == ".zip" and self.archiver.is_password_protected_zip(path):
            derived = resolve_password(path, password, db_password)
            if derived is None:
                raise EncryptionError(f"{path.name} is password protected; pass a password")
            with work_dir("dbtools-verify-") as work:
                self.archiver.extract_password_protected_zip(path, derived, work)
            return

        if not self.archiver.validate_archive(path):
            raise ArchiveError(f"Archive validation failed: {path}")
