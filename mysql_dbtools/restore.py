"""Restore pipeline: safety backup -> decrypt -> decompress -> recreate -> import."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import gpg
from .archive import Archiver
from .backup import BackupService
from .client import MysqlClient, quote_identifier
from .config import BackupOptions, ConnectionTarget, ImportOptions, RestoreOptions
from .errors import ArchiveError, ConfigurationError, EncryptionError
from .fsutil import work_dir
from .naming import resolve_password
from .runner import ProcessRunner, TickCallback

log = logging.getLogger(__name__)

COMPRESSED_SUFFIXES = (".zst", ".gz", ".zip")


@dataclass(frozen=True)
class RestoreResult:
    archive_size: int
    sql_size: int

    @property
    def ratio(self) -> Optional[float]:
        if not self.archive_size:
            return None
        return self.sql_size / self.archive_size


def recreate_database_sql(database: str) -> str:
    name = quote_identifier(database)
    return f"DROP DATABASE IF EXISTS {name}; CREATE DATABASE {name};"


class RestoreService:
    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        archiver: Optional[Archiver] = None,
        backup_service: Optional[BackupService] = None,
    ) -> None:
        self.runner = runner or ProcessRunner()
        self.archiver = archiver or Archiver(self.runner)
        self.backup_service = backup_service

    def restore(self, options: RestoreOptions, on_tick: Optional[TickCallback] = None) -> RestoreResult:
        """Replace ``options.target``'s database with the contents of ``options.archive``."""
        target = options.target
        archive = options.archive
        if not archive.is_file():
            raise ConfigurationError(f"Archive not found: {archive}")
        self._require_password(archive, options.encryption_password, target.password)
        log.info("Starting restore of %s into %s", archive.name, target.database)
        archive_size = archive.stat().st_size

        if not options.skip_safety_backup:
            self._safety_backup(target, options.output_dir or archive.parent, on_tick)

        client = MysqlClient(target, self.runner)
        with work_dir("dbtools-restore-", options.temp_dir) as work:
            sql_path = self.extract_to_sql(archive, options.encryption_password, target.password, work, on_tick)
            sql_size = sql_path.stat().st_size
            client.execute(recreate_database_sql(target.database), use_database=False, on_tick=on_tick)
            client.import_file(sql_path, on_tick)

        log.info("Restore finished: %s", target.database)
        return RestoreResult(archive_size=archive_size, sql_size=sql_size)

    def import_file(self, options: ImportOptions, on_tick: Optional[TickCallback] = None) -> None:
        """Load a dump (plain, compressed or encrypted) into an existing database."""
        path = options.file
        if not path.is_file():
            raise ConfigurationError(f"SQL file not found: {path}")
        target = options.target
        self._require_password(path, options.encryption_password, target.password)
        log.info("Importing %s into %s", path.name, target.database)

        client = MysqlClient(target, self.runner)
        if path.suffix.lower() == ".sql":
            client.import_file(path, on_tick)
            return
        with work_dir("dbtools-import-", options.temp_dir) as work:
            sql_path = self.extract_to_sql(path, options.encryption_password, target.password, work, on_tick)
            client.import_file(sql_path, on_tick)

    def extract_to_sql(
        self,
        archive: Path,
        encryption_password: Optional[str],
        db_password: Optional[str],
        dest_dir: Path,
        on_tick: Optional[TickCallback] = None,
    ) -> Path:
        """Decrypt and decompress ``archive`` into ``dest_dir``; the result must be a ``.sql`` file."""
        self._require_password(archive, encryption_password, db_password)
        password = resolve_password(archive, encryption_password, db_password)
        current = archive

        if current.name.lower().endswith(gpg.GPG_SUFFIX):
            current = gpg.decrypt_file(self.runner, current, password, dest_dir, on_tick)

        suffix = current.suffix.lower()
        if suffix == ".zip" and self.archiver.is_password_protected_zip(current):
            if password is None:
                raise EncryptionError(f"{archive.name} is password protected; provide an encryption password")
            current = self.archiver.extract_password_protected_zip(current, password, dest_dir)
        elif suffix in COMPRESSED_SUFFIXES:
            current = self.archiver.decompress_to_file(current, dest_dir, on_tick)

        if current.suffix.lower() != ".sql":
            raise ArchiveError(f"Expected SQL after extraction, got {current.name}")
        return current

    @staticmethod
    def _require_password(path: Path, explicit: Optional[str], db_password: Optional[str]) -> None:
        if path.name.lower().endswith(gpg.GPG_SUFFIX) and resolve_password(path, explicit, db_password) is None:
            raise EncryptionError(
                f"{path.name} is encrypted; provide an encryption password "
                "(or keep the 32-character secret in the filename)"
            )

    def _safety_backup(self, target: ConnectionTarget, output_dir: Path, on_tick: Optional[TickCallback]) -> Path:
        if self.backup_service is None:
            raise ConfigurationError("A safety backup was requested but no backup service is configured")
        log.info("Creating safety backup of %s", target.database)
        return self.backup_service.backup(
            BackupOptions(target=target, output_dir=output_dir, label=f"pre-restore-{target.database}"),
            on_tick,
        )
