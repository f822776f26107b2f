"""Backup pipeline: dump -> compress -> encrypt -> sidecar -> retention."""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional

from . import gpg
from .archive import BACKEND_ZIP, EXTENSIONS, Archiver
from .client import MysqlClient
from .config import BackupOptions, ExportOptions
from .fsutil import ensure_dir, temp_file, write_json
from .naming import (
    backup_basename,
    generate_secret,
    list_archives,
    metadata_path,
    slugify,
    utc_timestamp,
)
from .runner import ProcessRunner, TickCallback

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveMetadata:
    created_at: str
    database: str
    host: str
    port: Optional[int]
    note: Optional[str]
    compression: str
    archive: str
    backend: str
    encrypted: bool

    def to_dict(self) -> dict:
        return asdict(self)


class BackupService:
    def __init__(self, runner: Optional[ProcessRunner] = None, archiver: Optional[Archiver] = None) -> None:
        self.runner = runner or ProcessRunner()
        self.archiver = archiver or Archiver(self.runner)

    def backup(self, options: BackupOptions, on_tick: Optional[TickCallback] = None) -> Path:
        """Create an archive of ``options.target`` in ``options.output_dir``; return its path."""
        target = options.target
        log.info("Starting backup of %s", target.database)
        ensure_dir(options.output_dir)
        backend = self.archiver.resolve_backend(options.compression)
        now = dt.datetime.now(dt.timezone.utc)

        secret = None
        password = None
        if options.encryption_requested:
            secret = generate_secret()
            password = (target.password or "") + secret

        dest = options.output_dir / backup_basename(
            options.effective_label, utc_timestamp(now), secret, options.note
        )

        raw_sql = temp_file("dbtools-dump-", ".sql")
        archive: Optional[Path] = None
        try:
            MysqlClient(target, self.runner).dump(raw_sql, on_tick)
            archive = self.archiver.compress(raw_sql, dest, backend, on_tick)
            if password:
                if backend == BACKEND_ZIP:
                    archive = self.archiver.repack_zip_with_password(archive, password)
                else:
                    archive = gpg.encrypt_file(self.runner, archive, password, on_tick)
        except Exception:
            # an unencrypted archive must not stay behind under an encrypted name
            if archive is not None:
                log.warning("Removing incomplete archive %s", archive.name)
                archive.unlink(missing_ok=True)
            raise
        finally:
            raw_sql.unlink(missing_ok=True)

        note = slugify(options.note) if options.note else ""
        meta = ArchiveMetadata(
            created_at=now.isoformat(timespec="seconds"),
            database=target.database,
            host=target.host,
            port=target.port,
            note=note or None,
            compression=EXTENSIONS[backend],
            archive=archive.name,
            backend=backend,
            encrypted=password is not None,
        )
        self.write_metadata(archive, meta)

        if options.retention:
            self.apply_retention(options.output_dir, options.effective_label, options.retention)

        log.info("Backup complete: %s", archive)
        return archive

    @staticmethod
    def write_metadata(archive: Path, meta: ArchiveMetadata) -> Path:
        path = metadata_path(archive)
        write_json(path, meta.to_dict())
        return path

    @staticmethod
    def apply_retention(directory: Path, label: str, keep: int) -> List[Path]:
        """Keep the ``keep`` newest archives of ``label``; delete the rest and their sidecars."""
        if keep < 1:
            return []
        archives = list_archives(directory, label)
        removed = archives[keep:]
        for archive in removed:
            log.info("Retention: removing %s", archive.name)
            archive.unlink(missing_ok=True)
            metadata_path(archive).unlink(missing_ok=True)
        return removed

    def export(self, options: ExportOptions, on_tick: Optional[TickCallback] = None) -> Path:
        """Plain ``mysqldump`` into ``options.output`` (no compression, no sidecar)."""
        ensure_dir(options.output.parent)
        log.info("Exporting %s to %s", options.target.database, options.output)
        MysqlClient(options.target, self.runner).dump(options.output, on_tick)
        return options.output
