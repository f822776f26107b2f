"""Table maintenance (mysqlcheck), size report, binlog purge and backup cleaning."""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .catalog import CatalogInspector, TableSize
from .client import MysqlClient
from .config import CleanOptions, ConnectionTarget
from .errors import ConfigurationError
from .naming import extract_secret, metadata_path
from .runner import ProcessRunner

log = logging.getLogger(__name__)

MYSQLCHECK_OPERATIONS = {
    "check": [],
    "analyze": ["--analyze"],
    "optimize": ["--optimize"],
    "repair": ["--repair"],
}

DEFAULT_BINLOG_DAYS = 7

BACKUP_FILE_RE = re.compile(r"\.sql(?:\.(?:gz|zst|zip))?(?:\.gpg)?$")
_DETAIL_RE = re.compile(r"^(note|status|error|warning|info)\s*:\s*(.*)$", re.IGNORECASE)
_TABLE_LINE_RE = re.compile(r"^(\S+)\s+(.+)$")


@dataclass
class TableCheckResult:
    status: str
    message: str


@dataclass
class DatabaseSize:
    database: str
    tables: List[TableSize] = field(default_factory=list)

    @property
    def data_size(self) -> int:
        return sum(t.data_size for t in self.tables)

    @property
    def index_size(self) -> int:
        return sum(t.index_size for t in self.tables)

    @property
    def total_size(self) -> int:
        return self.data_size + self.index_size


def classify(message: str) -> str:
    lower = message.lower()
    if re.search(r"\berror\b", lower) or "corrupt" in lower:
        return "error"
    if re.search(r"\bwarning\b", lower):
        return "warning"
    if re.search(r"\bok\b", lower) or "already up to date" in lower or "repaired" in lower or "optimized" in lower:
        return "ok"
    return "unknown"


def parse_mysqlcheck_output(output: str) -> Dict[str, TableCheckResult]:
    """Parse ``db.table   OK`` lines; ``note :``/``status :`` lines attach to the table above."""
    results: Dict[str, TableCheckResult] = {}
    current: Optional[str] = None
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        detail = _DETAIL_RE.match(line)
        if detail and current is not None:
            entry = results[current]
            text = f"{detail.group(1).lower()}: {detail.group(2).strip()}"
            entry.message = f"{entry.message}; {text}" if entry.message else text
            entry.status = classify(entry.message)
            continue
        m = _TABLE_LINE_RE.match(line)
        if m:
            current = m.group(1)
            message = m.group(2).strip()
            results[current] = TableCheckResult(classify(message), message)
        else:
            current = line
            results[current] = TableCheckResult("unknown", "")
    return results


class MaintenanceService:
    def __init__(self, runner: Optional[ProcessRunner] = None) -> None:
        self.runner = runner or ProcessRunner()

    def mysqlcheck(self, target: ConnectionTarget, operation: str = "check") -> Dict[str, TableCheckResult]:
        if operation not in MYSQLCHECK_OPERATIONS:
            raise ConfigurationError(
                f"Unknown mysqlcheck operation: {operation} (expected one of {', '.join(MYSQLCHECK_OPERATIONS)})"
            )
        log.info("Running mysqlcheck %s on %s", operation, target.database)
        output = MysqlClient(target, self.runner).mysqlcheck(MYSQLCHECK_OPERATIONS[operation])
        return parse_mysqlcheck_output(output)

    def size(self, target: ConnectionTarget) -> DatabaseSize:
        log.info("Reading table sizes of %s", target.database)
        inspector = CatalogInspector(MysqlClient(target, self.runner))
        return DatabaseSize(database=target.database, tables=inspector.table_sizes())

    def purge_binlogs(self, target: ConnectionTarget, days: int = DEFAULT_BINLOG_DAYS) -> None:
        if days < 0:
            raise ConfigurationError(f"days must be zero or positive, got {days}")
        sql = f"PURGE BINARY LOGS BEFORE DATE(NOW() - INTERVAL {int(days)} DAY);"
        log.info("Purging binlogs older than %d days", days)
        MysqlClient(target, self.runner).execute(sql, use_database=False)

    def ping(self, target: ConnectionTarget) -> str:
        """Run ``SELECT 1`` and return the server version."""
        client = MysqlClient(target, self.runner)
        client.query("SELECT 1")
        return CatalogInspector(client).server_version()


class CleanService:
    def __init__(self, binlog: Optional[MaintenanceService] = None) -> None:
        self.binlog = binlog

    def clean(self, options: CleanOptions) -> List[Path]:
        """Delete old backups (by age and/or count) and optionally purge binlogs."""
        if options.binlog_days is not None and self.binlog is None:
            raise ConfigurationError("Purging binlogs needs a binlog service")
        removed: List[Path] = []
        if options.output_dir.is_dir():
            if options.days:
                removed += self._delete_older_than(options.output_dir, options.days, options.label)
            if options.retention:
                removed += self._apply_retention(options.output_dir, options.retention, options.label)
        if options.binlog_days is not None and options.target is not None:
            self.binlog.purge_binlogs(options.target, options.binlog_days)
        return removed

    @staticmethod
    def backup_files(directory: Path, label: Optional[str] = None) -> List[Path]:
        prefix = f"{label}-" if label else ""
        return sorted(
            p for p in directory.iterdir()
            if p.is_file() and p.name.startswith(prefix) and BACKUP_FILE_RE.search(p.name)
        )

    def _delete_older_than(self, directory: Path, days: int, label: Optional[str]) -> List[Path]:
        cutoff = time.time() - days * 86400
        removed = []
        for f in self.backup_files(directory, label):
            if f.stat().st_mtime < cutoff:
                self._delete(f)
                removed.append(f)
        return removed

    def _apply_retention(self, directory: Path, keep: int, label: Optional[str]) -> List[Path]:
        files = list(reversed(self.backup_files(directory, label)))
        removed = files[keep:]
        for f in removed:
            self._delete(f)
        return removed

    @staticmethod
    def _delete(path: Path) -> None:
        log.info("Removing %s", path.name)
        path.unlink(missing_ok=True)
        metadata_path(path).unlink(missing_ok=True)


@dataclass(frozen=True)
class BackupFile:
    path: Path
    size: int
    mtime: float

    @property
    def encrypted(self) -> bool:
        return self.path.name.endswith(".gpg") or extract_secret(self.path) is not None


def list_backups(directory: Path, label: Optional[str] = None) -> List[BackupFile]:
    """Backups in ``directory``, newest first."""
    if not directory.is_dir():
        raise ConfigurationError(f"Directory does not exist: {directory}")
    backups = []
    for path in CleanService.backup_files(directory, label):
        st = path.stat()
        backups.append(BackupFile(path, st.st_size, st.st_mtime))
    return sorted(backups, key=lambda b: (b.mtime, b.path.name), reverse=True)
