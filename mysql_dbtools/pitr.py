"""Point-in-time recovery helpers built on mysqlbinlog."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .client import MysqlClient
from .config import PitrRestoreOptions
from .errors import ConfigurationError
from .fsutil import read_json, temp_file
from .runner import ProcessRunner, TickCallback

log = logging.getLogger(__name__)

BINLOG_NAME_RE = re.compile(r"^mysql-bin\.\d+$")


@dataclass
class PitrInfo:
    meta: Dict[str, Any] = field(default_factory=dict)
    binlogs: List[Path] = field(default_factory=list)


def list_binlogs(binlog_dir: Optional[Path]) -> List[Path]:
    if binlog_dir is None or not binlog_dir.is_dir():
        return []
    return sorted(p for p in binlog_dir.iterdir() if p.is_file() and BINLOG_NAME_RE.match(p.name))


def pitr_info(meta_path: Path, binlog_dir: Optional[Path] = None) -> PitrInfo:
    if not meta_path.is_file():
        raise ConfigurationError(f"Metadata file not found: {meta_path}")
    meta = read_json(meta_path, default={})
    return PitrInfo(meta=meta, binlogs=list_binlogs(binlog_dir))


class PitrService:
    def __init__(self, runner: Optional[ProcessRunner] = None) -> None:
        self.runner = runner or ProcessRunner()

    def resolve_binlogs(self, options: PitrRestoreOptions) -> List[Path]:
        if options.binlogs:
            return list(options.binlogs)
        if options.meta is None:
            return []
        meta = pitr_info(options.meta).meta
        names = meta.get("binlogs") or []
        base = options.binlog_dir or (Path(meta["binlog_dir"]) if meta.get("binlog_dir") else None)
        if base is None:
            return [Path(n) for n in names]
        return [base / n for n in names]

    def restore(self, options: PitrRestoreOptions, on_tick: Optional[TickCallback] = None) -> List[Path]:
        """Replay binlogs up to ``options.stop_datetime``; return the binlogs applied."""
        binlogs = self.resolve_binlogs(options)
        if not binlogs:
            raise ConfigurationError("No binlogs to replay; pass binlog files or a metadata file listing them")
        missing = [str(b) for b in binlogs if not b.is_file()]
        if missing:
            raise ConfigurationError(f"Binlog not found: {', '.join(missing)}")

        client = MysqlClient(options.target, self.runner)
        for binlog in binlogs:
            log.info("Replaying %s until %s", binlog.name, options.stop_datetime)
            decoded = temp_file("dbtools-binlog-", ".sql")
            try:
                client.binlog_to_file(binlog, options.stop_datetime, decoded)
                client.import_file(decoded, on_tick)
            finally:
                decoded.unlink(missing_ok=True)
        return binlogs
