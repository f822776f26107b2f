"""Backup filename grammar.

    {label}-{YYYYMMDD}-{HHMMSS}[-{secret}][-{note slug}].sql[.zst|.gz][.gpg]
    {label}-{YYYYMMDD}-{HHMMSS}[-{secret}][-{note slug}].sql.zip

The optional secret is 32 alphanumeric characters. An encrypted archive's
password is the database password followed by that secret, so restoring only
needs the database password and the file itself. Anyone who can list the
backup directory and knows the database password can therefore decrypt the
archives; keep the directory private.
"""
from __future__ import annotations

import base64
import datetime as dt
import re
import secrets
from pathlib import Path
from typing import List, Optional, Union

SECRET_LENGTH = 32
SECRET_RE = re.compile(r"-(\d{8})-(\d{6})-([A-Za-z0-9]{32})")
ARCHIVE_SUFFIX_RE = re.compile(r"\.sql(?:\.(?:zst|gz|zip))?(?:\.gpg)?$")
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

PathLike = Union[str, Path]


def utc_timestamp(now: Optional[dt.datetime] = None) -> str:
    now = now or dt.datetime.now(dt.timezone.utc)
    return now.strftime(TIMESTAMP_FORMAT)


def slugify(value: str) -> str:
    value = re.sub(r"[^a-z0-9]+", "-", value.strip().lower())
    return value.strip("-")


def generate_secret() -> str:
    """32 URL-safe characters from a CSPRNG (base64 with ``/+=`` removed)."""
    while True:
        encoded = base64.b64encode(secrets.token_bytes(SECRET_LENGTH)).decode("ascii")
        cleaned = re.sub(r"[/+=]", "", encoded)
        # 32 bytes encode to 44 chars; dropping /+= can in theory leave fewer than 32
        if len(cleaned) >= SECRET_LENGTH:
            return cleaned[:SECRET_LENGTH]


def backup_basename(label: str, timestamp: str, secret: Optional[str] = None, note: Optional[str] = None) -> str:
    """Name of the raw dump before compression, e.g. ``shop-20250102-030405.sql``."""
    parts = [label, timestamp]
    if secret:
        parts.append(secret)
    slug = slugify(note) if note else ""
    if slug:
        parts.append(slug)
    return "-".join(parts) + ".sql"


def extract_secret(path: PathLike) -> Optional[str]:
    m = SECRET_RE.search(Path(path).name)
    return m.group(3) if m else None


def derive_password(path: PathLike, db_password: Optional[str]) -> Optional[str]:
    """Database password + filename secret, or None when the name carries no secret."""
    secret = extract_secret(path)
    if secret is None:
        return None
    return (db_password or "") + secret


def resolve_password(path: PathLike, explicit: Optional[str], db_password: Optional[str]) -> Optional[str]:
    if explicit is not None:
        return explicit
    return derive_password(path, db_password)


def metadata_path(archive: PathLike) -> Path:
    """Sidecar path: ``x.sql.zst.gpg`` -> ``x.meta.json``."""
    archive = Path(archive)
    return archive.with_name(ARCHIVE_SUFFIX_RE.sub("", archive.name) + ".meta.json")


def archive_pattern(label: str) -> "re.Pattern[str]":
    return re.compile(rf"^{re.escape(label)}-\d{{8}}-\d{{6}}.*\.sql\.(?:zst|gz|zip)(?:\.gpg)?$")


def list_archives(directory: PathLike, label: str) -> List[Path]:
    """Archives of ``label`` in ``directory``, newest first."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    pattern = archive_pattern(label)
    found = [p for p in directory.iterdir() if p.is_file() and pattern.match(p.name)]
    return sorted(found, key=lambda p: p.name, reverse=True)
