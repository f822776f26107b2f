"""Exception types raised by mysql-dbtools."""
from __future__ import annotations

from typing import List, Optional


class DbToolsError(Exception):
    """Base class for every error this package raises on purpose."""


class ConfigurationError(DbToolsError):
    """A required option is missing or invalid; nothing has run yet."""


class CommandFailed(DbToolsError):
    """An external program exited non-zero (or could not be started)."""

    def __init__(self, argv: List[str], returncode: int, output: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        program = argv[0] if argv else "<empty>"
        message = output.strip() or f"Command failed: {program} (exit {returncode})"
        super().__init__(message)


class EncryptionError(DbToolsError):
    """Password missing for an encrypted archive, or decryption failed."""


class ArchiveError(DbToolsError):
    """Compression, decompression or archive validation failed."""


class VerificationMismatch(DbToolsError):
    """An ALTER succeeded but the column still reports the wrong collation."""

    def __init__(self, table: str, column: str, expected: str, actual: Optional[str]) -> None:
        self.table = table
        self.column = column
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Conversion succeeded but verification failed "
            f"(expected {expected}, found {actual or 'nothing'})"
        )


class CycleDetected(DbToolsError):
    """Tables whose foreign keys form a cycle; reported, never raised by the sorter."""

    def __init__(self, tables: List[str]) -> None:
        self.tables = list(tables)
        super().__init__(f"Circular FK dependencies detected: {', '.join(self.tables)}")
