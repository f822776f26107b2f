"""Compression backends for SQL dumps.

``zstd`` and ``pigz`` shell out to their binaries; ``gzip`` and ``zip`` run
in-process. Password-protected ZIP archives use AES-256 entry encryption
through ``pyzipper``.
"""
from __future__ import annotations

import gzip
import logging
import shutil
import tempfile
import time
import zipfile
from pathlib import Path
from typing import Optional, Union

import pyzipper

from .errors import ArchiveError, CommandFailed, EncryptionError
from .runner import ProcessRunner, TickCallback, TICK_INTERVAL

log = logging.getLogger(__name__)

BACKEND_AUTO = "auto"
BACKEND_ZSTD = "zstd"
BACKEND_PIGZ = "pigz"
BACKEND_GZIP = "gzip"
BACKEND_ZIP = "zip"

EXTENSIONS = {
    BACKEND_ZSTD: "zst",
    BACKEND_PIGZ: "gz",
    BACKEND_GZIP: "gz",
    BACKEND_ZIP: "zip",
}

CHUNK = 1024 * 1024

PathLike = Union[str, Path]


def _copy_stream(src, dst, on_tick: Optional[TickCallback]) -> None:
    """``shutil.copyfileobj`` that keeps a spinner alive between chunks."""
    last = time.monotonic()
    for chunk in iter(lambda: src.read(CHUNK), b""):
        dst.write(chunk)
        if on_tick is not None and time.monotonic() - last >= TICK_INTERVAL:
            on_tick()
            last = time.monotonic()


class Archiver:
    def __init__(self, runner: Optional[ProcessRunner] = None) -> None:
        self.runner = runner or ProcessRunner()

    @staticmethod
    def pick_best_backend() -> str:
        if shutil.which("zstd"):
            return BACKEND_ZSTD
        if shutil.which("pigz"):
            return BACKEND_PIGZ
        return BACKEND_GZIP

    def resolve_backend(self, backend: Optional[str]) -> str:
        if backend is None or backend == BACKEND_AUTO:
            return self.pick_best_backend()
        if backend not in EXTENSIONS:
            raise ArchiveError(f"Unknown compression backend: {backend}")
        return backend

    # ------------------------------
    # Compression
    # ------------------------------

    def compress(
        self,
        src: PathLike,
        dest: PathLike,
        backend: Optional[str] = None,
        on_tick: Optional[TickCallback] = None,
    ) -> Path:
        """Compress ``src`` to ``dest`` + extension; return the final path."""
        backend = self.resolve_backend(backend)
        src, dest = Path(src), Path(dest)
        final = dest.with_name(f"{dest.name}.{EXTENSIONS[backend]}")
        final.parent.mkdir(parents=True, exist_ok=True)
        log.debug("Compressing %s -> %s (%s)", src, final, backend)

        if backend == BACKEND_ZSTD:
            self.runner.run(["zstd", "-q", "-f", "-T0", str(src), "-o", str(final)], on_tick=on_tick)
        elif backend == BACKEND_PIGZ:
            # pigz only writes next to its input or to stdout; keep the input and move the result
            self.runner.run(["pigz", "-k", "-f", str(src)], on_tick=on_tick)
            shutil.move(str(src) + ".gz", str(final))
        elif backend == BACKEND_GZIP:
            with src.open("rb") as fsrc, gzip.open(final, "wb", compresslevel=6) as fdst:
                _copy_stream(fsrc, fdst, on_tick)
        else:
            with zipfile.ZipFile(final, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                zf.write(src, arcname=dest.name)
        return final

    def decompress_to_file(self, path: PathLike, dest_dir: PathLike, on_tick: Optional[TickCallback] = None) -> Path:
        """Decompress ``path`` into ``dest_dir``; return the extracted file."""
        path, dest_dir = Path(path), Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        suffix = path.suffix.lower()

        if suffix == ".zst":
            out = dest_dir / path.stem
            try:
                self.runner.run(["zstd", "-d", "-q", "-f", str(path), "-o", str(out)], on_tick=on_tick)
            except CommandFailed as e:
                raise ArchiveError(f"zstd could not decompress {path.name}: {e}") from e
            return out
        if suffix == ".gz":
            out = dest_dir / path.stem
            try:
                with gzip.open(path, "rb") as fsrc, out.open("wb") as fdst:
                    _copy_stream(fsrc, fdst, on_tick)
            except (OSError, EOFError) as e:
                raise ArchiveError(f"Could not decompress {path.name}: {e}") from e
            return out
        if suffix == ".zip":
            if self.is_password_protected_zip(path):
                raise EncryptionError(f"{path.name} is password protected")
            try:
                with zipfile.ZipFile(path) as zf:
                    member = self._single_member(zf, path)
                    return Path(zf.extract(member, dest_dir))
            except zipfile.BadZipFile as e:
                raise ArchiveError(f"Corrupt zip {path.name}: {e}") from e
        raise ArchiveError(f"Unsupported archive type: {path.name}")

    @staticmethod
    def _single_member(zf: zipfile.ZipFile, path: Path) -> zipfile.ZipInfo:
        members = [m for m in zf.infolist() if not m.is_dir()]
        if len(members) != 1:
            raise ArchiveError(f"Expected exactly one file in {path.name}, found {len(members)}")
        return members[0]

    # ------------------------------
    # Password-protected ZIP
    # ------------------------------

    @staticmethod
    def is_password_protected_zip(path: PathLike) -> bool:
        try:
            with zipfile.ZipFile(path) as zf:
                return any(info.flag_bits & 0x1 for info in zf.infolist())
        except (zipfile.BadZipFile, OSError):
            return False

    def extract_password_protected_zip(self, path: PathLike, password: str, dest_dir: PathLike) -> Path:
        path, dest_dir = Path(path), Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        try:
            with pyzipper.AESZipFile(path) as zf:
                zf.setpassword(password.encode("utf-8"))
                member = self._single_member(zf, path)
                return Path(zf.extract(member, dest_dir))
        except RuntimeError as e:
            # pyzipper raises RuntimeError("Bad password for file ...")
            raise EncryptionError(f"Could not decrypt {path.name}: wrong password?") from e
        except pyzipper.BadZipFile as e:
            raise ArchiveError(f"Corrupt zip {path.name}: {e}") from e

    def repack_zip_with_password(self, zip_path: PathLike, password: str) -> Path:
        """Replace a plain zip with one whose single entry is AES-256 encrypted."""
        zip_path = Path(zip_path)
        work = Path(tempfile.mkdtemp(prefix="dbtools-zip-"))
        try:
            extracted = self.decompress_to_file(zip_path, work)
            zip_path.unlink()
            with pyzipper.AESZipFile(
                zip_path, "w", compression=pyzipper.ZIP_DEFLATED, encryption=pyzipper.WZ_AES
            ) as zf:
                zf.setpassword(password.encode("utf-8"))
                zf.setencryption(pyzipper.WZ_AES, nbits=256)
                zf.write(extracted, arcname=extracted.name)
        finally:
            shutil.rmtree(work, ignore_errors=True)
        return zip_path

    # ------------------------------
    # Validation
    # ------------------------------

    def validate_archive(self, path: PathLike) -> bool:
        path = Path(path)
        if not path.is_file():
            return False
        suffix = path.suffix.lower()
        if suffix == ".zst":
            try:
                self.runner.run(["zstd", "-t", "-q", str(path)])
            except CommandFailed as e:
                log.warning("zstd test failed for %s: %s", path, e)
                return False
            return True
        if suffix == ".gz":
            try:
                with gzip.open(path, "rb") as fh:
                    while fh.read(CHUNK):
                        pass
            except (OSError, EOFError) as e:
                log.warning("gzip test failed for %s: %s", path, e)
                return False
            return True
        if suffix == ".zip":
            if self.is_password_protected_zip(path):
                # entries cannot be read without the password; the central directory is intact
                return True
            try:
                with zipfile.ZipFile(path) as zf:
                    return zf.testzip() is None
            except zipfile.BadZipFile as e:
                log.warning("zip test failed for %s: %s", path, e)
                return False
        if suffix == ".sql":
            return path.stat().st_size > 0
        return False
