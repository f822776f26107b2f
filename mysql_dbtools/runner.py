"""Subprocess executor.

Every external program (mysql, mysqldump, mysqlbinlog, mysqlcheck, gpg, zstd,
pigz) is started through :class:`ProcessRunner`. Commands are argument
vectors, never shell strings. When an ``on_tick`` callback is given the
process is polled every ``TICK_INTERVAL`` seconds so the caller can animate a
spinner; output is then collected in temporary files so a chatty process can
never block on a full pipe.
"""
from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional, Union

from .errors import CommandFailed

log = logging.getLogger(__name__)

TICK_INTERVAL = 0.1  # seconds

TickCallback = Callable[[], None]
PathLike = Union[str, Path]


@dataclass
class CommandOutput:
    argv: List[str]
    returncode: int
    stdout: str
    stderr: str


def shlex_quote(s: str) -> str:
    if re.fullmatch(r"[A-Za-z0-9_./:=+-]+", s):
        return s
    return "'" + s.replace("'", "'\\''") + "'"


def printable(cmd: List[str]) -> str:
    return " ".join(shlex_quote(c) for c in cmd)


def _merge_env(env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if not env:
        return None
    merged = dict(os.environ)
    merged.update(env)
    return merged


def _read_back(fh: IO[bytes]) -> str:
    fh.seek(0)
    return fh.read().decode("utf-8", errors="replace")


class ProcessRunner:
    """Runs external commands and raises :class:`CommandFailed` on non-zero exit."""

    def run(
        self,
        argv: List[str],
        env: Optional[Dict[str, str]] = None,
        on_tick: Optional[TickCallback] = None,
        input: Optional[str] = None,
    ) -> CommandOutput:
        log.debug("EXEC: %s", printable(argv))
        if on_tick is None:
            try:
                proc = subprocess.run(
                    argv,
                    input=input.encode("utf-8") if input is not None else None,
                    stdin=None if input is not None else subprocess.DEVNULL,
                    capture_output=True,
                    env=_merge_env(env),
                )
            except FileNotFoundError as e:
                raise CommandFailed(argv, 127, str(e)) from e
            return self._finish(
                argv,
                proc.returncode,
                proc.stdout.decode("utf-8", errors="replace"),
                proc.stderr.decode("utf-8", errors="replace"),
            )

        with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            proc = self._spawn(
                argv,
                env,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=out,
                stderr=err,
            )
            if input is not None:
                proc.stdin.write(input.encode("utf-8"))
                proc.stdin.close()
            returncode = self._poll(proc, on_tick)
            return self._finish(argv, returncode, _read_back(out), _read_back(err))

    def run_with_file_input(
        self,
        argv: List[str],
        env: Optional[Dict[str, str]],
        file_path: PathLike,
        on_tick: Optional[TickCallback] = None,
    ) -> CommandOutput:
        """Feed ``file_path`` to the process as stdin without reading it into memory."""
        log.debug("EXEC: %s < %s", printable(argv), shlex_quote(str(file_path)))
        with open(file_path, "rb") as src, tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            proc = self._spawn(argv, env, stdin=src, stdout=out, stderr=err)
            returncode = self._poll(proc, on_tick)
            return self._finish(argv, returncode, _read_back(out), _read_back(err))

    @staticmethod
    def _spawn(argv: List[str], env: Optional[Dict[str, str]], **streams) -> subprocess.Popen:
        try:
            return subprocess.Popen(argv, env=_merge_env(env), **streams)
        except FileNotFoundError as e:
            raise CommandFailed(argv, 127, str(e)) from e

    @staticmethod
    def _poll(proc: subprocess.Popen, on_tick: Optional[TickCallback]) -> int:
        if on_tick is None:
            return proc.wait()
        while proc.poll() is None:
            on_tick()
            time.sleep(TICK_INTERVAL)
        return proc.returncode

    @staticmethod
    def _finish(argv: List[str], returncode: int, stdout: str, stderr: str) -> CommandOutput:
        if returncode != 0:
            raise CommandFailed(argv, returncode, stderr.strip() or stdout.strip())
        return CommandOutput(argv=list(argv), returncode=returncode, stdout=stdout, stderr=stderr)
