"""Global build configuration, message output and path helpers."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from enum import IntEnum
from typing import IO, Optional


class ErofsError(OSError):
    """An error carrying an errno code."""

    def __init__(self, code: int, message: Optional[str] = None) -> None:
        super().__init__(code, message or os.strerror(code))


class LogLevel(IntEnum):
    """Message verbosity levels."""

    ERR = 0
    WARN = 2
    INFO = 3
    DBG = 7


_TAGS = (
    (LogLevel.DBG, "<D>"),
    (LogLevel.INFO, "<I>"),
    (LogLevel.WARN, "<W>"),
)


@dataclass
class Config:
    """Settings shared by the filesystem builder."""

    dbg_lvl: int = LogLevel.WARN
    version: str = "1.0"
    dry_run: bool = False
    ignore_mtime: bool = False
    force_inodeversion: int = 0
    inline_xattr_tolerance: int = 2
    unix_timestamp: int = -1
    uid: int = -1
    gid: int = -1
    max_decompressed_extent_bytes: int = 0xFFFFFFFF
    img_path: Optional[str] = None
    src_path: Optional[str] = None
    mount_point: Optional[str] = None
    showprogress: bool = False
    compr_opts: list = field(default_factory=list)
    stdout: Optional[IO[str]] = None
    stderr: Optional[IO[str]] = None
    stdout_tty: Optional[bool] = None
    _fullpath_prefix: int = field(default=0, init=False, repr=False)
    _progress_pending: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.stdout_tty is None:
            isatty = getattr(self._out, "isatty", None)
            self.stdout_tty = bool(isatty()) if isatty else False

    @property
    def _out(self) -> IO[str]:
        return self.stdout if self.stdout is not None else sys.stdout

    @property
    def _err(self) -> IO[str]:
        return self.stderr if self.stderr is not None else sys.stderr

    def set_fs_root(self, rootdir: str) -> None:
        """Remember the source root so fspath() can strip it."""
        self._fullpath_prefix = len(rootdir)

    def fspath(self, fullpath: str) -> str:
        """Return fullpath relative to the filesystem root, without leading '/'."""
        return fullpath[self._fullpath_prefix:].lstrip("/")

    def message(self, level: int, text: str) -> None:
        """Print a tagged message if level is within the configured verbosity."""
        if level > self.dbg_lvl:
            return
        tag = next((t for lv, t in _TAGS if level >= lv), "<E>")
        out = self._err if level >= LogLevel.ERR else self._out
        if self._progress_pending:
            self._out.write("\n")
            self._progress_pending = False
        out.write(f"{tag} erofs: {text}\n")
        out.flush()

    def update_progress(self, text: str) -> None:
        """Show a progress line, overwriting the previous one on a terminal."""
        if self.dbg_lvl >= LogLevel.INFO or not self.showprogress:
            return
        out = self._out
        if self.stdout_tty:
            out.write(f"\r\033[K{text}")
            self._progress_pending = True
            out.flush()
            return
        out.write(text)
        out.write("\n")

    def show(self) -> None:
        """Dump the main settings to stderr at info verbosity or above."""
        if self.dbg_lvl < LogLevel.INFO:
            return
        err = self._err
        err.write(f"\tc_version:           [{self.version:>8}]\n")
        err.write(f"\tc_dbg_lvl:           [{int(self.dbg_lvl):8d}]\n")
        err.write(f"\tc_dry_run:           [{int(self.dry_run):8d}]\n")


def trim_for_progressinfo(text: str, placeholder: int,
                          columns: Optional[int] = None) -> str:
    """Trim text to fit a terminal line, leaving placeholder columns free.

    columns is None when output is not a terminal; text is then kept whole.
    """
    if columns is None:
        return text
    if columns <= 0:
        columns = 80
    if columns <= placeholder:
        return ""
    room = columns - placeholder
    if len(text) > room:
        tail = text[len(text) - room:]
        if columns > placeholder + 2:
            tail = "[]" + tail[2:]
        return tail
    return text


def get_available_processors() -> int:
    """Number of online processors, or 0 if unknown."""
    return os.cpu_count() or 0