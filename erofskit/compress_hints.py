"""Per-file compression hints: path patterns mapped to pcluster sizes."""

from __future__ import annotations

import errno
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from erofskit.config import Config, ErofsError, LogLevel

MAX_COMPR_CFGS = 4

_U32 = 0xFFFFFFFF
_ATOI = re.compile(r"\s*([+-]?\d+)")


def _atoi(text: Optional[str]) -> int:
    match = _ATOI.match(text or "")
    return int(match.group(1)) if match else 0


class _Tokenizer:
    """Splits a line the way successive strtok() calls would."""

    def __init__(self, text: str) -> None:
        self._text = text
        self._pos = 0

    def next(self, delims: str) -> Optional[str]:
        cls = re.escape(delims)
        match = re.compile(f"[{cls}]*([^{cls}]+)").match(self._text, self._pos)
        if match is None:
            self._pos = len(self._text)
            return None
        self._pos = min(match.end() + 1, len(self._text))
        return match.group(1)


@dataclass
class CompressHint:
    """One hint: files matching the regex use this pcluster size and config."""

    pattern: str
    regex: re.Pattern
    physical_clusterblks: int
    algorithmtype: int


class CompressHints:
    """Ordered list of compression hints; the first matching hint wins."""

    def __init__(self, config: Optional[Config] = None) -> None:
        self.config = config if config is not None else Config()
        self.hints: list[CompressHint] = []

    def insert(self, pattern: str, blocks: int, algorithmtype: int) -> CompressHint:
        """Add a hint; an invalid regular expression raises ErofsError."""
        try:
            compiled = re.compile(pattern)
        except re.error as exc:
            self.config.message(LogLevel.ERR, f"invalid regex {pattern} ({exc})")
            raise ErofsError(errno.EINVAL, f"invalid regex {pattern}") from exc
        hint = CompressHint(pattern, compiled, blocks, algorithmtype)
        self.hints.append(hint)
        self.config.message(LogLevel.INFO,
                            f"compress hint {pattern} ({blocks}) is inserted")
        return hint

    def apply(self, path: str, default_pclusterblks: int) -> tuple[int, int]:
        """Return (pclusterblks, algorithm config index) for a source path.

        A pclusterblks of 0 means the file should not be compressed.
        """
        fspath = self.config.fspath(path)
        for hint in self.hints:
            if hint.regex.search(fspath):
                return hint.physical_clusterblks, hint.algorithmtype
        return default_pclusterblks, 0

    def load(self, path: Optional[str], block_size: int,
             compr_algs: Sequence[Optional[str]], pclustersize_def: int,
             pclustersize_max: int) -> int:
        """Read hints from a file and return the (possibly raised) max pcluster size.

        Each line reads "<pclustersize> [<config index>] <pattern>"; lines
        starting with '#' and empty lines are ignored.
        """
        if not path:
            return pclustersize_max
        max_pclustersize = 0
        with open(path, "r", encoding="utf-8", errors="surrogateescape",
                  newline="") as stream:
            for lineno, line in enumerate(stream, 1):
                if line.startswith(("#", "\n")):
                    continue
                tokens = _Tokenizer(line)
                pclustersize = _atoi(tokens.next("\t ")) & _U32
                alg = tokens.next("\n\t ")
                pattern = tokens.next("\n")
                if pattern is None:
                    pattern, alg = alg, None
                if not pattern:
                    self.config.message(
                        LogLevel.ERR,
                        f"cannot find a match pattern at line {lineno}")
                    raise ErofsError(errno.EINVAL,
                                     f"no match pattern at line {lineno}")
                if not alg:
                    ccfg = 0
                else:
                    ccfg = _atoi(alg) & _U32
                    if (ccfg >= MAX_COMPR_CFGS or ccfg >= len(compr_algs)
                            or not compr_algs[ccfg]):
                        self.config.message(
                            LogLevel.ERR,
                            f'invalid compressing configuration "{alg}" '
                            f"at line {lineno}")
                        raise ErofsError(
                            errno.EINVAL,
                            f"invalid compressing configuration at line {lineno}")
                if pclustersize % block_size:
                    self.config.message(
                        LogLevel.WARN,
                        f"invalid physical clustersize {pclustersize}, "
                        f"use default pclusterblks {pclustersize_def}")
                    continue
                try:
                    self.insert(pattern, pclustersize // block_size, ccfg)
                except ErofsError:
                    pass
                max_pclustersize = max(max_pclustersize, pclustersize)

        if pclustersize_max < max_pclustersize:
            pclustersize_max = max_pclustersize
            self.config.message(LogLevel.WARN,
                                f"update max pclustersize to {pclustersize_max}")
        return pclustersize_max

    def clear(self) -> None:
        """Drop every hint."""
        self.hints.clear()