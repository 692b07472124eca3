"""Exclusion rules deciding which source paths are left out of the image."""

from __future__ import annotations

import errno
import re
from dataclasses import dataclass
from typing import Optional

from erofskit.config import Config, ErofsError, LogLevel


@dataclass
class ExcludeRule:
    """One exclusion: an exact path, or a compiled regular expression."""

    pattern: str
    regex: Optional[re.Pattern] = None


class ExcludeRules:
    """Ordered exact-path and regex exclusion rules."""

    def __init__(self, config: Optional[Config] = None) -> None:
        self.config = config if config is not None else Config()
        self._exact: list[ExcludeRule] = []
        self._regex: list[ExcludeRule] = []

    def add(self, pattern: str, is_regex: bool = False) -> ExcludeRule:
        """Add a rule; an invalid regex drops every rule and raises."""
        if is_regex:
            try:
                compiled = re.compile(pattern)
            except re.error as exc:
                self.config.message(LogLevel.ERR,
                                    f"invalid regex {pattern} ({exc})")
                self.clear()
                raise ErofsError(errno.EINVAL,
                                 f"invalid regex {pattern}") from exc
            rule = ExcludeRule(pattern, compiled)
            self._regex.append(rule)
        else:
            rule = ExcludeRule(pattern)
            self._exact.append(rule)
        kind = "regex" if is_regex else "path"
        self.config.message(LogLevel.INFO, f"insert exclude {kind}: {pattern}")
        return rule

    def clear(self) -> None:
        """Remove every rule."""
        self._exact.clear()
        self._regex.clear()

    def match(self, directory: Optional[str], name: str) -> Optional[ExcludeRule]:
        """Return the first rule matching directory/name, or None."""
        full = name if directory is None else f"{directory}/{name}"
        path = self.config.fspath(full)
        for rule in self._exact:
            if rule.pattern == path:
                return rule
        for rule in self._regex:
            assert rule.regex is not None
            if rule.regex.search(path):
                return rule
        return None