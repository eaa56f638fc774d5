from __future__ import annotations

import re
import time
from typing import Iterator, List, Optional, Pattern, Tuple

from filtering.errors import ReloadError


def _split_rule_lines(text: str) -> List[Tuple[int, str]]:
    # Lines are "\n"-separated; a trailing "\r" from CRLF files is not part of the pattern.
    out: List[Tuple[int, str]] = []
    for n, raw in enumerate((text or "").split("\n"), start=1):
        line = raw[:-1] if raw.endswith("\r") else raw
        if not line:
            continue
        out.append((n, line))
    return out


class PatternList:
    """Immutable ordered set of compiled rule patterns.

    A new instance is built for every reload; instances are never mutated, so
    a reference held by a request handler stays consistent for its lifetime.
    """

    __slots__ = ("name", "source", "loaded_at", "_patterns")

    def __init__(
        self,
        patterns: Tuple[Pattern[str], ...] = (),
        *,
        name: str = "",
        source: Optional[str] = None,
        loaded_at: Optional[float] = None,
    ) -> None:
        self.name = name
        self.source = source
        self.loaded_at = float(loaded_at if loaded_at is not None else time.time())
        self._patterns = tuple(patterns)

    @classmethod
    def empty(cls, name: str = "", source: Optional[str] = None) -> "PatternList":
        return cls((), name=name, source=source)

    @classmethod
    def from_text(cls, text: str, *, name: str = "", source: Optional[str] = None) -> "PatternList":
        compiled: List[Pattern[str]] = []
        for line_no, line in _split_rule_lines(text):
            try:
                compiled.append(re.compile(line))
            except re.error as e:
                raise ReloadError(name or "rules", line_no, line, str(e)) from e
        return cls(tuple(compiled), name=name, source=source)

    @classmethod
    def load(cls, path: str, *, name: str = "") -> "PatternList":
        """Read and compile a rules file. A missing file means "no rules"."""
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                text = f.read()
        except FileNotFoundError:
            return cls.empty(name=name, source=path)
        return cls.from_text(text, name=name, source=path)

    def matches(self, text: str) -> bool:
        for rx in self._patterns:
            if rx.search(text) is not None:
                return True
        return False

    def first_match(self, text: str) -> str:
        """Return the source of the first matching pattern, or "" if none."""
        for rx in self._patterns:
            if rx.search(text) is not None:
                return rx.pattern
        return ""

    @property
    def patterns(self) -> Tuple[str, ...]:
        return tuple(rx.pattern for rx in self._patterns)

    def __iter__(self) -> Iterator[str]:
        return iter(self.patterns)

    def __len__(self) -> int:
        return len(self._patterns)

    def __repr__(self) -> str:
        return f"PatternList(name={self.name!r}, patterns={len(self._patterns)})"
