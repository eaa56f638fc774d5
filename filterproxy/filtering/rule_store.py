from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from filtering.errors import ReloadError
from filtering.pattern_list import PatternList
from filtering.settings import get_settings


logger = logging.getLogger(__name__)


BLACKLIST = "blacklist"
WHITELIST = "whitelist"
DENYLIST = "denylist"

LIST_NAMES = (BLACKLIST, WHITELIST, DENYLIST)

# Default file name of each list inside the rules directory.
DEFAULT_FILENAMES: Dict[str, str] = {
    BLACKLIST: "blacklist",
    WHITELIST: "whitelist",
    DENYLIST: "denyterms",
}


@dataclass(frozen=True)
class ListStatus:
    name: str
    path: str
    patterns: int
    version: int
    loaded_at: float
    last_error: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "path": self.path,
            "patterns": self.patterns,
            "version": self.version,
            "loaded_at": self.loaded_at,
            "last_error": self.last_error,
        }


class RuleStore:
    """Blacklist, whitelist and denylist snapshots with per-list reload.

    Lookups read the current snapshot reference without locking. A reload
    builds a complete new PatternList and then swaps the reference, so readers
    see either the previous list or the new one. The lock only serialises
    reloads of the same store against each other.
    """

    def __init__(self, paths: Dict[str, str]) -> None:
        missing = [n for n in LIST_NAMES if n not in paths]
        if missing:
            raise ValueError(f"Missing rule paths: {', '.join(missing)}")
        self.paths: Dict[str, str] = {n: str(paths[n]) for n in LIST_NAMES}

        self._reload_lock = threading.Lock()
        self._lists: Dict[str, PatternList] = {
            n: PatternList.empty(name=n, source=self.paths[n]) for n in LIST_NAMES
        }
        self._versions: Dict[str, int] = {n: 0 for n in LIST_NAMES}
        self._errors: Dict[str, str] = {n: "" for n in LIST_NAMES}

    @classmethod
    def from_directory(cls, rules_dir: str) -> "RuleStore":
        base = rules_dir or "."
        return cls({n: os.path.join(base, DEFAULT_FILENAMES[n]) for n in LIST_NAMES})

    @property
    def blacklist(self) -> PatternList:
        return self._lists[BLACKLIST]

    @property
    def whitelist(self) -> PatternList:
        return self._lists[WHITELIST]

    @property
    def denylist(self) -> PatternList:
        return self._lists[DENYLIST]

    def get(self, name: str) -> PatternList:
        if name not in self._lists:
            raise KeyError(name)
        return self._lists[name]

    def reload(self, name: str) -> PatternList:
        """Rebuild one list from its file and publish it.

        Raises ReloadError when a line does not compile, or OSError when the
        file cannot be read. Either way the list that was active before the
        call stays published and the error is kept for status().
        """
        if name not in self.paths:
            raise KeyError(name)
        path = self.paths[name]
        logger.info("Reloading %s from %s", name, path)
        with self._reload_lock:
            try:
                fresh = PatternList.load(path, name=name)
            except (ReloadError, OSError) as e:
                self._errors[name] = str(e)
                logger.error("Keeping previous %s: %s", name, e)
                raise
            self._lists[name] = fresh
            self._versions[name] += 1
            self._errors[name] = ""
        logger.info("Loaded %d %s pattern(s)", len(fresh), name)
        return fresh

    def reload_blacklist(self) -> PatternList:
        return self.reload(BLACKLIST)

    def reload_whitelist(self) -> PatternList:
        return self.reload(WHITELIST)

    def reload_denylist(self) -> PatternList:
        return self.reload(DENYLIST)

    def load_all(self) -> None:
        """Initial load of all lists. A list that fails to load starts empty."""
        for name in LIST_NAMES:
            try:
                self.reload(name)
            except (ReloadError, OSError):
                continue

    def status(self, name: str) -> ListStatus:
        current = self.get(name)
        return ListStatus(
            name=name,
            path=self.paths[name],
            patterns=len(current),
            version=self._versions[name],
            loaded_at=current.loaded_at,
            last_error=self._errors[name],
        )

    def statuses(self) -> List[ListStatus]:
        return [self.status(n) for n in LIST_NAMES]


_store: Optional[RuleStore] = None


def get_rule_store() -> RuleStore:
    global _store
    if _store is None:
        _store = RuleStore(get_settings().rule_paths())
    return _store


def set_rule_store(store: Optional[RuleStore]) -> None:
    global _store
    _store = store
