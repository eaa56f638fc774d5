from __future__ import annotations

import logging
import os
import threading
import time
from typing import Dict, List, Optional, Tuple

from filtering.errors import ReloadError
from filtering.rule_store import LIST_NAMES, RuleStore


logger = logging.getLogger(__name__)


# (mtime_ns, size), or None while the file does not exist.
_Stamp = Optional[Tuple[int, int]]

RELOAD_ERROR_LOG_INTERVAL = 60.0
LOOP_ERROR_LOG_INTERVAL = 300.0


def _stat_stamp(path: str) -> _Stamp:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return (int(st.st_mtime_ns), int(st.st_size))


class RuleFileWatcher:
    """Polls the rule files and reloads a list when its file changes.

    Mirrors fs.watchFile-style stat polling: a change in mtime or size, or the
    file appearing or disappearing, triggers RuleStore.reload for that list.
    A list that keeps failing to reload is reported at most once a minute.
    """

    def __init__(self, store: RuleStore, *, interval_seconds: float = 5.0) -> None:
        self.store = store
        self.interval_seconds = float(interval_seconds)
        self._stamps: Dict[str, _Stamp] = {n: _stat_stamp(store.paths[n]) for n in LIST_NAMES}
        self._last_reported: Dict[str, float] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _should_report(self, key: str, interval_seconds: float) -> bool:
        now = time.monotonic()
        last = self._last_reported.get(key)
        if last is not None and (now - last) < interval_seconds:
            return False
        self._last_reported[key] = now
        return True

    def check_once(self) -> List[str]:
        """Poll every file once; returns the names of lists that were reloaded."""
        reloaded: List[str] = []
        for name in LIST_NAMES:
            stamp = _stat_stamp(self.store.paths[name])
            if stamp == self._stamps.get(name):
                continue
            self._stamps[name] = stamp
            try:
                self.store.reload(name)
            except (ReloadError, OSError):
                if self._should_report(name, RELOAD_ERROR_LOG_INTERVAL):
                    logger.exception("Reload of %s failed; previous rules stay active", name)
                continue
            self._last_reported.pop(name, None)
            reloaded.append(name)
        return reloaded

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.check_once()
            except Exception:
                if self._should_report("poll", LOOP_ERROR_LOG_INTERVAL):
                    logger.exception("Rule file poll failed")

    def start_background(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="rule-file-watcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        t = self._thread
        self._thread = None
        if t is not None:
            t.join(timeout=self.interval_seconds + 1.0)
