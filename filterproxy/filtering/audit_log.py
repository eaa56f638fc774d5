from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from filtering.settings import get_settings


logger = logging.getLogger(__name__)


WHITELIST_ALLOWED = "Página liberada (whitelist)"
BLACKLIST_BLOCKED = "Página bloqueada (blacklist)"
DENYTERMS_BLOCKED = "Termo bloqueado (denyterms)"
DENYTERMS_PASSED = "Termo liberado (denyterms)"
TIMEOUT = "Timeout"
CONNECT_FAILED = "Falha de conexão"

_RECENT_MAX = 200


@dataclass(frozen=True)
class AuditEntry:
    ts: float
    reason: str
    url: str

    def line(self) -> str:
        # Keep one entry per line even if the URL carries a raw newline.
        url = (self.url or "").replace("\r", " ").replace("\n", " ")
        return f"{self.reason}: {url}\n"

    def to_dict(self) -> Dict[str, object]:
        return {"ts": self.ts, "reason": self.reason, "url": self.url}


class AuditLog:
    """Append-only decision log.

    Each entry is written with a single write() under a lock so concurrent
    appends never interleave partial lines. The most recent entries are also
    kept in memory for the admin API.
    """

    def __init__(self, path: Optional[str] = None, *, recent_max: int = _RECENT_MAX) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._recent: Deque[AuditEntry] = deque(maxlen=max(1, int(recent_max)))

    def record(self, reason: str, url: str) -> AuditEntry:
        entry = AuditEntry(ts=time.time(), reason=reason, url=url or "")
        data = entry.line()
        with self._lock:
            self._recent.append(entry)
            if self.path:
                try:
                    self._append(data)
                except OSError:
                    logger.exception("Failed to append to audit log %s", self.path)
        return entry

    def _append(self, data: str) -> None:
        parent = os.path.dirname(self.path or "")
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(data)

    def whitelist_allowed(self, url: str) -> AuditEntry:
        return self.record(WHITELIST_ALLOWED, url)

    def blacklist_blocked(self, url: str) -> AuditEntry:
        return self.record(BLACKLIST_BLOCKED, url)

    def denyterms_checked(self, url: str, blocked: bool) -> AuditEntry:
        return self.record(DENYTERMS_BLOCKED if blocked else DENYTERMS_PASSED, url)

    def timeout(self, url: str) -> AuditEntry:
        return self.record(TIMEOUT, url)

    def connect_failed(self, url: str) -> AuditEntry:
        return self.record(CONNECT_FAILED, url)

    def recent(self, limit: int = 50) -> List[AuditEntry]:
        n = max(0, int(limit))
        with self._lock:
            items = list(self._recent)
        return items[-n:] if n else []


_audit: Optional[AuditLog] = None


def get_audit_log() -> AuditLog:
    global _audit
    if _audit is None:
        _audit = AuditLog(get_settings().audit_log_path)
    return _audit


def set_audit_log(audit: Optional[AuditLog]) -> None:
    global _audit
    _audit = audit
