from __future__ import annotations

from enum import Enum
from typing import Union

from filtering.audit_log import AuditLog
from filtering.rule_store import RuleStore


class Decision(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"


class Verdict(str, Enum):
    PASS = "pass"
    BLOCK = "block"


def chunk_text(chunk: Union[bytes, bytearray, memoryview, str]) -> str:
    """Text view of a body chunk used only for pattern matching."""
    if isinstance(chunk, str):
        return chunk
    return bytes(chunk).decode("utf-8", errors="replace")


class AdmissionPolicy:
    """URL admission: the whitelist overrides the blacklist."""

    def __init__(self, rules: RuleStore, audit: AuditLog) -> None:
        self.rules = rules
        self.audit = audit

    def is_whitelisted(self, url: str) -> bool:
        # Every positive whitelist check is audited, including the per-chunk ones.
        result = self.rules.whitelist.matches(url)
        if result:
            self.audit.whitelist_allowed(url)
        return result

    def is_blacklisted(self, url: str) -> bool:
        return self.rules.blacklist.matches(url)

    def decide(self, url: str) -> Decision:
        if not self.is_whitelisted(url) and self.is_blacklisted(url):
            return Decision.BLOCK
        return Decision.ALLOW


class ContentPolicy:
    """Body chunk inspection against the denylist."""

    def __init__(self, rules: RuleStore, audit: AuditLog, admission: AdmissionPolicy) -> None:
        self.rules = rules
        self.audit = audit
        self.admission = admission

    def matches_denylist(self, chunk: Union[bytes, str], url: str) -> bool:
        result = self.rules.denylist.matches(chunk_text(chunk))
        self.audit.denyterms_checked(url, result)
        return result

    def decide(self, chunk: Union[bytes, str], url: str) -> Verdict:
        if not self.admission.is_whitelisted(url) and self.matches_denylist(chunk, url):
            return Verdict.BLOCK
        return Verdict.PASS
