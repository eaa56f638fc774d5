from __future__ import annotations

import pytest

from filtering.audit_log import (
    BLACKLIST_BLOCKED,
    DENYTERMS_BLOCKED,
    DENYTERMS_PASSED,
    WHITELIST_ALLOWED,
    AuditLog,
)
from filtering.policy import AdmissionPolicy, ContentPolicy, Decision, Verdict, chunk_text
from filtering.rule_store import RuleStore


def _store(tmp_path, blacklist: str = "", whitelist: str = "", denyterms: str = "") -> RuleStore:
    for name, text in (("blacklist", blacklist), ("whitelist", whitelist), ("denyterms", denyterms)):
        (tmp_path / name).write_text(text, encoding="utf-8")
    store = RuleStore.from_directory(str(tmp_path))
    store.load_all()
    return store


@pytest.fixture
def audit(tmp_path):
    return AuditLog(str(tmp_path / "log.txt"))


def _reasons(audit: AuditLog):
    return [e.reason for e in audit.recent(200)]


def test_blacklisted_url_is_blocked(tmp_path, audit):
    policy = AdmissionPolicy(_store(tmp_path, blacklist="example\\.com\n"), audit)
    assert policy.decide("http://example.com/") is Decision.BLOCK
    assert policy.decide("http://example.org/") is Decision.ALLOW
    # The admission decision itself does not log blocks; the pipeline does.
    assert BLACKLIST_BLOCKED not in _reasons(audit)


def test_whitelist_overrides_blacklist_and_logs(tmp_path, audit):
    policy = AdmissionPolicy(
        _store(tmp_path, blacklist="example\\.com\n", whitelist="example\\.com\n"),
        audit,
    )
    assert policy.decide("http://example.com/") is Decision.ALLOW
    assert _reasons(audit) == [WHITELIST_ALLOWED]
    assert audit.recent(1)[0].url == "http://example.com/"


def test_every_whitelist_hit_is_logged(tmp_path, audit):
    policy = AdmissionPolicy(_store(tmp_path, whitelist="trusted\n"), audit)
    for _ in range(3):
        assert policy.is_whitelisted("http://trusted.example/")
    assert not policy.is_whitelisted("http://other.example/")
    assert _reasons(audit) == [WHITELIST_ALLOWED] * 3


def test_blacklist_check_has_no_side_effect(tmp_path, audit):
    policy = AdmissionPolicy(_store(tmp_path, blacklist="bad\n"), audit)
    assert policy.is_blacklisted("http://bad/")
    assert _reasons(audit) == []


def test_content_block_on_denied_term(tmp_path, audit):
    store = _store(tmp_path, denyterms="forbidden\n")
    admission = AdmissionPolicy(store, audit)
    content = ContentPolicy(store, audit, admission)

    assert content.decide(b"<p>forbidden words</p>", "http://site/") is Verdict.BLOCK
    assert content.decide(b"<p>fine words</p>", "http://site/") is Verdict.PASS
    # Both outcomes of the denylist check are logged.
    assert _reasons(audit) == [DENYTERMS_BLOCKED, DENYTERMS_PASSED]


def test_whitelist_overrides_content_block(tmp_path, audit):
    store = _store(tmp_path, whitelist="site\\.example\n", denyterms="forbidden\n")
    admission = AdmissionPolicy(store, audit)
    content = ContentPolicy(store, audit, admission)

    assert content.decide(b"forbidden", "http://site.example/") is Verdict.PASS
    # Whitelisted URLs never reach the denylist check.
    assert _reasons(audit) == [WHITELIST_ALLOWED]


def test_binary_chunks_are_matched_without_errors(tmp_path, audit):
    store = _store(tmp_path, denyterms="forbidden\n")
    content = ContentPolicy(store, audit, AdmissionPolicy(store, audit))
    chunk = b"\xff\xfe\x00forbidden\x80"
    assert content.decide(chunk, "http://bin/") is Verdict.BLOCK
    assert "forbidden" in chunk_text(chunk)


def test_chunk_text_accepts_str_and_memoryview():
    assert chunk_text("abc") == "abc"
    assert chunk_text(memoryview(b"abc")) == "abc"


def test_policies_follow_reloads(tmp_path, audit):
    store = _store(tmp_path)
    policy = AdmissionPolicy(store, audit)
    assert policy.decide("http://example.com/") is Decision.ALLOW

    (tmp_path / "blacklist").write_text("example\n", encoding="utf-8")
    store.reload_blacklist()
    assert policy.decide("http://example.com/") is Decision.BLOCK
