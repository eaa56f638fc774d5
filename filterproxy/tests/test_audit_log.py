from __future__ import annotations

import threading

from filtering import audit_log
from filtering.audit_log import AuditLog
from filtering.settings import ProxySettings


def test_lines_use_reason_colon_url(tmp_path):
    path = tmp_path / "log.txt"
    log = AuditLog(str(path))
    log.blacklist_blocked("http://example.com/")
    log.whitelist_allowed("http://ok.example/")
    log.timeout("http://slow.example/")

    assert path.read_text(encoding="utf-8").splitlines() == [
        "Página bloqueada (blacklist): http://example.com/",
        "Página liberada (whitelist): http://ok.example/",
        "Timeout: http://slow.example/",
    ]


def test_newlines_in_url_cannot_forge_entries(tmp_path):
    path = tmp_path / "log.txt"
    log = AuditLog(str(path))
    log.denyterms_checked("http://x/\nTimeout: fake", blocked=True)
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert lines[0].startswith("Termo bloqueado (denyterms): ")


def test_creates_parent_directory(tmp_path):
    path = tmp_path / "logs" / "nested" / "log.txt"
    AuditLog(str(path)).connect_failed("http://nowhere/")
    assert path.read_text(encoding="utf-8") == "Falha de conexão: http://nowhere/\n"


def test_memory_only_log_keeps_recent_entries():
    log = AuditLog(None, recent_max=3)
    for i in range(5):
        log.record("R", f"http://h/{i}")
    assert [e.url for e in log.recent(10)] == ["http://h/2", "http://h/3", "http://h/4"]
    assert [e.url for e in log.recent(1)] == ["http://h/4"]
    assert log.recent(0) == []


def test_concurrent_appends_do_not_interleave(tmp_path):
    path = tmp_path / "log.txt"
    log = AuditLog(str(path))
    url = "http://example.com/" + "x" * 2000

    def worker():
        for _ in range(50):
            log.whitelist_allowed(url)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 400
    assert set(lines) == {f"{audit_log.WHITELIST_ALLOWED}: {url}"}


def test_get_audit_log_uses_configured_path(tmp_path, monkeypatch):
    monkeypatch.setattr(audit_log, "_audit", None)
    monkeypatch.setattr(audit_log, "get_settings", lambda: ProxySettings(audit_log_path=str(tmp_path / "a.txt")))
    log = audit_log.get_audit_log()
    assert log.path == str(tmp_path / "a.txt")
    assert audit_log.get_audit_log() is log
