import os

from filtering.settings import ProxySettings


_VARS = (
    "PROXY_BIND",
    "PROXY_PORT",
    "UPSTREAM_PORT",
    "UPSTREAM_TIMEOUT_SECONDS",
    "RULES_DIR",
    "BLACKLIST_PATH",
    "WHITELIST_PATH",
    "DENYTERMS_PATH",
    "AUDIT_LOG_PATH",
    "RULES_POLL_SECONDS",
    "ADMIN_ENABLED",
    "ADMIN_BIND",
    "ADMIN_PORT",
    "LOG_LEVEL",
)


def _clear(monkeypatch):
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    _clear(monkeypatch)
    s = ProxySettings.from_env()
    assert (s.bind, s.port) == ("127.0.0.1", 3000)
    assert s.upstream_port == 80
    assert s.upstream_timeout == 10.0
    assert s.audit_log_path == "log.txt"
    assert s.admin_enabled is False
    assert s.rule_paths() == {
        "blacklist": os.path.join(".", "blacklist"),
        "whitelist": os.path.join(".", "whitelist"),
        "denylist": os.path.join(".", "denyterms"),
    }


def test_overrides(monkeypatch, tmp_path):
    _clear(monkeypatch)
    monkeypatch.setenv("PROXY_PORT", "8080")
    monkeypatch.setenv("UPSTREAM_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("RULES_DIR", str(tmp_path))
    monkeypatch.setenv("DENYTERMS_PATH", "/srv/rules/terms.txt")
    monkeypatch.setenv("ADMIN_ENABLED", "yes")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    s = ProxySettings.from_env()
    assert s.port == 8080
    assert s.upstream_timeout == 2.5
    assert s.admin_enabled is True
    assert s.log_level == "DEBUG"
    paths = s.rule_paths()
    assert paths["blacklist"] == os.path.join(str(tmp_path), "blacklist")
    assert paths["denylist"] == "/srv/rules/terms.txt"


def test_invalid_numbers_fall_back(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("PROXY_PORT", "not-a-port")
    monkeypatch.setenv("UPSTREAM_TIMEOUT_SECONDS", "-3")
    s = ProxySettings.from_env()
    assert s.port == 3000
    assert s.upstream_timeout == 10.0
