from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Optional


def _env_str(name: str, default: str) -> str:
    return (os.environ.get(name) or "").strip() or default


def _env_int(name: str, default: int) -> int:
    try:
        v = int((os.environ.get(name) or str(default)).strip())
    except ValueError:
        return default
    return v if v > 0 else default


def _env_float(name: str, default: float) -> float:
    try:
        v = float((os.environ.get(name) or str(default)).strip())
    except ValueError:
        return default
    return v if v > 0 else default


def _env_bool(name: str) -> bool:
    return (os.environ.get(name) or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ProxySettings:
    bind: str = "127.0.0.1"
    port: int = 3000
    upstream_port: int = 80
    upstream_timeout: float = 10.0
    rules_dir: str = "."
    blacklist_path: str = ""
    whitelist_path: str = ""
    denyterms_path: str = ""
    audit_log_path: str = "log.txt"
    rules_poll_seconds: float = 5.0
    admin_enabled: bool = False
    admin_bind: str = "127.0.0.1"
    admin_port: int = 5000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ProxySettings":
        rules_dir = _env_str("RULES_DIR", ".")
        return cls(
            bind=_env_str("PROXY_BIND", "127.0.0.1"),
            port=_env_int("PROXY_PORT", 3000),
            upstream_port=_env_int("UPSTREAM_PORT", 80),
            upstream_timeout=_env_float("UPSTREAM_TIMEOUT_SECONDS", 10.0),
            rules_dir=rules_dir,
            blacklist_path=_env_str("BLACKLIST_PATH", os.path.join(rules_dir, "blacklist")),
            whitelist_path=_env_str("WHITELIST_PATH", os.path.join(rules_dir, "whitelist")),
            denyterms_path=_env_str("DENYTERMS_PATH", os.path.join(rules_dir, "denyterms")),
            audit_log_path=_env_str("AUDIT_LOG_PATH", "log.txt"),
            rules_poll_seconds=_env_float("RULES_POLL_SECONDS", 5.0),
            admin_enabled=_env_bool("ADMIN_ENABLED"),
            admin_bind=_env_str("ADMIN_BIND", "127.0.0.1"),
            admin_port=_env_int("ADMIN_PORT", 5000),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )

    def rule_paths(self) -> Dict[str, str]:
        base = self.rules_dir or "."
        return {
            "blacklist": self.blacklist_path or os.path.join(base, "blacklist"),
            "whitelist": self.whitelist_path or os.path.join(base, "whitelist"),
            "denylist": self.denyterms_path or os.path.join(base, "denyterms"),
        }


_settings: Optional[ProxySettings] = None


def get_settings() -> ProxySettings:
    global _settings
    if _settings is None:
        _settings = ProxySettings.from_env()
    return _settings
