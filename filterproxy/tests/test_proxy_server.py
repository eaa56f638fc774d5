from __future__ import annotations

import asyncio

from filtering.audit_log import AuditLog
from filtering.rule_store import BLACKLIST, RuleStore
from filtering.settings import ProxySettings
from proxy_server import ProxyServer


def test_rules_are_loaded_before_accepting(tmp_path):
    (tmp_path / "blacklist").write_text("blocked\\.example\n", encoding="utf-8")
    settings = ProxySettings(port=0, rules_dir=str(tmp_path), audit_log_path=str(tmp_path / "log.txt"))
    rules = RuleStore(settings.rule_paths())
    server = ProxyServer(settings, rules, AuditLog(settings.audit_log_path))

    async def go() -> bytes:
        await server.start()
        assert rules.status(BLACKLIST).version == 1
        host, port = server.sockname[:2]
        reader, writer = await asyncio.open_connection(host, port)
        writer.write(b"GET http://blocked.example/ HTTP/1.1\r\nHost: blocked.example\r\n\r\n")
        await writer.drain()
        data = await asyncio.wait_for(reader.read(), 5)
        writer.close()
        server.close()
        return data

    data = asyncio.run(go())
    assert data.startswith(b"HTTP/1.1 403 ")
    assert (tmp_path / "log.txt").read_text(encoding="utf-8") == (
        "Página bloqueada (blacklist): http://blocked.example/\n"
    )
