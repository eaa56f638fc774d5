from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from filtering.audit_log import AuditLog, get_audit_log
from filtering.list_watcher import RuleFileWatcher
from filtering.pipeline import ProxyPipeline
from filtering.rule_store import RuleStore, get_rule_store
from filtering.settings import ProxySettings, get_settings


logger = logging.getLogger(__name__)


class ProxyServer:
    def __init__(self, settings: ProxySettings, rules: RuleStore, audit: AuditLog) -> None:
        self.settings = settings
        self.rules = rules
        self.audit = audit
        self.pipeline = ProxyPipeline(
            rules,
            audit,
            upstream_port=settings.upstream_port,
            upstream_timeout=settings.upstream_timeout,
        )
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> asyncio.AbstractServer:
        # Rules must be in place before the first connection is accepted.
        self.rules.load_all()
        self._server = await asyncio.start_server(
            self.pipeline.handle,
            self.settings.bind,
            self.settings.port,
        )
        return self._server

    @property
    def sockname(self):
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()

    async def serve_forever(self) -> None:
        server = self._server or await self.start()
        async with server:
            await server.serve_forever()

    def close(self) -> None:
        if self._server is not None:
            self._server.close()


async def _run(settings: ProxySettings) -> None:
    proxy = ProxyServer(settings, get_rule_store(), get_audit_log())
    await proxy.start()

    watcher = RuleFileWatcher(proxy.rules, interval_seconds=settings.rules_poll_seconds)
    watcher.start_background()

    if settings.admin_enabled:
        from admin_app import start_admin_server

        start_admin_server(settings.admin_bind, settings.admin_port)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, proxy.close)
        except NotImplementedError:
            # Non-POSIX loop; KeyboardInterrupt still stops the process.
            pass

    print(f"[proxy] listening on {settings.bind}:{settings.port}", flush=True)
    try:
        await proxy.serve_forever()
    except asyncio.CancelledError:
        logger.info("Proxy server stopped")
    finally:
        watcher.stop()


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(_run(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
