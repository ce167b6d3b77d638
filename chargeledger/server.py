import asyncio
import logging

import uvicorn

from . import config
from .api import Services, build_services, create_app
from .ledger import HttpLedgerClient, InMemoryLedger, LedgerHandle
from .sqlite_store import SqliteSessionStore
from .store import CachedSessionStore, MemorySessionStore, SessionCache, SessionStore

CACHE_PURGE_SEC = 300


def build_store(backend: str = config.STORE_BACKEND) -> SessionStore:
    if backend == "memory":
        inner: SessionStore = MemorySessionStore()
    elif backend == "sqlite":
        inner = SqliteSessionStore(config.DB_PATH)
    else:
        raise ValueError(f"Unknown STORE_BACKEND {backend!r}")
    return CachedSessionStore(inner, SessionCache(ttl=config.CACHE_TTL_SEC))


async def ledger_connect_loop(handle: LedgerHandle, client: HttpLedgerClient) -> None:
    """Keep ``handle`` pointing at the gateway while it is reachable."""
    while True:
        try:
            reachable = await client.ping()
        except Exception as e:
            logging.error(f"Ledger gateway ping failed: {e}")
            reachable = False
        if reachable and not handle.available:
            handle.set(client)
            logging.info(f"Ledger connection ready: {client.base_url}")
        elif not reachable and handle.available:
            handle.clear()
            logging.warning("Ledger gateway unreachable; queue will hold events until it is back")
        await asyncio.sleep(config.LEDGER_RECONNECT_SEC)


async def cache_purge_loop(cache: SessionCache) -> None:
    while True:
        await asyncio.sleep(CACHE_PURGE_SEC)
        purged = cache.purge_expired()
        if purged:
            logging.debug(f"Purged {purged} stale session cache entries")


def build_runtime() -> Services:
    store = build_store()
    handle = LedgerHandle()
    services = build_services(store, handle, backend=config.STORE_BACKEND)
    tasks: list = []

    async def start_background():
        if config.LEDGER_URL:
            client = HttpLedgerClient(config.LEDGER_URL)
            tasks.append(asyncio.create_task(ledger_connect_loop(handle, client)))
            services.on_shutdown.append(client.close)
        else:
            logging.warning("LEDGER_URL not set; using the in-process ledger")
            handle.set(InMemoryLedger())
        if isinstance(store, CachedSessionStore):
            tasks.append(asyncio.create_task(cache_purge_loop(store.cache)))

    async def stop_background():
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    services.on_startup.append(start_background)
    services.on_shutdown.insert(0, stop_background)
    return services


async def main():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )
    app = create_app(build_runtime())
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.HTTP_HOST, port=config.HTTP_PORT, loop="asyncio", log_level="info")
    )
    logging.info(f"Ledger server listening on http://{config.HTTP_HOST}:{config.HTTP_PORT}")
    await server.serve()


if __name__ == "__main__":
    asyncio.run(main())
