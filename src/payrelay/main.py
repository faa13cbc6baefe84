"""Application entry point."""

import asyncio
import logging
import signal

from payrelay.config import AppConfig, get_config
from payrelay.db.pool import close_pool, get_pool
from payrelay.db.schema.migrate import migrate
from payrelay.payments.client import ProcessorClient
from payrelay.payments.server import create_app, run_server
from payrelay.payments.store import MemoryProjectionStore, PostgresProjectionStore, ProjectionStore

logger = logging.getLogger(__name__)


async def build_store(config: AppConfig) -> ProjectionStore:
    """Create the projection store, migrating the database when one is configured."""
    if config.db_dsn is None:
        logger.warning(
            "db_dsn not configured - projections are kept in memory and lost on restart"
        )
        return MemoryProjectionStore()

    pool = await get_pool()
    applied = await migrate()
    if applied:
        logger.info(f"Applied {applied} migration(s)")
    return PostgresProjectionStore(pool)


async def boot(config: AppConfig, shutdown_event: asyncio.Event) -> None:
    """
    Boot sequence: build client and store → serve → shutdown.

    Raises:
        SystemExit: On configuration or database errors
    """
    try:
        client = ProcessorClient(config.stripe_secret_key.get_secret_value())
        if not config.stripe_webhook_secret.get_secret_value():
            raise ValueError("stripe_webhook_secret not configured")
        store = await build_store(config)
    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        await close_pool()
        raise SystemExit(1) from e

    logger.info(f"Configuration loaded: env={config.env}")
    app = create_app(config, client, store)

    try:
        await run_server(app, config.port, shutdown_event)
    finally:
        await store.close()
        await close_pool()
        logger.info("Application shutdown complete")


def main() -> None:
    """Run the server until SIGTERM/SIGINT."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        loop.run_until_complete(boot(config, shutdown_event))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        loop.close()
        logger.info("Server stopped")


if __name__ == "__main__":
    main()
