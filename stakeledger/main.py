"""
Stake Ledger - stake settlement and reconciliation service.

Startup runs migrations, prepares the database and local store, expires
stale staking invites, then serves the API until stopped.
"""

import asyncio
import signal
import sys

import uvicorn

from stakeledger.api import create_api_app
from stakeledger.config import settings
from stakeledger.db.database import close_db, create_tables, init_db
from stakeledger.services.invites import invite_coordinator
from stakeledger.services.kv_store import create_kv_store
from stakeledger.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


async def run_migrations() -> None:
    """Run database migrations on startup."""
    import subprocess

    logger.info("Running database migrations...")
    result = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        capture_output=True,
        text=True,
        cwd=".",
    )
    if result.returncode == 0:
        logger.info("Migrations completed successfully")
    else:
        logger.warning("Migration output", stdout=result.stdout, stderr=result.stderr)


async def run_service() -> None:
    """Run the API server with graceful shutdown support."""
    logger.info("Starting Stake Ledger...")

    await run_migrations()

    logger.info("Initializing database...")
    await init_db(settings.database_url)
    await create_tables()
    logger.info("Database ready")

    kv_store = await create_kv_store()

    expired = await invite_coordinator.expire_stale()
    logger.info("Invite sweep complete", expired=expired)

    app = create_api_app(kv_store)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=settings.api_host,
            port=settings.api_port,
            log_level=settings.log_level.lower(),
        )
    )

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        server.should_exit = True

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: signal_handler())

    try:
        await server.serve()
    finally:
        close = getattr(kv_store, "close", None)
        if close is not None:
            await close()
        await close_db()
        logger.info("Shutdown complete")


def main() -> None:
    """Main entry point."""
    setup_logging(settings.log_level)

    logger.info(
        "Stake Ledger",
        version="1.0.0",
        log_level=settings.log_level,
    )

    try:
        asyncio.run(run_service())
    except KeyboardInterrupt:
        logger.info("Service stopped by user")
    except Exception as e:
        logger.error("Fatal error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
