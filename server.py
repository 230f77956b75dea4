#!/usr/bin/env python3
"""
Domain lifecycle service - single event loop
Runs the HTTP server, order polling and the DNS and certificate sweeps in one asyncio loop
"""

import os
import sys
import signal
import asyncio
import logging

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
)

# Prevent httpx from logging request URLs
logging.getLogger("httpx").setLevel(logging.WARNING)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

import database
from platform_config import get_platform_config, get_startup_message
from domain_registry import DomainRegistry
from services.domain_orchestrator import DomainOrchestrator
from webhook_handler import start_webhook_server, stop_webhook_server

# Global shutdown flag
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global shutdown_requested
    shutdown_requested = True
    logger.info(f"🛑 Shutdown signal received ({signum}), initiating graceful shutdown...")


async def initialize_database() -> bool:
    """Create tables when PostgreSQL is configured"""
    if not database.is_database_configured():
        logger.warning("⚠️ DATABASE_URL not set - running with the in-memory store")
        return False
    try:
        logger.info("🔄 Initializing database...")
        await database.init_database()
        logger.info("✅ Database initialized")
        return True
    except Exception as db_error:
        logger.error(f"❌ Database initialization failed: {db_error}")
        raise


async def main_loop() -> bool:
    """Wire the orchestrator, start the server and sweeps, then wait for a shutdown signal"""
    config = get_platform_config()
    orchestrator = None
    runner = None

    try:
        await initialize_database()
        logger.info(get_startup_message())

        orchestrator = DomainOrchestrator(registry=DomainRegistry(), config=config)
        domains = await orchestrator.refetch()
        logger.info(f"📊 Loaded {len(domains)} domains")

        orchestrator.start_background_tasks()
        runner = await start_webhook_server(orchestrator, config.webhook_port)

        status_counter = 0
        while not shutdown_requested:
            await asyncio.sleep(1)
            status_counter += 1
            if status_counter % 300 == 0:
                logger.info(f"⏰ Service running - {orchestrator.leases.active_count()} operations in flight")

        logger.info("🛑 Shutdown requested - cleaning up...")
        return True

    except Exception as runtime_error:
        logger.error(f"❌ Application runtime error: {runtime_error}")
        logger.error("💥 FAIL FAST: Exiting for supervisor restart")
        return False
    finally:
        if runner is not None:
            await stop_webhook_server()
        if orchestrator is not None:
            await orchestrator.shutdown()
        database.close_connection_pool()
        logger.info("✅ Cleanup completed")


def main():
    """Main entry point"""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("🚀 Starting domain lifecycle service...")
    result = asyncio.run(main_loop())
    logger.info("✅ Service stopped normally" if result else "⚠️ Service stopped with error")
    if not result:
        sys.exit(1)


if __name__ == '__main__':
    main()
