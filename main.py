"""
Reservation Escrow - Main Application Entry Point

This module orchestrates the application by:
- Loading configuration
- Initializing logger and database
- Wiring the escrow, dispute, vendor approval and chat services
- Running the background jobs and the FastAPI server on one event loop
- Managing graceful shutdown
"""

import asyncio
import logging
import sys
from typing import Optional

import uvicorn

from callback_server import AppServices, create_app
from chat_violations import ChatGuard, ViolationTracker
from config import Config, ConfigError, get_config
from database import get_database, close_database
from dispute_service import DisputeService
from escrow_automation import EscrowAutomation
from escrow_database import EscrowDatabase
from escrow_service import get_escrow_service
from notifications import NotificationService
from payment_gateway import PaymentGateway
from utils import setup_logger, mask_sensitive_data, utcnow
from vendor_approval_service import VendorApprovalService

logger: Optional[logging.Logger] = None


async def build_services(config: Config) -> AppServices:
    """
    Connect the database and wire every service.

    Returns:
        AppServices with the automation attached but not started
    """
    logger.info("Initializing database connection...")
    database = await get_database(config.database_url, config.db_pool_min_size, config.db_pool_max_size)
    store = EscrowDatabase(database)
    logger.info("✓ Database initialized successfully")

    gateway = PaymentGateway(config)
    notifier = NotificationService(store, config)
    escrow = await get_escrow_service(store, gateway, notifier, config)
    tracker = ViolationTracker(store)

    services = AppServices(
        config=config,
        store=store,
        gateway=gateway,
        escrow=escrow,
        disputes=DisputeService(store, notifier),
        vendor_approvals=VendorApprovalService(store, notifier, config),
        tracker=tracker,
        chat_guard=ChatGuard(tracker, notifier)
    )
    services.automation = EscrowAutomation(escrow, notifier, config)
    return services


def display_startup_banner(config: Config) -> None:
    banner = f"""
╔{'='*58}╗
║{' '*19}RESERVATION ESCROW{' '*21}║
╚{'='*58}╝

📅 Startup Time: {utcnow().strftime('%Y-%m-%d %H:%M:%S')} UTC

🔧 Configuration:
   • Environment:        {config.app_env}
   • Gateway:            {config.gateway_environment.upper()} ({config.gateway_base_url})
   • Gateway Key:        {mask_sensitive_data(config.gateway_api_key)}
   • API:                {config.api_host}:{config.api_port}
   • Escrow Period:      {config.escrow_timeout_days} days
   • Seller Fee:         {config.seller_fee_rate * 100}%
   • Telegram Delivery:  {'ENABLED' if config.has_telegram_config else 'DISABLED'}
   • Webhook Auth:       {'ENABLED' if config.has_webhook_auth else 'MISSING'}
   • Log Level:          {config.log_level}

🚀 Starting services...
"""
    print(banner)


async def async_main(config: Config) -> None:
    """
    Main asynchronous function that orchestrates the entire application.
    """
    services = None
    try:
        services = await build_services(config)
        display_startup_banner(config)

        await services.automation.start()
        logger.info("✓ Background jobs started")

        server = uvicorn.Server(uvicorn.Config(
            create_app(services),
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower(),
            log_config=None
        ))
        logger.info(f"✓ API listening on {config.api_host}:{config.api_port}")
        await server.serve()

    finally:
        logger.info("Starting cleanup...")

        if services and services.automation:
            try:
                await services.automation.stop()
                logger.info("✓ Background jobs stopped")
            except Exception as e:
                logger.error(f"Error stopping background jobs: {e}")

        logger.info("Closing database connections...")
        await close_database()
        logger.info("✓ Cleanup complete")


def main() -> None:
    """
    Main entry point for the application.
    Sets up logging and runs the async main function; uvicorn handles
    SIGINT and SIGTERM for a graceful shutdown.
    """
    global logger

    try:
        config = get_config()
    except ConfigError as e:
        print(f"CRITICAL ERROR: {e}")
        sys.exit(1)

    logger = setup_logger(
        log_level=config.log_level,
        log_file=config.log_file,
        log_format=config.log_format,
        max_bytes=config.log_max_size,
        backup_count=config.log_backup_count
    )
    logger.info("Logger initialized successfully")

    try:
        asyncio.run(async_main(config))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except Exception as e:
        logger.critical(f"Application failed to start: {e}", exc_info=True)
        sys.exit(1)

    logger.info("Shutdown complete. Goodbye!")


if __name__ == "__main__":
    main()
