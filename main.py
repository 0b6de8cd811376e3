"""Main application entry point for the chain indexer"""

import asyncio
import signal
import sys
from typing import Optional

import structlog
import uvicorn
from dotenv import load_dotenv

from chain_indexer.abi import AbiRepository, InterfaceCache, InterfaceResolver, ProxyImplementationCache
from chain_indexer.api.app import create_app
from chain_indexer.chains.connector import ChainConnector
from chain_indexer.config.models import Settings
from chain_indexer.database import CheckpointStore, DatabaseManager
from chain_indexer.detectors.log_decoder import LogDecoder
from chain_indexer.monitors.block_processor import BlockProcessor
from chain_indexer.monitors.sync_loop import SyncLoop
from chain_indexer.services.balance_refresher import BalanceRefresher
from chain_indexer.utils.logging import setup_logging

# Load environment variables
load_dotenv()

logger = structlog.get_logger()


class Application:
    """Main application orchestrator"""

    def __init__(self):
        """Initialize application components"""
        self.settings: Optional[Settings] = None
        self.db_manager: Optional[DatabaseManager] = None
        self.chain_connector: Optional[ChainConnector] = None
        self.sync_loop: Optional[SyncLoop] = None

        # FastAPI app
        self.app = None

        # Shutdown flag
        self._shutdown_event = asyncio.Event()

        self._logger = logger.bind(component="application")

    async def initialize(self) -> None:
        """Initialize all application components"""
        try:
            self.settings = Settings()
            setup_logging(self.settings.log_level)
            self._logger.info("application_initializing")

            self._logger.info(
                "settings_loaded",
                log_level=self.settings.log_level.upper(),
                chain=self.settings.chain_name,
                chain_id=self.settings.chain_id,
                database_url=self.settings.database_url.split("@")[-1] if "@" in self.settings.database_url else "***",
            )

            # Initialize database manager
            self._logger.info("initializing_database")
            self.db_manager = DatabaseManager(self.settings.database_url)
            await self.db_manager.connect()
            await self.db_manager.initialize_schema()
            self._logger.info("database_initialized")

            chain_config = self.settings.get_chain_config()
            self.chain_connector = ChainConnector(chain_config)

            resolver = InterfaceResolver(
                abi_repository=AbiRepository(self.settings.abi_dir),
                chain_connector=self.chain_connector,
                interface_cache=InterfaceCache(),
                implementation_cache=ProxyImplementationCache(
                    ttl_seconds=self.settings.proxy_cache_ttl_seconds
                ),
            )
            block_processor = BlockProcessor(
                chain_connector=self.chain_connector,
                database_manager=self.db_manager,
                interface_resolver=resolver,
                log_decoder=LogDecoder(),
                balance_refresher=BalanceRefresher(
                    chain_connector=self.chain_connector,
                    database_manager=self.db_manager,
                    chain_id=chain_config.chain_id,
                ),
                chain_id=chain_config.chain_id,
            )
            self.sync_loop = SyncLoop(
                chain_connector=self.chain_connector,
                block_processor=block_processor,
                checkpoint_store=CheckpointStore(self.db_manager),
                chain_config=chain_config,
            )

            self.app = create_app(
                settings=self.settings,
                db_manager=self.db_manager,
                sync_loop=self.sync_loop,
            )

            self._logger.info("application_initialized")

        except Exception as e:
            self._logger.error(
                "application_initialization_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

    async def start(self) -> None:
        """Start the sync loop"""
        self._logger.info("application_starting")
        await self.sync_loop.start()
        self._logger.info("application_started")

    async def stop(self) -> None:
        """Stop all application components gracefully"""
        self._logger.info("application_stopping")

        try:
            # The loop finishes its current block before returning
            if self.sync_loop and self.sync_loop.task is not None:
                self._logger.info("stopping_sync_loop")
                await self.sync_loop.stop()

            if self.db_manager:
                self._logger.info("closing_database_connection")
                await self.db_manager.disconnect()

            self._logger.info("application_stopped")

        except Exception as e:
            self._logger.error(
                "application_stop_error",
                error=str(e),
                error_type=type(e).__name__,
            )

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown"""
        def signal_handler(signum, frame):
            """Handle shutdown signals"""
            signal_name = signal.Signals(signum).name
            self._logger.info(
                "shutdown_signal_received",
                signal=signal_name,
            )
            self._shutdown_event.set()

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

        self._logger.info("signal_handlers_registered")

    async def wait_for_shutdown(self) -> None:
        """Wait for a shutdown signal or for the sync loop to exit on its own"""
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())
        waiters = {shutdown_task}
        if self.sync_loop and self.sync_loop.task is not None:
            waiters.add(self.sync_loop.task)

        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        if not shutdown_task.done():
            shutdown_task.cancel()

    @property
    def failed(self) -> bool:
        return self.sync_loop is not None and self.sync_loop.fatal_error is not None


async def main() -> int:
    """Main application entry point"""
    app = Application()

    try:
        await app.initialize()
        app.setup_signal_handlers()
        await app.start()

        config = uvicorn.Config(
            app.app,
            host=app.settings.api_host,
            port=app.settings.api_port,
            log_level=app.settings.log_level.lower(),
            access_log=False,
        )
        server = uvicorn.Server(config)
        server_task = asyncio.create_task(server.serve())

        logger.info(
            "uvicorn_server_started",
            host=app.settings.api_host,
            port=app.settings.api_port,
        )

        await app.wait_for_shutdown()

        logger.info("shutting_down_uvicorn_server")
        server.should_exit = True
        await server_task

        await app.stop()

        if app.failed:
            logger.critical(
                "application_stopped_on_fatal_error",
                error=str(app.sync_loop.fatal_error),
            )
            return 1

        logger.info("application_shutdown_complete")
        return 0

    except Exception as e:
        logger.error(
            "application_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        await app.stop()
        return 1


if __name__ == "__main__":
    """Run the application"""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("application_terminated")
