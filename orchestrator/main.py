"""Orchestrator entry point - runs the scheduler loop without the webhook server."""
import asyncio
import logging
import sys

from database.db import db
from orchestrator.config import Config
from orchestrator.container import ServiceContainer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("orchestrator.log"),
    ],
)
logger = logging.getLogger(__name__)


class Orchestrator:
    """Owns the database connection, the service container and the scheduler task."""

    def __init__(self, config: Config):
        self.config = config
        self.container: ServiceContainer | None = None
        self._scheduler_task: asyncio.Task | None = None
        self._running = False

    async def initialize(self):
        logger.info("=" * 70)
        logger.info("SMS ORCHESTRATOR - INITIALIZING")
        logger.info("=" * 70)

        try:
            await db.connect()
            if self.config.is_production:
                await db.require_schema()
            else:
                await db.create_tables()
            logger.info("Database initialized")

            self.container = await ServiceContainer.create(self.config)
            await self.container.start()
            logger.info("Services initialized")
        except Exception as e:
            logger.error(f"Failed to initialize orchestrator: {e}", exc_info=True)
            raise

    async def start(self):
        if self._running:
            logger.warning("Orchestrator is already running")
            return
        self._running = True
        self._scheduler_task = asyncio.create_task(self.container.scheduler.run_forever())
        logger.info(f"Mode: {'Production (SMS bridge)' if self.config.is_production else 'Development (virtual phone)'}")
        logger.info(f"System phone: {self.config.system_phone}")
        logger.info("ORCHESTRATOR IS RUNNING")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        logger.info("Stopping orchestrator...")
        try:
            if self.container:
                await self.container.cleanup()
            if self._scheduler_task:
                self._scheduler_task.cancel()
                try:
                    await self._scheduler_task
                except asyncio.CancelledError:
                    pass
                self._scheduler_task = None
            await db.disconnect()
            logger.info("Orchestrator stopped")
        except Exception as e:
            logger.error(f"Error stopping orchestrator: {e}", exc_info=True)
            raise

    async def run(self):
        await self.start()
        try:
            await self._scheduler_task
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()


async def main():
    try:
        config = Config.from_env()
        logger.info("Configuration loaded")

        orchestrator = Orchestrator(config)
        await orchestrator.initialize()
        await orchestrator.run()
    except KeyboardInterrupt:
        logger.info("Orchestrator stopped by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Orchestrator stopped by user")
