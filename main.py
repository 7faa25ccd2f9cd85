"""
Kiniro entry point
Wires the resilience layer, maintenance scheduler and HTTP server
"""

import asyncio
import sys

import uvicorn
from loguru import logger

from kiniro.api.app import create_app
from kiniro.datasource.catalog import CatalogSource
from kiniro.datastore.engine import Database
from kiniro.services.client import UpstreamClient
from kiniro.services.layer import ResilienceLayer
from kiniro.services.scheduler import MaintenanceScheduler
from kiniro.settings import global_settings


async def main(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Main function"""
    logger.remove()
    logger.add(sys.stderr, level=global_settings.log_level)
    logger.info("Starting Kiniro...")

    database = Database()
    client = UpstreamClient(default_timeout=global_settings.upstream_timeout)
    layer: ResilienceLayer | None = None
    scheduler: MaintenanceScheduler | None = None

    try:
        logger.info("Initializing database...")
        await database.init()

        layer = ResilienceLayer.from_settings(global_settings, database=database)
        scheduler = MaintenanceScheduler(layer)
        scheduler.start()

        # Initial verdicts so the first requests do not wait on probes
        await scheduler.run_now()

        app = create_app(layer, CatalogSource(client))
        server = uvicorn.Server(uvicorn.Config(app, host=host, port=port))
        logger.info(f"Kiniro is serving on {host}:{port}")
        await server.serve()

    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        if scheduler and scheduler.is_running():
            logger.info("Stopping maintenance scheduler...")
            scheduler.stop()

        if layer:
            await layer.close()
        await client.close()

        logger.info("Closing database connections...")
        await database.close()

        logger.info("Kiniro stopped")


if __name__ == "__main__":
    asyncio.run(main())
