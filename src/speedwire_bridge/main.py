"""FastAPI application for the Speedwire bridge."""

import argparse
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from speedwire_bridge.backends import create_backend
from speedwire_bridge.config import load_config
from speedwire_bridge.frontends import create_frontend

logger = logging.getLogger("speedwire_bridge")

# Module-level config path, set before app creation
_config_path: str = "/data/speedwire-bridge/config.yaml"


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = load_config(_config_path)

    backend_type = config.backend.type
    backend_conf = config.backend.speedwire.model_dump()
    backend = create_backend(backend_type, backend_conf)

    # Claim the bus name before listening, a name conflict must abort startup
    frontend_type = config.frontend.type
    frontend_conf = config.frontend.victron.model_dump()
    frontend = create_frontend(frontend_type, backend, frontend_conf)
    logger.info("Starting frontend (%s)...", frontend_type)
    await frontend.start()
    app.include_router(frontend.get_router())
    logger.info("Frontend started")

    logger.info("Starting backend (%s)...", backend_type)
    try:
        await backend.start()
    except Exception:
        await frontend.stop()
        raise
    logger.info("Backend started")

    logger.info(
        "Speedwire bridge ready: frontend=%s, backend=%s",
        frontend_type,
        backend_type,
    )

    yield

    # Shutdown
    await backend.stop()
    await frontend.stop()


app = FastAPI(title="Speedwire Bridge", lifespan=lifespan)


def run() -> None:
    """CLI entry point."""
    global _config_path

    parser = argparse.ArgumentParser(description="SMA Speedwire to Victron D-Bus bridge")
    parser.add_argument(
        "-c",
        "--config",
        default=_config_path,
        help="Path to config YAML file (optional, defaults apply if missing)",
    )
    args = parser.parse_args()

    _config_path = args.config
    config = load_config(_config_path)

    logging.basicConfig(
        level=config.logging.level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        lifespan="on",
        log_level=config.logging.level.lower(),
    )
