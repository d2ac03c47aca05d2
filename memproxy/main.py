"""memproxy FastAPI application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from memproxy import config
from memproxy.context import AppContext
from memproxy.observability import initialize as initialize_observability, shutdown as shutdown_observability
from memproxy.proxy.router import proxy_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("memproxy")


async def _maintenance_loop(ctx: AppContext) -> None:
    while True:
        await asyncio.sleep(config.MAINTENANCE_INTERVAL_SECONDS)
        try:
            await ctx.run_maintenance()
        except Exception:
            logger.exception("Maintenance sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("memproxy starting up on %s:%s", config.HOST, config.PORT)
    initialize_observability(app)

    ctx = await AppContext.create()
    app.state.ctx = ctx

    # first sweep right away so tasks queued by a previous run get synced
    await ctx.run_maintenance()
    app.state.maintenance_task = asyncio.create_task(_maintenance_loop(ctx))

    if config.SCANNER_ENABLED:
        await ctx.scanner.start()

    yield

    logger.info("memproxy shutting down")
    app.state.maintenance_task.cancel()
    try:
        await app.state.maintenance_task
    except asyncio.CancelledError:
        pass

    await ctx.shutdown()
    shutdown_observability(app)


app = FastAPI(
    title="memproxy",
    description="Recording proxy for coding-agent traffic",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(proxy_router)


def run() -> None:
    uvicorn.run("memproxy.main:app", host=config.HOST, port=config.PORT, log_level="info")


if __name__ == "__main__":
    run()
