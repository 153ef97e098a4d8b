import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from crossregion.api.endpoints import probe
from crossregion.services.probe_loop import ProbeLoop


def create_app(probe_loop: Optional[ProbeLoop] = None) -> FastAPI:
    """Builds the agent app; the probe loop, if any, runs for the app's lifetime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop_event = asyncio.Event()
        task = None
        if probe_loop is not None:
            task = asyncio.create_task(probe_loop.run(stop_event))
        try:
            yield
        finally:
            stop_event.set()
            if task is not None:
                try:
                    await task
                except Exception:
                    logging.exception("Probe loop ended with an error")

    # Create the FastAPI application instance.
    app = FastAPI(lifespan=lifespan)
    app.state.probe_loop = probe_loop

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    app.include_router(probe.router)
    return app
