from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from .config import get_settings
from .relay.hub import Relay


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

relay: Relay | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Lifespan context manager for startup/shutdown."""
    global relay

    # Startup: serve subscribers and connect upstream
    relay = Relay(settings)
    await relay.start()

    yield

    # Shutdown: no reconnect after this point
    if relay:
        await relay.stop()


app = FastAPI(
    title="Alpaca WebSocket Relay",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health() -> dict[str, Any]:
    if relay is None:
        return {"status": "starting"}
    return {"status": "ok", **relay.status()}


@app.get("/", response_class=PlainTextResponse)
async def root() -> str:
    return "Alpaca WebSocket Proxy Server is running"


def run() -> None:
    """Run the health API; the relay itself starts in the lifespan."""
    uvicorn.run(app, host=settings.host, port=settings.health_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
