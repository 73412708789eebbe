from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from minemanager.core.config import APP_VERSION, DATA_DIR
from minemanager.services.errors import FleetError


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup/shutdown."""
    from minemanager.services import fleet

    await fleet.start_fleet()
    print(f"Fleet loaded from {DATA_DIR}, backup scheduler started")

    yield

    await fleet.stop_fleet()
    print("App shutting down")


def create_app():
    """FastAPI application factory."""
    app = FastAPI(
        title="MineManager",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    @app.exception_handler(FleetError)
    async def fleet_error_handler(request: Request, exc: FleetError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    from minemanager.routers import backups, events, network, portals, servers

    app.include_router(servers.router, tags=["Servers"])
    app.include_router(backups.router, tags=["Backups"])
    app.include_router(portals.router, tags=["Portals"])
    app.include_router(network.router, tags=["Network"])
    app.include_router(events.router, tags=["Events"])

    return app
