# minemanager/routers/network.py
"""Proxy port, server jars and health"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from minemanager.core.config import APP_VERSION
from minemanager.routers.servers import read_json_body, require_fields
from minemanager.services.fleet import FleetManager, get_fleet

router = APIRouter(prefix="/api", tags=["Network"])


@router.get("/health")
async def health(fleet: FleetManager = Depends(get_fleet)):
    servers = fleet.list_servers()
    running = sum(1 for s in servers if s["status"] == "running")
    return JSONResponse({
        "status": "ok",
        "version": APP_VERSION,
        "servers": len(servers),
        "running": running,
        "proxy_running": fleet.proxy.is_running,
    })


@router.get("/bungeecord/port")
async def get_proxy_port(fleet: FleetManager = Depends(get_fleet)):
    return JSONResponse({"port": fleet.get_proxy_port()})


@router.put("/bungeecord/port")
async def set_proxy_port(request: Request, fleet: FleetManager = Depends(get_fleet)):
    body = await read_json_body(request)
    require_fields(body, "port")
    fleet.set_proxy_port(body["port"])
    return JSONResponse({"success": True, "port": fleet.get_proxy_port()})


@router.get("/versions")
async def get_versions(fleet: FleetManager = Depends(get_fleet)):
    return JSONResponse(fleet.version_catalog())


@router.get("/jars")
async def get_jars(fleet: FleetManager = Depends(get_fleet)):
    return JSONResponse(fleet.available_binaries())


@router.get("/build-status")
async def get_build_status(
    server_type: Optional[str] = None,
    version: Optional[str] = None,
    fleet: FleetManager = Depends(get_fleet),
):
    status = fleet.build_status(server_type, version)
    if server_type is not None and version is not None:
        return JSONResponse({"building": status is not None, **(status or {})})
    return JSONResponse(status)
