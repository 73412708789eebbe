# minemanager/routers/portals.py
"""Portal CRUD. The list endpoint is also polled by the in-game plugin."""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from minemanager.routers.servers import read_json_body
from minemanager.services.fleet import FleetManager, get_fleet

router = APIRouter(prefix="/api/portals", tags=["Portals"])


@router.get("")
async def list_portals(server_id: Optional[str] = None, fleet: FleetManager = Depends(get_fleet)):
    return JSONResponse(fleet.get_portals(server_id))


@router.post("")
async def create_portal(request: Request, fleet: FleetManager = Depends(get_fleet)):
    body = await read_json_body(request)
    return JSONResponse(fleet.create_portal(body), status_code=201)


@router.put("/{portal_id}")
async def update_portal(portal_id: str, request: Request, fleet: FleetManager = Depends(get_fleet)):
    body = await read_json_body(request)
    return JSONResponse(fleet.update_portal(portal_id, body))


@router.delete("/{portal_id}")
async def delete_portal(portal_id: str, fleet: FleetManager = Depends(get_fleet)):
    fleet.delete_portal(portal_id)
    return JSONResponse({"success": True})
