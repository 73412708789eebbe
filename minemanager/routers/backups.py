# minemanager/routers/backups.py
"""Backup config, history and manual backup routes"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from minemanager.routers.servers import read_json_body
from minemanager.services.fleet import FleetManager, get_fleet

router = APIRouter(prefix="/api/servers/{server_id}/backups", tags=["Backups"])


@router.get("/config")
async def get_backup_config(server_id: str, fleet: FleetManager = Depends(get_fleet)):
    return JSONResponse(fleet.get_backup_config(server_id))


@router.put("/config")
async def set_backup_config(server_id: str, request: Request, fleet: FleetManager = Depends(get_fleet)):
    body = await read_json_body(request)
    return JSONResponse(fleet.set_backup_config(server_id, body))


@router.get("")
async def get_backups(server_id: str, fleet: FleetManager = Depends(get_fleet)):
    return JSONResponse(fleet.get_backups(server_id))


@router.post("")
async def create_backup(server_id: str, fleet: FleetManager = Depends(get_fleet)):
    backup = await fleet.create_backup(server_id)
    return JSONResponse(backup, status_code=201)


@router.delete("/{backup_id}")
async def delete_backup(server_id: str, backup_id: str, fleet: FleetManager = Depends(get_fleet)):
    await fleet.delete_backup(server_id, backup_id)
    return JSONResponse({"success": True})
