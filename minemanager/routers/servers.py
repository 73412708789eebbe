# minemanager/routers/servers.py
"""
Server lifecycle routes: create/start/stop/delete, console, logs,
server.properties, memory and the data the in-game plugin reports.
"""

import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from minemanager.core.config import DEFAULT_PROXY_PORT
from minemanager.services.errors import InvalidRequest
from minemanager.services.fleet import FleetManager, get_fleet

router = APIRouter(prefix="/api", tags=["Servers"])


async def read_json_body(request: Request) -> dict:
    """Parse a JSON object body, raising InvalidRequest for anything else"""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequest("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body


def require_fields(body: dict, *names: str):
    missing = [name for name in names if body.get(name) in (None, "")]
    if missing:
        raise InvalidRequest(f"Missing required field(s): {', '.join(missing)}")


@router.get("/servers")
async def list_servers(fleet: FleetManager = Depends(get_fleet)):
    return JSONResponse(fleet.list_servers())


@router.post("/servers")
async def create_server(request: Request, fleet: FleetManager = Depends(get_fleet)):
    body = await read_json_body(request)
    require_fields(body, "name", "type", "version")
    server = await fleet.create_server(
        name=body["name"],
        server_type=body["type"],
        version=str(body["version"]),
        port=body.get("port") or DEFAULT_PROXY_PORT,
        memory=body.get("memory"),
    )
    return JSONResponse(server, status_code=201)


@router.get("/servers/{server_id}")
async def get_server(server_id: str, fleet: FleetManager = Depends(get_fleet)):
    return JSONResponse(fleet.get_server(server_id))


@router.delete("/servers/{server_id}")
async def delete_server(server_id: str, fleet: FleetManager = Depends(get_fleet)):
    await fleet.delete_server(server_id)
    return JSONResponse({"success": True})


@router.post("/servers/{server_id}/start")
async def start_server(server_id: str, fleet: FleetManager = Depends(get_fleet)):
    return JSONResponse(await fleet.start_server(server_id))


@router.post("/servers/{server_id}/stop")
async def stop_server(server_id: str, fleet: FleetManager = Depends(get_fleet)):
    return JSONResponse(await fleet.stop_server(server_id))


@router.post("/servers/{server_id}/command")
async def send_command(server_id: str, request: Request, fleet: FleetManager = Depends(get_fleet)):
    body = await read_json_body(request)
    require_fields(body, "command")
    sent = await fleet.send_command(server_id, str(body["command"]))
    return JSONResponse({"success": True, "sent": sent})


@router.get("/servers/{server_id}/logs")
async def get_logs(server_id: str, fleet: FleetManager = Depends(get_fleet)):
    return JSONResponse({"logs": fleet.get_logs(server_id)})


@router.get("/servers/{server_id}/properties")
async def get_properties(server_id: str, fleet: FleetManager = Depends(get_fleet)):
    return JSONResponse(fleet.get_server_properties(server_id))


@router.put("/servers/{server_id}/properties")
async def set_properties(server_id: str, request: Request, fleet: FleetManager = Depends(get_fleet)):
    body = await read_json_body(request)
    await fleet.set_server_properties(server_id, body)
    return JSONResponse({"success": True})


@router.put("/servers/{server_id}/memory")
async def set_memory(server_id: str, request: Request, fleet: FleetManager = Depends(get_fleet)):
    body = await read_json_body(request)
    require_fields(body, "memory")
    await fleet.set_server_memory(server_id, body["memory"])
    return JSONResponse({"success": True})


# Reported by the in-game plugin


@router.post("/servers/{server_id}/players")
async def update_players(server_id: str, request: Request, fleet: FleetManager = Depends(get_fleet)):
    body = await read_json_body(request)
    positions = body.get("players") or []
    if not isinstance(positions, list):
        raise InvalidRequest("players must be a list")
    await fleet.update_player_positions(server_id, positions)
    return JSONResponse({"success": True})


@router.post("/servers/{server_id}/metrics")
async def update_metrics(server_id: str, request: Request, fleet: FleetManager = Depends(get_fleet)):
    body = await read_json_body(request)
    await fleet.apply_metrics(server_id, body)
    return JSONResponse({"success": True})
