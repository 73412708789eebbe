# minemanager/routers/events.py
"""Dashboard push channel over WebSocket"""

import asyncio

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from minemanager.services.fleet import FleetManager, get_fleet

router = APIRouter(tags=["Events"])

HEARTBEAT_SEC = 30.0


@router.websocket("/ws/dashboard")
async def dashboard_events(websocket: WebSocket, fleet: FleetManager = Depends(get_fleet)):
    """Stream servers/log/build_progress events as they happen"""
    await websocket.accept()

    event_queue = asyncio.Queue()

    async def on_event(event: dict):
        await event_queue.put(event)

    # Subscribe FIRST so nothing is missed while the snapshot is sent
    fleet.subscribe(on_event)

    try:
        await websocket.send_json({"type": "servers", "servers": fleet.list_servers()})

        while True:
            try:
                event = await asyncio.wait_for(event_queue.get(), timeout=HEARTBEAT_SEC)
                await websocket.send_json(event)
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "heartbeat"})

    except WebSocketDisconnect:
        pass
    finally:
        fleet.unsubscribe(on_event)
