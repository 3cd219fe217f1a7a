import asyncio

from fastapi import APIRouter, Depends, Query, WebSocket

from ...deps import get_services
from ...qemu.errors import VMError, VMNotFoundError, VMNotRunningError
from ...services.console import ConsoleRelay
from ...services.container import PanelServices
from ..common import call_service, logger
from .schemas import KeyComboRequest

router = APIRouter()
ws_router = APIRouter()

WS_CLOSE_BAD_TOKEN = 4401
WS_CLOSE_NOT_FOUND = 4404
WS_CLOSE_NOT_RUNNING = 4409
WS_CLOSE_UNREACHABLE = 1011


@router.get("/{vm_id}/console")
async def console_info(vm_id: int, services: PanelServices = Depends(get_services)):
    info = await call_service(services.vms.console_info(vm_id), action=f"open console of VM {vm_id}")
    return {"success": True, **info}


@router.post("/{vm_id}/console/key")
async def send_key_combo(vm_id: int, body: KeyComboRequest, services: PanelServices = Depends(get_services)):
    combo = body.key.strip().lower()
    await call_service(services.vms.send_key(vm_id, combo), action=f"send {combo} to VM {vm_id}")
    return {"success": True, "key": combo}


@ws_router.websocket("/{vm_id}/console/ws")
async def console_websocket(websocket: WebSocket, vm_id: int, token: str = Query("")):
    services: PanelServices = get_services(websocket)
    session = await services.console_sessions.consume(token, vm_id) if token else None
    if not session:
        await websocket.close(code=WS_CLOSE_BAD_TOKEN, reason="Invalid or expired console token")
        return

    try:
        host, port = await services.vms.console_target(vm_id)
    except VMNotFoundError as exc:
        await websocket.close(code=WS_CLOSE_NOT_FOUND, reason=str(exc))
        return
    except VMNotRunningError as exc:
        await websocket.close(code=WS_CLOSE_NOT_RUNNING, reason=str(exc))
        return
    except VMError as exc:
        logger.error("Console target lookup for VM %s failed: %s", vm_id, exc)
        await websocket.close(code=WS_CLOSE_UNREACHABLE, reason="Console unavailable")
        return

    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError as exc:
        logger.error("Failed to connect to VNC endpoint %s:%s for VM %s: %s", host, port, vm_id, exc)
        await websocket.close(code=WS_CLOSE_UNREACHABLE, reason="Unable to reach VNC endpoint")
        return

    await websocket.accept()
    logger.info("Console relay for VM %s connected to %s:%s", vm_id, host, port)
    relay = ConsoleRelay(
        websocket,
        reader,
        writer,
        read_timeout=services.settings.console_read_timeout,
        label=f"VM {vm_id}",
    )
    await relay.run()


__all__ = ["router", "ws_router"]
