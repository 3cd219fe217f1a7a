from fastapi import APIRouter, Depends

from ...deps import get_services
from ...qemu.host import list_bridges, list_physical_disks
from ...services.container import PanelServices

router = APIRouter()


@router.get("/disks")
async def physical_disks(services: PanelServices = Depends(get_services)):
    """Block devices that can be passed through to a guest."""
    return {"success": True, "disks": await list_physical_disks(services.runner)}


@router.get("/bridges")
async def bridges(services: PanelServices = Depends(get_services)):
    return {"success": True, "bridges": await list_bridges(services.runner)}


__all__ = ["router"]
