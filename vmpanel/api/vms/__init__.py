from fastapi import APIRouter, Depends

from ...deps import get_current_user
from . import backups, base, console, host, isos, snapshots

# Sub-routers are mounted with the "/vms" prefix themselves; the list and
# create routes use an empty path, which FastAPI only accepts under a prefix.
VMS_PREFIX = "/vms"

router = APIRouter(tags=["VMs"])
_authenticated = [Depends(get_current_user)]

# Static paths first so "/isos" or "/disks" never reach the "/{vm_id}" routes.
router.include_router(host.router, prefix=VMS_PREFIX, dependencies=_authenticated)
router.include_router(isos.router, prefix=VMS_PREFIX, dependencies=_authenticated, tags=["ISOs"])
router.include_router(backups.router, prefix=VMS_PREFIX, dependencies=_authenticated, tags=["Backups"])
router.include_router(snapshots.router, prefix=VMS_PREFIX, dependencies=_authenticated, tags=["Snapshots"])
router.include_router(console.router, prefix=VMS_PREFIX, dependencies=_authenticated, tags=["Console"])
router.include_router(console.ws_router, prefix=VMS_PREFIX, tags=["Console"])
router.include_router(base.router, prefix=VMS_PREFIX, dependencies=_authenticated)

__all__ = ["router"]
