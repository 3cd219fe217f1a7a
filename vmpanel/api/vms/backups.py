from fastapi import APIRouter, Depends

from ...deps import CurrentUser, get_current_user, get_services
from ...services.container import PanelServices
from ..common import call_service, row_to_dict
from .schemas import BackupCreateRequest

router = APIRouter()


@router.get("/{vm_id}/backups")
async def list_backups(vm_id: int, services: PanelServices = Depends(get_services)):
    backups = await call_service(services.backups.list_backups(vm_id), action=f"list backups of VM {vm_id}")
    return {"success": True, "backups": [row_to_dict(backup) for backup in backups]}


@router.post("/{vm_id}/backups", status_code=202)
async def create_backup(
    vm_id: int,
    body: BackupCreateRequest = BackupCreateRequest(),
    services: PanelServices = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    backup = await call_service(
        services.backups.create_backup(vm_id, notes=body.notes, created_by=user.id),
        action=f"back up VM {vm_id}",
    )
    return {
        "success": True,
        "backup_id": backup.id,
        "status": backup.status.value,
        "backup": row_to_dict(backup),
    }


@router.get("/backups/{backup_id}/status")
async def backup_status(backup_id: int, services: PanelServices = Depends(get_services)):
    backup = await call_service(services.backups.get_backup(backup_id), action=f"load backup {backup_id}")
    return {
        "success": True,
        "backup_id": backup.id,
        "status": backup.status.value,
        "backup_size": backup.backup_size,
        "error_message": backup.error_message,
        "completed_at": backup.completed_at.isoformat() if backup.completed_at else None,
    }


@router.post("/backups/{backup_id}/restore", status_code=202)
async def restore_backup(backup_id: int, services: PanelServices = Depends(get_services)):
    backup = await call_service(
        services.backups.restore_backup(backup_id), action=f"restore backup {backup_id}"
    )
    return {"success": True, "backup_id": backup.id, "status": backup.status.value}


@router.delete("/backups/{backup_id}")
async def delete_backup(backup_id: int, services: PanelServices = Depends(get_services)):
    await call_service(services.backups.delete_backup(backup_id), action=f"delete backup {backup_id}")
    return {"success": True, "backup_id": backup_id}


__all__ = ["router"]
