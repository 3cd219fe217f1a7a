from fastapi import APIRouter, Depends

from ...deps import CurrentUser, get_current_user, get_services
from ...services.container import PanelServices
from ..common import call_service, row_to_dict
from .schemas import SnapshotCreateRequest

router = APIRouter()


@router.get("/{vm_id}/snapshots")
async def list_snapshots(vm_id: int, services: PanelServices = Depends(get_services)):
    listing = await call_service(
        services.snapshots.list_snapshots(vm_id), action=f"list snapshots of VM {vm_id}"
    )
    return {
        "success": True,
        "snapshots": [row_to_dict(snapshot) for snapshot in listing["snapshots"]],
        "native_snapshots": listing["native"],
    }


@router.post("/{vm_id}/snapshots", status_code=202)
async def create_snapshot(
    vm_id: int,
    body: SnapshotCreateRequest = SnapshotCreateRequest(),
    services: PanelServices = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    snapshot = await call_service(
        services.snapshots.create_snapshot(
            vm_id,
            name=body.name,
            description=body.description,
            snapshot_type=body.snapshot_type,
            parent_id=body.parent_id,
            created_by=user.id,
        ),
        action=f"snapshot VM {vm_id}",
    )
    return {
        "success": True,
        "snapshot_id": snapshot.id,
        "status": snapshot.status.value,
        "snapshot": row_to_dict(snapshot),
    }


@router.post("/{vm_id}/snapshots/{snapshot_id}/restore")
async def restore_snapshot(vm_id: int, snapshot_id: int, services: PanelServices = Depends(get_services)):
    snapshot = await call_service(
        services.snapshots.restore_snapshot(vm_id, snapshot_id),
        action=f"restore snapshot {snapshot_id} of VM {vm_id}",
    )
    return {"success": True, "snapshot_id": snapshot.id, "name": snapshot.name}


@router.delete("/{vm_id}/snapshots/{snapshot_id}")
async def delete_snapshot(vm_id: int, snapshot_id: int, services: PanelServices = Depends(get_services)):
    await call_service(
        services.snapshots.delete_snapshot(vm_id, snapshot_id),
        action=f"delete snapshot {snapshot_id} of VM {vm_id}",
    )
    return {"success": True, "snapshot_id": snapshot_id}


__all__ = ["router"]
