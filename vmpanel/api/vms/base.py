from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from ...deps import CurrentUser, get_current_user, get_services
from ...services.container import PanelServices
from ..common import call_service, logger, row_to_dict
from .schemas import SaveAsTemplateRequest, StopRequest, VMCreateRequest, VMUpdateRequest

router = APIRouter()


def serialize_vm(vm) -> Dict[str, Any]:
    return row_to_dict(vm)


@router.get("")
async def list_vms(services: PanelServices = Depends(get_services)):
    vms = await call_service(services.vms.list_vms(), action="list VMs")
    logger.info("Listed %d VMs", len(vms))
    return {"success": True, "vms": [serialize_vm(vm) for vm in vms]}


@router.post("", status_code=201)
async def create_vm(
    body: VMCreateRequest,
    services: PanelServices = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    vm = await call_service(
        services.vms.create_vm(body.to_fields(), created_by=user.id),
        action=f"create VM {body.name}",
    )
    return {"success": True, "id": vm.id, "vm": serialize_vm(vm)}


@router.get("/{vm_id}")
async def get_vm(vm_id: int, services: PanelServices = Depends(get_services)):
    vm = await call_service(services.vms.get_vm(vm_id), action=f"load VM {vm_id}")
    return {"success": True, "vm": serialize_vm(vm)}


@router.put("/{vm_id}")
async def update_vm(vm_id: int, body: VMUpdateRequest, services: PanelServices = Depends(get_services)):
    vm = await call_service(services.vms.update_vm(vm_id, body.to_changes()), action=f"update VM {vm_id}")
    return {"success": True, "vm": serialize_vm(vm)}


@router.delete("/{vm_id}")
async def delete_vm(vm_id: int, services: PanelServices = Depends(get_services)):
    await call_service(services.vms.delete_vm(vm_id), action=f"delete VM {vm_id}")
    return {"success": True, "id": vm_id}


# ----------------------------------------------------------------------
# Power actions
# ----------------------------------------------------------------------
@router.post("/{vm_id}/start")
async def start_vm(vm_id: int, services: PanelServices = Depends(get_services)):
    vm = await call_service(services.vms.start(vm_id), action=f"start VM {vm_id}")
    return {"success": True, "status": vm.status.value, "pid": vm.pid}


@router.post("/{vm_id}/stop")
async def stop_vm(
    vm_id: int,
    body: Optional[StopRequest] = None,
    force: bool = Query(False, description="Send SIGKILL instead of SIGTERM"),
    services: PanelServices = Depends(get_services),
):
    """Stop a VM; ``force`` may come from the JSON body or the query string."""

    force = force or (body is not None and body.force)
    vm = await call_service(services.vms.stop(vm_id, force=force), action=f"stop VM {vm_id}")
    return {"success": True, "status": vm.status.value, "pid": vm.pid}


@router.post("/{vm_id}/restart")
async def restart_vm(vm_id: int, services: PanelServices = Depends(get_services)):
    vm = await call_service(services.vms.restart(vm_id), action=f"restart VM {vm_id}")
    return {"success": True, "status": vm.status.value, "pid": vm.pid}


@router.get("/{vm_id}/status")
async def vm_status(vm_id: int, services: PanelServices = Depends(get_services)):
    vm = await call_service(services.vms.refresh_status(vm_id), action=f"check VM {vm_id}")
    return {
        "success": True,
        "id": vm.id,
        "status": vm.status.value,
        "pid": vm.pid,
        "last_started_at": vm.last_started_at.isoformat() if vm.last_started_at else None,
    }


@router.get("/{vm_id}/logs")
async def vm_logs(
    vm_id: int,
    lines: int = Query(100, ge=1, le=10000),
    services: PanelServices = Depends(get_services),
):
    logs = await call_service(services.vms.read_logs(vm_id, lines), action=f"read logs of VM {vm_id}")
    return {"success": True, "logs": logs}


@router.get("/{vm_id}/spice")
async def download_spice_file(vm_id: int, services: PanelServices = Depends(get_services)):
    filename, content = await call_service(
        services.vms.spice_connection_file(vm_id), action=f"render SPICE file for VM {vm_id}"
    )
    safe_filename = filename.replace('"', "")
    return Response(
        content=content,
        media_type="application/x-virt-viewer",
        headers={"Content-Disposition": f'attachment; filename="{safe_filename}"'},
    )


@router.post("/{vm_id}/save-as-template", status_code=201)
async def save_as_template(
    vm_id: int,
    body: SaveAsTemplateRequest,
    services: PanelServices = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    template = await call_service(
        services.templates.save_from_vm(
            vm_id,
            name=body.name.strip(),
            description=body.description,
            include_disk=body.include_disk,
            is_public=body.is_public,
            created_by=user.id,
        ),
        action=f"save VM {vm_id} as a template",
    )
    return {"success": True, "template_id": template.id, "template": row_to_dict(template)}


__all__ = ["router", "serialize_vm"]
