from fastapi import APIRouter, Depends, File, Form, UploadFile

from ...deps import CurrentUser, get_current_user, get_services, require_admin
from ...services.container import PanelServices
from ...services.isos import describe_iso
from ..common import call_service
from .schemas import ISODownloadRequest

router = APIRouter(prefix="/isos")


@router.get("")
async def list_isos(services: PanelServices = Depends(get_services)):
    isos = await call_service(services.isos.list_isos(), action="list ISOs")
    return {"success": True, "isos": isos}


@router.get("/predefined")
async def predefined_isos(services: PanelServices = Depends(get_services)):
    return {"success": True, "isos": services.isos.predefined()}


@router.post("", status_code=201)
async def upload_iso(
    file: UploadFile = File(...),
    os_type: str = Form(""),
    os_version: str = Form(""),
    description: str = Form(""),
    services: PanelServices = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    try:
        iso = await call_service(
            services.isos.upload(
                file.filename or "",
                file.file,
                os_type=os_type,
                os_version=os_version,
                description=description,
                created_by=user.id,
            ),
            action=f"upload ISO {file.filename}",
        )
    finally:
        await file.close()
    return {"success": True, "iso_id": iso.id, "iso": describe_iso(iso)}


@router.post("/download", status_code=202)
async def download_iso(
    body: ISODownloadRequest,
    services: PanelServices = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    iso = await call_service(
        services.isos.start_download(
            body.url.strip(),
            filename=(body.filename or "").strip(),
            os_type=body.os_type,
            os_version=body.os_version,
            description=body.description,
            created_by=user.id,
        ),
        action=f"download {body.url}",
    )
    return {"success": True, "iso_id": iso.id, "status": iso.download_status.value, "filename": iso.filename}


@router.get("/{iso_id}/progress")
async def download_progress(iso_id: int, services: PanelServices = Depends(get_services)):
    progress = await call_service(services.isos.progress(iso_id), action=f"read progress of ISO {iso_id}")
    return {"success": True, **progress}


@router.delete("/{iso_id}")
async def delete_iso(
    iso_id: int,
    services: PanelServices = Depends(get_services),
    _admin: CurrentUser = Depends(require_admin),
):
    await call_service(services.isos.delete_iso(iso_id), action=f"delete ISO {iso_id}")
    return {"success": True, "iso_id": iso_id}


__all__ = ["router"]
