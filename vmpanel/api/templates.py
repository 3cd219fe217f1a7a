from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, model_validator

from ..db.models import DisplayType, FirmwareType, NetworkMode
from ..deps import CurrentUser, get_current_user, get_services, require_admin
from ..services.container import PanelServices
from .common import call_service, row_to_dict
from .vms.base import serialize_vm

router = APIRouter(prefix="/templates", tags=["Templates"], dependencies=[Depends(get_current_user)])


class TemplateCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    cpu_cores: int = Field(1, ge=1, le=512)
    ram_mb: int = Field(1024, ge=64)
    cpu_type: str = "host"
    disk_size_gb: int = Field(20, ge=0)
    disk_format: str = "qcow2"
    network_mode: NetworkMode = NetworkMode.NAT
    display_type: DisplayType = DisplayType.DEFAULT
    firmware_type: FirmwareType = FirmwareType.BIOS
    os_type: str = ""
    os_version: str = ""
    disk_path: str = ""
    cloud_init_enabled: bool = False
    cloud_init_user_data: str = ""
    cloud_init_meta_data: str = ""
    cloud_init_network_config: str = ""
    is_public: bool = False

    @model_validator(mode="after")
    def _check_template(self) -> "TemplateCreateRequest":
        self.name = self.name.strip()
        if not self.name:
            raise ValueError("name is required")
        if self.disk_format not in {"qcow2", "raw"}:
            raise ValueError("disk_format must be 'qcow2' or 'raw'")
        return self


class TemplateUpdateRequest(BaseModel):
    """Partial template update; only the fields present in the request are applied."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    cpu_cores: Optional[int] = Field(None, ge=1, le=512)
    ram_mb: Optional[int] = Field(None, ge=64)
    cpu_type: Optional[str] = None
    disk_size_gb: Optional[int] = Field(None, ge=0)
    network_mode: Optional[NetworkMode] = None
    display_type: Optional[DisplayType] = None
    firmware_type: Optional[FirmwareType] = None
    os_type: Optional[str] = None
    os_version: Optional[str] = None
    cloud_init_enabled: Optional[bool] = None
    cloud_init_user_data: Optional[str] = None
    cloud_init_meta_data: Optional[str] = None
    cloud_init_network_config: Optional[str] = None
    is_public: Optional[bool] = None

    def to_changes(self) -> Dict[str, Any]:
        return {key: value for key, value in self.model_dump(exclude_unset=True).items() if value is not None}


class InstantiateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=63)
    description: str = ""
    cpu_cores: int = 0
    ram_mb: int = 0
    disk_size_gb: int = 0
    iso_path: str = ""
    cloud_init_hostname: str = ""
    cloud_init_username: str = ""
    cloud_init_password: str = ""
    cloud_init_ssh_keys: str = ""


@router.get("")
async def list_templates(services: PanelServices = Depends(get_services)):
    templates = await call_service(services.templates.list_templates(), action="list templates")
    return {"success": True, "templates": [row_to_dict(template) for template in templates]}


@router.get("/predefined")
async def predefined_templates(services: PanelServices = Depends(get_services)):
    return {"success": True, "templates": services.templates.predefined()}


@router.post("", status_code=201)
async def create_template(
    body: TemplateCreateRequest,
    services: PanelServices = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    template = await call_service(
        services.templates.create_template(body.model_dump(), created_by=user.id),
        action=f"create template {body.name}",
    )
    return {"success": True, "id": template.id, "template": row_to_dict(template)}


@router.get("/{template_id}")
async def get_template(template_id: int, services: PanelServices = Depends(get_services)):
    template = await call_service(
        services.templates.get_template(template_id), action=f"load template {template_id}"
    )
    return {"success": True, "template": row_to_dict(template)}


@router.put("/{template_id}")
async def update_template(
    template_id: int,
    body: TemplateUpdateRequest,
    services: PanelServices = Depends(get_services),
):
    template = await call_service(
        services.templates.update_template(template_id, body.to_changes()),
        action=f"update template {template_id}",
    )
    return {"success": True, "template": row_to_dict(template)}


@router.delete("/{template_id}")
async def delete_template(
    template_id: int,
    services: PanelServices = Depends(get_services),
    _admin: CurrentUser = Depends(require_admin),
):
    await call_service(services.templates.delete_template(template_id), action=f"delete template {template_id}")
    return {"success": True, "id": template_id}


@router.post("/{template_id}/instantiate", status_code=201)
async def instantiate_template(
    template_id: int,
    body: InstantiateRequest,
    services: PanelServices = Depends(get_services),
    user: CurrentUser = Depends(get_current_user),
):
    vm = await call_service(
        services.templates.instantiate(template_id, body.model_dump(), created_by=user.id),
        action=f"instantiate template {template_id}",
    )
    return {"success": True, "vm_id": vm.id, "vm": serialize_vm(vm)}


__all__ = ["router"]
