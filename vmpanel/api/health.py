import logging
import shutil

from fastapi import APIRouter, Depends, status

from ..core.config import APP_NAME, APP_VERSION
from ..db.health import database_status
from ..deps import get_services
from ..services.container import PanelServices

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])


@router.get("/ping", status_code=status.HTTP_200_OK)
def ping():
    """Basic liveness check."""
    return {"ping": "pong"}


@router.get("/healthz", status_code=status.HTTP_200_OK)
async def healthz(services: PanelServices = Depends(get_services)):
    """Readiness check covering the database and the hypervisor binary."""
    database = await database_status(services.session_factory)
    qemu_path = shutil.which(services.settings.qemu_binary)
    if qemu_path is None:
        logger.warning("Hypervisor binary %s not found on PATH", services.settings.qemu_binary)
    summary = {
        "app_name": APP_NAME,
        "version": APP_VERSION,
        "database": "ok" if database["ok"] else "error",
        "qemu_binary": services.settings.qemu_binary,
        "qemu_available": qemu_path is not None,
        "background_jobs": services.jobs.active,
    }
    if not database["ok"]:
        summary["database_error"] = database.get("error")
        return {"status": "error", "details": summary}
    return {"status": "ok", "details": summary}
