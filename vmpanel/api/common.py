import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Dict, Iterable, Tuple, Type, TypeVar

from fastapi import HTTPException
from sqlalchemy import inspect

from ..qemu.errors import (
    BackupNotFoundError,
    CloudInitError,
    ImageToolError,
    InvalidVMConfigError,
    ISONotFoundError,
    PortExhaustedError,
    QMPError,
    SnapshotNotFoundError,
    TemplateExistsError,
    TemplateNotFoundError,
    VMError,
    VMExistsError,
    VMLaunchError,
    VMNotFoundError,
    VMNotRunningError,
    VMRunningError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ERROR_STATUS: Tuple[Tuple[Type[VMError], int], ...] = (
    (VMNotFoundError, 404),
    (BackupNotFoundError, 404),
    (SnapshotNotFoundError, 404),
    (TemplateNotFoundError, 404),
    (ISONotFoundError, 404),
    (VMExistsError, 409),
    (TemplateExistsError, 409),
    (VMRunningError, 409),
    (VMNotRunningError, 409),
    (InvalidVMConfigError, 400),
    (PortExhaustedError, 503),
    (VMLaunchError, 500),
    (ImageToolError, 500),
    (CloudInitError, 500),
    (QMPError, 500),
)


def status_for(exc: VMError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def to_http_error(exc: VMError) -> HTTPException:
    return HTTPException(status_code=status_for(exc), detail=str(exc))


async def call_service(operation: Awaitable[T], *, action: str) -> T:
    """Await a service call, translating domain errors into HTTP errors."""

    try:
        return await operation
    except HTTPException:
        raise
    except VMError as exc:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("Failed to %s: %s", action, exc)
        raise HTTPException(status_code=status_code, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Failed to %s: %s", action, exc)
        raise HTTPException(status_code=500, detail=f"Failed to {action}") from exc


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def row_to_dict(row: Any, *, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    """Serialize an ORM row's column attributes into JSON-friendly values."""

    skipped = set(exclude)
    return {
        attr.key: _plain(getattr(row, attr.key))
        for attr in inspect(row).mapper.column_attrs
        if attr.key not in skipped
    }


__all__ = [
    "ERROR_STATUS",
    "call_service",
    "logger",
    "row_to_dict",
    "status_for",
    "to_http_error",
]
