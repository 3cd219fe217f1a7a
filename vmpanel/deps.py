import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from starlette.requests import HTTPConnection

from .services.container import PanelServices

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    id: int
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_services(connection: HTTPConnection) -> PanelServices:
    services: Optional[PanelServices] = getattr(connection.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Panel services are not initialised")
    return services


def get_current_user(connection: HTTPConnection) -> CurrentUser:
    """Resolve the signed-in user from the cookie session written by the login flow."""

    session = connection.scope.get("session") or {}
    user_id = session.get("user_id")
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    try:
        return CurrentUser(id=int(user_id), role=str(session.get("role") or "user"))
    except (TypeError, ValueError):
        logger.warning("Discarding malformed session user id %r", user_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator role required")
    return user


__all__ = ["CurrentUser", "get_current_user", "get_services", "require_admin"]
