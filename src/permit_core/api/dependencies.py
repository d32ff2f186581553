"""FastAPI dependencies: database sessions, caller identity and capability checks."""
import logging
from dataclasses import dataclass
from typing import Generator, Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from permit_core.database import session_scope
from permit_core.permissions import require_capability
from permit_core.task_lifecycle import TaskLifecycleManager

logger = logging.getLogger("permit-core.api.dependencies")


@dataclass
class AuthContext:
    """Identity of the caller as established by the upstream auth layer."""

    tenant_id: int
    user_id: int
    role_id: Optional[int] = None


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Dependency function to get database session.

    Yields:
        Session: SQLAlchemy database session
    """
    yield from session_scope(request.app.state.session_factory)


def get_auth_context(
    x_tenant_id: Optional[int] = Header(None, description="Tenant (domain) id"),
    x_user_id: Optional[int] = Header(None, description="Acting user id"),
    x_role_id: Optional[int] = Header(None, description="Acting user's role id"),
) -> AuthContext:
    """
    Read the caller's tenant, user and role from request headers.

    Raises:
        HTTPException: 401 if tenant or user is missing
    """
    if x_tenant_id is None or x_user_id is None:
        logger.warning("Request without tenant or user context")
        raise HTTPException(status_code=401, detail="Missing X-Tenant-ID or X-User-ID header")
    return AuthContext(tenant_id=x_tenant_id, user_id=x_user_id, role_id=x_role_id)


def get_task_manager(request: Request, db: Session = Depends(get_db)) -> TaskLifecycleManager:
    """Build the lifecycle manager for this request's session."""
    return TaskLifecycleManager(db, request.app.state.storage, request.app.state.settings)


def require(capability: str):
    """
    Build a dependency that checks the caller's role holds ``capability``.

    The dependency resolves to the caller's AuthContext.
    """
    def checker(request: Request, auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        require_capability(request.app.state.permissions, auth.role_id, capability)
        return auth

    return checker
