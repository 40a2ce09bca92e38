"""Authentication context extraction, tenant resolution and role guards."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from reporting_engine.core.config import get_settings
from reporting_engine.core.errors import TenantScopeError
from reporting_engine.db.dependencies import get_db_session
from reporting_engine.models.entities import TenantRole
from reporting_engine.repositories.reporting_repository import ReportingRepository

FINANCE_ROLES = {TenantRole.OWNER, TenantRole.ADMIN}


@dataclass(frozen=True)
class RequestUserContext:
    """Authenticated request actor resolved from headers and DB state."""

    user_id: UUID
    email: str
    full_name: str | None
    tenant_id: UUID
    tenant_slug: str
    role: TenantRole


def _resolve_email(x_user_email: str | None) -> str:
    settings = get_settings()
    if x_user_email and x_user_email.strip():
        return x_user_email.strip().lower()

    if settings.auth_allow_dev_principal:
        return settings.auth_dev_email.strip().lower()

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing identity header. Expected X-User-Email or enable development principal fallback.",
    )


def get_current_user_context(
    x_user_email: str | None = Header(default=None, alias="X-User-Email"),
    x_tenant_slug: str | None = Header(default=None, alias="X-Tenant-Slug"),
    db: Session = Depends(get_db_session),
) -> RequestUserContext:
    """Resolve current request user, tenant and membership role.

    Header strategy:
    - identity comes from a trusted proxy header (or the dev principal);
    - tenant comes from ``X-Tenant-Slug`` and is never read from query params.
    """

    email = _resolve_email(x_user_email)
    if not x_tenant_slug or not x_tenant_slug.strip():
        raise TenantScopeError("Missing tenant context. Expected X-Tenant-Slug header.")

    repo = ReportingRepository(db)
    tenant = repo.get_tenant_by_slug(x_tenant_slug.strip().lower())
    if tenant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found.")
    if not tenant.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Tenant is inactive.")

    user = repo.get_user_by_email(email)
    membership = repo.get_active_membership(tenant.id, user.id) if user is not None else None
    if user is None or membership is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not an active member of this tenant.",
        )

    context = RequestUserContext(
        user_id=user.id,
        email=user.email,
        full_name=user.full_name,
        tenant_id=tenant.id,
        tenant_slug=tenant.slug,
        role=membership.role,
    )
    # Close the lookup transaction so each report opens its own snapshot.
    db.rollback()
    return context


def has_role(context: RequestUserContext, allowed_roles: set[TenantRole]) -> bool:
    """Check whether the member's tenant role is one of the allowed roles."""

    return context.role in allowed_roles


def require_tenant_roles(*roles: TenantRole):
    """Dependency factory requiring one of the provided tenant roles."""

    allowed = set(roles)

    def dependency(context: RequestUserContext = Depends(get_current_user_context)) -> RequestUserContext:
        if not has_role(context, allowed):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role permissions for this operation.",
            )
        return context

    return dependency
