"""Current user endpoint."""

from fastapi import APIRouter, Depends

from reporting_engine.core.auth import RequestUserContext, get_current_user_context

router = APIRouter(prefix="/me", tags=["me"])


@router.get("")
def get_me(context: RequestUserContext = Depends(get_current_user_context)) -> dict[str, object]:
    """Return current authenticated user and tenant membership."""

    return {
        "id": str(context.user_id),
        "email": context.email,
        "full_name": context.full_name,
        "tenant": {
            "id": str(context.tenant_id),
            "slug": context.tenant_slug,
        },
        "role": context.role.value,
    }
