from fastapi import APIRouter, Depends

from app.container import Services
from app.dependencies import get_principal, get_services, require_permission
from app.security import TokenPayload

router = APIRouter(prefix="/api/v1/users", tags=["users"])

@router.get("/{user_id}")
async def get_user(
    user_id: int,
    _: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.users.get_user(user_id)

@router.delete("/{user_id}", status_code=204)
async def delete_user(
    user_id: int,
    _: TokenPayload = Depends(require_permission("user:delete")),
    services: Services = Depends(get_services),
):
    await services.users.delete_user(user_id)
