from fastapi import APIRouter, Depends

from app.container import Services
from app.dependencies import client_ip, get_principal, get_services
from app.schemas import (
    ChangePasswordRequest,
    LoginRequest,
    ProfileUpdate,
    RefreshRequest,
    RegisterRequest,
)
from app.security import TokenPayload

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])

@router.post("/register", status_code=201)
async def register(
    data: RegisterRequest,
    ip: str = Depends(client_ip),
    services: Services = Depends(get_services),
):
    return await services.identity.register(data, ip)

@router.post("/login")
async def login(
    data: LoginRequest,
    ip: str = Depends(client_ip),
    services: Services = Depends(get_services),
):
    return await services.identity.login(data, ip)

@router.post("/refresh")
async def refresh(data: RefreshRequest, services: Services = Depends(get_services)):
    return await services.identity.refresh(data.refresh_token)

@router.get("/me")
async def get_me(
    principal: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.users.get_user(principal.user_id)

@router.put("/me")
async def update_me(
    data: ProfileUpdate,
    principal: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.users.update_profile(principal.user_id, data.email, data.username)

@router.post("/change-password", status_code=204)
async def change_password(
    data: ChangePasswordRequest,
    principal: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    await services.identity.change_password(principal.user_id, data.old_password, data.new_password)
