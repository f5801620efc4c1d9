from fastapi import APIRouter, Depends

from app.container import Services
from app.dependencies import client_ip, get_services

router = APIRouter(prefix="/api/v1/captcha", tags=["captcha"])

@router.get("")
async def issue_captcha(
    ip: str = Depends(client_ip),
    services: Services = Depends(get_services),
):
    await services.abuse_guard.admit(ip)
    return await services.captcha.issue()
