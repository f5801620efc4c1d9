from fastapi import APIRouter, Depends

from app.container import Services
from app.dependencies import get_principal, get_services, require_permission
from app.schemas import CommentCreate, CommentUpdate, ReportRequest, StatusUpdate, VoteRequest
from app.security import TokenPayload

router = APIRouter(prefix="/api/v1/comments", tags=["comments"])

@router.post("", status_code=201)
async def create_comment(
    data: CommentCreate,
    principal: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.moderation.create_comment(
        data.article_id, principal.user_id, data.content, data.parent_id
    )

# Registered before "/{comment_id}" so the literal path wins.
@router.get("/statistics")
async def comment_statistics(
    _: TokenPayload = Depends(require_permission("comment:moderate")),
    services: Services = Depends(get_services),
):
    return await services.moderation.statistics()

@router.get("/{comment_id}")
async def get_comment(comment_id: int, services: Services = Depends(get_services)):
    return await services.moderation.get_comment(comment_id)

@router.put("/{comment_id}")
async def update_comment(
    comment_id: int,
    data: CommentUpdate,
    principal: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.moderation.update_comment(
        comment_id, data.content, principal.user_id, principal.permissions
    )

@router.post("/{comment_id}/vote")
async def vote(
    comment_id: int,
    data: VoteRequest,
    principal: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.moderation.vote(comment_id, principal.user_id, data.vote_type)

@router.post("/{comment_id}/report")
async def report(
    comment_id: int,
    data: ReportRequest,
    principal: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return await services.moderation.report(
        comment_id, principal.user_id, data.reason, data.description
    )

@router.patch("/{comment_id}/status")
async def set_status(
    comment_id: int,
    data: StatusUpdate,
    _: TokenPayload = Depends(require_permission("comment:moderate")),
    services: Services = Depends(get_services),
):
    return await services.moderation.set_status(comment_id, data.status)

@router.delete("/{comment_id}", status_code=204)
async def delete_comment(
    comment_id: int,
    principal: TokenPayload = Depends(get_principal),
    services: Services = Depends(get_services),
):
    await services.moderation.delete_comment(comment_id, principal.user_id, principal.permissions)
