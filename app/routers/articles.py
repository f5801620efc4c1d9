from fastapi import APIRouter, Depends

from app.container import Services
from app.dependencies import PaginationParams, get_services
from app.models import CommentStatus
from app.schemas import PaginatedResponse

router = APIRouter(prefix="/api/v1/articles", tags=["articles"])

@router.get("/{article_id}/comments", response_model=PaginatedResponse)
async def list_article_comments(
    article_id: int,
    status: CommentStatus | None = None,
    pagination: PaginationParams = Depends(),
    services: Services = Depends(get_services),
):
    return await services.moderation.list_article_comments(
        article_id,
        pagination.page,
        pagination.page_size,
        pagination.sort_by,
        pagination.sort_order,
        status,
    )
