from fastapi import Depends, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.container import Services
from app.exceptions import AuthenticationError, AuthorizationError
from app.security import TokenKind, TokenPayload

bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    """
    Return the service graph built by the lifespan handler.

    Tests replace this dependency through ``app.dependency_overrides`` with
    a graph bound to their own database and captcha store.
    """
    return request.app.state.services


class PaginationParams:
    """
    Reusable FastAPI dependency that parses and validates pagination /
    sorting query parameters.

    Usage in a router::

        @router.get("/articles/{article_id}/comments")
        async def list_comments(pagination: PaginationParams = Depends()):
            ...

    Attributes
    ----------
    page:
        1-based page number (minimum 1).
    page_size:
        Number of items per page, clamped to ``settings.MAX_PAGE_SIZE``.
    sort_by:
        Column name to sort by.  The service layer maps it to a real
        column and rejects anything else.
    sort_order:
        ``"asc"`` or ``"desc"`` (enforced by the regex pattern).
    """

    def __init__(
        self,
        page: int = Query(1, ge=1, description="Page number (1-based)."),
        page_size: int = Query(20, ge=1, le=100, description="Items per page (max 100)."),
        sort_by: str = Query("created_at", description="Column name to sort results by."),
        sort_order: str = Query(
            "desc", pattern="^(asc|desc)$", description="Sort direction: 'asc' or 'desc'."
        ),
    ) -> None:
        self.page = page
        self.page_size = min(page_size, settings.MAX_PAGE_SIZE)
        self.sort_by = sort_by
        self.sort_order = sort_order


def client_ip(request: Request) -> str:
    """
    Best-effort source address of the request.

    With ``TRUSTED_PROXY_HEADERS`` on, the order is ``CF-Connecting-IP``,
    first ``X-Forwarded-For`` entry, ``X-Real-IP``, then the socket peer.
    With it off, only the socket peer counts, since any client can set
    those headers.  ``"unknown"`` when there is no peer either.
    """
    if settings.TRUSTED_PROXY_HEADERS:
        cf_ip = request.headers.get("cf-connecting-ip")
        if cf_ip:
            return cf_ip.strip()
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    services: Services = Depends(get_services),
) -> TokenPayload:
    """Verify the bearer access token and return its payload."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Missing bearer token", "INVALID_TOKEN")
    return services.tokens.verify(credentials.credentials, TokenKind.ACCESS)


def require_permission(permission: str):
    """
    Dependency factory guarding a route with one permission.

    The check reads the permission snapshot in the access token, so grants
    and revocations apply once the client refreshes its token::

        @router.delete("/{user_id}")
        async def delete_user(principal=Depends(require_permission("user:delete"))):
            ...
    """

    async def _guard(principal: TokenPayload = Depends(get_principal)) -> TokenPayload:
        if permission not in principal.permissions:
            raise AuthorizationError("Insufficient permissions", "INSUFFICIENT_PERMISSIONS")
        return principal

    return _guard
