from pydantic import BaseModel, Field

from app.models import CommentStatus, ReportReason, VoteType


# --- Captcha ---

class CaptchaFields(BaseModel):
    captcha_key: str = Field(min_length=1, max_length=128)
    captcha: str = Field(min_length=1, max_length=16)


# --- Auth ---

class RegisterRequest(CaptchaFields):
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    username: str = Field(min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    password: str = Field(min_length=6, max_length=128)
    invite_code: str | None = Field(default=None, max_length=64)


class LoginRequest(CaptchaFields):
    email: str = Field(max_length=255)
    password: str = Field(max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: str


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(max_length=128)
    new_password: str = Field(min_length=6, max_length=128)


class ProfileUpdate(BaseModel):
    email: str | None = Field(
        default=None, min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
    )
    username: str | None = Field(
        default=None, min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$"
    )


# --- Roles ---

class RoleAssignment(BaseModel):
    role: str = Field(min_length=1, max_length=50)


class RoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    description: str | None = Field(default=None, max_length=255)


class RoleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=50)
    description: str | None = Field(default=None, max_length=255)


class PermissionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=255)


class PermissionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=255)


class PermissionGrant(BaseModel):
    permission: str = Field(min_length=1, max_length=100)


# --- Comments ---

class CommentCreate(BaseModel):
    article_id: int
    content: str = Field(min_length=1, max_length=5000)
    parent_id: int | None = None


class CommentUpdate(BaseModel):
    content: str = Field(min_length=1, max_length=5000)


class VoteRequest(BaseModel):
    vote_type: VoteType


class ReportRequest(BaseModel):
    reason: ReportReason
    description: str | None = Field(default=None, max_length=1000)


class StatusUpdate(BaseModel):
    status: CommentStatus


# --- Pagination ---

class PaginatedResponse(BaseModel):
    items: list
    total: int
    page: int
    page_size: int
    pages: int
