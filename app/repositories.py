"""
Repositories — query methods over one ``AsyncSession``.

Repositories never commit: the session they wrap belongs to the unit of
work that created them (see ``app.transaction``).  Writes are flushed so
generated keys and constraint violations surface inside the unit of work.
"""
from datetime import datetime
from typing import Generic, Sequence, TypeVar

from sqlalchemy import asc, delete, desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import Base
from app.models import (
    Article,
    Comment,
    CommentReport,
    CommentStatus,
    CommentVote,
    IpRecord,
    Permission,
    Role,
    RolePermission,
    User,
    UserRole,
)

T = TypeVar("T", bound=Base)


def is_unique_violation(exc: IntegrityError) -> bool:
    """
    True for a unique-constraint clash, False for foreign-key, NOT NULL or
    check violations.

    SQLite reports ``UNIQUE constraint failed: <table>.<column>``; PostgreSQL
    reports ``duplicate key value violates unique constraint "<name>"``.
    """
    detail = str(exc.orig).lower()
    return "unique constraint" in detail or "duplicate key" in detail


def duplicate_user_column(exc: IntegrityError) -> str:
    """
    Name the ``users`` column a unique violation refers to.

    Only constraint and column identifiers are matched, never the whole
    message: PostgreSQL echoes the conflicting value in its DETAIL line,
    and an email such as ``username@example.com`` must still resolve to
    ``email``.
    """
    detail = str(exc.orig).lower()
    for marker in ("ix_users_username", "users.username", "(username)="):
        if marker in detail:
            return "username"
    return "email"


class BaseRepository(Generic[T]):
    """Common operations keyed by primary key."""

    model: type[T]

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, id: int) -> T | None:
        return await self.session.get(self.model, id)

    async def add(self, entity: T) -> T:
        self.session.add(entity)
        await self.session.flush()
        return entity

    async def delete_by_id(self, id: int) -> bool:
        """Delete by primary key with a bulk DELETE so database cascades apply."""
        result = await self.session.execute(delete(self.model).where(self.model.id == id))
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class UserRepository(BaseRepository[User]):
    model = User

    async def get_by_email(self, email: str) -> User | None:
        result = await self.session.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def email_exists(self, email: str) -> bool:
        result = await self.session.execute(select(User.id).where(User.email == email))
        return result.first() is not None

    async def username_exists(self, username: str) -> bool:
        result = await self.session.execute(select(User.id).where(User.username == username))
        return result.first() is not None


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------

class RoleRepository(BaseRepository[Role]):
    model = Role

    async def get_by_name(self, name: str) -> Role | None:
        result = await self.session.execute(select(Role).where(Role.name == name))
        return result.scalar_one_or_none()

    async def list_all(self) -> Sequence[Role]:
        result = await self.session.execute(select(Role).order_by(Role.name))
        return result.scalars().all()

    async def role_names_for_user(self, user_id: int) -> set[str]:
        q = (
            select(Role.name)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id)
        )
        result = await self.session.execute(q)
        return set(result.scalars().all())

    async def permission_names_for_role(self, role_name: str) -> set[str]:
        q = (
            select(Permission.name)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .join(Role, Role.id == RolePermission.role_id)
            .where(Role.name == role_name)
        )
        result = await self.session.execute(q)
        return set(result.scalars().all())

    async def permission_names_for_role_id(self, role_id: int) -> list[str]:
        q = (
            select(Permission.name)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id == role_id)
            .order_by(Permission.name)
        )
        result = await self.session.execute(q)
        return list(result.scalars().all())

    async def has_user_role(self, user_id: int, role_id: int) -> bool:
        q = select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
        result = await self.session.execute(q)
        return result.first() is not None

    async def add_user_role(self, user_id: int, role_id: int) -> None:
        self.session.add(UserRole(user_id=user_id, role_id=role_id))
        await self.session.flush()

    async def remove_user_role(self, user_id: int, role_id: int) -> bool:
        result = await self.session.execute(
            delete(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
        )
        return result.rowcount > 0

    async def has_role_permission(self, role_id: int, permission_id: int) -> bool:
        q = select(RolePermission.id).where(
            RolePermission.role_id == role_id, RolePermission.permission_id == permission_id
        )
        result = await self.session.execute(q)
        return result.first() is not None

    async def add_role_permission(self, role_id: int, permission_id: int) -> None:
        self.session.add(RolePermission(role_id=role_id, permission_id=permission_id))
        await self.session.flush()


class PermissionRepository(BaseRepository[Permission]):
    model = Permission

    async def get_by_name(self, name: str) -> Permission | None:
        result = await self.session.execute(select(Permission).where(Permission.name == name))
        return result.scalar_one_or_none()

    async def list_all(self) -> Sequence[Permission]:
        result = await self.session.execute(select(Permission).order_by(Permission.name))
        return result.scalars().all()


# ---------------------------------------------------------------------------
# Articles and comments
# ---------------------------------------------------------------------------

class ArticleRepository(BaseRepository[Article]):
    model = Article


class CommentRepository(BaseRepository[Comment]):
    model = Comment

    async def count_roots(self, article_id: int, status: CommentStatus | None = None) -> int:
        q = select(func.count(Comment.id)).where(
            Comment.article_id == article_id, Comment.parent_id.is_(None)
        )
        if status is not None:
            q = q.where(Comment.status == status)
        return (await self.session.execute(q)).scalar_one()

    async def list_roots(
        self,
        article_id: int,
        offset: int,
        limit: int,
        sort_column,
        descending: bool = True,
        status: CommentStatus | None = None,
    ) -> Sequence[Comment]:
        """One page of top-level comments; ``id`` breaks ties so pages never overlap."""
        order = desc if descending else asc
        q = select(Comment).where(Comment.article_id == article_id, Comment.parent_id.is_(None))
        if status is not None:
            q = q.where(Comment.status == status)
        q = q.order_by(order(sort_column), order(Comment.id)).offset(offset).limit(limit)
        return (await self.session.execute(q)).scalars().all()

    async def list_replies(
        self, article_id: int, status: CommentStatus | None = None
    ) -> Sequence[Comment]:
        q = select(Comment).where(
            Comment.article_id == article_id, Comment.parent_id.is_not(None)
        )
        if status is not None:
            q = q.where(Comment.status == status)
        q = q.order_by(Comment.created_at, Comment.id)
        return (await self.session.execute(q)).scalars().all()

    async def get_vote(self, comment_id: int, user_id: int) -> CommentVote | None:
        q = select(CommentVote).where(
            CommentVote.comment_id == comment_id, CommentVote.user_id == user_id
        )
        result = await self.session.execute(q)
        return result.scalar_one_or_none()

    async def get_report(self, comment_id: int, user_id: int) -> CommentReport | None:
        q = select(CommentReport).where(
            CommentReport.comment_id == comment_id, CommentReport.user_id == user_id
        )
        result = await self.session.execute(q)
        return result.scalar_one_or_none()

    async def votes_by_user(self, user_id: int) -> Sequence[CommentVote]:
        result = await self.session.execute(select(CommentVote).where(CommentVote.user_id == user_id))
        return result.scalars().all()

    async def reported_comment_ids(self, user_id: int) -> Sequence[int]:
        q = select(CommentReport.comment_id).where(CommentReport.user_id == user_id)
        return (await self.session.execute(q)).scalars().all()

    async def delete_vote(self, vote: CommentVote) -> None:
        await self.session.delete(vote)
        await self.session.flush()

    async def adjust_counters(
        self, comment_id: int, up: int = 0, down: int = 0, reports: int = 0
    ) -> None:
        """
        Apply relative deltas to the denormalised counters in a single UPDATE.

        The arithmetic happens in SQL (``col = col + :delta``) so concurrent
        writers serialise on the row lock instead of overwriting each other.
        """
        values = {}
        if up:
            values["up_votes"] = Comment.up_votes + up
        if down:
            values["down_votes"] = Comment.down_votes + down
        if reports:
            values["report_count"] = Comment.report_count + reports
        if not values:
            return
        await self.session.execute(
            update(Comment)
            .where(Comment.id == comment_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def counters(self, comment_id: int) -> dict:
        """Read the counters straight from the database, bypassing the identity map."""
        q = select(Comment.up_votes, Comment.down_votes, Comment.report_count).where(
            Comment.id == comment_id
        )
        row = (await self.session.execute(q)).one()
        return {"up_votes": row.up_votes, "down_votes": row.down_votes, "report_count": row.report_count}

    async def statistics(self) -> dict:
        q = select(
            func.count(Comment.id),
            func.count(Comment.id).filter(Comment.status == CommentStatus.PENDING),
            func.count(Comment.id).filter(Comment.status == CommentStatus.APPROVED),
            func.count(Comment.id).filter(Comment.status == CommentStatus.REJECTED),
            func.count(Comment.id).filter(Comment.report_count > 0),
        )
        total, pending, approved, rejected, reported = (await self.session.execute(q)).one()
        return {
            "total": total,
            "pending": pending,
            "approved": approved,
            "rejected": rejected,
            "reported": reported,
        }


# ---------------------------------------------------------------------------
# IP request log
# ---------------------------------------------------------------------------

class IpRecordRepository(BaseRepository[IpRecord]):
    model = IpRecord

    async def latest_ban(self, ip_address: str) -> IpRecord | None:
        q = (
            select(IpRecord)
            .where(IpRecord.ip_address == ip_address, IpRecord.is_banned.is_(True))
            .order_by(IpRecord.id.desc())
            .limit(1)
        )
        result = await self.session.execute(q)
        return result.scalar_one_or_none()

    async def record(self, ip_address: str, at: datetime) -> IpRecord:
        return await self.add(IpRecord(ip_address=ip_address, request_time=at, is_banned=False))

    async def count_since(self, ip_address: str, since: datetime) -> int:
        q = select(func.count(IpRecord.id)).where(
            IpRecord.ip_address == ip_address, IpRecord.request_time > since
        )
        return (await self.session.execute(q)).scalar_one()

    async def ban(self, ip_address: str, reason: str, expires_at: datetime) -> None:
        await self.session.execute(
            update(IpRecord)
            .where(IpRecord.ip_address == ip_address, IpRecord.is_banned.is_(False))
            .values(is_banned=True, ban_reason=reason, ban_expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )

    async def lift_ban(self, ip_address: str) -> None:
        await self.session.execute(
            update(IpRecord)
            .where(IpRecord.ip_address == ip_address, IpRecord.is_banned.is_(True))
            .values(is_banned=False, ban_reason=None, ban_expires_at=None)
            .execution_options(synchronize_session=False)
        )
