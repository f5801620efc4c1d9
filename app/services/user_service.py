"""
User service — profile reads, self-service profile edits and account deletion.

Users are soft-managed through ``is_active`` / ``verification_status`` in
normal operation; ``delete_user`` is the administrative hard delete and
relies on ``ON DELETE CASCADE`` to remove role links, articles, comments,
votes and reports in the same statement.  The user's votes and reports are
backed out of the comment counters first, inside the same transaction, so
the counters keep matching the rows that survive.
"""
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import BusinessError, NotFoundError, wrap_unexpected
from app.models import User, VoteType
from app.repositories import (
    CommentRepository,
    RoleRepository,
    UserRepository,
    duplicate_user_column,
)
from app.transaction import Propagation, TransactionRunner

logger = logging.getLogger(__name__)


def _user_to_dict(user: User) -> dict:
    """Serialise a User ORM instance to a plain dict (profile view)."""
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "role": user.role,
        "is_active": user.is_active,
        "verification_status": user.verification_status,
        "last_login": user.last_login.isoformat() if user.last_login else None,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


class UserService:
    def __init__(self, runner: TransactionRunner) -> None:
        self._runner = runner

    async def get_user(self, user_id: int) -> dict:
        """
        Return the profile dict for *user_id* including assigned role names.

        Raises:
            NotFoundError: ``USER_NOT_FOUND``.
        """

        async def _work(session: AsyncSession) -> dict:
            user = await UserRepository(session).get_by_id(user_id)
            if user is None:
                raise NotFoundError("User not found", "USER_NOT_FOUND")
            data = _user_to_dict(user)
            data["roles"] = sorted(await RoleRepository(session).role_names_for_user(user_id))
            return data

        return await self._runner.execute(Propagation.SUPPORTS, _work)

    async def update_profile(
        self, user_id: int, email: str | None = None, username: str | None = None
    ) -> dict:
        """
        Self-service profile edit: change email and/or username.

        Role, activation and password are not editable here.  The access
        token keeps the old email until the next refresh.

        Raises:
            NotFoundError: ``USER_NOT_FOUND``.
            BusinessError: ``EMAIL_EXISTS`` / ``USERNAME_EXISTS``.
        """

        async def _work(session: AsyncSession) -> dict:
            users = UserRepository(session)
            user = await users.get_by_id(user_id)
            if user is None:
                raise NotFoundError("User not found", "USER_NOT_FOUND")
            if email is not None and email != user.email:
                if await users.email_exists(email):
                    raise BusinessError("Email is already registered", "EMAIL_EXISTS")
                user.email = email
            if username is not None and username != user.username:
                if await users.username_exists(username):
                    raise BusinessError("Username is already taken", "USERNAME_EXISTS")
                user.username = username
            await session.flush()
            await session.refresh(user)
            data = _user_to_dict(user)
            data["roles"] = sorted(await RoleRepository(session).role_names_for_user(user_id))
            return data

        with wrap_unexpected("PROFILE_UPDATE_FAILED", "Profile update failed"):
            try:
                result = await self._runner.execute(Propagation.REQUIRED, _work)
            except IntegrityError as exc:
                if duplicate_user_column(exc) == "username":
                    raise BusinessError("Username is already taken", "USERNAME_EXISTS") from None
                raise BusinessError("Email is already registered", "EMAIL_EXISTS") from None
        logger.info("Profile updated: user=%s", user_id)
        return result

    async def delete_user(self, user_id: int) -> None:
        async def _work(session: AsyncSession) -> None:
            users = UserRepository(session)
            if await users.get_by_id(user_id) is None:
                raise NotFoundError("User not found", "USER_NOT_FOUND")

            comments = CommentRepository(session)
            for vote in await comments.votes_by_user(user_id):
                if vote.vote_type == VoteType.UP:
                    await comments.adjust_counters(vote.comment_id, up=-1)
                else:
                    await comments.adjust_counters(vote.comment_id, down=-1)
            for comment_id in await comments.reported_comment_ids(user_id):
                await comments.adjust_counters(comment_id, reports=-1)

            if not await users.delete_by_id(user_id):
                raise NotFoundError("User not found", "USER_NOT_FOUND")

        with wrap_unexpected("USER_DELETION_FAILED", "User deletion failed"):
            await self._runner.execute(Propagation.REQUIRED, _work)
        logger.info("User %s deleted", user_id)
