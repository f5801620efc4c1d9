"""
Moderation service — comment votes, reports and comment lifecycle.

Vote state machine per (comment, user):

    no vote   + cast X  -> insert vote X,       X counter +1
    vote X    + cast X  -> delete vote (cancel), X counter -1
    vote X    + cast Y  -> update vote to Y,     X counter -1, Y counter +1

The comment lookup, the prior-vote lookup and the counter update run as
one ``REQUIRED`` unit of work, so the denormalised ``up_votes`` /
``down_votes`` always equal the number of ``comment_votes`` rows of each
type once the transaction commits.  A switch applies both deltas in a
single UPDATE statement.

Reports count distinct reporters: a user's second report on the same
comment overwrites reason and description of the first and leaves
``report_count`` unchanged.

Every write on behalf of a user first checks that the user still exists:
an access token outlives the account it was issued for.

Editing and deleting follow ownership: the author may edit a comment
until it is approved and may delete it at any time; holders of
``comment:moderate`` (edit) or ``comment:delete`` (delete) may act on any
comment.  Callers that pass no actor are trusted administrative code.
"""
import logging
import math
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import (
    AuthorizationError,
    BusinessError,
    NotFoundError,
    ValidationError,
    wrap_unexpected,
)
from app.models import Comment, CommentReport, CommentStatus, CommentVote, ReportReason, VoteType
from app.repositories import (
    ArticleRepository,
    CommentRepository,
    UserRepository,
    is_unique_violation,
)
from app.schemas import PaginatedResponse
from app.transaction import Propagation, TransactionRunner

logger = logging.getLogger(__name__)

MODERATE_PERMISSION = "comment:moderate"
DELETE_PERMISSION = "comment:delete"

_SORT_COLUMNS = {
    "created_at": Comment.created_at,
    "up_votes": Comment.up_votes,
}


def _comment_to_dict(comment: Comment) -> dict:
    return {
        "id": comment.id,
        "content": comment.content,
        "article_id": comment.article_id,
        "user_id": comment.user_id,
        "parent_id": comment.parent_id,
        "status": comment.status.value if comment.status else None,
        "up_votes": comment.up_votes,
        "down_votes": comment.down_votes,
        "report_count": comment.report_count,
        "created_at": comment.created_at.isoformat() if comment.created_at else None,
        "updated_at": comment.updated_at.isoformat() if comment.updated_at else None,
    }


def _build_threads(roots: Iterable[Comment], replies: Iterable[Comment]) -> list[dict]:
    """Nest *replies* under their parents; replies whose parent is not in the tree are dropped."""
    nodes: dict[int, dict] = {}
    threads = []
    for root in roots:
        node = _comment_to_dict(root)
        node["replies"] = []
        nodes[root.id] = node
        threads.append(node)
    # Replies arrive oldest first, so a parent is always placed before its children.
    for reply in replies:
        parent = nodes.get(reply.parent_id)
        if parent is None:
            continue
        node = _comment_to_dict(reply)
        node["replies"] = []
        nodes[reply.id] = node
        parent["replies"].append(node)
    return threads


def _vote_delta(vote_type: VoteType, sign: int) -> dict:
    if vote_type is VoteType.UP:
        return {"up": sign}
    return {"down": sign}


async def _require_comment(repo: CommentRepository, comment_id: int) -> Comment:
    comment = await repo.get_by_id(comment_id)
    if comment is None:
        raise NotFoundError("Comment not found", "COMMENT_NOT_FOUND")
    return comment


async def _require_user(session: AsyncSession, user_id: int) -> None:
    if await UserRepository(session).get_by_id(user_id) is None:
        raise NotFoundError("User not found", "USER_NOT_FOUND")


class ModerationService:
    def __init__(self, runner: TransactionRunner) -> None:
        self._runner = runner

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    async def vote(self, comment_id: int, user_id: int, vote_type: VoteType) -> dict:
        """
        Toggle/switch the caller's vote and return the comment's counters
        together with the caller's resulting vote (``None`` after a cancel).
        """

        async def _work(session: AsyncSession) -> dict:
            repo = CommentRepository(session)
            await _require_comment(repo, comment_id)
            await _require_user(session, user_id)

            existing = await repo.get_vote(comment_id, user_id)
            if existing is None:
                await repo.add(CommentVote(comment_id=comment_id, user_id=user_id, vote_type=vote_type))
                await repo.adjust_counters(comment_id, **_vote_delta(vote_type, +1))
                current = vote_type
            elif existing.vote_type == vote_type:
                await repo.delete_vote(existing)
                await repo.adjust_counters(comment_id, **_vote_delta(vote_type, -1))
                current = None
            else:
                previous = VoteType(existing.vote_type)
                existing.vote_type = vote_type
                await session.flush()
                await repo.adjust_counters(
                    comment_id,
                    **_vote_delta(previous, -1),
                    **_vote_delta(vote_type, +1),
                )
                current = vote_type

            counters = await repo.counters(comment_id)
            return {
                "comment_id": comment_id,
                "user_vote": current.value if current else None,
                "up_votes": counters["up_votes"],
                "down_votes": counters["down_votes"],
            }

        with wrap_unexpected("VOTE_FAILED", "Vote failed"):
            try:
                return await self._runner.execute(Propagation.REQUIRED, _work)
            except IntegrityError as exc:
                if not is_unique_violation(exc):
                    raise
                # Two first votes from the same user raced on the unique pair.
                raise BusinessError("Vote conflicted with a concurrent vote, retry", "VOTE_CONFLICT") from None

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def report(
        self,
        comment_id: int,
        user_id: int,
        reason: ReportReason,
        description: str | None = None,
    ) -> dict:
        async def _work(session: AsyncSession) -> dict:
            repo = CommentRepository(session)
            await _require_comment(repo, comment_id)
            await _require_user(session, user_id)

            existing = await repo.get_report(comment_id, user_id)
            if existing is None:
                await repo.add(
                    CommentReport(
                        comment_id=comment_id,
                        user_id=user_id,
                        reason=reason,
                        description=description,
                    )
                )
                await repo.adjust_counters(comment_id, reports=+1)
            else:
                existing.reason = reason
                existing.description = description
                await session.flush()

            counters = await repo.counters(comment_id)
            return {
                "comment_id": comment_id,
                "reason": reason.value,
                "report_count": counters["report_count"],
            }

        with wrap_unexpected("REPORT_FAILED", "Report failed"):
            try:
                return await self._runner.execute(Propagation.REQUIRED, _work)
            except IntegrityError as exc:
                if not is_unique_violation(exc):
                    raise
                raise BusinessError("Report conflicted with a concurrent report, retry", "REPORT_CONFLICT") from None

    # ------------------------------------------------------------------
    # Comment lifecycle
    # ------------------------------------------------------------------

    async def create_comment(
        self, article_id: int, user_id: int, content: str, parent_id: int | None = None
    ) -> dict:
        async def _work(session: AsyncSession) -> dict:
            if await ArticleRepository(session).get_by_id(article_id) is None:
                raise NotFoundError("Article not found", "ARTICLE_NOT_FOUND")
            await _require_user(session, user_id)
            repo = CommentRepository(session)
            if parent_id is not None:
                parent = await repo.get_by_id(parent_id)
                if parent is None or parent.article_id != article_id:
                    raise ValidationError(
                        "Parent comment does not belong to this article", "INVALID_PARENT"
                    )
            comment = await repo.add(
                Comment(
                    content=content,
                    article_id=article_id,
                    user_id=user_id,
                    parent_id=parent_id,
                    status=CommentStatus.PENDING,
                    up_votes=0,
                    down_votes=0,
                    report_count=0,
                )
            )
            await session.refresh(comment)
            return _comment_to_dict(comment)

        with wrap_unexpected("COMMENT_CREATION_FAILED", "Comment creation failed"):
            return await self._runner.execute(Propagation.REQUIRED, _work)

    async def get_comment(self, comment_id: int) -> dict:
        async def _work(session: AsyncSession) -> dict:
            return _comment_to_dict(await _require_comment(CommentRepository(session), comment_id))

        return await self._runner.execute(Propagation.SUPPORTS, _work)

    async def list_article_comments(
        self,
        article_id: int,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        status: CommentStatus | None = None,
    ) -> PaginatedResponse:
        """
        Return one page of an article's comment threads.

        Pagination, sorting and the total apply to top-level comments; each
        carries its full reply tree under ``replies``, oldest reply first.
        *status* filters every level of the tree.

        Raises:
            ValidationError: ``INVALID_SORT_FIELD`` for an unknown *sort_by*.
            NotFoundError: ``ARTICLE_NOT_FOUND``.
        """
        sort_column = _SORT_COLUMNS.get(sort_by)
        if sort_column is None:
            raise ValidationError("Invalid sort field", "INVALID_SORT_FIELD")

        async def _work(session: AsyncSession) -> PaginatedResponse:
            if await ArticleRepository(session).get_by_id(article_id) is None:
                raise NotFoundError("Article not found", "ARTICLE_NOT_FOUND")
            repo = CommentRepository(session)
            total = await repo.count_roots(article_id, status)
            roots = await repo.list_roots(
                article_id,
                offset=(page - 1) * page_size,
                limit=page_size,
                sort_column=sort_column,
                descending=sort_order == "desc",
                status=status,
            )
            replies = await repo.list_replies(article_id, status) if roots else []
            return PaginatedResponse(
                items=_build_threads(roots, replies),
                total=total,
                page=page,
                page_size=page_size,
                pages=math.ceil(total / page_size) if total > 0 else 0,
            )

        return await self._runner.execute(Propagation.SUPPORTS, _work)

    async def update_comment(
        self,
        comment_id: int,
        content: str,
        actor_id: int | None = None,
        actor_permissions: Iterable[str] = (),
    ) -> dict:
        """
        Replace a comment's content.

        Raises:
            NotFoundError: ``COMMENT_NOT_FOUND``.
            AuthorizationError: ``NOT_COMMENT_OWNER`` when the actor neither
                wrote the comment nor moderates; ``COMMENT_LOCKED`` when the
                author edits a comment that is already approved.
        """

        async def _work(session: AsyncSession) -> dict:
            comment = await _require_comment(CommentRepository(session), comment_id)
            if actor_id is not None and MODERATE_PERMISSION not in set(actor_permissions):
                if comment.user_id != actor_id:
                    raise AuthorizationError("Not allowed to edit this comment", "NOT_COMMENT_OWNER")
                if comment.status is CommentStatus.APPROVED:
                    raise AuthorizationError(
                        "Approved comments can only be edited by moderators", "COMMENT_LOCKED"
                    )
            comment.content = content
            await session.flush()
            await session.refresh(comment)
            return _comment_to_dict(comment)

        with wrap_unexpected("COMMENT_UPDATE_FAILED", "Comment update failed"):
            return await self._runner.execute(Propagation.REQUIRED, _work)

    async def set_status(self, comment_id: int, status: CommentStatus) -> dict:
        async def _work(session: AsyncSession) -> dict:
            repo = CommentRepository(session)
            comment = await _require_comment(repo, comment_id)
            comment.status = status
            await session.flush()
            await session.refresh(comment)
            return _comment_to_dict(comment)

        with wrap_unexpected("COMMENT_STATUS_FAILED", "Comment status update failed"):
            result = await self._runner.execute(Propagation.REQUIRED, _work)
        logger.info("Comment %s set to %s", comment_id, status.value)
        return result

    async def delete_comment(
        self,
        comment_id: int,
        actor_id: int | None = None,
        actor_permissions: Iterable[str] = (),
    ) -> None:
        """Delete a comment; replies, votes and reports go with it (ON DELETE CASCADE)."""

        async def _work(session: AsyncSession) -> None:
            repo = CommentRepository(session)
            if actor_id is not None and DELETE_PERMISSION not in set(actor_permissions):
                comment = await _require_comment(repo, comment_id)
                if comment.user_id != actor_id:
                    raise AuthorizationError("Not allowed to delete this comment", "NOT_COMMENT_OWNER")
            if not await repo.delete_by_id(comment_id):
                raise NotFoundError("Comment not found", "COMMENT_NOT_FOUND")

        with wrap_unexpected("COMMENT_DELETION_FAILED", "Comment deletion failed"):
            await self._runner.execute(Propagation.REQUIRED, _work)
        logger.info("Comment %s deleted", comment_id)

    async def statistics(self) -> dict:
        async def _work(session: AsyncSession) -> dict:
            return await CommentRepository(session).statistics()

        return await self._runner.execute(Propagation.SUPPORTS, _work)
