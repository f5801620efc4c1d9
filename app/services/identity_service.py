"""
Identity service — registration, login, token refresh and password change.

Flow of every public entry point:

1. ``AbuseGuard.admit`` in its own transaction, so the request log and any
   ban it triggers are committed even when the rest of the flow fails.
2. Captcha consumption (one-time, see ``CaptchaService.verify``).
3. The account work itself inside ``TransactionRunner(REQUIRED)``.

Registration closes the check-then-insert race with the database unique
constraints: the pre-check gives the common case a clean error, and a
concurrent registration that slips past it fails at flush time with an
``IntegrityError`` that is mapped to the same ``EMAIL_EXISTS`` /
``USERNAME_EXISTS`` codes after the transaction rolls back.

Login never reveals whether the email or the password was wrong: both
collapse to ``INVALID_CREDENTIALS``, and an unknown email still pays for
one key derivation so response time does not leak account existence.

Refresh tokens are not rotated; ``refresh`` returns a new access token
only.  The new access token carries permissions resolved at refresh time,
which is the point where role changes become visible to a session.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from app.captcha import CaptchaService
from app.exceptions import AuthenticationError, BusinessError, NotFoundError, wrap_unexpected
from app.models import User
from app.repositories import RoleRepository, UserRepository, duplicate_user_column
from app.schemas import LoginRequest, RegisterRequest
from app.security import PasswordHasher, TokenIssuer, TokenKind
from app.services.abuse_guard import AbuseGuard
from app.services.rbac_service import RBACService
from app.transaction import Propagation, TransactionRunner

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "USER"
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"


def _user_to_dict(user: User) -> dict:
    """Serialise a User ORM instance to the public identity dict."""
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "role": user.role,
        "is_active": user.is_active,
        "verification_status": user.verification_status,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


class IdentityService:
    def __init__(
        self,
        runner: TransactionRunner,
        hasher: PasswordHasher,
        tokens: TokenIssuer,
        abuse_guard: AbuseGuard,
        captcha: CaptchaService,
        rbac: RBACService,
    ) -> None:
        self._runner = runner
        self._hasher = hasher
        self._tokens = tokens
        self._abuse_guard = abuse_guard
        self._captcha = captcha
        self._rbac = rbac
        # Verified against when the email is unknown, to even out timing.
        self._dummy_hash = hasher.hash("dummy-password-for-timing")

    # ------------------------------------------------------------------
    # Register
    # ------------------------------------------------------------------

    async def register(self, data: RegisterRequest, ip: str) -> dict:
        await self._abuse_guard.admit(ip)
        await self._captcha.verify(data.captcha_key, data.captcha)

        password_hash = await run_in_threadpool(self._hasher.hash, data.password)

        async def _work(session: AsyncSession) -> dict:
            users = UserRepository(session)
            if await users.email_exists(data.email):
                raise BusinessError("Email is already registered", "EMAIL_EXISTS")
            if await users.username_exists(data.username):
                raise BusinessError("Username is already taken", "USERNAME_EXISTS")

            user = await users.add(
                User(
                    email=data.email,
                    username=data.username,
                    password_hash=password_hash,
                    role=DEFAULT_ROLE,
                    is_active=True,
                    verification_status="pending",
                    invite_code=data.invite_code,
                )
            )

            roles = RoleRepository(session)
            default_role = await roles.get_by_name(DEFAULT_ROLE)
            if default_role is not None:
                await roles.add_user_role(user.id, default_role.id)
            await session.refresh(user)
            return _user_to_dict(user)

        try:
            with wrap_unexpected("REGISTER_FAILED", "Registration failed"):
                try:
                    result = await self._runner.execute(Propagation.REQUIRED, _work)
                except IntegrityError as exc:
                    if duplicate_user_column(exc) == "username":
                        raise BusinessError("Username is already taken", "USERNAME_EXISTS") from None
                    raise BusinessError("Email is already registered", "EMAIL_EXISTS") from None
        except BusinessError as exc:
            logger.info("Registration rejected: %s", exc.code)
            raise

        logger.info("User registered: id=%s", result["id"])
        return result

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, data: LoginRequest, ip: str) -> dict:
        await self._abuse_guard.admit(ip)
        await self._captcha.verify(data.captcha_key, data.captcha)

        async def _work(session: AsyncSession) -> dict:
            users = UserRepository(session)
            user = await users.get_by_email(data.email)
            stored = user.password_hash if user is not None else self._dummy_hash
            matches = await run_in_threadpool(self._hasher.verify, data.password, stored)
            if user is None or not matches:
                raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE, "INVALID_CREDENTIALS")
            if not user.is_active:
                raise AuthenticationError("Account is disabled", "ACCOUNT_INACTIVE")

            user.last_login = datetime.now(timezone.utc)
            await session.flush()

            permissions = await self._rbac.effective_permissions(user.id)
            return {
                "access_token": self._tokens.issue_access(
                    user.id, user.email, user.role, permissions
                ),
                "refresh_token": self._tokens.issue_refresh(user.id),
                "token_type": "bearer",
                "user": _user_to_dict(user),
            }

        try:
            with wrap_unexpected("LOGIN_FAILED", "Login failed"):
                result = await self._runner.execute(Propagation.REQUIRED, _work)
        except AuthenticationError as exc:
            logger.warning("Login failed from %s: %s", ip, exc.code)
            raise

        logger.info("Login succeeded: user=%s", result["user"]["id"])
        return result

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> dict:
        payload = self._tokens.verify(refresh_token, TokenKind.REFRESH)

        async def _work(session: AsyncSession) -> dict:
            user = await UserRepository(session).get_by_id(payload.user_id)
            if user is None or not user.is_active:
                raise AuthenticationError("Invalid token", "INVALID_TOKEN")
            permissions = await self._rbac.effective_permissions(user.id)
            return {
                "access_token": self._tokens.issue_access(
                    user.id, user.email, user.role, permissions
                ),
                "token_type": "bearer",
                "user": _user_to_dict(user),
            }

        with wrap_unexpected("REFRESH_FAILED", "Token refresh failed"):
            return await self._runner.execute(Propagation.REQUIRED, _work)

    # ------------------------------------------------------------------
    # Change password
    # ------------------------------------------------------------------

    async def change_password(self, user_id: int, old_password: str, new_password: str) -> None:
        """
        Raises:
            NotFoundError: ``USER_NOT_FOUND``.
            BusinessError: ``BUSINESS_ERROR`` when *old_password* is wrong.
        """

        async def _work(session: AsyncSession) -> None:
            user = await UserRepository(session).get_by_id(user_id)
            if user is None:
                raise NotFoundError("User not found", "USER_NOT_FOUND")
            if not await run_in_threadpool(self._hasher.verify, old_password, user.password_hash):
                raise BusinessError("Current password is incorrect")
            user.password_hash = await run_in_threadpool(self._hasher.hash, new_password)
            await session.flush()

        with wrap_unexpected("PASSWORD_CHANGE_FAILED", "Password change failed"):
            await self._runner.execute(Propagation.REQUIRED, _work)
        logger.info("Password changed: user=%s", user_id)
