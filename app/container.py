"""
Explicit construction of the service graph.

``build_services`` is called once at process start (FastAPI lifespan) and
by the test fixtures with their own session factories and captcha store.
Nothing here is a process-wide singleton: each call builds a fresh,
independent graph.
"""
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.captcha import CaptchaService, CaptchaStore
from app.config import Settings
from app.security import PasswordHasher, TokenIssuer
from app.services.abuse_guard import AbuseGuard
from app.services.identity_service import IdentityService
from app.services.moderation_service import ModerationService
from app.services.rbac_service import RBACService
from app.services.user_service import UserService
from app.transaction import TransactionRunner


@dataclass
class Services:
    runner: TransactionRunner
    hasher: PasswordHasher
    tokens: TokenIssuer
    captcha: CaptchaService
    abuse_guard: AbuseGuard
    rbac: RBACService
    identity: IdentityService
    moderation: ModerationService
    users: UserService


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    autocommit_factory: async_sessionmaker[AsyncSession] | None,
    captcha_store: CaptchaStore,
) -> Services:
    runner = TransactionRunner(session_factory, autocommit_factory)
    hasher = PasswordHasher(settings.PASSWORD_HASH_ITERATIONS)
    tokens = TokenIssuer(
        access_secret=settings.ACCESS_TOKEN_SECRET,
        refresh_secret=settings.REFRESH_TOKEN_SECRET,
        access_ttl=timedelta(seconds=settings.ACCESS_TOKEN_TTL_SECONDS),
        refresh_ttl=timedelta(seconds=settings.REFRESH_TOKEN_TTL_SECONDS),
        algorithm=settings.JWT_ALGORITHM,
    )
    captcha = CaptchaService(
        captcha_store, ttl_seconds=settings.CAPTCHA_TTL_SECONDS, length=settings.CAPTCHA_LENGTH
    )
    abuse_guard = AbuseGuard(
        runner,
        threshold=settings.IP_BAN_THRESHOLD,
        window=timedelta(seconds=settings.IP_BAN_WINDOW_SECONDS),
        ban_duration=timedelta(seconds=settings.IP_BAN_DURATION_SECONDS),
    )
    rbac = RBACService(runner)
    return Services(
        runner=runner,
        hasher=hasher,
        tokens=tokens,
        captcha=captcha,
        abuse_guard=abuse_guard,
        rbac=rbac,
        identity=IdentityService(runner, hasher, tokens, abuse_guard, captcha, rbac),
        moderation=ModerationService(runner),
        users=UserService(runner),
    )
