"""
IdentityService tests — registration, login, token refresh and password
change, called directly without HTTP.
"""
import asyncio
import logging

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from app.config import Settings
from app.container import Services, build_services
from app.database import Base, install_sqlite_pragmas, make_session_factories
from app.exceptions import AuthenticationError, BusinessError, NotFoundError
from app.models import User
from app.repositories import UserRepository, duplicate_user_column
from app.schemas import LoginRequest, RegisterRequest
from app.security import TokenKind
from app.transaction import Propagation

IP = "203.0.113.7"
PASSWORD = "s3cret-pass"


async def _register(services: Services, solve_captcha, email="alice@example.com", username="alice"):
    data = RegisterRequest(email=email, username=username, password=PASSWORD, **await solve_captcha())
    return await services.identity.register(data, IP)


async def _login(services: Services, solve_captcha, email="alice@example.com", password=PASSWORD):
    data = LoginRequest(email=email, password=password, **await solve_captcha())
    return await services.identity.login(data, IP)


# ---------------------------------------------------------------------------
# Register
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_register_creates_user_with_user_role(seeded: Services, solve_captcha):
    user = await _register(seeded, solve_captcha)
    assert user["email"] == "alice@example.com"
    assert user["username"] == "alice"
    assert user["role"] == "USER"
    assert user["is_active"] is True
    assert "password_hash" not in user
    assert await seeded.rbac.roles_of(user["id"]) == {"USER"}


@pytest.mark.asyncio
async def test_register_without_seeded_roles(services: Services, solve_captcha):
    user = await _register(services, solve_captcha)
    assert await services.rbac.roles_of(user["id"]) == set()


@pytest.mark.asyncio
async def test_register_stores_hash_not_password(
    services: Services, solve_captcha, db_session: AsyncSession
):
    user = await _register(services, solve_captcha)
    stored = await db_session.get(User, user["id"])
    assert stored.password_hash != PASSWORD
    assert services.hasher.verify(PASSWORD, stored.password_hash)


@pytest.mark.asyncio
async def test_register_duplicate_email(services: Services, solve_captcha):
    await _register(services, solve_captcha)
    with pytest.raises(BusinessError) as exc_info:
        await _register(services, solve_captcha, username="alice2")
    assert exc_info.value.code == "EMAIL_EXISTS"
    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_register_duplicate_username(services: Services, solve_captcha):
    await _register(services, solve_captcha)
    with pytest.raises(BusinessError) as exc_info:
        await _register(services, solve_captcha, email="other@example.com")
    assert exc_info.value.code == "USERNAME_EXISTS"


@pytest.mark.parametrize("message, column", [
    ("UNIQUE constraint failed: users.username", "username"),
    ("UNIQUE constraint failed: users.email", "email"),
    (
        'duplicate key value violates unique constraint "ix_users_username"\n'
        "DETAIL:  Key (username)=(alice) already exists.",
        "username",
    ),
    (
        'duplicate key value violates unique constraint "ix_users_email"\n'
        "DETAIL:  Key (email)=(username@example.com) already exists.",
        "email",
    ),
])
def test_duplicate_column_ignores_conflicting_value(message, column):
    exc = IntegrityError("INSERT INTO users ...", {}, Exception(message))
    assert duplicate_user_column(exc) == column


@pytest.mark.asyncio
async def test_register_race_on_email_naming_username(services: Services, solve_captcha, monkeypatch):
    """A clash caught only by the unique index still names the right field."""
    await _register(services, solve_captcha, email="username@example.com", username="first")

    async def _not_seen(self, value):
        return False

    # Both registrations pass the pre-check, as two concurrent requests would.
    monkeypatch.setattr(UserRepository, "email_exists", _not_seen)
    monkeypatch.setattr(UserRepository, "username_exists", _not_seen)
    with pytest.raises(BusinessError) as exc_info:
        await _register(services, solve_captcha, email="username@example.com", username="second")
    assert exc_info.value.code == "EMAIL_EXISTS"


@pytest.mark.asyncio
async def test_register_wrong_captcha(services: Services, captcha_store, db_session: AsyncSession):
    issued = await services.captcha.issue()
    wrong = "zzzz" if captcha_store.values[issued["key"]] != "zzzz" else "aaaa"
    data = RegisterRequest(
        email="alice@example.com",
        username="alice",
        password=PASSWORD,
        captcha_key=issued["key"],
        captcha=wrong,
    )
    with pytest.raises(BusinessError) as exc_info:
        await services.identity.register(data, IP)
    assert exc_info.value.code == "CAPTCHA_INVALID"
    assert (await db_session.execute(select(func.count(User.id)))).scalar_one() == 0


@pytest.mark.asyncio
async def test_captcha_is_single_use(services: Services, solve_captcha):
    fields = await solve_captcha()
    await services.identity.register(
        RegisterRequest(email="a@example.com", username="aaa", password=PASSWORD, **fields), IP
    )
    with pytest.raises(BusinessError) as exc_info:
        await services.identity.register(
            RegisterRequest(email="b@example.com", username="bbb", password=PASSWORD, **fields), IP
        )
    assert exc_info.value.code == "CAPTCHA_EXPIRED"


@pytest.mark.asyncio
async def test_captcha_answer_is_case_insensitive(services: Services, solve_captcha):
    fields = await solve_captcha()
    fields["captcha"] = fields["captcha"].upper()
    user = await services.identity.register(
        RegisterRequest(email="a@example.com", username="aaa", password=PASSWORD, **fields), IP
    )
    assert user["id"]


@pytest.mark.asyncio
async def test_register_from_banned_ip(services: Services, solve_captcha):
    services.abuse_guard.threshold = 1
    await _register(services, solve_captcha)
    with pytest.raises(BusinessError) as exc_info:
        await _register(services, solve_captcha, email="b@example.com", username="bob")
    assert exc_info.value.code == "IP_BANNED"


# ---------------------------------------------------------------------------
# Concurrent registration (file-backed SQLite: real separate connections)
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def file_services(tmp_path, test_settings: Settings, captcha_store):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    install_sqlite_pragmas(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    transactional, autocommit = make_session_factories(engine)
    yield build_services(test_settings, transactional, autocommit, captcha_store)
    await engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_register_same_email_creates_one_user(file_services: Services, captcha_store):
    async def _attempt(n: int):
        issued = await file_services.captcha.issue()
        data = RegisterRequest(
            email="race@example.com",
            username=f"racer{n}",
            password=PASSWORD,
            captcha_key=issued["key"],
            captcha=captcha_store.values[issued["key"]],
        )
        return await file_services.identity.register(data, IP)

    results = await asyncio.gather(*(_attempt(n) for n in range(5)), return_exceptions=True)

    created = [r for r in results if isinstance(r, dict)]
    failed = [r for r in results if not isinstance(r, dict)]
    assert len(created) == 1
    assert len(failed) == 4
    for exc in failed:
        assert isinstance(exc, BusinessError)
        assert exc.code == "EMAIL_EXISTS"

    async def _count(session: AsyncSession) -> int:
        return (await session.execute(select(func.count(User.id)))).scalar_one()

    assert await file_services.runner.execute(Propagation.SUPPORTS, _count) == 1


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_login_returns_tokens_with_permission_snapshot(seeded: Services, solve_captcha):
    user = await _register(seeded, solve_captcha)
    result = await _login(seeded, solve_captcha)

    assert result["token_type"] == "bearer"
    assert result["user"]["id"] == user["id"]
    access = seeded.tokens.verify(result["access_token"], TokenKind.ACCESS)
    assert access.user_id == user["id"]
    assert access.permissions == await seeded.rbac.permissions_of("USER")
    refresh = seeded.tokens.verify(result["refresh_token"], TokenKind.REFRESH)
    assert refresh.user_id == user["id"]


@pytest.mark.asyncio
async def test_login_records_last_login(services: Services, solve_captcha, db_session: AsyncSession):
    user = await _register(services, solve_captcha)
    await _login(services, solve_captcha)
    stored = await db_session.get(User, user["id"])
    assert stored.last_login is not None


@pytest.mark.asyncio
async def test_wrong_password_and_unknown_email_are_indistinguishable(
    services: Services, solve_captcha
):
    await _register(services, solve_captcha)

    with pytest.raises(AuthenticationError) as wrong_password:
        await _login(services, solve_captcha, password="not-the-password")
    with pytest.raises(AuthenticationError) as unknown_email:
        await _login(services, solve_captcha, email="nobody@example.com")

    assert wrong_password.value.code == unknown_email.value.code == "INVALID_CREDENTIALS"
    assert wrong_password.value.message == unknown_email.value.message
    assert wrong_password.value.status_code == 401


@pytest.mark.asyncio
async def test_login_inactive_account(
    services: Services, solve_captcha, db_session: AsyncSession
):
    user = await _register(services, solve_captcha)
    stored = await db_session.get(User, user["id"])
    stored.is_active = False
    await db_session.commit()

    with pytest.raises(AuthenticationError) as exc_info:
        await _login(services, solve_captcha)
    assert exc_info.value.code == "ACCOUNT_INACTIVE"


@pytest.mark.asyncio
async def test_secrets_never_reach_logs(services: Services, solve_captcha, caplog):
    caplog.set_level(logging.DEBUG, logger="app")
    await _register(services, solve_captcha)
    result = await _login(services, solve_captcha)
    with pytest.raises(AuthenticationError):
        await _login(services, solve_captcha, password="wrong-" + PASSWORD)

    assert PASSWORD not in caplog.text
    assert result["access_token"] not in caplog.text
    assert "alice@example.com" not in caplog.text


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_refresh_issues_new_access_token(seeded: Services, solve_captcha):
    await _register(seeded, solve_captcha)
    tokens = await _login(seeded, solve_captcha)
    result = await seeded.identity.refresh(tokens["refresh_token"])
    assert "refresh_token" not in result
    payload = seeded.tokens.verify(result["access_token"], TokenKind.ACCESS)
    assert payload.user_id == tokens["user"]["id"]


@pytest.mark.asyncio
async def test_refresh_with_access_token_is_rejected(services: Services, solve_captcha):
    await _register(services, solve_captcha)
    tokens = await _login(services, solve_captcha)
    with pytest.raises(AuthenticationError) as exc_info:
        await services.identity.refresh(tokens["access_token"])
    assert exc_info.value.code == "INVALID_TOKEN"


@pytest.mark.asyncio
async def test_refresh_for_deleted_user_is_rejected(services: Services, solve_captcha):
    user = await _register(services, solve_captcha)
    tokens = await _login(services, solve_captcha)
    await services.users.delete_user(user["id"])
    with pytest.raises(AuthenticationError) as exc_info:
        await services.identity.refresh(tokens["refresh_token"])
    assert exc_info.value.code == "INVALID_TOKEN"


@pytest.mark.asyncio
async def test_permission_changes_apply_on_refresh_only(seeded: Services, solve_captcha):
    user = await _register(seeded, solve_captcha)
    tokens = await _login(seeded, solve_captcha)

    await seeded.rbac.assign_role(user["id"], "EDITOR")

    before = seeded.tokens.verify(tokens["access_token"], TokenKind.ACCESS)
    assert "comment:moderate" not in before.permissions

    refreshed = await seeded.identity.refresh(tokens["refresh_token"])
    after = seeded.tokens.verify(refreshed["access_token"], TokenKind.ACCESS)
    assert "comment:moderate" in after.permissions


# ---------------------------------------------------------------------------
# Change password
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_change_password(services: Services, solve_captcha):
    user = await _register(services, solve_captcha)
    await services.identity.change_password(user["id"], PASSWORD, "brand-new-pass")

    with pytest.raises(AuthenticationError):
        await _login(services, solve_captcha)
    result = await _login(services, solve_captcha, password="brand-new-pass")
    assert result["user"]["id"] == user["id"]


@pytest.mark.asyncio
async def test_change_password_wrong_old_password(services: Services, solve_captcha):
    user = await _register(services, solve_captcha)
    with pytest.raises(BusinessError) as exc_info:
        await services.identity.change_password(user["id"], "not-it", "brand-new-pass")
    assert exc_info.value.code == "BUSINESS_ERROR"


@pytest.mark.asyncio
async def test_change_password_unknown_user(services: Services):
    with pytest.raises(NotFoundError) as exc_info:
        await services.identity.change_password(999, PASSWORD, "brand-new-pass")
    assert exc_info.value.code == "USER_NOT_FOUND"
