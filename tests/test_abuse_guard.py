"""
AbuseGuard tests — request counting, automatic bans and lazy ban lifting.

A controllable clock replaces wall time so window and ban-expiry edges are
exact.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.container import Services
from app.exceptions import BusinessError
from app.models import IpRecord
from app.services.abuse_guard import AbuseGuard


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def guard(services: Services, clock: FakeClock) -> AbuseGuard:
    return AbuseGuard(
        services.runner,
        threshold=10,
        window=timedelta(hours=1),
        ban_duration=timedelta(hours=24),
        clock=clock,
    )


async def _banned_rows(db: AsyncSession, ip: str) -> int:
    q = select(func.count(IpRecord.id)).where(
        IpRecord.ip_address == ip, IpRecord.is_banned.is_(True)
    )
    return (await db.execute(q)).scalar_one()


# ---------------------------------------------------------------------------
# Threshold
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_requests_up_to_threshold_are_admitted(guard: AbuseGuard):
    for _ in range(10):
        admission = await guard.record_request("10.0.0.1")
        assert admission.banned is False
    assert await guard.is_banned("10.0.0.1") is False


@pytest.mark.asyncio
async def test_request_over_threshold_bans_ip(guard: AbuseGuard, clock: FakeClock):
    for _ in range(10):
        await guard.record_request("10.0.0.1")

    admission = await guard.record_request("10.0.0.1")
    assert admission.banned is True
    assert admission.reason
    assert admission.expires_at == clock.now + timedelta(hours=24)
    assert await guard.is_banned("10.0.0.1") is True


@pytest.mark.asyncio
async def test_ban_is_per_ip(guard: AbuseGuard):
    for _ in range(11):
        await guard.record_request("10.0.0.1")
    assert await guard.is_banned("10.0.0.2") is False
    assert (await guard.record_request("10.0.0.2")).banned is False


@pytest.mark.asyncio
async def test_requests_outside_window_do_not_count(guard: AbuseGuard, clock: FakeClock):
    for _ in range(10):
        await guard.record_request("10.0.0.1")
    clock.advance(hours=1, seconds=1)
    for _ in range(10):
        assert (await guard.record_request("10.0.0.1")).banned is False


@pytest.mark.asyncio
async def test_admit_raises_ip_banned(guard: AbuseGuard):
    for _ in range(10):
        await guard.admit("10.0.0.1")

    with pytest.raises(BusinessError) as exc_info:
        await guard.admit("10.0.0.1")
    assert exc_info.value.code == "IP_BANNED"
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_ban_survives_rejected_admission(guard: AbuseGuard, db_session: AsyncSession):
    """The ban is committed by the guard's own transaction, not undone by the raise."""
    for _ in range(10):
        await guard.admit("10.0.0.1")
    with pytest.raises(BusinessError):
        await guard.admit("10.0.0.1")
    assert await _banned_rows(db_session, "10.0.0.1") == 11


@pytest.mark.asyncio
async def test_banned_ip_requests_are_not_logged(guard: AbuseGuard, db_session: AsyncSession):
    for _ in range(11):
        await guard.record_request("10.0.0.1")
    for _ in range(5):
        assert (await guard.record_request("10.0.0.1")).banned is True

    total = (await db_session.execute(select(func.count(IpRecord.id)))).scalar_one()
    assert total == 11


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ban_expires_after_duration(guard: AbuseGuard, clock: FakeClock):
    for _ in range(11):
        await guard.record_request("10.0.0.1")

    clock.advance(hours=23, minutes=59)
    assert await guard.is_banned("10.0.0.1") is True

    clock.advance(minutes=2)
    assert await guard.is_banned("10.0.0.1") is False


@pytest.mark.asyncio
async def test_expired_ban_is_lifted_in_storage(
    guard: AbuseGuard, clock: FakeClock, db_session: AsyncSession
):
    for _ in range(11):
        await guard.record_request("10.0.0.1")
    assert await _banned_rows(db_session, "10.0.0.1") == 11

    clock.advance(hours=25)
    admission = await guard.record_request("10.0.0.1")
    assert admission.banned is False
    assert await _banned_rows(db_session, "10.0.0.1") == 0
