"""
Abuse guard — per-IP request log with automatic, time-bounded bans.

Every admission attempt appends a row to ``ip_records``.  When the number
of rows for one IP inside the trailing window exceeds the threshold, all
of that IP's unbanned rows are flagged in the same transaction.  Ban state
is read as "the most recent banned row, if not yet expired".

Ban lifting is lazy: an expired ban stays flagged in storage until the next
``record_request`` / ``is_banned`` call for that IP clears it.  There is no
background sweep.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import BusinessError
from app.repositories import IpRecordRepository
from app.transaction import Propagation, TransactionRunner

logger = logging.getLogger(__name__)

BAN_REASON_RATE = "Request rate too high"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored value is UTC.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Admission:
    banned: bool
    reason: str | None = None
    expires_at: datetime | None = None


class AbuseGuard:
    def __init__(
        self,
        runner: TransactionRunner,
        threshold: int = 10,
        window: timedelta = timedelta(hours=1),
        ban_duration: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._runner = runner
        self.threshold = threshold
        self.window = window
        self.ban_duration = ban_duration
        self._clock = clock

    async def _active_ban(self, repo: IpRecordRepository, ip: str, now: datetime) -> Admission | None:
        """Return the unexpired ban for *ip*, lifting an expired one on the way."""
        record = await repo.latest_ban(ip)
        if record is None:
            return None
        if record.ban_expires_at is not None and _as_utc(record.ban_expires_at) > now:
            return Admission(True, record.ban_reason, _as_utc(record.ban_expires_at))
        await repo.lift_ban(ip)
        logger.info("Ban lifted for %s", ip)
        return None

    async def record_request(self, ip: str) -> Admission:
        """Log one request from *ip* and ban it when the window threshold is exceeded."""

        async def _work(session: AsyncSession) -> Admission:
            repo = IpRecordRepository(session)
            now = self._clock()

            active = await self._active_ban(repo, ip, now)
            if active is not None:
                return active

            await repo.record(ip, now)
            count = await repo.count_since(ip, now - self.window)
            if count > self.threshold:
                expires_at = now + self.ban_duration
                await repo.ban(ip, BAN_REASON_RATE, expires_at)
                logger.info("IP %s banned until %s (%d requests in window)", ip, expires_at, count)
                return Admission(True, BAN_REASON_RATE, expires_at)
            return Admission(False)

        return await self._runner.execute(Propagation.REQUIRED, _work)

    async def is_banned(self, ip: str) -> bool:
        async def _work(session: AsyncSession) -> bool:
            active = await self._active_ban(IpRecordRepository(session), ip, self._clock())
            return active is not None

        return await self._runner.execute(Propagation.REQUIRED, _work)

    async def admit(self, ip: str) -> Admission:
        """
        Gate an inbound request from *ip*.

        Raises:
            BusinessError: ``IP_BANNED`` when the IP is (or just became) banned.
        """
        admission = await self.record_request(ip)
        if admission.banned:
            raise BusinessError("Too many requests, this IP is temporarily banned", "IP_BANNED")
        return admission
