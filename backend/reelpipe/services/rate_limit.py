from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..exceptions import RateLimitExceededError
from ..logger import logger
from ..models import RequestCounter, utcnow


class RateLimiter:
    """
    Fixed-window submission limit stored in `request_counters`, so every API
    process shares the same budget per requester.
    """

    def __init__(self, db: AsyncSession, max_requests: Optional[int] = None, window_seconds: Optional[int] = None):
        self.db = db
        self.max_requests = max_requests or settings.RATE_LIMIT_MAX_REQUESTS
        self.window_seconds = window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS

    async def hit(self, key: str) -> int:
        """Count one request for `key`; raises RateLimitExceededError over the limit."""
        for attempt in range(2):
            try:
                count = await self._increment(key)
                break
            except IntegrityError:
                # Two first requests raced on the insert; the retry takes the update path.
                await self.db.rollback()
                if attempt:
                    raise

        if count > self.max_requests:
            logger.warning(
                f"Rate limit exceeded for {key}",
                extra={"requester": key, "count": count, "limit": self.max_requests},
            )
            raise RateLimitExceededError(key, self.max_requests, self.window_seconds)
        return count

    async def _increment(self, key: str) -> int:
        now = utcnow()
        res = await self.db.execute(
            select(RequestCounter).filter(RequestCounter.key == key).execution_options(populate_existing=True)
        )
        counter = res.scalar_one_or_none()

        if counter is None:
            self.db.add(RequestCounter(key=key, count=1, reset_at=now + timedelta(seconds=self.window_seconds)))
            await self.db.commit()
            return 1

        if counter.reset_at <= now:
            await self.db.execute(
                update(RequestCounter)
                .where(RequestCounter.key == key)
                .values(count=1, reset_at=now + timedelta(seconds=self.window_seconds))
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            return 1

        await self.db.execute(
            update(RequestCounter)
            .where(RequestCounter.key == key)
            .values(count=RequestCounter.count + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        res = await self.db.execute(
            select(RequestCounter.count).filter(RequestCounter.key == key)
        )
        return res.scalar_one()
