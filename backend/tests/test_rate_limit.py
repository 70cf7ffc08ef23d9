from datetime import timedelta

import pytest
from sqlalchemy import update

from reelpipe.exceptions import RateLimitExceededError
from reelpipe.models import RequestCounter, utcnow
from reelpipe.services.rate_limit import RateLimiter


@pytest.mark.asyncio
async def test_requests_within_window_are_counted(db):
    limiter = RateLimiter(db, max_requests=3, window_seconds=300)

    assert [await limiter.hit("chat-1") for _ in range(3)] == [1, 2, 3]
    with pytest.raises(RateLimitExceededError) as info:
        await limiter.hit("chat-1")
    assert info.value.status_code == 429


@pytest.mark.asyncio
async def test_requesters_have_separate_budgets(db):
    limiter = RateLimiter(db, max_requests=1, window_seconds=300)

    assert await limiter.hit("chat-1") == 1
    assert await limiter.hit("chat-2") == 1


@pytest.mark.asyncio
async def test_expired_window_resets(db):
    limiter = RateLimiter(db, max_requests=1, window_seconds=300)
    await limiter.hit("chat-1")

    await db.execute(
        update(RequestCounter)
        .where(RequestCounter.key == "chat-1")
        .values(reset_at=utcnow() - timedelta(seconds=1))
    )
    await db.commit()

    assert await limiter.hit("chat-1") == 1
