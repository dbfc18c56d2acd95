import asyncio
from unittest.mock import AsyncMock

import pytest
from core.errors import ErrorClass, TransientServiceError
from core.request_queue import QueuedRequest, RequestPriority, RequestQueue


def _recorder(order: list[str], name: str):
    async def _payload() -> str:
        order.append(name)
        return name

    return _payload


@pytest.mark.asyncio
async def test_high_priority_enqueued_later_runs_first():
    queue = RequestQueue(rate_limit_delay=0.0, sleep=AsyncMock())
    order: list[str] = []

    low = queue.enqueue(_recorder(order, "low"), RequestPriority.LOW)
    high = queue.enqueue(_recorder(order, "high"), RequestPriority.HIGH)
    results = await asyncio.gather(low, high)

    assert order == ["high", "low"]
    assert results == ["low", "high"]
    await queue.aclose()


@pytest.mark.asyncio
async def test_equal_priority_is_fifo():
    queue = RequestQueue(rate_limit_delay=0.0, sleep=AsyncMock())
    order: list[str] = []

    futures = [
        queue.enqueue(_recorder(order, str(i)), RequestPriority.MEDIUM) for i in range(4)
    ]
    await asyncio.gather(*futures)

    assert order == ["0", "1", "2", "3"]
    await queue.aclose()


@pytest.mark.asyncio
async def test_delay_applied_between_requests_only():
    sleep = AsyncMock()
    queue = RequestQueue(rate_limit_delay=1.0, sleep=sleep)
    order: list[str] = []

    await asyncio.gather(
        queue.enqueue(_recorder(order, "a")), queue.enqueue(_recorder(order, "b"))
    )

    assert sleep.call_count == 1
    assert sleep.call_args.args[0] == 1.0
    await queue.aclose()


@pytest.mark.asyncio
async def test_errors_propagate_to_the_caller():
    queue = RequestQueue(rate_limit_delay=1.0, sleep=AsyncMock())

    async def _fail():
        raise TransientServiceError("overloaded", ErrorClass.OVERLOAD, attempts=5)

    with pytest.raises(TransientServiceError):
        await queue.submit(_fail)
    # overload grows the delay
    assert queue.rate_limit_delay == 1.5
    await queue.aclose()


def test_adjust_rate_limit_bounds():
    queue = RequestQueue(rate_limit_delay=1.0, min_delay=0.5, max_delay=2.0)
    assert queue.adjust_rate_limit(increase=True) == 1.5
    assert queue.adjust_rate_limit(increase=True) == 2.0
    assert queue.adjust_rate_limit(increase=True) == 2.0
    queue.rate_limit_delay = 0.6
    assert queue.adjust_rate_limit(increase=False) == 0.5
    assert queue.adjust_rate_limit(increase=False) == 0.5


@pytest.mark.asyncio
async def test_success_streak_shrinks_delay():
    queue = RequestQueue(
        rate_limit_delay=1.0, min_delay=0.1, success_streak=2, sleep=AsyncMock()
    )
    for _ in range(2):
        await queue.submit(AsyncMock(return_value="ok"))
    assert queue.rate_limit_delay == pytest.approx(0.8)
    await queue.aclose()


def test_queued_request_ordering():
    a = QueuedRequest(RequestPriority.LOW, 0, "a", 0.0, None, None)
    b = QueuedRequest(RequestPriority.HIGH, 1, "b", 0.0, None, None)
    c = QueuedRequest(RequestPriority.HIGH, 2, "c", 0.0, None, None)
    assert sorted([a, c, b]) == [b, c, a]
