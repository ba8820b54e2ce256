import asyncio

import pytest

from pims_sync.browser_pool import BrowserPool
from pims_sync.errors import PoolExhaustedError

from conftest import FakeClock


def small_pool(launcher, **kwargs):
    options = dict(max_engines=1, max_contexts_per_engine=2, default_timeout=5, acquire_timeout=0.2)
    options.update(kwargs)
    return BrowserPool(launcher=launcher, **options)


@pytest.mark.asyncio
async def test_acquire_opens_page_with_default_timeout(pool, launcher):
    session = await pool.acquire()

    assert session.page.default_timeout == 5000
    assert len(launcher.browsers) == 1
    assert pool.get_stats()["in_use"] == 1

    await pool.release(session)
    assert session.page.closed
    assert pool.get_stats() == {
        "engines": 1,
        "contexts": 1,
        "in_use": 0,
        "available": 1,
        "waiters": 0,
        "max_engines": 2,
        "max_contexts_per_engine": 3,
    }


@pytest.mark.asyncio
async def test_released_context_is_reused(pool, launcher):
    first = await pool.acquire()
    await pool.release(first)
    second = await pool.acquire()

    assert second.context is first.context
    assert len(launcher.browsers[0].contexts) == 1
    await pool.release(second)


@pytest.mark.asyncio
async def test_capacity_respected_while_waiting(launcher):
    pool = small_pool(launcher, acquire_timeout=5, soft_limit=False)
    max_seen = 0

    async def worker(hold):
        nonlocal max_seen
        async with pool.session():
            max_seen = max(max_seen, pool.get_stats()["in_use"])
            await hold.wait()

    hold = asyncio.Event()
    tasks = [asyncio.create_task(worker(hold)) for _ in range(4)]
    for _ in range(10):
        await asyncio.sleep(0)
    assert pool.get_stats()["in_use"] == 2
    assert pool.get_stats()["waiters"] == 2

    hold.set()
    await asyncio.gather(*tasks)

    assert max_seen == 2
    assert len(launcher.browsers) == 1
    assert pool.get_stats()["contexts"] == 2
    assert pool.get_stats()["in_use"] == 0


@pytest.mark.asyncio
async def test_hard_limit_times_out(launcher):
    pool = small_pool(launcher, max_contexts_per_engine=1, acquire_timeout=0.05, soft_limit=False)
    held = await pool.acquire()

    with pytest.raises(PoolExhaustedError):
        await pool.acquire()

    await pool.release(held)


@pytest.mark.asyncio
async def test_soft_limit_overcommits_after_wait(launcher):
    pool = small_pool(launcher, max_contexts_per_engine=1, acquire_timeout=0.05)
    held = await pool.acquire()

    extra = await pool.acquire()

    assert extra.context is not held.context
    assert pool.get_stats()["contexts"] == 2
    await pool.release(held)
    await pool.release(extra)


@pytest.mark.asyncio
async def test_session_released_when_body_raises(pool):
    with pytest.raises(RuntimeError):
        async with pool.session() as session:
            raise RuntimeError("scrape blew up")

    assert session.page.closed
    assert pool.get_stats()["in_use"] == 0


@pytest.mark.asyncio
async def test_with_page_returns_callback_value(pool):
    async def title(session):
        await session.page.goto("https://pims.test/login")
        return session.page.url

    assert await pool.with_page(title) == "https://pims.test/login"
    assert pool.get_stats()["in_use"] == 0


@pytest.mark.asyncio
async def test_close_idle_contexts_drops_stale_contexts_and_empty_engines(launcher):
    clock = FakeClock()
    pool = small_pool(launcher, clock=clock)
    a = await pool.acquire()
    b = await pool.acquire()
    await pool.release(a)
    clock.advance(100)
    await pool.release(b)
    clock.advance(250)

    # only ``a`` has been idle for more than 300s
    assert await pool.close_idle_contexts(300) == 1
    assert a.context.closed and not b.context.closed
    assert pool.get_stats()["contexts"] == 1

    clock.advance(100)
    assert await pool.close_idle_contexts(300) == 1
    assert pool.get_stats()["engines"] == 0
    assert launcher.browsers[0].closed


@pytest.mark.asyncio
async def test_disconnected_engine_is_replaced(pool, launcher):
    session = await pool.acquire()
    await pool.release(session)
    launcher.browsers[0].connected = False

    fresh = await pool.acquire()

    assert len(launcher.browsers) == 2
    assert fresh.context.browser is launcher.browsers[1]
    await pool.release(fresh)


@pytest.mark.asyncio
async def test_close_shuts_everything_down(pool, launcher):
    session = await pool.acquire()
    await pool.release(session)

    await pool.close()

    assert launcher.browsers[0].closed
    assert launcher.stopped
    with pytest.raises(PoolExhaustedError):
        await pool.acquire()
