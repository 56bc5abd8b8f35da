"""
Tests for the resource governor: FIFO permits, session slots, stale sweep.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from misc.queue_manager import FairSemaphore, ResourceGovernor


@pytest.mark.asyncio
async def test_download_slots_granted_in_arrival_order():
    governor = ResourceGovernor(max_users=10, max_downloads=2, max_uploads=1)
    await governor.acquire_download_slot()
    await governor.acquire_download_slot()

    order = []

    async def waiter(i):
        await governor.acquire_download_slot()
        order.append(i)

    tasks = []
    for i in range(3, 7):
        tasks.append(asyncio.create_task(waiter(i)))
        await asyncio.sleep(0)

    assert order == []
    assert governor.download_semaphore.waiting == 4

    for _ in range(4):
        governor.release_download_slot()
    await asyncio.gather(*tasks)

    assert order == [3, 4, 5, 6]


@pytest.mark.asyncio
async def test_newcomer_cannot_take_permit_handed_to_waiter():
    semaphore = FairSemaphore(1)
    await semaphore.acquire()

    order = []

    async def waiter(name):
        await semaphore.acquire()
        order.append(name)
        semaphore.release()

    first = asyncio.create_task(waiter("queued"))
    await asyncio.sleep(0)

    semaphore.release()
    # Arrives after the release but before the queued waiter had a chance to run
    late = asyncio.create_task(waiter("late"))
    await asyncio.gather(first, late)

    assert order == ["queued", "late"]
    assert semaphore.available == 1


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_permit():
    semaphore = FairSemaphore(1)
    await semaphore.acquire()

    task = asyncio.create_task(semaphore.acquire())
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    semaphore.release()
    assert semaphore.available == 1
    assert semaphore.waiting == 0


def test_semaphore_rejects_non_positive_size():
    with pytest.raises(ValueError):
        FairSemaphore(0)


@pytest.mark.asyncio
async def test_user_slots_are_tracked_per_link():
    governor = ResourceGovernor(max_users=3, max_downloads=1, max_uploads=1)
    first = await governor.acquire_user_slot(7)
    second = await governor.acquire_user_slot(7)

    assert governor.active_sessions_count == 2
    assert governor.active_users_count == 1
    assert governor.user_available_slots == 1

    assert governor.release_user_slot(7, first) is True
    assert governor.release_user_slot(7, first) is False
    assert governor.active_sessions_count == 1

    assert governor.release_user_slot(7, second) is True
    assert governor.user_available_slots == 3


def test_release_of_unknown_user_is_a_noop():
    governor = ResourceGovernor(max_users=1, max_downloads=1, max_uploads=1)
    assert governor.release_user_slot(12345) is False
    assert governor.user_available_slots == 1


@pytest.mark.asyncio
async def test_user_slot_context_manager_releases_on_error():
    governor = ResourceGovernor(max_users=1, max_downloads=1, max_uploads=1)
    with pytest.raises(RuntimeError):
        async with governor.user_slot(1):
            assert governor.active_sessions_count == 1
            raise RuntimeError("boom")
    assert governor.active_sessions_count == 0
    assert governor.user_available_slots == 1


@pytest.mark.asyncio
async def test_sweep_reclaims_only_stale_sessions():
    now = [100.0]
    governor = ResourceGovernor(
        max_users=2, max_downloads=1, max_uploads=1,
        session_timeout=300, clock=lambda: now[0],
    )
    stale = await governor.acquire_user_slot(1)
    now[0] = 350.0
    fresh = await governor.acquire_user_slot(2)
    now[0] = 401.0

    assert governor.sweep_stale_sessions() == 1
    assert governor.active_sessions_count == 1
    assert governor.user_available_slots == 1

    # The crashed caller's late release must not free a second permit
    assert governor.release_user_slot(1, stale) is False
    assert governor.user_available_slots == 1

    assert governor.release_user_slot(2, fresh) is True
    assert governor.user_available_slots == 2


@pytest.mark.asyncio
async def test_sweep_unblocks_waiting_user():
    now = [0.0]
    governor = ResourceGovernor(
        max_users=1, max_downloads=1, max_uploads=1,
        session_timeout=10, clock=lambda: now[0],
    )
    await governor.acquire_user_slot(1)
    waiter = asyncio.create_task(governor.acquire_user_slot(2))
    await asyncio.sleep(0)
    assert not waiter.done()

    now[0] = 11.0
    governor.sweep_stale_sessions()
    slot = await asyncio.wait_for(waiter, timeout=1)
    assert slot.user_id == 2


def test_start_sweeper_registers_interval_job():
    governor = ResourceGovernor(max_users=1, max_downloads=1, max_uploads=1, sweep_interval=15)
    scheduler = MagicMock()
    governor.start_sweeper(scheduler)

    scheduler.add_job.assert_called_once()
    args, kwargs = scheduler.add_job.call_args
    assert args == (governor.sweep_stale_sessions, "interval")
    assert kwargs["seconds"] == 15
    assert kwargs["id"] == "sweep_stale_sessions"


@pytest.mark.asyncio
async def test_shared_session_is_reused_until_closed():
    governor = ResourceGovernor(max_users=1, max_downloads=1, max_uploads=1, max_sockets=7)
    session = governor.get_session()
    assert governor.get_session() is session
    assert session.connector.limit == 7

    await governor.close()
    assert session.closed
    assert governor.get_session() is not session
    await governor.close()


def test_get_instance_is_singleton():
    ResourceGovernor.reset_instance()
    try:
        assert ResourceGovernor.get_instance() is ResourceGovernor.get_instance()
    finally:
        ResourceGovernor.reset_instance()
