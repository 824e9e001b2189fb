from __future__ import annotations

import asyncio
import threading

import pytest

from aichat.services.cancellation import CancellationToken, OperationCancelled


def test_cancel_is_idempotent_and_keeps_first_reason():
    token = CancellationToken()
    assert token.cancel("aborted") is True
    assert token.cancel("again") is False
    assert token.cancelled
    assert token.reason == "aborted"


def test_child_follows_parent_but_not_the_other_way_round():
    parent = CancellationToken()
    child = parent.child()

    child.cancel("child only")
    assert child.cancelled
    assert not parent.cancelled

    other_child = parent.child()
    parent.cancel("client disconnected")
    assert other_child.cancelled
    assert other_child.reason == "client disconnected"


def test_callback_registered_after_cancel_runs_immediately():
    token = CancellationToken()
    token.cancel()
    seen: list[str] = []
    token.add_callback(lambda: seen.append("called"))
    assert seen == ["called"]


@pytest.mark.asyncio
async def test_guard_returns_result_when_not_cancelled():
    token = CancellationToken()

    async def work() -> int:
        await asyncio.sleep(0)
        return 42

    assert await token.guard(work()) == 42


@pytest.mark.asyncio
async def test_guard_interrupts_running_work():
    token = CancellationToken()
    finished = False

    async def slow() -> None:
        nonlocal finished
        await asyncio.sleep(10)
        finished = True

    asyncio.get_running_loop().call_later(0.05, token.cancel, "aborted")
    with pytest.raises(OperationCancelled) as exc_info:
        await asyncio.wait_for(token.guard(slow(), grace=0.5), timeout=2)

    assert exc_info.value.reason == "aborted"
    assert not finished


@pytest.mark.asyncio
async def test_guard_on_cancelled_token_does_not_start_work():
    token = CancellationToken()
    token.cancel("already")

    with pytest.raises(OperationCancelled):
        await token.guard(asyncio.sleep(10))


@pytest.mark.asyncio
async def test_cancel_from_another_thread_wakes_waiter():
    token = CancellationToken()
    thread = threading.Timer(0.05, token.cancel, args=("from thread",))
    thread.start()
    try:
        await asyncio.wait_for(token.wait(), timeout=2)
    finally:
        thread.join()
    assert token.reason == "from thread"
