import asyncio

import pytest

from wled_lan_bridge.timers import ReconnectPolicy, Timer


def test_reconnect_delay_is_linear_and_capped() -> None:
    policy = ReconnectPolicy(base=5.0, cap=5, max_attempts=10)
    assert [policy.delay(attempt) for attempt in range(1, 8)] == [
        5.0,
        10.0,
        15.0,
        20.0,
        25.0,
        25.0,
        25.0,
    ]
    assert policy.delay(0) == 0.0


def test_reconnect_ceiling() -> None:
    policy = ReconnectPolicy(base=5.0, cap=5, max_attempts=10)
    assert not policy.exhausted(9)
    assert policy.exhausted(10)


@pytest.mark.asyncio
async def test_one_shot_timer_fires_once() -> None:
    calls = []

    async def callback() -> None:
        calls.append(1)

    timer = Timer(0.01, callback).start()
    await asyncio.sleep(0.05)
    assert calls == [1]
    assert not timer.active


@pytest.mark.asyncio
async def test_cancelled_timer_never_fires() -> None:
    calls = []

    async def callback() -> None:
        calls.append(1)

    timer = Timer(0.02, callback).start()
    timer.cancel()
    await asyncio.sleep(0.05)
    assert calls == []
    assert not timer.active


@pytest.mark.asyncio
async def test_repeating_timer_survives_callback_errors() -> None:
    calls = []

    async def callback() -> None:
        calls.append(1)
        raise RuntimeError("fail")

    timer = Timer(0.01, callback, repeat=True, immediate=True).start()
    await asyncio.sleep(0.055)
    await timer.stop()
    count = len(calls)
    assert count >= 3
    await asyncio.sleep(0.03)
    assert len(calls) == count
