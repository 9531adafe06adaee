import asyncio
import contextlib
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from wled_lan_bridge.client import DeviceCommandError
from wled_lan_bridge.config import Config
from wled_lan_bridge.models import ChannelState, DeviceState
from wled_lan_bridge.session import DeviceSession

STATE = {
    "on": False,
    "bri": 128,
    "ps": -1,
    "seg": [{"start": 0, "stop": 30, "col": [[255, 0, 0]], "fx": 0, "on": True, "bri": 255}],
}
INFO = {"name": "Desk", "ver": "0.14.0", "mac": "aabbccddeeff", "leds": {"count": 30, "segs": 1}}
PRESETS = {
    "_name": "meta",
    "0": {},
    "1": {"n": "Evening"},
    "2": {"on": False},
}


class FakeDevice:
    """In-memory device behind ``httpx.MockTransport``."""

    def __init__(self, *, fail_posts: bool = False) -> None:
        self.state: Dict[str, Any] = json.loads(json.dumps(STATE))
        self.fail_posts = fail_posts
        self.posts: List[Dict[str, Any]] = []
        self.gets: Dict[str, int] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST":
            if self.fail_posts:
                return httpx.Response(500)
            self.posts.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})
        self.gets[path] = self.gets.get(path, 0) + 1
        if path == "/json/state":
            return httpx.Response(200, json=self.state)
        if path == "/json/info":
            return httpx.Response(200, json=INFO)
        if path == "/json/presets":
            return httpx.Response(200, json=PRESETS)
        if path == "/json/effects":
            return httpx.Response(200, json=["Solid", "Blink"])
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeSocket:
    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.incoming: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self.closed = False

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(None)

    def push(self, payload: Any) -> None:
        self.incoming.put_nowait(payload if isinstance(payload, str) else json.dumps(payload))

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnect:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.socket = FakeSocket()
        self.calls: List[str] = []

    def __call__(self, url: str, **kwargs: Any) -> Any:
        self.calls.append(url)
        return self._open()

    @contextlib.asynccontextmanager
    async def _open(self):
        if self.fail:
            raise OSError("connection refused")
        yield self.socket


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _polling_session(device: FakeDevice, **config: Any) -> DeviceSession:
    return DeviceSession(
        Config(**config),
        "10.0.0.20",
        use_websockets=False,
        transport=device.transport,
    )


def _push_session(device: FakeDevice, connect: FakeConnect, **config: Any) -> DeviceSession:
    return DeviceSession(
        Config(**config),
        "10.0.0.20",
        use_websockets=True,
        transport=device.transport,
        connect=connect,
    )


@pytest.mark.asyncio
async def test_polling_session_mirrors_device_state() -> None:
    device = FakeDevice()
    device.state["on"] = True
    session = _polling_session(device, poll_interval=0.02)
    try:
        await session.start()
        await wait_until(lambda: session.get_state().on)
        assert session.channel_state is ChannelState.POLLING
        state = session.get_state()
        assert state.brightness == 50
        assert state.color == (255, 0, 0)
        await wait_until(lambda: device.gets.get("/json/state", 0) >= 2)
        info = session.get_info()
        assert info is not None and info.name == "Desk"
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_push_message_updates_state_and_listeners() -> None:
    device = FakeDevice()
    connect = FakeConnect()
    session = _push_session(device, connect)
    seen: List[DeviceState] = []
    session.add_state_listener(seen.append)
    try:
        await session.start()
        await wait_until(lambda: session.channel_state is ChannelState.CONNECTED)
        assert connect.calls == ["ws://10.0.0.20:80/ws"]
        await wait_until(lambda: device.gets.get("/json/state", 0) >= 1 and bool(seen))

        connect.socket.push(
            {"state": {"on": True, "bri": 255, "ps": 4, "seg": [{"col": [[0, 0, 255]], "fx": 2}]}}
        )
        await wait_until(lambda: session.get_state().on)
        state = session.get_state()
        assert state.brightness == 100
        assert state.color == (0, 0, 255)
        assert state.hue == 240
        assert state.effect == 2
        assert session.get_active_preset_id() == 4
        assert seen[-1].on is True
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_mutations_use_push_channel_when_connected() -> None:
    device = FakeDevice()
    connect = FakeConnect()
    session = _push_session(device, connect)
    try:
        await session.start()
        await wait_until(lambda: session.channel_state is ChannelState.CONNECTED)
        await wait_until(lambda: session.get_segment_state(0) is not None)
        await session.set_brightness(50)
        await session.set_power(True)
        assert connect.socket.sent == [{"bri": 128}, {"on": True}]
        assert device.posts == []
        assert session.get_state().brightness == 50
        assert session.get_state().on is True
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_mutations_fall_back_to_http() -> None:
    device = FakeDevice()
    session = _polling_session(device, poll_interval=60)
    try:
        await session.start()
        await wait_until(lambda: session.get_segment_state(0) is not None)
        await session.set_color(0, 255, 0)
        await session.set_effect(7)
        assert device.posts == [
            {"seg": {"id": 0, "col": [[0, 255, 0]]}},
            {"seg": {"id": 0, "fx": 7}},
        ]
        state = session.get_state()
        assert state.color == (0, 255, 0)
        assert (state.hue, state.saturation) == (120, 100)
        assert state.effect == 7
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_set_hsv_sends_rgb() -> None:
    device = FakeDevice()
    session = _polling_session(device, poll_interval=60)
    try:
        await session.set_hsv(240, 100, 100)
        assert device.posts == [{"seg": {"id": 0, "col": [[0, 0, 255]]}}]
        assert session.get_state().hue == 240
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_failed_command_raises_and_keeps_optimistic_state() -> None:
    device = FakeDevice(fail_posts=True)
    session = _polling_session(device, poll_interval=60)
    try:
        with pytest.raises(DeviceCommandError):
            await session.set_power(True)
        assert session.get_state().on is True
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_reconnect_gives_up_and_falls_back_to_polling() -> None:
    device = FakeDevice()
    connect = FakeConnect(fail=True)
    session = _push_session(
        device, connect, reconnect_interval=0.0, reconnect_max_attempts=2, poll_interval=0.05
    )
    try:
        await session.start()
        await wait_until(lambda: session.channel_state is ChannelState.POLLING)
        assert len(connect.calls) == 3
        assert session.reconnect_attempts == 2
        await wait_until(lambda: device.gets.get("/json/state", 0) >= 2)
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_reconnect_resets_attempts_after_success() -> None:
    device = FakeDevice()
    connect = FakeConnect()
    session = _push_session(device, connect, reconnect_interval=0.0)
    try:
        await session.start()
        await wait_until(lambda: session.channel_state is ChannelState.CONNECTED)
        first_socket = connect.socket
        connect.socket = FakeSocket()
        first_socket.incoming.put_nowait(None)
        await wait_until(lambda: len(connect.calls) == 2)
        await wait_until(lambda: session.channel_state is ChannelState.CONNECTED)
        assert session.reconnect_attempts == 0
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_malformed_push_message_is_dropped() -> None:
    device = FakeDevice()
    connect = FakeConnect()
    session = _push_session(device, connect)
    try:
        await session.start()
        await wait_until(lambda: session.channel_state is ChannelState.CONNECTED)
        await wait_until(lambda: session.get_segment_state(0) is not None)
        before = session.get_state()
        connect.socket.push("{not json")
        connect.socket.push({"state": {"on": True, "seg": "broken"}})
        connect.socket.push({"state": {"on": True, "bri": 51}})
        await wait_until(lambda: session.get_state().on)
        assert session.get_state().brightness == 20
        assert before.on is False
        assert session.channel_state is ChannelState.CONNECTED
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_segment_only_message_updates_segments() -> None:
    device = FakeDevice()
    connect = FakeConnect()
    session = _push_session(device, connect)
    try:
        await session.start()
        await wait_until(lambda: session.channel_state is ChannelState.CONNECTED)
        await wait_until(lambda: session.get_segment_state(0) is not None)
        connect.socket.push(
            {
                "seg": [
                    {"start": 0, "stop": 10, "col": [[255, 255, 255]], "on": True},
                    {"start": 10, "stop": 20, "col": [[0, 255, 0]], "bri": 255},
                ]
            }
        )
        await wait_until(lambda: session.get_segment_state(1) is not None)
        second = session.get_segment_state(1)
        assert second is not None
        assert second.color == (0, 255, 0)
        assert second.brightness == 100
        assert session.get_segment_state(2) is None
        segments = await session.get_segments()
        assert [segment.stop for segment in segments] == [10, 20]
        assert device.gets["/json/state"] == 1
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_info_in_push_message_refreshes_identity() -> None:
    device = FakeDevice()
    connect = FakeConnect()
    session = _push_session(device, connect)
    try:
        await session.start()
        await wait_until(lambda: session.get_info() is not None)
        connect.socket.push({"info": {"name": "Renamed", "ver": "0.15.0", "leds": {"count": 90}}})
        await wait_until(lambda: session.get_info().name == "Renamed")
        assert session.get_info().led_count == 90
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_listener_failure_is_isolated() -> None:
    device = FakeDevice()
    session = _polling_session(device, poll_interval=60)
    seen: List[DeviceState] = []

    def broken(state: DeviceState) -> None:
        raise RuntimeError("listener bug")

    session.add_state_listener(broken)
    session.add_state_listener(seen.append)
    try:
        await session.set_power(True)
        assert seen and seen[-1].on is True
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_presets_are_cached_and_broadcast() -> None:
    device = FakeDevice()
    session = _polling_session(device, poll_interval=60)
    broadcasts = []
    session.add_preset_listener(broadcasts.append)
    try:
        presets = await session.get_presets()
        assert set(presets) == {"0", "1", "2"}
        assert presets["1"].name == "Evening"
        assert presets["2"].name == "Preset 2"
        await session.get_presets()
        assert device.gets["/json/presets"] == 1
        assert len(broadcasts) == 1

        session.invalidate_presets()
        await session.get_presets()
        assert device.gets["/json/presets"] == 2
        assert len(broadcasts) == 2
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_activate_preset_refreshes_state_without_push() -> None:
    device = FakeDevice()
    session = _polling_session(device, poll_interval=60)
    try:
        await session.start()
        await wait_until(lambda: session.get_segment_state(0) is not None)
        device.state["ps"] = 2
        device.state["on"] = True
        await session.activate_preset(2)
        assert device.posts == [{"ps": 2}]
        assert device.gets["/json/state"] == 2
        assert session.get_active_preset_id() == 2
        assert session.get_state().on is True
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_effects_are_listed() -> None:
    device = FakeDevice()
    session = _polling_session(device, poll_interval=60)
    try:
        assert await session.get_effects() == ["Solid", "Blink"]
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_cleanup_is_idempotent_and_detaches_listeners() -> None:
    device = FakeDevice()
    connect = FakeConnect()
    session = _push_session(device, connect)
    seen: List[DeviceState] = []
    session.add_state_listener(seen.append)
    await session.start()
    await wait_until(lambda: session.channel_state is ChannelState.CONNECTED)
    await session.cleanup()
    await session.cleanup()
    assert session.closed
    assert session.channel_state is ChannelState.DISCONNECTED
    count = len(seen)
    connect.socket.push({"state": {"on": True}})
    await asyncio.sleep(0.02)
    assert len(seen) == count
    assert len(connect.calls) == 1


@pytest.mark.asyncio
async def test_segment_changes_survive_state_without_segments() -> None:
    device = FakeDevice()
    connect = FakeConnect()
    session = _push_session(device, connect)
    try:
        await session.start()
        await wait_until(lambda: session.channel_state is ChannelState.CONNECTED)
        await wait_until(lambda: session.get_segment_state(0) is not None)

        await session.set_segment_power(0, False)
        await session.set_segment_color(0, 0, 0, 255)
        await session.set_segment_brightness(0, 20)
        await session.set_segment_effect(0, 5)
        assert connect.socket.sent[0] == {"seg": {"id": 0, "on": False}}

        segment = (await session.get_segments())[0]
        assert segment.on is False
        assert segment.colors[0] == [0, 0, 255]
        assert segment.brightness == 20
        assert segment.effect == 5

        connect.socket.push({"state": {"on": True, "bri": 10}})
        await wait_until(lambda: session.get_state().on)
        mirrored = session.get_segment_state(0)
        assert mirrored is not None
        assert mirrored.on is False
        assert mirrored.color == (0, 0, 255)
        assert mirrored.brightness == 20
        assert mirrored.effect == 5
    finally:
        await session.cleanup()


@pytest.mark.asyncio
async def test_segment_setter_ignores_unknown_index() -> None:
    device = FakeDevice()
    session = _polling_session(device, poll_interval=60)
    try:
        await session.set_segment_power(3, True)
        assert device.posts == [{"seg": {"id": 3, "on": True}}]
        assert session.get_segment_state(3) is None
    finally:
        await session.cleanup()
