"""Live state synchronisation for a single device.

A session mirrors one device's state locally. Updates arrive over two paths
that are not serialised against each other (last writer wins):

- the push channel (``ws://<host>:<port>/ws``) delivering full-state and
  segment-only JSON messages, and
- pull fetches of ``/json/state``, issued once at start-up, after preset
  activation without a push channel, and periodically in polling mode.

When the push channel closes it is reopened with a capped linear backoff.
Once the reconnect ceiling is reached the session polls for the rest of its
life.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import json
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

import httpx
import websockets
from websockets.exceptions import WebSocketException

from .client import DeviceClient, DeviceCommandError, DeviceRequestError
from .color import clamp_public_brightness, hsv_to_rgb, to_native_brightness
from .config import Config
from .logging import get_logger
from .metrics import (
    record_channel_transition,
    record_command,
    record_polling_fallback,
    record_reconnect_attempt,
    record_state_update,
)
from .models import (
    ChannelState,
    DeviceInfo,
    DeviceState,
    Preset,
    PresetRegistry,
    Segment,
    parse_segments,
)
from .observers import ObserverRegistry, PresetObserver, StateObserver
from .timers import ReconnectPolicy, Timer

_MALFORMED = (AttributeError, IndexError, KeyError, TypeError, ValueError)


def _clamp_channel(value: int) -> int:
    return max(0, min(255, int(value)))


class DeviceSession:
    """Own one device's connection, state mirror and listeners."""

    def __init__(
        self,
        config: Config,
        host: str,
        port: int = 80,
        *,
        poll_interval: Optional[float] = None,
        use_websockets: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.config = config
        self.host = host
        self.port = port
        self.poll_interval = poll_interval if poll_interval is not None else config.poll_interval
        self.use_websockets = (
            use_websockets if use_websockets is not None else config.use_websockets
        )
        self.ws_url = f"ws://{host}:{port}/ws"
        self.logger = get_logger("wled.session")
        self._client = DeviceClient(
            host, port, timeout=config.http_timeout, transport=transport
        )
        self._connect = connect or websockets.connect
        self._policy = ReconnectPolicy(
            base=config.reconnect_interval,
            cap=config.reconnect_backoff_cap,
            max_attempts=config.reconnect_max_attempts,
        )
        self._state = DeviceState()
        self._segments: List[Segment] = []
        self._info: Optional[DeviceInfo] = None
        self._presets = PresetRegistry()
        self._active_preset_id = -1
        self._state_observers: ObserverRegistry[DeviceState] = ObserverRegistry(
            "state", self.logger
        )
        self._preset_observers: ObserverRegistry[Mapping[str, Preset]] = ObserverRegistry(
            "preset", self.logger
        )
        self._channel_state = ChannelState.DISCONNECTED
        self._channel_abandoned = False
        self._ws: Optional[Any] = None
        self._channel_task: Optional[asyncio.Task[None]] = None
        self._reconnect_timer: Optional[Timer] = None
        self._poll_timer: Optional[Timer] = None
        self._reconnect_attempts = 0
        self._background: Set[asyncio.Task[None]] = set()
        self._started = False
        self._closed = False

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Fetch identity and begin tracking state over the configured path."""

        if self._started or self._closed:
            return
        self._started = True
        self.logger.info(
            "Device session starting",
            extra=self._extra(use_websockets=self.use_websockets, poll_interval=self.poll_interval),
        )
        self._spawn(self._initial_info(), "info")
        if self.use_websockets:
            self._start_channel()
            self._spawn(self._initial_refresh(), "initial-state")
        else:
            self._start_polling()

    async def cleanup(self) -> None:
        """Stop timers, close the push channel and drop all listeners.

        Safe to call repeatedly.
        """

        first = not self._closed
        self._closed = True
        self._state_observers.clear()
        self._preset_observers.clear()
        if not first:
            return

        for timer in (self._poll_timer, self._reconnect_timer):
            if timer is not None:
                await timer.stop()
        self._poll_timer = None
        self._reconnect_timer = None

        channel_task, self._channel_task = self._channel_task, None
        await self._cancel_task(channel_task)
        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(WebSocketException, OSError):
                await ws.close()

        background = list(self._background)
        self._background.clear()
        for task in background:
            await self._cancel_task(task)

        await self._client.aclose()
        self._set_channel_state(ChannelState.DISCONNECTED)
        self.logger.info("Device session closed", extra=self._extra())

    @property
    def channel_state(self) -> ChannelState:
        return self._channel_state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------ #
    # Read access                                                          #
    # ------------------------------------------------------------------ #

    def get_state(self) -> DeviceState:
        return self._state.copy()

    def get_segment_state(self, index: int) -> Optional[DeviceState]:
        """Return the sub-state of segment ``index``, or ``None`` if unknown."""

        segments = self._state.segment_state or []
        if index < 0 or index >= len(segments):
            return None
        return segments[index].copy()

    def get_info(self) -> Optional[DeviceInfo]:
        return self._info

    async def fetch_info(self) -> DeviceInfo:
        data = await self._client.get_info()
        try:
            info = DeviceInfo.from_payload(data)
        except _MALFORMED as exc:
            raise DeviceRequestError(f"Device info from {self.host} is malformed") from exc
        self._info = info
        return info

    async def get_segments(self) -> List[Segment]:
        """Return the last known segments, fetching state once if none are known."""

        if not self._segments:
            await self.refresh_state()
        return copy.deepcopy(self._segments)

    async def get_presets(self) -> Dict[str, Preset]:
        """Return the preset map, fetching and broadcasting it on first use."""

        if self._presets.loaded:
            return self._presets.snapshot()
        raw = await self._client.get_presets()
        presets = self._presets.populate(raw)
        self.logger.debug("Loaded presets", extra=self._extra(count=len(presets)))
        self._preset_observers.notify(presets)
        return presets

    def invalidate_presets(self) -> None:
        self._presets.invalidate()

    def get_active_preset_id(self) -> int:
        return self._active_preset_id

    async def get_effects(self) -> List[str]:
        return await self._client.get_effects()

    async def refresh_state(self) -> None:
        """Pull the full state over HTTP and replace the mirror with it."""

        data = await self._client.get_state()
        self._apply_state(data, source="http")

    # ------------------------------------------------------------------ #
    # Listeners                                                            #
    # ------------------------------------------------------------------ #

    def add_state_listener(self, listener: StateObserver) -> Callable[[], None]:
        return self._state_observers.add(listener)

    def remove_state_listener(self, listener: StateObserver) -> None:
        self._state_observers.remove(listener)

    def add_preset_listener(self, listener: PresetObserver) -> Callable[[], None]:
        return self._preset_observers.add(listener)

    def remove_preset_listener(self, listener: PresetObserver) -> None:
        self._preset_observers.remove(listener)

    # ------------------------------------------------------------------ #
    # Mutations                                                            #
    # ------------------------------------------------------------------ #

    async def set_power(self, on: bool) -> None:
        self._state.on = on
        self._notify_state()
        await self._send({"on": on})

    async def set_brightness(self, brightness: float) -> None:
        """Set master brightness on the 0-100 scale."""

        self._state.brightness = clamp_public_brightness(brightness)
        self._notify_state()
        await self._send({"bri": to_native_brightness(brightness)})

    async def set_color(self, r: int, g: int, b: int) -> None:
        r, g, b = _clamp_channel(r), _clamp_channel(g), _clamp_channel(b)
        self._state.set_color(r, g, b)
        self._notify_state()
        await self._send({"seg": {"id": 0, "col": [[r, g, b]]}})

    async def set_hsv(self, hue: float, saturation: float, value: float) -> None:
        await self.set_color(*hsv_to_rgb(hue, saturation, value))

    async def set_effect(self, effect: int) -> None:
        self._state.effect = effect
        self._notify_state()
        await self._send({"seg": {"id": 0, "fx": effect}})

    async def set_segment_power(self, index: int, on: bool) -> None:
        segment = self._segment(index)
        if segment is not None:
            segment.on = on
        self._sync_segment_state()
        await self._send({"seg": {"id": index, "on": on}})

    async def set_segment_brightness(self, index: int, brightness: float) -> None:
        segment = self._segment(index)
        if segment is not None:
            segment.brightness = clamp_public_brightness(brightness)
        self._sync_segment_state()
        await self._send({"seg": {"id": index, "bri": to_native_brightness(brightness)}})

    async def set_segment_color(self, index: int, r: int, g: int, b: int) -> None:
        r, g, b = _clamp_channel(r), _clamp_channel(g), _clamp_channel(b)
        segment = self._segment(index)
        if segment is not None:
            segment.colors = [[r, g, b], *segment.colors[1:]]
        self._sync_segment_state()
        await self._send({"seg": {"id": index, "col": [[r, g, b]]}})

    async def set_segment_hsv(
        self, index: int, hue: float, saturation: float, value: float
    ) -> None:
        await self.set_segment_color(index, *hsv_to_rgb(hue, saturation, value))

    async def set_segment_effect(self, index: int, effect: int) -> None:
        segment = self._segment(index)
        if segment is not None:
            segment.effect = effect
        self._sync_segment_state()
        await self._send({"seg": {"id": index, "fx": effect}})

    async def activate_preset(self, preset_id: int) -> None:
        """Activate a stored preset.

        Without a push channel the full state is pulled afterwards since a
        preset may change any number of fields.
        """

        pushed = self._channel_state is ChannelState.CONNECTED
        self._active_preset_id = preset_id
        self._state.preset_id = preset_id
        self._notify_state()
        await self._send({"ps": preset_id})
        if pushed:
            return
        try:
            await self.refresh_state()
        except DeviceRequestError as exc:
            self.logger.warning(
                "State refresh after preset activation failed",
                extra=self._extra(preset_id=preset_id, error=str(exc)),
            )

    def stop_polling(self) -> None:
        if self._poll_timer is not None:
            self._poll_timer.cancel()
            self._poll_timer = None

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    def _extra(self, **values: Any) -> Dict[str, Any]:
        return {"host": self.host, "port": self.port, **values}

    def _spawn(self, coro: Any, label: str) -> None:
        task: asyncio.Task[None] = asyncio.create_task(coro, name=f"wled-{label}-{self.host}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cancel_task(self, task: Optional[asyncio.Task[None]]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _initial_info(self) -> None:
        try:
            info = await self.fetch_info()
        except DeviceRequestError as exc:
            self.logger.error(
                "Failed to fetch device info", extra=self._extra(error=str(exc))
            )
            return
        self.logger.info(
            "Device identified",
            extra=self._extra(device_name=info.name, version=info.version, mac=info.mac),
        )

    async def _initial_refresh(self) -> None:
        try:
            await self.refresh_state()
        except DeviceRequestError as exc:
            self.logger.debug(
                "Initial state fetch failed", extra=self._extra(error=str(exc))
            )

    async def _poll_once(self) -> None:
        try:
            await self.refresh_state()
        except DeviceRequestError as exc:
            self.logger.debug("State poll failed", extra=self._extra(error=str(exc)))

    def _start_polling(self) -> None:
        if self._closed:
            return
        self.stop_polling()
        self._set_channel_state(ChannelState.POLLING)
        self._poll_timer = Timer(
            self.poll_interval,
            self._poll_once,
            repeat=True,
            immediate=True,
            name=f"wled-poll-{self.host}",
        ).start()
        self.logger.info(
            "Polling device state", extra=self._extra(interval=self.poll_interval)
        )

    def _set_channel_state(self, state: ChannelState) -> None:
        if state is self._channel_state:
            return
        previous, self._channel_state = self._channel_state, state
        record_channel_transition(state.value)
        self.logger.debug(
            "Push channel state changed",
            extra=self._extra(state=state.value, previous=previous.value),
        )

    async def _open_channel(self) -> None:
        self._start_channel()

    def _start_channel(self) -> None:
        if self._closed or self._channel_abandoned:
            return
        if self._channel_task is not None and not self._channel_task.done():
            return
        self._channel_task = asyncio.create_task(
            self._run_channel(), name=f"wled-channel-{self.host}"
        )

    async def _run_channel(self) -> None:
        self._set_channel_state(ChannelState.CONNECTING)
        self.logger.debug("Connecting push channel", extra=self._extra(url=self.ws_url))
        try:
            async with self._connect(
                self.ws_url,
                open_timeout=self.config.websocket_open_timeout,
                ping_interval=20,
                ping_timeout=10,
            ) as ws:
                self._ws = ws
                self._on_channel_open()
                async for message in ws:
                    self._handle_message(message)
            self.logger.debug("Push channel closed", extra=self._extra())
        except asyncio.CancelledError:
            raise
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            self.logger.warning(
                "Push channel error", extra=self._extra(error=str(exc) or type(exc).__name__)
            )
        finally:
            self._ws = None
        if self._closed:
            return
        self._set_channel_state(ChannelState.DISCONNECTED)
        self._schedule_reconnect()

    def _on_channel_open(self) -> None:
        self._set_channel_state(ChannelState.CONNECTED)
        self._reconnect_attempts = 0
        self.logger.info("Push channel connected", extra=self._extra())

    def _schedule_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        if self._policy.exhausted(self._reconnect_attempts):
            self._channel_abandoned = True
            record_polling_fallback()
            self.logger.error(
                "Push channel reconnect attempts exhausted; falling back to polling",
                extra=self._extra(attempts=self._reconnect_attempts),
            )
            self._start_polling()
            return
        self._reconnect_attempts += 1
        delay = self._policy.delay(self._reconnect_attempts)
        record_reconnect_attempt()
        self._set_channel_state(ChannelState.RECONNECTING)
        self.logger.debug(
            "Scheduling push channel reconnect",
            extra=self._extra(
                attempt=self._reconnect_attempts,
                max_attempts=self._policy.max_attempts,
                delay=delay,
            ),
        )
        self._reconnect_timer = Timer(
            delay, self._open_channel, name=f"wled-reconnect-{self.host}"
        ).start()

    def _handle_message(self, message: Any) -> None:
        try:
            payload = json.loads(message)
        except (TypeError, ValueError) as exc:
            record_state_update("websocket", "malformed")
            self.logger.error(
                "Error parsing push message", extra=self._extra(error=str(exc))
            )
            return
        if not isinstance(payload, Mapping):
            record_state_update("websocket", "malformed")
            self.logger.debug("Ignoring non-object push message", extra=self._extra())
            return

        if isinstance(payload.get("state"), Mapping):
            self._apply_state(payload["state"], source="websocket")
        elif "seg" in payload:
            self._apply_segments(payload["seg"], source="websocket")

        info = payload.get("info")
        if isinstance(info, Mapping):
            try:
                self._info = DeviceInfo.from_payload(info)
            except _MALFORMED as exc:
                self.logger.debug(
                    "Ignoring malformed info in push message", extra=self._extra(error=str(exc))
                )

    def _apply_state(self, data: Mapping[str, Any], source: str) -> bool:
        try:
            state = DeviceState.from_payload(data)
            segments = parse_segments(data["seg"]) if "seg" in data else None
        except _MALFORMED as exc:
            record_state_update(source, "malformed")
            self.logger.warning(
                "Discarding malformed state payload",
                extra=self._extra(source=source, error=str(exc)),
            )
            return False

        if segments is not None:
            self._segments = segments
        state.segment_state = [segment.to_state() for segment in self._segments] or None
        if "ps" in data:
            self._active_preset_id = state.preset_id
        self._state = state
        record_state_update(source, "applied")
        self._notify_state()
        return True

    def _apply_segments(self, payload: Any, source: str) -> bool:
        try:
            segments = parse_segments(payload)
        except _MALFORMED as exc:
            record_state_update(source, "malformed")
            self.logger.warning(
                "Discarding malformed segment payload",
                extra=self._extra(source=source, error=str(exc)),
            )
            return False
        self._segments = segments
        self._state.segment_state = [segment.to_state() for segment in segments] or None
        record_state_update(source, "segments")
        self._notify_state()
        return True

    def _segment(self, index: int) -> Optional[Segment]:
        if 0 <= index < len(self._segments):
            return self._segments[index]
        return None

    def _sync_segment_state(self) -> None:
        self._state.segment_state = [segment.to_state() for segment in self._segments] or None
        self._notify_state()

    def _notify_state(self) -> None:
        self._state_observers.notify(self.get_state())

    async def _send(self, payload: Mapping[str, Any]) -> None:
        ws = self._ws
        if self._channel_state is ChannelState.CONNECTED and ws is not None:
            try:
                await ws.send(json.dumps(payload))
            except (WebSocketException, OSError) as exc:
                record_command("websocket", "error")
                self.logger.debug(
                    "Push send failed; falling back to HTTP",
                    extra=self._extra(error=str(exc)),
                )
            else:
                record_command("websocket", "ok")
                return

        try:
            await self._client.post_state(payload)
        except DeviceRequestError as exc:
            record_command("http", "error")
            self.logger.error(
                "Failed to send state update",
                extra=self._extra(payload=dict(payload), error=str(exc)),
            )
            raise DeviceCommandError(str(exc)) from exc
        record_command("http", "ok")
