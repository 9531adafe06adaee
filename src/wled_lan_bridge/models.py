"""Data model for device state, identity, presets and discovery results."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .color import rgb_to_hsv, to_public_brightness

RGB = Tuple[int, int, int]

LOCAL_HOST_SUFFIX = ".local"
RESERVED_PRESET_KEYS = frozenset({"_name", "_type"})


class ChannelState(Enum):
    """Push channel status of a device session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    POLLING = "polling"


class DiscoveryMethod(str, Enum):
    """How a device candidate was found."""

    ADVERTISEMENT = "advertisement"
    BROADCAST = "broadcast"
    DIRECT = "direct"


def _primary_color(colors: Any) -> RGB:
    if not colors:
        return (0, 0, 0)
    first = colors[0]
    if not first:
        return (0, 0, 0)
    r, g, b = (int(channel) for channel in list(first)[:3])
    return (r, g, b)


@dataclass
class DeviceState:
    """Mutable snapshot of one device (or one segment of it)."""

    on: bool = False
    brightness: int = 0
    color: RGB = (0, 0, 0)
    hue: int = 0
    saturation: int = 0
    effect: int = 0
    preset_id: int = -1
    segment_state: Optional[List["DeviceState"]] = None

    def set_color(self, r: int, g: int, b: int) -> None:
        """Replace the colour and recompute hue and saturation from it."""

        self.color = (r, g, b)
        self.hue, self.saturation, _ = rgb_to_hsv(r, g, b)

    def copy(self) -> "DeviceState":
        return copy.deepcopy(self)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "DeviceState":
        """Build a state from a ``/json/state`` object.

        Colour and effect are read from the first segment. A missing or zero
        ``ps`` means no preset is active.
        """

        segments = data.get("seg") or []
        first = segments[0] if isinstance(segments, list) and segments else {}
        bri = data.get("bri")
        preset = data.get("ps")
        state = cls(
            on=data.get("on") is True,
            brightness=to_public_brightness(int(bri)) if bri is not None else 0,
            effect=int(first.get("fx") or 0),
            preset_id=int(preset) if preset else -1,
        )
        state.set_color(*_primary_color(first.get("col")))
        return state


@dataclass(frozen=True)
class DeviceInfo:
    """Identity of a device as reported by ``/json/info``."""

    name: str
    version: str
    mac: str
    segment_count: int
    led_count: int

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "DeviceInfo":
        leds = data.get("leds")
        if not isinstance(leds, Mapping):
            leds = {}
        return cls(
            name=str(data.get("name") or "WLED"),
            version=str(data.get("ver") or "Unknown"),
            mac=str(data.get("mac") or "Unknown"),
            segment_count=int(leds.get("segs") or 1),
            led_count=int(leds.get("count") or 0),
        )


@dataclass
class Segment:
    """One addressable pixel range of a device."""

    id: int
    name: Optional[str]
    start: int
    stop: int
    colors: List[List[int]] = field(default_factory=list)
    brightness: int = 0
    on: bool = False
    selected: bool = False
    effect: int = 0

    @property
    def length(self) -> int:
        return self.stop - self.start

    def to_state(self) -> DeviceState:
        state = DeviceState(on=self.on, brightness=self.brightness, effect=self.effect)
        state.set_color(*_primary_color(self.colors))
        return state

    @classmethod
    def from_payload(cls, data: Mapping[str, Any], index: int) -> "Segment":
        bri = data.get("bri")
        start = int(data.get("start") or 0)
        return cls(
            id=index,
            name=str(data.get("n") or f"Segment {index}"),
            start=start,
            stop=int(data.get("stop") if data.get("stop") is not None else start),
            colors=[list(color) for color in data.get("col") or []],
            brightness=to_public_brightness(int(bri)) if bri is not None else 0,
            on=data.get("on") is True,
            selected=data.get("sel") is True,
            effect=int(data.get("fx") or 0),
        )


def parse_segments(payload: Sequence[Any]) -> List[Segment]:
    """Parse a ``seg`` array; raises ``ValueError`` if it is not a list of objects."""

    if not isinstance(payload, list):
        raise ValueError("segment payload must be a list")
    segments: List[Segment] = []
    for index, item in enumerate(payload):
        if not isinstance(item, Mapping):
            raise ValueError(f"segment {index} is not an object")
        segments.append(Segment.from_payload(item, index))
    return segments


@dataclass(frozen=True)
class Preset:
    """A stored preset as shown to users."""

    id: str
    name: str
    data: Mapping[str, Any]


class PresetRegistry:
    """Cache of the device's presets keyed by numeric-string id."""

    def __init__(self) -> None:
        self._presets: Dict[str, Preset] = {}
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    def populate(self, raw: Mapping[str, Any]) -> Dict[str, Preset]:
        presets: Dict[str, Preset] = {}
        for key, data in raw.items():
            key = str(key)
            if key in RESERVED_PRESET_KEYS or not key.isdigit():
                continue
            if not isinstance(data, Mapping):
                continue
            name = data.get("n")
            if not isinstance(name, str):
                name = data.get("name")
            if not isinstance(name, str):
                name = f"Preset {key}"
            presets[key] = Preset(id=key, name=name, data=dict(data))
        self._presets = presets
        self._loaded = True
        return self.snapshot()

    def invalidate(self) -> None:
        self._presets = {}
        self._loaded = False

    def snapshot(self) -> Dict[str, Preset]:
        return dict(self._presets)

    def __len__(self) -> int:
        return len(self._presets)


@dataclass(frozen=True)
class DiscoveredDeviceInfo:
    """Enrichment details captured while verifying a candidate."""

    version: str
    mac: str
    led_count: int


def normalize_device_id(mac: Optional[str], host: str) -> str:
    """Derive the discovery key from a MAC, or from the host when it is missing."""

    if mac:
        normalized = mac.replace(":", "").replace("-", "").strip().upper()
        if normalized:
            return normalized
    return f"wled-{host}"


def is_local_hostname(host: str) -> bool:
    return host.lower().rstrip(".").endswith(LOCAL_HOST_SUFFIX)


@dataclass(frozen=True)
class DiscoveredDevice:
    """A device confirmed to speak the control API."""

    id: str
    name: str
    host: str
    port: int
    method: DiscoveryMethod
    info: Optional[DiscoveredDeviceInfo] = None

    @classmethod
    def from_info_payload(
        cls, host: str, port: int, method: DiscoveryMethod, data: Mapping[str, Any]
    ) -> "DiscoveredDevice":
        mac = data.get("mac")
        leds = data.get("leds")
        if not isinstance(leds, Mapping):
            leds = {}
        return cls(
            id=normalize_device_id(str(mac) if mac else None, host),
            name=str(data.get("name") or f"WLED {host}"),
            host=host,
            port=port,
            method=method,
            info=DiscoveredDeviceInfo(
                version=str(data.get("ver") or "Unknown"),
                mac=str(mac or "Unknown"),
                led_count=int(leds.get("count") or 0),
            ),
        )


@dataclass(frozen=True)
class CheckQueueItem:
    """Candidate waiting for verification."""

    host: str
    port: int
    method: DiscoveryMethod

    @property
    def key(self) -> Tuple[str, int]:
        return (self.host, self.port)
