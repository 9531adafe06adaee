"""Colour space and brightness conversions shared by state parsing and commands."""

from __future__ import annotations

import math
from typing import Tuple

NATIVE_BRIGHTNESS_MAX = 255
PUBLIC_BRIGHTNESS_MAX = 100


def round_half_away(value: float) -> int:
    """Round to the nearest integer, resolving .5 away from zero."""

    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def _clamp(value: int, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, value))


def rgb_to_hsv(r: int, g: int, b: int) -> Tuple[int, int, int]:
    """Convert 0-255 RGB channels to hue degrees and saturation/value percent.

    Hue is wrapped into ``[0, 360)``; an achromatic input (all channels equal)
    yields a hue of 0.
    """

    red, green, blue = r / 255, g / 255, b / 255
    maximum = max(red, green, blue)
    minimum = min(red, green, blue)
    delta = maximum - minimum

    if delta == 0:
        hue = 0.0
    elif maximum == red:
        hue = ((green - blue) / delta) % 6
    elif maximum == green:
        hue = (blue - red) / delta + 2
    else:
        hue = (red - green) / delta + 4

    saturation = 0.0 if maximum == 0 else delta / maximum
    return (
        round_half_away(hue * 60) % 360,
        round_half_away(saturation * 100),
        round_half_away(maximum * 100),
    )


def hsv_to_rgb(h: float, s: float, v: float) -> Tuple[int, int, int]:
    """Convert hue degrees and saturation/value percent to 0-255 RGB channels."""

    hue = (h % 360) / 360
    saturation = max(0.0, min(1.0, s / 100))
    value = max(0.0, min(1.0, v / 100))

    sector = math.floor(hue * 6)
    fraction = hue * 6 - sector
    p = value * (1 - saturation)
    q = value * (1 - fraction * saturation)
    t = value * (1 - (1 - fraction) * saturation)

    red, green, blue = {
        0: (value, t, p),
        1: (q, value, p),
        2: (p, value, t),
        3: (p, q, value),
        4: (t, p, value),
        5: (value, p, q),
    }[sector % 6]

    return tuple(  # type: ignore[return-value]
        _clamp(round_half_away(channel * 255), 0, 255) for channel in (red, green, blue)
    )


def to_native_brightness(brightness: float) -> int:
    """Map a 0-100 brightness onto the device's 0-255 range, clamped."""

    native = round_half_away(brightness / PUBLIC_BRIGHTNESS_MAX * NATIVE_BRIGHTNESS_MAX)
    return _clamp(native, 0, NATIVE_BRIGHTNESS_MAX)


def to_public_brightness(native: float) -> int:
    """Map a device 0-255 brightness onto the 0-100 range, clamped."""

    public = round_half_away(native / NATIVE_BRIGHTNESS_MAX * PUBLIC_BRIGHTNESS_MAX)
    return _clamp(public, 0, PUBLIC_BRIGHTNESS_MAX)


def clamp_public_brightness(brightness: float) -> int:
    return _clamp(round_half_away(brightness), 0, PUBLIC_BRIGHTNESS_MAX)
