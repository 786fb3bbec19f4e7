"""Colour conversions used by the lighting adapters."""

from __future__ import annotations

import colorsys
import math
from typing import NamedTuple


class HSV(NamedTuple):
    hue: int  # degrees, 0-360
    saturation: int  # percent, 0-100
    value: int  # percent, 0-100


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def rgb_to_hsv(r: int, g: int, b: int) -> HSV:
    """Convert 0-255 RGB channels to whole-degree hue and whole-percent S/V.

    The value channel is reported for completeness only; callers carry
    brightness separately.
    """

    h, s, v = colorsys.rgb_to_hsv(r / 255.0, g / 255.0, b / 255.0)
    return HSV(
        hue=_round_half_up(h * 360),
        saturation=_round_half_up(s * 100),
        value=_round_half_up(v * 100),
    )
