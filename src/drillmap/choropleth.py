"""Choropleth colouring from per-code statistics."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from .models import normalize_code


_LOGGER = logging.getLogger("drillmap.choropleth")

DEFAULT_COLOR_LOW = "#e57373"
DEFAULT_COLOR_HIGH = "#b71c1c"

_E10 = math.sqrt(50)
_E5 = math.sqrt(10)
_E2 = math.sqrt(2)


def tick_increment(start: float, stop: float, count: int) -> float:
    """Step between round ticks; negative values mean 1/|step|."""
    step = (stop - start) / max(0, count)
    power = math.floor(math.log10(step))
    error = step / 10**power
    if error >= _E10:
        factor = 10
    elif error >= _E5:
        factor = 5
    elif error >= _E2:
        factor = 2
    else:
        factor = 1
    if power >= 0:
        return factor * 10**power
    return -(10 ** -power) / factor


def nice_domain(start: float, stop: float, count: int = 10) -> tuple[float, float]:
    """Extend [start, stop] outward to round values, like d3's `scale.nice()`."""
    if not (math.isfinite(start) and math.isfinite(stop)) or start == stop:
        return (start, stop)
    reverse = stop < start
    if reverse:
        start, stop = stop, start
    previous: float | None = None
    for _ in range(10):
        step = tick_increment(start, stop, count)
        if step == previous:
            break
        if step > 0:
            start = math.floor(start / step) * step
            stop = math.ceil(stop / step) * step
        elif step < 0:
            start = math.ceil(start * step) / step
            stop = math.floor(stop * step) / step
        else:
            break
        previous = step
    return (stop, start) if reverse else (start, stop)


def parse_hex_color(value: str) -> tuple[int, int, int]:
    text = value.strip().lstrip("#")
    if len(text) == 3:
        text = "".join(ch * 2 for ch in text)
    if len(text) != 6:
        raise ValueError(f"Expected #rgb or #rrggbb colour, got '{value}'")
    try:
        return (int(text[0:2], 16), int(text[2:4], 16), int(text[4:6], 16))
    except ValueError as exc:
        raise ValueError(f"Invalid hex colour '{value}'") from exc


def interpolate_rgb(low: str, high: str, t: float) -> str:
    a = parse_hex_color(low)
    b = parse_hex_color(high)
    t = min(max(t, 0.0), 1.0)
    channels = [round(x + (y - x) * t) for x, y in zip(a, b)]
    return "#" + "".join(f"{channel:02x}" for channel in channels)


@dataclass(frozen=True, slots=True)
class ColorScale:
    """Linear value -> [0, 1] scale with a two-colour RGB ramp."""

    domain: tuple[float, float]
    values: Mapping[str, float] = field(default_factory=dict)
    color_low: str = DEFAULT_COLOR_LOW
    color_high: str = DEFAULT_COLOR_HIGH

    @classmethod
    def from_values(
        cls,
        values: Mapping[Any, float],
        *,
        color_low: str = DEFAULT_COLOR_LOW,
        color_high: str = DEFAULT_COLOR_HIGH,
    ) -> ColorScale:
        normalized: dict[str, float] = {}
        for raw_key, value in values.items():
            key = normalize_code(raw_key)
            if key is None:
                raise ValueError(f"Invalid statistics key: {raw_key!r}")
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ValueError(f"Expected finite number for statistic '{key}', got {value!r}")
            normalized[key] = float(value)
        if not normalized:
            raise ValueError("Cannot build a colour scale from no values")
        parse_hex_color(color_low)
        parse_hex_color(color_high)
        low = min(normalized.values())
        high = max(normalized.values())
        return cls(
            domain=nice_domain(low, high),
            values=normalized,
            color_low=color_low,
            color_high=color_high,
        )

    @property
    def min_value(self) -> float:
        return min(self.values.values())

    @property
    def max_value(self) -> float:
        return max(self.values.values())

    def normalize(self, value: float) -> float:
        d0, d1 = self.domain
        if d0 == d1:
            return 0.5
        return (value - d0) / (d1 - d0)

    def color(self, value: float) -> str:
        return interpolate_rgb(self.color_low, self.color_high, self.normalize(value))

    def color_for(self, code: Any) -> str | None:
        key = normalize_code(code)
        if key is None or key not in self.values:
            return None
        return self.color(self.values[key])


def load_statistics(path: Path) -> dict[str, float]:
    """Read a code -> number mapping from YAML or JSON."""
    if not path.exists():
        raise FileNotFoundError(f"Statistics file not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if not isinstance(raw, Mapping):
        raise ValueError(f"Expected mapping of code -> number in {path}")
    stats: dict[str, float] = {}
    for raw_key, value in raw.items():
        key = normalize_code(raw_key)
        if key is None:
            raise ValueError(f"Invalid code {raw_key!r} in {path}")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"Expected number for code '{key}' in {path}")
        stats[key] = float(value)
    _LOGGER.debug("Loaded %d statistics from %s", len(stats), path)
    return stats
