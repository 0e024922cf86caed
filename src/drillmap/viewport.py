"""Fit-to-feature viewport transforms.

A selected feature is centred in the viewport and scaled so its bounding box
fills `padding` of the tighter viewport axis. Padding and the minimum scale
depend on the drill-down level (provinces keep more surrounding context than
districts); the maximum scale is one global ceiling.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Mapping

from .models import AdministrativeLevel, Feature, ViewportTransform
from .projection import Bounds, BoundsProvider


_LOGGER = logging.getLogger("drillmap.viewport")


@dataclass(frozen=True, slots=True)
class FitPolicy:
    padding: float
    min_scale: float

    def __post_init__(self) -> None:
        if not 0.0 < self.padding <= 1.0:
            raise ValueError(f"padding must be in (0, 1], got {self.padding}")
        if self.min_scale <= 0.0:
            raise ValueError(f"min_scale must be > 0, got {self.min_scale}")


def _default_fit_policies() -> dict[AdministrativeLevel, FitPolicy]:
    return {
        AdministrativeLevel.PROVINCE: FitPolicy(padding=0.8, min_scale=1.5),
        AdministrativeLevel.DISTRICT: FitPolicy(padding=0.7, min_scale=2.5),
    }


@dataclass(frozen=True, slots=True)
class TransformPolicy:
    """Per-level fit table plus the global scale ceiling."""

    levels: Mapping[AdministrativeLevel, FitPolicy] = field(default_factory=_default_fit_policies)
    max_scale: float = 12.0

    def __post_init__(self) -> None:
        for level, fit in self.levels.items():
            if fit.min_scale > self.max_scale:
                raise ValueError(
                    f"min_scale for {level.label} ({fit.min_scale}) exceeds max_scale ({self.max_scale})"
                )

    def for_level(self, level: AdministrativeLevel) -> FitPolicy:
        try:
            return self.levels[level]
        except KeyError as exc:
            raise ValueError(f"No fit policy configured for level '{level.label}'") from exc

    def clamp(self, scale: float, level: AdministrativeLevel) -> float:
        return max(self.for_level(level).min_scale, min(self.max_scale, scale))


def compute_fit_transform(
    feature: Feature,
    width: float,
    height: float,
    level: AdministrativeLevel,
    *,
    bounds_provider: BoundsProvider,
    policy: TransformPolicy | None = None,
) -> ViewportTransform:
    """Translate+scale that centres `feature` in a `width` x `height` viewport."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Viewport size must be positive, got {width}x{height}")
    policy = policy or TransformPolicy()
    fit = policy.for_level(level)
    bounds = bounds_provider.bounds(feature)
    return fit_bounds(bounds, width, height, level, policy=policy, fit=fit)


def fit_bounds(
    bounds: Bounds,
    width: float,
    height: float,
    level: AdministrativeLevel,
    *,
    policy: TransformPolicy,
    fit: FitPolicy | None = None,
) -> ViewportTransform:
    fit = fit or policy.for_level(level)
    (x0, y0), (x1, y1) = bounds
    if not all(math.isfinite(value) for value in (x0, y0, x1, y1)):
        _LOGGER.warning("Non-finite bounds %s at %s level; keeping identity transform", bounds, level.label)
        return ViewportTransform.identity()

    dx = x1 - x0
    dy = y1 - y0
    x = (x0 + x1) / 2.0
    y = (y0 + y1) / 2.0

    extent_ratio = max(dx / width, dy / height)
    if extent_ratio <= 0.0:
        # Zero-extent box (a point feature): zoom in as far as policy allows.
        _LOGGER.debug("Zero-extent bounds at %s level; using max scale", level.label)
        scale = policy.max_scale
    else:
        scale = policy.clamp(fit.padding / extent_ratio, level)

    return ViewportTransform(x=width / 2.0 - scale * x, y=height / 2.0 - scale * y, k=scale)
