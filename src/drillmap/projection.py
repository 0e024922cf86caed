"""Render-plane Mercator projection used for bounds and hit geometry."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Any, Protocol

from .models import Feature


# Spherical radius of EPSG:3857; dividing by it turns meters into radians.
_EARTH_RADIUS_M = 6_378_137.0
_MERCATOR_MAX_LAT = 85.0511

Bounds = tuple[tuple[float, float], tuple[float, float]]


class BoundsProvider(Protocol):
    def bounds(self, feature: Feature) -> Bounds: ...


@dataclass(frozen=True, slots=True)
class MercatorProjection:
    """Lon/lat -> screen pixels, y pointing down.

    Matches a d3 `geoMercator().scale(scale).center(center)` translated to the
    middle of a `width` x `height` viewport.
    """

    center_lon: float
    center_lat: float
    scale: float
    width: float
    height: float

    def resize(self, width: float, height: float) -> MercatorProjection:
        return replace(self, width=float(width), height=float(height))

    def project(self, lon: float, lat: float) -> tuple[float, float]:
        mx, my = _require_mercator_transformer().transform(float(lon), float(lat))
        cx, cy = _mercator_center(self.center_lon, self.center_lat)
        k = self.scale / _EARTH_RADIUS_M
        return ((float(mx) - cx) * k + self.width / 2.0, self.height / 2.0 - (float(my) - cy) * k)

    def project_geometry(self, feature: Feature) -> Any:
        """Shapely geometry of `feature` in render-plane units."""
        shapely = _require_shapely()
        if not feature.coordinates:
            return shapely.geometry.GeometryCollection()
        geometry = shapely.geometry.shape(feature.geometry_mapping())
        if geometry.is_empty:
            return geometry
        return shapely.transform(geometry, self._transform_coords)

    def bounds(self, feature: Feature) -> Bounds:
        geometry = self.project_geometry(feature)
        if geometry.is_empty:
            nan = float("nan")
            return ((nan, nan), (nan, nan))
        min_x, min_y, max_x, max_y = [float(item) for item in geometry.bounds]
        return ((min_x, min_y), (max_x, max_y))

    def _transform_coords(self, coords: Any) -> Any:
        # coords is an (N, 2) array of lon/lat pairs.
        mxs, mys = _require_mercator_transformer().transform(coords[:, 0], coords[:, 1])
        cx, cy = _mercator_center(self.center_lon, self.center_lat)
        k = self.scale / _EARTH_RADIUS_M
        out = coords.astype(float, copy=True)
        out[:, 0] = (mxs - cx) * k + self.width / 2.0
        out[:, 1] = self.height / 2.0 - (mys - cy) * k
        return out


@lru_cache(maxsize=32)
def _mercator_center(lon: float, lat: float) -> tuple[float, float]:
    if not -_MERCATOR_MAX_LAT <= lat <= _MERCATOR_MAX_LAT:
        raise ValueError(f"Projection center latitude out of Mercator range: {lat}")
    mx, my = _require_mercator_transformer().transform(lon, lat)
    if not (math.isfinite(mx) and math.isfinite(my)):
        raise ValueError(f"Projection center could not be projected: {lon}, {lat}")
    return (float(mx), float(my))


@lru_cache(maxsize=1)
def _require_mercator_transformer() -> Any:
    try:
        from pyproj import Transformer
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("pyproj is required for Web Mercator projection") from exc
    return Transformer.from_crs("EPSG:4326", "EPSG:3857", always_xy=True)


def _require_shapely() -> Any:
    try:
        import shapely
        import shapely.geometry  # noqa: F401
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("shapely is required for feature geometry") from exc
    return shapely
