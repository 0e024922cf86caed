"""Coordinate normalization into the canonical lon/lat reference system."""

from __future__ import annotations

import copy
import logging
from functools import lru_cache
from typing import Any, Callable, Sequence

from .models import CANONICAL_CRS, Feature, FeatureCollection


_LOGGER = logging.getLogger("drillmap.reproject")

_CANONICAL_NAMES = frozenset(
    {
        "urn:ogc:def:crs:ogc:1.3:crs84",
        "urn:ogc:def:crs:ogc::crs84",
        "ogc:crs84",
        "crs84",
        "epsg:4326",
        "urn:ogc:def:crs:epsg::4326",
        "urn:ogc:def:crs:epsg:6.6:4326",
    }
)

_Transform = Callable[[Sequence[float], Sequence[float]], tuple[Any, Any]]


class ReprojectionError(ValueError):
    """Raised when coordinates cannot be moved into the canonical CRS."""


def is_canonical_crs(name: str | None) -> bool:
    if name is None:
        return True
    return name.strip().casefold() in _CANONICAL_NAMES


def reproject(collection: FeatureCollection, source_crs: str | None = None) -> FeatureCollection:
    """Return a copy of `collection` with every position in lon/lat.

    `source_crs` overrides the collection's own tag. The input is never
    mutated and the output shares no coordinate lists or property dicts with
    it. Canonical input, and input tagged with a CRS pyproj does not know,
    comes back with its coordinates unchanged and the canonical tag.
    """
    crs_name = source_crs if source_crs is not None else collection.crs
    if crs_name is None or is_canonical_crs(crs_name):
        return _copy_collection(collection)

    transform = _transformer_for(crs_name.strip())
    if transform is None:
        _LOGGER.warning(
            "Unrecognized source CRS '%s'; keeping %d features as lon/lat", crs_name, len(collection)
        )
        return _copy_collection(collection)
    features = tuple(_reproject_feature(feature, transform) for feature in collection.features)
    _LOGGER.debug("Reprojected %d features from %s", len(features), crs_name)
    return FeatureCollection(features=features, crs=CANONICAL_CRS)


def _copy_collection(collection: FeatureCollection) -> FeatureCollection:
    features = tuple(
        Feature(feature.geometry_type, copy.deepcopy(feature.coordinates), dict(feature.properties))
        for feature in collection.features
    )
    return FeatureCollection(features=features, crs=CANONICAL_CRS)


def _reproject_feature(feature: Feature, transform: _Transform) -> Feature:
    try:
        coordinates = _reproject_coordinates(feature.coordinates, transform)
    except ReprojectionError:
        raise
    except (TypeError, ValueError, IndexError) as exc:
        raise ReprojectionError(
            f"Malformed {feature.geometry_type} coordinates: {exc}"
        ) from exc
    return Feature(feature.geometry_type, coordinates, dict(feature.properties))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_position(coords: Any) -> bool:
    return isinstance(coords, (list, tuple)) and bool(coords) and _is_number(coords[0])


def _reproject_coordinates(coords: Any, transform: _Transform) -> list[Any]:
    if _is_position(coords):
        return _transform_positions([coords], transform)[0]
    if not isinstance(coords, (list, tuple)):
        raise ReprojectionError(f"Expected coordinate array, got {type(coords).__name__}")
    if coords and _is_position(coords[0]):
        return _transform_positions(coords, transform)
    return [_reproject_coordinates(item, transform) for item in coords]


def _transform_positions(positions: Sequence[Any], transform: _Transform) -> list[list[Any]]:
    for position in positions:
        if not _is_position(position) or len(position) < 2 or not _is_number(position[1]):
            raise ReprojectionError(f"Invalid coordinate position: {position!r}")
    xs = [float(position[0]) for position in positions]
    ys = [float(position[1]) for position in positions]
    try:
        lons, lats = transform(xs, ys)
    except Exception as exc:
        raise ReprojectionError(f"Coordinate transform failed: {exc}") from exc
    return [
        [float(lon), float(lat), *position[2:]]
        for lon, lat, position in zip(lons, lats, positions)
    ]


@lru_cache(maxsize=16)
def _transformer_for(crs_name: str) -> _Transform | None:
    transformer_cls, crs_cls, crs_error = _require_pyproj()
    try:
        source = crs_cls.from_user_input(crs_name)
    except crs_error as exc:
        _LOGGER.debug("pyproj rejected CRS '%s': %s", crs_name, exc)
        return None
    transformer = transformer_cls.from_crs(source, "EPSG:4326", always_xy=True)

    def _transform(xs: Sequence[float], ys: Sequence[float]) -> tuple[Any, Any]:
        return transformer.transform(xs, ys, errcheck=True)

    return _transform


def _require_pyproj() -> tuple[Any, Any, Any]:
    try:
        from pyproj import CRS, Transformer
        from pyproj.exceptions import CRSError
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("pyproj is required for coordinate reprojection") from exc
    return (Transformer, CRS, CRSError)
