"""Shared fixtures: three small administrative layers around Cambodia.

Provinces are 0.8 degree squares side by side. Two of them own three districts
each, and the first province's districts own three communes each. Codes mix
ints and strings on purpose.
"""

from __future__ import annotations

from typing import Any

import pytest

from drillmap.models import (
    AdministrativeLevel,
    Feature,
    FeatureCollection,
    LayerSet,
    ViewportTransform,
)


def square(lon: float, lat: float, size: float) -> list[list[list[float]]]:
    return [[[lon, lat], [lon + size, lat], [lon + size, lat + size], [lon, lat + size], [lon, lat]]]


def feature_dict(coordinates: Any, geometry_type: str = "Polygon", **properties: Any) -> dict[str, Any]:
    return {
        "type": "Feature",
        "geometry": {"type": geometry_type, "coordinates": coordinates},
        "properties": properties,
    }


def collection_dict(features: list[dict[str, Any]], crs: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": "FeatureCollection", "features": features}
    if crs is not None:
        payload["crs"] = {"type": "name", "properties": {"name": crs}}
    return payload


def province_payload() -> dict[str, Any]:
    return collection_dict(
        [
            feature_dict(square(103.0, 12.0, 0.8), PRO_CODE=1, HRName="Banteay Meanchey"),
            feature_dict(square(104.0, 12.0, 0.8), PRO_CODE="2", name="Battambang"),
            feature_dict(square(105.0, 12.0, 0.8), PRO_CODE=3.0, province="Kampong Cham"),
        ]
    )


def district_payload() -> dict[str, Any]:
    features = []
    for j, code in enumerate((101, 102, 103)):
        features.append(
            feature_dict(
                square(103.05 + j * 0.25, 12.1, 0.2),
                PRO_CODE="1",
                DIS_CODE=code,
                DIS_NAME=f"District {code}",
                DName=f"D{code}",
            )
        )
    for j, code in enumerate(("201", "202", "203")):
        features.append(
            feature_dict(
                square(104.05 + j * 0.25, 12.1, 0.2),
                PRO_CODE=2,
                DIS_CODE=code,
                DName=f"D{code}",
            )
        )
    return collection_dict(features)


def commune_payload() -> dict[str, Any]:
    features = []
    for j, district_code in enumerate((101, "102", 103.0)):
        for k in range(3):
            code = f"{int(float(district_code))}{k + 1:02d}"
            features.append(
                feature_dict(
                    square(103.05 + j * 0.25 + k * 0.06, 12.15, 0.05),
                    DIS_CODE=district_code,
                    COM_CODE=code,
                    COM_NAME=f"Commune {code}",
                    CName=f"C{code}",
                )
            )
    return collection_dict(features, crs="urn:ogc:def:crs:OGC:1.3:CRS84")


class PlanarBounds:
    """Bounds straight from lon/lat coordinates, scaled up to pixels."""

    def __init__(self, scale: float = 100.0) -> None:
        self.scale = scale

    def bounds(self, feature: Feature):
        xs: list[float] = []
        ys: list[float] = []

        def walk(coords: Any) -> None:
            if coords and isinstance(coords[0], (int, float)):
                xs.append(coords[0] * self.scale)
                ys.append(-coords[1] * self.scale)
                return
            for item in coords:
                walk(item)

        walk(feature.coordinates)
        if not xs:
            nan = float("nan")
            return ((nan, nan), (nan, nan))
        return ((min(xs), min(ys)), (max(xs), max(ys)))


class FixedBounds:
    def __init__(self, bounds) -> None:
        self._bounds = bounds

    def bounds(self, feature: Feature):
        return self._bounds


class RecordingTarget:
    def __init__(self) -> None:
        self.transforms: list[ViewportTransform] = []

    def zoom_to(self, transform: ViewportTransform) -> None:
        self.transforms.append(transform)


class RecordingVisibility:
    def __init__(self) -> None:
        self.state: dict[AdministrativeLevel, bool] = {}

    def set_visible(self, level: AdministrativeLevel, visible: bool) -> None:
        self.state[level] = visible

    def shown(self) -> set[AdministrativeLevel]:
        return {level for level, visible in self.state.items() if visible}


class FakeFetcher:
    """URL -> payload map; exceptions in the map are raised on fetch."""

    def __init__(self, payloads: dict[str, Any]) -> None:
        self.payloads = payloads
        self.calls: list[str] = []
        self.closed = False

    def __call__(self, url: str) -> Any:
        self.calls.append(url)
        payload = self.payloads[url]
        if isinstance(payload, Exception):
            raise payload
        return payload

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def layers() -> LayerSet:
    return LayerSet(
        province=FeatureCollection.from_geojson(province_payload()),
        district=FeatureCollection.from_geojson(district_payload()),
        commune=FeatureCollection.from_geojson(commune_payload()),
    )


@pytest.fixture
def layer_payloads() -> dict[str, Any]:
    return {
        "/province.geojson": province_payload(),
        "/district.geojson": district_payload(),
        "/commune.geojson": commune_payload(),
    }
