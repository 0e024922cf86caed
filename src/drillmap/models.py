"""Domain models shared across drill-down modules."""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Sequence


_LOGGER = logging.getLogger("drillmap.models")

CANONICAL_CRS = "urn:ogc:def:crs:OGC:1.3:CRS84"


class AdministrativeLevel(enum.IntEnum):
    """Drill-down depth; ordering follows the administrative hierarchy."""

    PROVINCE = 0
    DISTRICT = 1
    COMMUNE = 2

    @property
    def label(self) -> str:
        return self.name.lower()

    @property
    def child(self) -> AdministrativeLevel | None:
        if self is AdministrativeLevel.COMMUNE:
            return None
        return AdministrativeLevel(self.value + 1)

    @property
    def parent(self) -> AdministrativeLevel | None:
        if self is AdministrativeLevel.PROVINCE:
            return None
        return AdministrativeLevel(self.value - 1)

    @classmethod
    def parse(cls, value: str) -> AdministrativeLevel:
        try:
            return cls[value.strip().upper()]
        except KeyError as exc:
            allowed = ", ".join(level.label for level in cls)
            raise ValueError(f"Unknown administrative level '{value}' (expected one of: {allowed})") from exc


def _require_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Expected non-empty string for '{field_name}'")
    return value.strip()


def normalize_code(value: Any) -> str | None:
    """Canonical string form of an administrative code.

    Codes arrive as ints, floats or strings depending on the source file, so
    `5`, `5.0` and `" 5 "` all normalize to `"5"`.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer():
            return str(int(value))
        return repr(value)
    text = str(value).strip()
    return text or None


def first_present(properties: Mapping[str, Any], keys: Sequence[str], fallback: str) -> str:
    """Return the first non-empty property among `keys`, else `fallback`."""
    for key in keys:
        value = properties.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return fallback


@dataclass(frozen=True, slots=True)
class LevelSchema:
    """Property keys that identify and name a feature at one level."""

    code_key: str
    parent_code_key: str | None
    name_keys: tuple[str, ...]
    name_fallback: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, default: LevelSchema) -> LevelSchema:
        code_key = data.get("code_key")
        parent_raw = data.get("parent_code_key", default.parent_code_key)
        names_raw = data.get("name_keys")
        fallback_raw = data.get("name_fallback", default.name_fallback)

        name_keys = default.name_keys
        if names_raw is not None:
            if not isinstance(names_raw, list) or not names_raw:
                raise ValueError("Expected non-empty list for 'name_keys'")
            name_keys = tuple(_require_str(item, "name_keys[]") for item in names_raw)
        if not isinstance(fallback_raw, str):
            raise ValueError("Expected string for 'name_fallback'")
        return cls(
            code_key=_require_str(code_key, "code_key") if code_key is not None else default.code_key,
            parent_code_key=(
                _require_str(parent_raw, "parent_code_key") if parent_raw is not None else None
            ),
            name_keys=name_keys,
            name_fallback=fallback_raw,
        )


DEFAULT_LEVEL_SCHEMAS: Mapping[AdministrativeLevel, LevelSchema] = {
    AdministrativeLevel.PROVINCE: LevelSchema(
        code_key="PRO_CODE",
        parent_code_key=None,
        name_keys=("HRName", "name", "province"),
        name_fallback="Unknown",
    ),
    AdministrativeLevel.DISTRICT: LevelSchema(
        code_key="DIS_CODE",
        parent_code_key="PRO_CODE",
        name_keys=("DIS_NAME", "DName"),
        name_fallback="",
    ),
    AdministrativeLevel.COMMUNE: LevelSchema(
        code_key="COM_CODE",
        parent_code_key="DIS_CODE",
        name_keys=("COM_NAME", "CName"),
        name_fallback="",
    ),
}

# Scene labels use one chain for every level.
LABEL_KEYS: tuple[str, ...] = ("HRName", "DName", "CName")
LABEL_FALLBACK = "N/A"


@dataclass(frozen=True, slots=True)
class Feature:
    """One administrative unit: geometry plus its property bag."""

    geometry_type: str
    coordinates: Any
    properties: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Feature:
        geometry = data.get("geometry")
        if not isinstance(geometry, Mapping):
            raise ValueError("Feature is missing a 'geometry' mapping")
        geometry_type = _require_str(geometry.get("type"), "geometry.type")
        coordinates = geometry.get("coordinates")
        if not isinstance(coordinates, (list, tuple)):
            raise ValueError(f"Expected coordinate array for {geometry_type} geometry")
        properties_raw = data.get("properties")
        if properties_raw is None:
            properties: dict[str, Any] = {}
        elif isinstance(properties_raw, Mapping):
            properties = dict(properties_raw)
        else:
            raise ValueError("Expected mapping for feature 'properties'")
        return cls(geometry_type=geometry_type, coordinates=coordinates, properties=properties)

    def code(self, key: str) -> str | None:
        return normalize_code(self.properties.get(key))

    def geometry_mapping(self) -> dict[str, Any]:
        return {"type": self.geometry_type, "coordinates": self.coordinates}

    def with_coordinates(self, coordinates: Any) -> Feature:
        return replace(self, coordinates=coordinates)

    def with_properties(self, properties: Mapping[str, Any]) -> Feature:
        return replace(self, properties=dict(properties))

    def to_geojson(self) -> dict[str, Any]:
        return {
            "type": "Feature",
            "geometry": self.geometry_mapping(),
            "properties": dict(self.properties),
        }


@dataclass(frozen=True, slots=True)
class FeatureCollection:
    """Ordered features tagged with their source CRS (None means canonical)."""

    features: tuple[Feature, ...] = ()
    crs: str | None = None

    @classmethod
    def from_geojson(cls, data: Any) -> FeatureCollection:
        if not isinstance(data, Mapping):
            raise ValueError("Expected GeoJSON object at root")
        features_raw = data.get("features")
        if not isinstance(features_raw, list):
            raise ValueError("Expected 'features' list in GeoJSON FeatureCollection")
        features: list[Feature] = []
        skipped: list[str] = []
        for idx, item in enumerate(features_raw):
            if not isinstance(item, Mapping):
                raise ValueError(f"Expected feature mapping at index {idx}")
            try:
                features.append(Feature.from_mapping(item))
            except ValueError as exc:
                skipped.append(f"{idx} ({exc})")
        if skipped:
            _LOGGER.warning(
                "Skipped %d of %d features without usable geometry: %s",
                len(skipped),
                len(features_raw),
                ", ".join(skipped[:12]) + (" ..." if len(skipped) > 12 else ""),
            )
        return cls(features=tuple(features), crs=_crs_name(data.get("crs")))

    def __len__(self) -> int:
        return len(self.features)

    def with_features(self, features: Sequence[Feature]) -> FeatureCollection:
        return FeatureCollection(features=tuple(features), crs=self.crs)

    def to_geojson(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "FeatureCollection",
            "features": [feature.to_geojson() for feature in self.features],
        }
        if self.crs is not None:
            payload["crs"] = {"type": "name", "properties": {"name": self.crs}}
        return payload


def _crs_name(raw: Any) -> str | None:
    if not isinstance(raw, Mapping):
        return None
    props = raw.get("properties")
    if not isinstance(props, Mapping):
        return None
    name = props.get("name")
    if isinstance(name, str) and name.strip():
        return name.strip()
    return None


@dataclass(frozen=True, slots=True)
class ViewportTransform:
    """Uniform translate + scale applied to the 2D render surface."""

    x: float = 0.0
    y: float = 0.0
    k: float = 1.0

    @classmethod
    def identity(cls) -> ViewportTransform:
        return cls()

    @property
    def is_identity(self) -> bool:
        return self.x == 0.0 and self.y == 0.0 and self.k == 1.0

    def apply(self, point: tuple[float, float]) -> tuple[float, float]:
        return (point[0] * self.k + self.x, point[1] * self.k + self.y)

    def invert(self, point: tuple[float, float]) -> tuple[float, float]:
        return ((point[0] - self.x) / self.k, (point[1] - self.y) / self.k)

    def interpolate(self, target: ViewportTransform, t: float) -> ViewportTransform:
        t = min(max(t, 0.0), 1.0)
        return ViewportTransform(
            x=self.x + (target.x - self.x) * t,
            y=self.y + (target.y - self.y) * t,
            k=self.k + (target.k - self.k) * t,
        )

    def to_svg(self) -> str:
        return f"translate({self.x:g},{self.y:g}) scale({self.k:g})"

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "k": self.k}


@dataclass(frozen=True, slots=True)
class CacheEntry:
    data: FeatureCollection
    timestamp: float


@dataclass(frozen=True, slots=True)
class LayerSet:
    """Loaded collections for the three administrative levels."""

    province: FeatureCollection | None = None
    district: FeatureCollection | None = None
    commune: FeatureCollection | None = None

    def get(self, level: AdministrativeLevel) -> FeatureCollection | None:
        if level is AdministrativeLevel.PROVINCE:
            return self.province
        if level is AdministrativeLevel.DISTRICT:
            return self.district
        return self.commune
