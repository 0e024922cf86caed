"""Typed configuration loader for `config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, cast

import yaml

from .models import DEFAULT_LEVEL_SCHEMAS, AdministrativeLevel, LevelSchema
from .projection import MercatorProjection
from .viewport import FitPolicy, TransformPolicy


def _mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"Expected mapping for '{field_name}'")
    return cast(Mapping[str, Any], value)


def _optional_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    return _mapping(value, field_name)


def _str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Expected non-empty string for '{field_name}'")
    return value.strip()


def _optional_str(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    return _str(value, field_name)


def _int(value: Any, field_name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"Expected integer for '{field_name}'")
    return value


def _float(value: Any, field_name: str) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise ValueError(f"Expected float for '{field_name}'")


def _path_from_cfg(value: Any, field_name: str, root_dir: Path) -> Path:
    raw = _str(value, field_name)
    p = Path(raw)
    return p if p.is_absolute() else root_dir / p


def _optional_path(value: Any, field_name: str, root_dir: Path) -> Path | None:
    if value is None:
        return None
    return _path_from_cfg(value, field_name, root_dir)


def _level_key(raw: Any, field_name: str) -> AdministrativeLevel:
    return AdministrativeLevel.parse(_str(raw, field_name))


_DEFAULT_ENDPOINTS = {
    AdministrativeLevel.PROVINCE: "/province.geojson",
    AdministrativeLevel.DISTRICT: "/district.geojson",
    AdministrativeLevel.COMMUNE: "/commune.geojson",
}


@dataclass(frozen=True, slots=True)
class SourceConfig:
    base_url: str | None = None
    endpoints: Mapping[AdministrativeLevel, str] = field(default_factory=lambda: dict(_DEFAULT_ENDPOINTS))
    request_timeout_s: float = 30.0
    user_agent: str = "drillmap/0.1"
    max_retries: int = 3
    retry_backoff_s: float = 1.0

    def url_for(self, level: AdministrativeLevel) -> str:
        endpoint = self.endpoints[level]
        if self.base_url is None or "://" in endpoint:
            return endpoint
        return self.base_url.rstrip("/") + "/" + endpoint.lstrip("/")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> SourceConfig:
        endpoints = dict(_DEFAULT_ENDPOINTS)
        for key, value in _optional_mapping(raw.get("endpoints"), "source.endpoints").items():
            level = _level_key(key, "source.endpoints key")
            endpoints[level] = _str(value, f"source.endpoints.{level.label}")

        max_retries = _int(raw.get("max_retries", 3), "source.max_retries")
        retry_backoff_s = _float(raw.get("retry_backoff_s", 1.0), "source.retry_backoff_s")
        request_timeout_s = _float(raw.get("request_timeout_s", 30.0), "source.request_timeout_s")
        if max_retries < 0:
            raise ValueError("source.max_retries must be >= 0")
        if retry_backoff_s <= 0:
            raise ValueError("source.retry_backoff_s must be > 0")
        if request_timeout_s <= 0:
            raise ValueError("source.request_timeout_s must be > 0")

        return cls(
            base_url=_optional_str(raw.get("base_url"), "source.base_url"),
            endpoints=endpoints,
            request_timeout_s=request_timeout_s,
            user_agent=_str(raw.get("user_agent", "drillmap/0.1"), "source.user_agent"),
            max_retries=max_retries,
            retry_backoff_s=retry_backoff_s,
        )


@dataclass(frozen=True, slots=True)
class IngestConfig:
    chunk_size: int = 500
    large_dataset_threshold: int = 1000
    cache_max_age_s: float = 30 * 60.0
    settle_delay_s: float = 0.1
    default_crs: str | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> IngestConfig:
        chunk_size = _int(raw.get("chunk_size", 500), "ingest.chunk_size")
        threshold = _int(raw.get("large_dataset_threshold", 1000), "ingest.large_dataset_threshold")
        max_age = _float(raw.get("cache_max_age_s", 30 * 60.0), "ingest.cache_max_age_s")
        settle = _float(raw.get("settle_delay_s", 0.1), "ingest.settle_delay_s")
        if chunk_size < 1:
            raise ValueError("ingest.chunk_size must be >= 1")
        if threshold < 0:
            raise ValueError("ingest.large_dataset_threshold must be >= 0")
        if max_age <= 0:
            raise ValueError("ingest.cache_max_age_s must be > 0")
        if settle < 0:
            raise ValueError("ingest.settle_delay_s must be >= 0")
        return cls(
            chunk_size=chunk_size,
            large_dataset_threshold=threshold,
            cache_max_age_s=max_age,
            settle_delay_s=settle,
            default_crs=_optional_str(raw.get("default_crs"), "ingest.default_crs"),
        )


@dataclass(frozen=True, slots=True)
class ViewportConfig:
    width: int = 800
    height: int = 600

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ViewportConfig:
        width = _int(raw.get("width", 800), "viewport.width")
        height = _int(raw.get("height", 600), "viewport.height")
        if width < 1 or height < 1:
            raise ValueError("viewport.width and viewport.height must be >= 1")
        return cls(width=width, height=height)


@dataclass(frozen=True, slots=True)
class ProjectionConfig:
    center_lon: float = 104.9160
    center_lat: float = 12.5657
    scale: float = 8000.0

    def build(self, viewport: ViewportConfig) -> MercatorProjection:
        return MercatorProjection(
            center_lon=self.center_lon,
            center_lat=self.center_lat,
            scale=self.scale,
            width=float(viewport.width),
            height=float(viewport.height),
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ProjectionConfig:
        center_raw = raw.get("center", [104.9160, 12.5657])
        if not isinstance(center_raw, list) or len(center_raw) != 2:
            raise ValueError("Expected [lon, lat] list for 'projection.center'")
        lon = _float(center_raw[0], "projection.center[0]")
        lat = _float(center_raw[1], "projection.center[1]")
        if not -180.0 <= lon <= 180.0 or not -85.0 <= lat <= 85.0:
            raise ValueError("projection.center must be a valid Mercator lon/lat")
        scale = _float(raw.get("scale", 8000.0), "projection.scale")
        if scale <= 0:
            raise ValueError("projection.scale must be > 0")
        return cls(center_lon=lon, center_lat=lat, scale=scale)


@dataclass(frozen=True, slots=True)
class TransformConfig:
    policy: TransformPolicy = field(default_factory=TransformPolicy)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> TransformConfig:
        defaults = TransformPolicy()
        levels = dict(defaults.levels)
        for key, value in _optional_mapping(raw.get("levels"), "transform.levels").items():
            level = _level_key(key, "transform.levels key")
            item = _mapping(value, f"transform.levels.{level.label}")
            base = levels.get(level)
            levels[level] = FitPolicy(
                padding=_float(
                    item.get("padding", base.padding if base else None),
                    f"transform.levels.{level.label}.padding",
                ),
                min_scale=_float(
                    item.get("min_scale", base.min_scale if base else None),
                    f"transform.levels.{level.label}.min_scale",
                ),
            )
        max_scale = _float(raw.get("max_scale", defaults.max_scale), "transform.max_scale")
        return cls(policy=TransformPolicy(levels=levels, max_scale=max_scale))


@dataclass(frozen=True, slots=True)
class DrilldownConfig:
    settle_delay_s: float = 0.1
    default_info_text: str = "Hover over a province"
    schemas: Mapping[AdministrativeLevel, LevelSchema] = field(
        default_factory=lambda: dict(DEFAULT_LEVEL_SCHEMAS)
    )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> DrilldownConfig:
        settle = _float(raw.get("settle_delay_s", 0.1), "drilldown.settle_delay_s")
        if settle < 0:
            raise ValueError("drilldown.settle_delay_s must be >= 0")
        schemas = dict(DEFAULT_LEVEL_SCHEMAS)
        for key, value in _optional_mapping(raw.get("properties"), "drilldown.properties").items():
            level = _level_key(key, "drilldown.properties key")
            schemas[level] = LevelSchema.from_mapping(
                _mapping(value, f"drilldown.properties.{level.label}"),
                default=DEFAULT_LEVEL_SCHEMAS[level],
            )
        return cls(
            settle_delay_s=settle,
            default_info_text=_str(
                raw.get("default_info_text", "Hover over a province"),
                "drilldown.default_info_text",
            ),
            schemas=schemas,
        )


@dataclass(frozen=True, slots=True)
class ChoroplethConfig:
    province_stats: Path | None = None
    district_stats: Path | None = None
    color_low: str = "#e57373"
    color_high: str = "#b71c1c"

    def stats_path(self, level: AdministrativeLevel) -> Path | None:
        if level is AdministrativeLevel.PROVINCE:
            return self.province_stats
        if level is AdministrativeLevel.DISTRICT:
            return self.district_stats
        return None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path) -> ChoroplethConfig:
        return cls(
            province_stats=_optional_path(raw.get("province_stats"), "choropleth.province_stats", root_dir),
            district_stats=_optional_path(raw.get("district_stats"), "choropleth.district_stats", root_dir),
            color_low=_str(raw.get("color_low", "#e57373"), "choropleth.color_low"),
            color_high=_str(raw.get("color_high", "#b71c1c"), "choropleth.color_high"),
        )


@dataclass(frozen=True, slots=True)
class PathsConfig:
    logs_dir: Path
    output_dir: Path

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path) -> PathsConfig:
        return cls(
            logs_dir=_path_from_cfg(raw.get("logs_dir", "logs"), "paths.logs_dir", root_dir),
            output_dir=_path_from_cfg(raw.get("output_dir", "build"), "paths.output_dir", root_dir),
        )


@dataclass(frozen=True, slots=True)
class AppConfig:
    source_path: Path | None
    source: SourceConfig
    ingest: IngestConfig
    viewport: ViewportConfig
    projection: ProjectionConfig
    transform: TransformConfig
    drilldown: DrilldownConfig
    choropleth: ChoroplethConfig
    paths: PathsConfig

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], source_path: Path | None = None) -> AppConfig:
        root_dir = source_path.parent.resolve() if source_path is not None else Path.cwd()
        return cls(
            source_path=source_path.resolve() if source_path is not None else None,
            source=SourceConfig.from_mapping(_optional_mapping(raw.get("source"), "source")),
            ingest=IngestConfig.from_mapping(_optional_mapping(raw.get("ingest"), "ingest")),
            viewport=ViewportConfig.from_mapping(_optional_mapping(raw.get("viewport"), "viewport")),
            projection=ProjectionConfig.from_mapping(
                _optional_mapping(raw.get("projection"), "projection")
            ),
            transform=TransformConfig.from_mapping(_optional_mapping(raw.get("transform"), "transform")),
            drilldown=DrilldownConfig.from_mapping(_optional_mapping(raw.get("drilldown"), "drilldown")),
            choropleth=ChoroplethConfig.from_mapping(
                _optional_mapping(raw.get("choropleth"), "choropleth"), root_dir
            ),
            paths=PathsConfig.from_mapping(_optional_mapping(raw.get("paths"), "paths"), root_dir),
        )

    @classmethod
    def default(cls) -> AppConfig:
        return cls.from_mapping({})


def load_config(path: str | Path) -> AppConfig:
    """Load and validate the YAML config file into typed settings."""
    cfg_path = Path(path).resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ValueError("Top-level config must be a YAML mapping")
    return AppConfig.from_mapping(cast(Mapping[str, Any], raw), cfg_path)
