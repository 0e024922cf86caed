"""CLI entrypoint for drillmap."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Any, Sequence

from .choropleth import ColorScale, load_statistics
from .config import AppConfig, load_config
from .drilldown import DrillDownStateMachine, display_name
from .ingest import IngestionPipeline, format_layer_lines
from .models import AdministrativeLevel, Feature, FeatureCollection, LayerSet, normalize_code
from .util import format_code_list, setup_logging, write_json

LOGGER = logging.getLogger("drillmap.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="drillmap",
        description="Administrative drill-down map engine.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", default="config.yaml", help="Path to YAML config.")
        p.add_argument("--verbose", action="store_true", help="Enable debug logs.")

    load_p = subparsers.add_parser("load", help="Load all three layers and report feature counts.")
    add_common(load_p)

    drill_p = subparsers.add_parser(
        "drill",
        help="Drill into a province (and optionally a district) and write a JSON summary.",
    )
    add_common(drill_p)
    drill_p.add_argument("--province", required=True, help="Province code to select.")
    drill_p.add_argument("--district", default=None, help="District code to select inside the province.")
    drill_p.add_argument(
        "--output",
        default=None,
        help="Summary JSON path (default: <output_dir>/drilldown.json).",
    )

    return parser


def _load_and_setup(args: argparse.Namespace) -> AppConfig:
    cfg = load_config(args.config)
    setup_logging(cfg.paths.logs_dir / "drillmap.log", verbose=args.verbose)
    return cfg


def _load_layers(cfg: AppConfig) -> LayerSet:
    pipeline = IngestionPipeline.from_config(cfg)
    try:
        layers = asyncio.run(pipeline.load_all())
    finally:
        pipeline.close()
    for line in format_layer_lines(layers):
        LOGGER.info(line)
    return layers


def _run_load(cfg: AppConfig) -> int:
    layers = _load_layers(cfg)
    missing = [level.label for level in AdministrativeLevel if layers.get(level) is None]
    if missing:
        LOGGER.error("Layers failed to load: %s", ", ".join(missing))
        return 1
    return 0


def _find_feature(collection: FeatureCollection, key: str, code: str) -> Feature | None:
    for feature in collection.features:
        if feature.code(key) == code:
            return feature
    return None


def _color_scale(cfg: AppConfig, level: AdministrativeLevel) -> ColorScale | None:
    path = cfg.choropleth.stats_path(level)
    if path is None:
        return None
    stats = load_statistics(path)
    if not stats:
        LOGGER.warning("Statistics file %s is empty; %s colours skipped", path, level.label)
        return None
    return ColorScale.from_values(
        stats,
        color_low=cfg.choropleth.color_low,
        color_high=cfg.choropleth.color_high,
    )


def _feature_rows(
    cfg: AppConfig,
    collection: FeatureCollection | None,
    level: AdministrativeLevel,
    scale: ColorScale | None,
) -> list[dict[str, Any]] | None:
    if collection is None:
        return None
    schema = cfg.drilldown.schemas[level]
    rows: list[dict[str, Any]] = []
    for feature in collection.features:
        code = feature.code(schema.code_key)
        rows.append(
            {
                "code": code,
                "name": display_name(feature, level, cfg.drilldown.schemas),
                "color": scale.color_for(code) if scale is not None else None,
            }
        )
    return rows


def _run_drill(cfg: AppConfig, *, province_code: str, district_code: str | None, output: Path) -> int:
    layers = _load_layers(cfg)
    if layers.province is None:
        LOGGER.error("Province layer is unavailable; cannot drill down.")
        return 1

    schemas = cfg.drilldown.schemas
    province = _find_feature(layers.province, schemas[AdministrativeLevel.PROVINCE].code_key, province_code)
    if province is None:
        known = sorted(
            code
            for code in (
                item.code(schemas[AdministrativeLevel.PROVINCE].code_key) for item in layers.province.features
            )
            if code is not None
        )
        LOGGER.error("Province code %s not found (known: %s)", province_code, format_code_list(known))
        return 1

    projection = cfg.projection.build(cfg.viewport)
    machine = DrillDownStateMachine.from_config(cfg, bounds_provider=projection, layers=layers)
    try:
        districts = machine.select_province(province)
        communes = None
        if district_code is not None:
            if districts is None:
                LOGGER.error("District layer is unavailable; cannot select district %s.", district_code)
                return 1
            district = _find_feature(districts, schemas[AdministrativeLevel.DISTRICT].code_key, district_code)
            if district is None:
                LOGGER.error("District %s is not inside province %s", district_code, province_code)
                return 1
            communes = machine.select_district(district)

        province_scale = _color_scale(cfg, AdministrativeLevel.PROVINCE)
        district_scale = _color_scale(cfg, AdministrativeLevel.DISTRICT)
    except (OSError, ValueError) as exc:
        LOGGER.error("Drill-down failed: %s", exc)
        return 1

    selection = machine.selection
    summary: dict[str, Any] = {
        "level": selection.level.label,
        "info_text": selection.info_text,
        "province": {
            "code": province_code,
            "name": selection.province_name,
            "color": province_scale.color_for(province_code) if province_scale is not None else None,
            "transform": selection.province_transform.to_dict(),
            "svg_transform": selection.province_transform.to_svg(),
        },
        "district": None,
        "districts": _feature_rows(cfg, districts, AdministrativeLevel.DISTRICT, district_scale),
        "communes": _feature_rows(cfg, communes, AdministrativeLevel.COMMUNE, None),
    }
    if selection.selected_district is not None:
        summary["district"] = {
            "code": normalize_code(district_code),
            "name": selection.district_name,
            "color": district_scale.color_for(district_code) if district_scale is not None else None,
            "transform": selection.district_transform.to_dict(),
            "svg_transform": selection.district_transform.to_svg(),
        }

    write_json(output, summary)
    LOGGER.info(
        "Drill-down summary written to %s (%s districts, %s communes)",
        output,
        len(districts) if districts is not None else "no",
        len(communes) if communes is not None else "no",
    )
    return 0


def _dispatch(args: argparse.Namespace) -> int:
    cfg = _load_and_setup(args)
    command = str(args.command)
    if command == "load":
        return _run_load(cfg)
    if command == "drill":
        output = Path(args.output) if args.output else cfg.paths.output_dir / "drilldown.json"
        return _run_drill(
            cfg,
            province_code=normalize_code(args.province) or "",
            district_code=normalize_code(args.district) if args.district is not None else None,
            output=output,
        )
    raise ValueError(f"Unknown command: {command}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    return _dispatch(args)


if __name__ == "__main__":
    raise SystemExit(main())
