"""Province -> district -> commune selection state."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Mapping, Protocol

from .config import AppConfig
from .models import (
    DEFAULT_LEVEL_SCHEMAS,
    LABEL_FALLBACK,
    LABEL_KEYS,
    AdministrativeLevel,
    Feature,
    FeatureCollection,
    LayerSet,
    LevelSchema,
    ViewportTransform,
    first_present,
    normalize_code,
)
from .projection import BoundsProvider
from .viewport import TransformPolicy, compute_fit_transform


_LOGGER = logging.getLogger("drillmap.drilldown")

DEFAULT_INFO_TEXT = "Hover over a province"


class InvalidTransitionError(RuntimeError):
    """Raised when a selection is attempted from a level that cannot reach it."""


class RenderTarget(Protocol):
    def zoom_to(self, transform: ViewportTransform) -> None: ...


class LayerVisibility(Protocol):
    def set_visible(self, level: AdministrativeLevel, visible: bool) -> None: ...


def display_name(
    feature: Feature,
    level: AdministrativeLevel,
    schemas: Mapping[AdministrativeLevel, LevelSchema] = DEFAULT_LEVEL_SCHEMAS,
) -> str:
    schema = schemas[level]
    return first_present(feature.properties, schema.name_keys, schema.name_fallback)


def label_text(feature: Feature) -> str:
    """Text for a floating scene label, whatever the feature's level."""
    return first_present(feature.properties, LABEL_KEYS, LABEL_FALLBACK)


def visible_levels(level: AdministrativeLevel) -> frozenset[AdministrativeLevel]:
    if level is AdministrativeLevel.PROVINCE:
        return frozenset({AdministrativeLevel.PROVINCE})
    if level is AdministrativeLevel.DISTRICT:
        return frozenset({AdministrativeLevel.DISTRICT})
    return frozenset({AdministrativeLevel.DISTRICT, AdministrativeLevel.COMMUNE})


@dataclass(slots=True)
class DrillDownSelection:
    """Everything the drill-down has chosen so far.

    `selected_district` is set only from the district level down, and
    `visible_commune_subset` only at the commune level.
    """

    level: AdministrativeLevel = AdministrativeLevel.PROVINCE
    selected_province: Feature | None = None
    selected_district: Feature | None = None
    province_name: str = ""
    district_name: str = ""
    visible_district_subset: FeatureCollection | None = None
    visible_commune_subset: FeatureCollection | None = None
    province_transform: ViewportTransform = field(default_factory=ViewportTransform.identity)
    district_transform: ViewportTransform = field(default_factory=ViewportTransform.identity)
    info_text: str = ""

    @property
    def is_initial(self) -> bool:
        return (
            self.level is AdministrativeLevel.PROVINCE
            and self.selected_province is None
            and self.selected_district is None
            and not self.province_name
            and not self.district_name
            and self.visible_district_subset is None
            and self.visible_commune_subset is None
            and self.province_transform.is_identity
            and self.district_transform.is_identity
        )


class DrillDownStateMachine:
    def __init__(
        self,
        layers: LayerSet | None = None,
        *,
        width: float,
        height: float,
        bounds_provider: BoundsProvider,
        policy: TransformPolicy | None = None,
        render_target: RenderTarget | None = None,
        visibility: LayerVisibility | None = None,
        schemas: Mapping[AdministrativeLevel, LevelSchema] | None = None,
        default_info_text: str = DEFAULT_INFO_TEXT,
        settle_delay_s: float = 0.1,
    ) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f"Viewport size must be positive, got {width}x{height}")
        self._layers = layers or LayerSet()
        self._width = float(width)
        self._height = float(height)
        self._bounds_provider = bounds_provider
        self._policy = policy or TransformPolicy()
        self._render_target = render_target
        self._visibility = visibility
        self._schemas = dict(schemas or DEFAULT_LEVEL_SCHEMAS)
        self._default_info_text = default_info_text
        self._settle_delay_s = settle_delay_s
        self._selection = DrillDownSelection(info_text=default_info_text)
        self._sync_visibility()

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        *,
        bounds_provider: BoundsProvider,
        layers: LayerSet | None = None,
        render_target: RenderTarget | None = None,
        visibility: LayerVisibility | None = None,
    ) -> DrillDownStateMachine:
        return cls(
            layers,
            width=cfg.viewport.width,
            height=cfg.viewport.height,
            bounds_provider=bounds_provider,
            policy=cfg.transform.policy,
            render_target=render_target,
            visibility=visibility,
            schemas=cfg.drilldown.schemas,
            default_info_text=cfg.drilldown.default_info_text,
            settle_delay_s=cfg.drilldown.settle_delay_s,
        )

    @property
    def level(self) -> AdministrativeLevel:
        return self._selection.level

    @property
    def selection(self) -> DrillDownSelection:
        return self._selection

    @property
    def info_text(self) -> str:
        return self._selection.info_text

    @property
    def layers(self) -> LayerSet:
        return self._layers

    def load_layers(self, layers: LayerSet) -> None:
        self._layers = layers

    def resize(self, width: float, height: float) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f"Viewport size must be positive, got {width}x{height}")
        self._width = float(width)
        self._height = float(height)

    def reset(self) -> None:
        self._selection = DrillDownSelection(info_text=self._default_info_text)
        self._zoom(ViewportTransform.identity())
        self._sync_visibility()

    def select_province(self, feature: Feature) -> FeatureCollection | None:
        if self.level is AdministrativeLevel.COMMUNE:
            raise InvalidTransitionError("Go back to the district level before selecting a province")
        level = AdministrativeLevel.PROVINCE
        name = display_name(feature, level, self._schemas)
        transform = self._fit(feature, level)
        subset = self._children_of(feature, level)

        self._selection = DrillDownSelection(
            level=AdministrativeLevel.DISTRICT,
            selected_province=feature,
            province_name=name,
            visible_district_subset=subset,
            province_transform=transform,
            info_text=name,
        )
        self._zoom(transform)
        self._sync_visibility()
        _LOGGER.info(
            "Selected province %s (%s districts)", name, len(subset) if subset is not None else "no"
        )
        return subset

    def select_district(self, feature: Feature) -> FeatureCollection | None:
        if self.level is not AdministrativeLevel.DISTRICT:
            raise InvalidTransitionError(
                f"Cannot select a district at the {self.level.label} level"
            )
        level = AdministrativeLevel.DISTRICT
        name = display_name(feature, level, self._schemas)
        transform = self._fit(feature, level)
        subset = self._children_of(feature, level)

        selection = self._selection
        selection.selected_district = feature
        selection.district_name = name
        selection.district_transform = transform
        selection.visible_commune_subset = subset
        selection.level = AdministrativeLevel.COMMUNE
        selection.info_text = name or selection.province_name
        self._zoom(transform)
        self._sync_visibility()
        _LOGGER.info(
            "Selected district %s (%s communes)", name or "<unnamed>", len(subset) if subset is not None else "no"
        )
        return subset

    async def go_back(self) -> AdministrativeLevel:
        """Step one level up; province is the floor.

        Leaving the district level waits `settle_delay_s` first so an in-flight
        zoom can finish before the layers change.
        """
        level = self.level
        if level is AdministrativeLevel.COMMUNE:
            self._back_to_district()
        elif level is AdministrativeLevel.DISTRICT:
            selection = self._selection
            await asyncio.sleep(self._settle_delay_s)
            if self._selection is not selection or self.level is not AdministrativeLevel.DISTRICT:
                _LOGGER.debug("Selection changed while going back; skipping reset")
                return self.level
            self.reset()
        return self.level

    def hover(self, feature: Feature) -> str:
        schema = self._schemas[self.level]
        self._selection.info_text = first_present(
            feature.properties, schema.name_keys, self._level_default_text()
        )
        return self._selection.info_text

    def hover_end(self) -> str:
        self._selection.info_text = self._level_default_text()
        return self._selection.info_text

    def _back_to_district(self) -> None:
        selection = self._selection
        selection.selected_district = None
        selection.district_name = ""
        selection.visible_commune_subset = None
        selection.district_transform = ViewportTransform.identity()
        selection.level = AdministrativeLevel.DISTRICT
        selection.info_text = selection.province_name
        self._zoom(selection.province_transform)
        self._sync_visibility()

    def _level_default_text(self) -> str:
        selection = self._selection
        if selection.level is AdministrativeLevel.PROVINCE:
            return self._default_info_text
        if selection.level is AdministrativeLevel.DISTRICT:
            return selection.province_name or self._default_info_text
        return selection.district_name or selection.province_name or self._default_info_text

    def _fit(self, feature: Feature, level: AdministrativeLevel) -> ViewportTransform:
        return compute_fit_transform(
            feature,
            self._width,
            self._height,
            level,
            bounds_provider=self._bounds_provider,
            policy=self._policy,
        )

    def _children_of(self, parent: Feature, level: AdministrativeLevel) -> FeatureCollection | None:
        child_level = level.child
        if child_level is None:
            raise InvalidTransitionError(f"The {level.label} level has no child layer")
        raw = self._layers.get(child_level)
        if raw is None:
            _LOGGER.warning("No %s layer loaded; leaving the %s subset empty", child_level.label, child_level.label)
            return None

        parent_code = normalize_code(parent.properties.get(self._schemas[level].code_key))
        parent_key = self._schemas[child_level].parent_code_key
        if parent_code is None or parent_key is None:
            _LOGGER.warning("Selected %s has no code; no %s features match", level.label, child_level.label)
            return raw.with_features(())
        return raw.with_features([item for item in raw.features if item.code(parent_key) == parent_code])

    def _zoom(self, transform: ViewportTransform) -> None:
        if self._render_target is not None:
            self._render_target.zoom_to(transform)

    def _sync_visibility(self) -> None:
        if self._visibility is None:
            return
        shown = visible_levels(self.level)
        for level in AdministrativeLevel:
            self._visibility.set_visible(level, level in shown)
