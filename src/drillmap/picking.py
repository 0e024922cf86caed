"""Pointer hit-testing against render groups, plus hover-slot tracking."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Literal, Mapping, Sequence, Union

from .models import (
    DEFAULT_LEVEL_SCHEMAS,
    AdministrativeLevel,
    FeatureCollection,
    LevelSchema,
    ViewportTransform,
)
from .projection import MercatorProjection


_LOGGER = logging.getLogger("drillmap.picking")


@dataclass(frozen=True, slots=True)
class ViewportRect:
    """Screen rectangle of the drawing surface, like `getBoundingClientRect()`."""

    left: float
    top: float
    width: float
    height: float


def to_ndc(x: float, y: float, rect: ViewportRect) -> tuple[float, float]:
    """Pointer position -> normalized device coordinates, y pointing up."""
    if rect.width <= 0 or rect.height <= 0:
        raise ValueError(f"Viewport rect must have a positive size, got {rect.width}x{rect.height}")
    return (
        ((x - rect.left) / rect.width) * 2.0 - 1.0,
        -((y - rect.top) / rect.height) * 2.0 + 1.0,
    )


@dataclass(frozen=True, slots=True)
class PlanarCamera:
    """Orthographic view of the render plane under a viewport transform."""

    width: float
    height: float
    transform: ViewportTransform = field(default_factory=ViewportTransform.identity)

    def unproject(self, ndc_x: float, ndc_y: float) -> tuple[float, float]:
        screen = ((ndc_x + 1.0) / 2.0 * self.width, (1.0 - ndc_y) / 2.0 * self.height)
        return self.transform.invert(screen)


@dataclass(frozen=True, slots=True)
class RenderMember:
    geometry: Any
    elevation: float = 0.0


@dataclass(eq=False, slots=True)
class RenderGroup:
    """Renderable members of one feature. Compared by identity."""

    key: str | None
    level: AdministrativeLevel
    properties: Mapping[str, Any]
    members: tuple[RenderMember, ...]
    visible: bool = True


def build_render_groups(
    collection: FeatureCollection,
    projection: MercatorProjection,
    level: AdministrativeLevel,
    *,
    schemas: Mapping[AdministrativeLevel, LevelSchema] = DEFAULT_LEVEL_SCHEMAS,
    elevation: float = 0.0,
) -> list[RenderGroup]:
    """One group per feature, one member per polygon part."""
    code_key = schemas[level].code_key
    groups: list[RenderGroup] = []
    skipped = 0
    for feature in collection.features:
        geometry = projection.project_geometry(feature)
        if geometry.is_empty:
            skipped += 1
            continue
        parts = getattr(geometry, "geoms", None)
        members = tuple(
            RenderMember(geometry=part, elevation=elevation)
            for part in (parts if parts is not None else (geometry,))
            if not part.is_empty
        )
        groups.append(
            RenderGroup(
                key=feature.code(code_key),
                level=level,
                properties=dict(feature.properties),
                members=members,
            )
        )
    if skipped:
        _LOGGER.warning("Skipped %d %s features with empty geometry", skipped, level.label)
    return groups


class PickIndex:
    """Spatial index over every member of `groups`.

    Visibility is read at query time, so toggling `RenderGroup.visible`
    does not require a rebuild.
    """

    def __init__(self, groups: Sequence[RenderGroup]) -> None:
        shapely = _require_shapely()
        self.groups = tuple(groups)
        self._owners: list[tuple[RenderGroup, RenderMember]] = [
            (group, member) for group in self.groups for member in group.members
        ]
        self._tree = shapely.STRtree([member.geometry for _, member in self._owners])

    def query(self, x: float, y: float) -> RenderGroup | None:
        """Owning group of the nearest member under (x, y): highest elevation, then first."""
        if not self._owners:
            return None
        shapely = _require_shapely()
        hits = self._tree.query(shapely.Point(x, y), predicate="intersects")
        best: tuple[RenderGroup, RenderMember] | None = None
        for idx in sorted(int(item) for item in hits):
            group, member = self._owners[idx]
            if not group.visible:
                continue
            if best is None or member.elevation > best[1].elevation:
                best = (group, member)
        return best[0] if best is not None else None

    def resolve(self, pointer_x: float, pointer_y: float, rect: ViewportRect, camera: PlanarCamera) -> RenderGroup | None:
        x, y = camera.unproject(*to_ndc(pointer_x, pointer_y, rect))
        return self.query(x, y)


Candidates = Union[Sequence[RenderGroup], PickIndex]


def resolve_hit(
    pointer_x: float,
    pointer_y: float,
    rect: ViewportRect,
    camera: PlanarCamera,
    candidates: Candidates,
) -> RenderGroup | None:
    index = candidates if isinstance(candidates, PickIndex) else PickIndex(candidates)
    return index.resolve(pointer_x, pointer_y, rect, camera)


def resolve_click(
    pointer_x: float,
    pointer_y: float,
    rect: ViewportRect,
    camera: PlanarCamera,
    candidates: Candidates,
) -> RenderGroup | None:
    """Group under a click. Hover state is not consulted or changed."""
    return resolve_hit(pointer_x, pointer_y, rect, camera, candidates)


@dataclass(frozen=True, slots=True)
class HoverEvent:
    kind: Literal["enter", "exit"]
    group: RenderGroup


HoverCallback = Callable[[RenderGroup], None]


class HoverTracker:
    """Single-slot hover state.

    Moving from A to B emits exit(A) then enter(B) in one update; repeated
    hits on the same group emit nothing.
    """

    def __init__(self, on_enter: HoverCallback | None = None, on_exit: HoverCallback | None = None) -> None:
        self._on_enter = on_enter
        self._on_exit = on_exit
        self._hovered: RenderGroup | None = None

    @property
    def hovered(self) -> RenderGroup | None:
        return self._hovered

    def update(self, group: RenderGroup | None) -> list[HoverEvent]:
        previous = self._hovered
        if group is previous:
            return []
        events: list[HoverEvent] = []
        if previous is not None:
            events.append(HoverEvent("exit", previous))
        if group is not None:
            events.append(HoverEvent("enter", group))
        self._hovered = group
        for event in events:
            callback = self._on_enter if event.kind == "enter" else self._on_exit
            if callback is not None:
                callback(event.group)
        return events

    def pointer_move(
        self,
        pointer_x: float,
        pointer_y: float,
        rect: ViewportRect,
        camera: PlanarCamera,
        candidates: Candidates,
    ) -> list[HoverEvent]:
        return self.update(resolve_hit(pointer_x, pointer_y, rect, camera, candidates))

    def clear(self) -> list[HoverEvent]:
        return self.update(None)

    def forget(self, removed: Iterable[RenderGroup]) -> list[HoverEvent]:
        """Drop the hovered group if it is among `removed` groups leaving the scene."""
        hovered = self._hovered
        if hovered is None or not any(group is hovered for group in removed):
            return []
        _LOGGER.debug("Hovered %s group %s removed from scene", hovered.level.label, hovered.key)
        return self.clear()


def _require_shapely() -> Any:
    try:
        import shapely
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("shapely is required for hit-testing") from exc
    return shapely
