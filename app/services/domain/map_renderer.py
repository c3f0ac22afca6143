"""
Domain service: renders a preview session onto a map surface.

Each render pass:
1. Clears every layer, source and marker this renderer owns
2. Draws the member plots of every group in the group's color
3. Draws ungrouped plots in the warning color, with a synthetic position
   for plots that have no location at all
4. Fits the viewport to the coordinates inside the valid window
5. Applies the current hover/expansion highlight

Highlighting afterwards only touches paint properties of existing layers.
"""
from dataclasses import dataclass, field
from html import escape
from typing import Iterable, Optional, Sequence
import logging

from app.config import settings
from app.domain.conversions import MapGroupView, MapPreview
from app.domain.models import Geometry, Plot, UngroupedPlot
from app.infrastructure.map_surface import MapEvent, MapSurface, MapSurfaceError, Marker
from app.services.domain.preview_session import PreviewSession
from app.utils.geometry import (
    BoundingBox,
    boundary_area_hectares,
    centroid,
    parse_coordinate,
    parse_plot_boundary,
)

logger = logging.getLogger(__name__)

OWNED_PREFIXES = ("plot-", "group-", "ungrouped-")

PLOT_FILL_OPACITY = 0.4
PLOT_FILL_OPACITY_ACTIVE = 0.6
PLOT_LINE_WIDTH = 2
PLOT_LINE_WIDTH_ACTIVE = 3
UNGROUPED_FILL_OPACITY = 0.3
UNGROUPED_FILL_OPACITY_HOVER = 0.5
UNGROUPED_LINE_WIDTH = 3
UNGROUPED_DASH = [3, 3]

# Synthetic placement for ungrouped plots without any location
FALLBACK_OFFSET_LNG = 0.15
FALLBACK_STEP_LNG = 0.02
FALLBACK_OFFSET_LAT = -0.05


class GroupPalette:
    """
    Assigns palette colors to group numbers.

    A group keeps its color for as long as the palette lives, even when
    other groups are edited or reordered. Colors are handed out in the
    order groups are first seen, cycling through the palette.
    """

    def __init__(self, colors: Optional[Sequence[str]] = None):
        self.colors = list(colors or settings.group_palette)
        if not self.colors:
            raise ValueError("Palette needs at least one color")
        self._assigned: dict[int, str] = {}

    def color_for(self, group_number: int) -> str:
        color = self._assigned.get(group_number)
        if color is None:
            color = self.colors[len(self._assigned) % len(self.colors)]
            self._assigned[group_number] = color
        return color

    def reset(self) -> None:
        self._assigned.clear()


@dataclass
class LegendEntry:
    """One row of the map legend."""
    label: str
    color: str
    count: int
    group_number: Optional[int] = None
    dashed: bool = False


@dataclass
class RenderResult:
    """Summary of one render pass."""
    session_id: Optional[str]
    rendered_plot_ids: list[str] = field(default_factory=list)
    fallback_plot_ids: list[str] = field(default_factory=list)
    unplaced_plot_ids: list[str] = field(default_factory=list)
    coordinates: list[tuple[float, float]] = field(default_factory=list)
    valid_coordinates: list[tuple[float, float]] = field(default_factory=list)


def plot_fill_id(plot_id: str) -> str:
    return f"plot-fill-{plot_id}"


def plot_line_id(plot_id: str) -> str:
    return f"plot-line-{plot_id}"


def ungrouped_fill_id(plot_id: str) -> str:
    return f"ungrouped-fill-{plot_id}"


def ungrouped_line_id(plot_id: str) -> str:
    return f"ungrouped-line-{plot_id}"


def _plot_popup(plot: Plot, variety: str, boundary: Optional[Geometry] = None) -> str:
    cadastral = ""
    if plot.so_thua:
        cadastral = f'<div class="cadastral">Plot {escape(plot.so_thua)}/{escape(plot.so_to or "")}</div>'
    mapped = ""
    mapped_area = boundary_area_hectares(boundary) if boundary is not None else None
    if mapped_area is not None:
        mapped = f'<div class="mapped-area">Mapped area {mapped_area:.2f} ha</div>'
    return (
        '<div class="plot-popup">'
        f'<div class="farmer">{escape(plot.farmer_name)}</div>'
        f'<div class="variety">{escape(variety)}</div>'
        f'<div class="area">{plot.area:.2f} ha</div>'
        f"{cadastral}"
        f"{mapped}"
        "</div>"
    )


def _ungrouped_popup(plot: UngroupedPlot, with_suggestion: bool = True) -> str:
    suggestion = ""
    if with_suggestion and plot.suggestions:
        suggestion = f'<div class="suggestion">{escape(plot.suggestions[0])}</div>'
    return (
        '<div class="ungrouped-popup">'
        '<div class="title">Ungrouped Plot</div>'
        f'<div class="farmer">{escape(plot.farmer_name)}</div>'
        f'<div class="variety">{escape(plot.rice_variety_name or "")} &bull; {plot.area:.2f}ha</div>'
        f'<div class="reason">{escape(plot.reason_description)}</div>'
        f"{suggestion}"
        "</div>"
    )


class MapRenderer:
    """
    Single owner of a MapSurface for one dialog.

    Holds no authoritative data: everything drawn comes from the session
    passed to render(), plus transient hover/expansion state.
    """

    def __init__(
        self,
        surface: Optional[MapSurface] = None,
        palette: Optional[GroupPalette] = None,
        valid_window: Optional[BoundingBox] = None,
        default_center: Optional[tuple[float, float]] = None,
        default_zoom: Optional[float] = None,
    ):
        self.surface = surface or MapSurface()
        self.palette = palette or GroupPalette()
        self.valid_window = valid_window or BoundingBox(
            min_lng=settings.map_valid_min_lng,
            min_lat=settings.map_valid_min_lat,
            max_lng=settings.map_valid_max_lng,
            max_lat=settings.map_valid_max_lat,
        )
        self.default_center = default_center or (
            settings.map_default_center_lng,
            settings.map_default_center_lat,
        )
        self.default_zoom = default_zoom if default_zoom is not None else settings.map_default_zoom

        self.session_id: Optional[str] = None
        self.preview: Optional[MapPreview] = None
        self.hovered_group: Optional[int] = None
        self.expanded_groups: frozenset[int] = frozenset()
        self._group_plot_ids: dict[int, list[str]] = {}
        self._disposed = False

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def render(
        self,
        session: PreviewSession,
        hovered_group: Optional[int] = None,
        expanded_groups: Iterable[int] = (),
    ) -> RenderResult:
        """
        Run a full render pass for a session.

        A different session (e.g. after recalculation) starts a fresh
        color assignment.
        """
        if session.session_id != self.session_id:
            self.palette.reset()
            self.session_id = session.session_id
        return self.render_preview(
            session.to_map_preview(),
            hovered_group=hovered_group,
            expanded_groups=expanded_groups,
        )

    def render_preview(
        self,
        preview: MapPreview,
        hovered_group: Optional[int] = None,
        expanded_groups: Iterable[int] = (),
    ) -> RenderResult:
        if self._disposed:
            raise MapSurfaceError("Renderer has been disposed")

        self.clear()
        self.preview = preview
        result = RenderResult(session_id=self.session_id)

        for group in preview.proposed_groups:
            self._render_group(group, result)

        for index, plot in enumerate(preview.ungrouped_plots_list):
            self._render_ungrouped(plot, index, result)

        self._fit_viewport(result)
        self.set_highlight(hovered_group, expanded_groups)

        logger.info(
            f"Rendered {len(result.rendered_plot_ids)} plots "
            f"({len(result.fallback_plot_ids)} at fallback positions, "
            f"{len(result.unplaced_plot_ids)} unplaced)"
        )
        return result

    def clear(self) -> None:
        """Remove everything this renderer drew. Safe to call repeatedly."""
        style = self.surface.get_style()
        for layer in style["layers"]:
            if layer["id"].startswith(OWNED_PREFIXES):
                self._remove_layer(layer["id"])
        for source_id in style["sources"]:
            if source_id.startswith(OWNED_PREFIXES):
                try:
                    self.surface.remove_source(source_id)
                except MapSurfaceError as e:
                    logger.debug(f"Skipping source removal: {e}")
        self.surface.clear_markers()
        self.surface.clear_popups()
        self._group_plot_ids = {}

    def set_highlight(
        self,
        hovered_group: Optional[int] = None,
        expanded_groups: Iterable[int] = (),
    ) -> None:
        """Adjust fill opacity and border width; geometry is left alone."""
        self.hovered_group = hovered_group
        self.expanded_groups = frozenset(expanded_groups)

        for group_number, plot_ids in self._group_plot_ids.items():
            active = self._is_active(group_number)
            for plot_id in plot_ids:
                if self.surface.get_layer(plot_fill_id(plot_id)) is None:
                    continue
                self.surface.set_paint_property(
                    plot_fill_id(plot_id),
                    "fill-opacity",
                    PLOT_FILL_OPACITY_ACTIVE if active else PLOT_FILL_OPACITY,
                )
                self.surface.set_paint_property(
                    plot_line_id(plot_id),
                    "line-width",
                    PLOT_LINE_WIDTH_ACTIVE if active else PLOT_LINE_WIDTH,
                )

    def legend(self) -> list[LegendEntry]:
        if self.preview is None:
            return []
        entries = [
            LegendEntry(
                label=group.rice_variety,
                color=self.palette.color_for(group.group_number),
                count=group.plot_count,
                group_number=group.group_number,
            )
            for group in self.preview.proposed_groups
        ]
        if self.preview.ungrouped_plots > 0:
            entries.append(LegendEntry(
                label="Ungrouped",
                color=settings.ungrouped_color,
                count=self.preview.ungrouped_plots,
                dashed=True,
            ))
        return entries

    def dispose(self) -> None:
        """Tear down everything and release the surface."""
        if self._disposed:
            return
        self.clear()
        self.surface.reset()
        self.preview = None
        self.session_id = None
        self._disposed = True

    # ------------------------------------------------------------------
    # Drawing
    # ------------------------------------------------------------------

    def _is_active(self, group_number: int) -> bool:
        return group_number == self.hovered_group or group_number in self.expanded_groups

    def _remove_layer(self, layer_id: str) -> None:
        try:
            self.surface.remove_layer(layer_id)
        except MapSurfaceError as e:
            logger.debug(f"Skipping layer removal: {e}")

    def _add_boundary(self, source_id: str, geometry: Geometry, properties: dict) -> bool:
        if self.surface.get_source(source_id) is not None:
            logger.warning(f"Source {source_id} already drawn, skipping duplicate plot")
            return False
        self.surface.add_source(source_id, {
            "type": "Feature",
            "geometry": geometry.to_geojson(),
            "properties": properties,
        })
        return True

    def _render_group(self, group: MapGroupView, result: RenderResult) -> None:
        color = self.palette.color_for(group.group_number)
        self._group_plot_ids[group.group_number] = []

        for plot_index, plot in enumerate(group.plots):
            boundary = parse_plot_boundary(plot)

            if boundary is None or not boundary.outer_ring:
                point = parse_coordinate(plot.coordinate) if plot.coordinate is not None else None
                if point is None:
                    result.unplaced_plot_ids.append(plot.plot_id)
                    continue
                center = point
                result.coordinates.append(point)
            else:
                center = centroid(boundary)
                result.coordinates.extend((c[0], c[1]) for c in boundary.outer_ring)
                if boundary.type == "Polygon":
                    self._draw_plot_polygon(plot, boundary, group, color)

            self.surface.add_marker(Marker(
                marker_id=f"plot-label-{plot.plot_id}",
                lng_lat=center,
                text=plot.so_thua or str(plot_index + 1),
                style={
                    "shape": "circle",
                    "background": "white",
                    "color": color,
                    "border": f"2px solid {color}",
                },
            ))
            result.rendered_plot_ids.append(plot.plot_id)

    def _draw_plot_polygon(
        self,
        plot: Plot,
        boundary: Geometry,
        group: MapGroupView,
        color: str,
    ) -> None:
        source_id = f"plot-boundary-{plot.plot_id}"
        if not self._add_boundary(source_id, boundary, {"plotId": plot.plot_id}):
            return

        fill_id = plot_fill_id(plot.plot_id)
        popup_html = _plot_popup(plot, group.rice_variety, boundary)
        self.surface.add_layer({
            "id": fill_id,
            "type": "fill",
            "source": source_id,
            "paint": {"fill-color": color, "fill-opacity": PLOT_FILL_OPACITY},
            "metadata": {"groupNumber": group.group_number, "popup": popup_html},
        })
        self.surface.add_layer({
            "id": plot_line_id(plot.plot_id),
            "type": "line",
            "source": source_id,
            "paint": {"line-color": color, "line-width": PLOT_LINE_WIDTH, "line-opacity": 0.8},
        })
        self._group_plot_ids[group.group_number].append(plot.plot_id)

        group_number = group.group_number

        def on_click(event: MapEvent) -> None:
            self.surface.open_popup(event.lng_lat or centroid(boundary), popup_html)

        def on_enter(event: MapEvent) -> None:
            self.surface.cursor = "pointer"
            self.surface.set_paint_property(fill_id, "fill-opacity", PLOT_FILL_OPACITY_ACTIVE)

        def on_leave(event: MapEvent) -> None:
            self.surface.cursor = ""
            opacity = PLOT_FILL_OPACITY_ACTIVE if self._is_active(group_number) else PLOT_FILL_OPACITY
            self.surface.set_paint_property(fill_id, "fill-opacity", opacity)

        self.surface.on("click", fill_id, on_click)
        self.surface.on("mouseenter", fill_id, on_enter)
        self.surface.on("mouseleave", fill_id, on_leave)

    def _render_ungrouped(self, plot: UngroupedPlot, index: int, result: RenderResult) -> None:
        color = settings.ungrouped_color
        boundary = parse_plot_boundary(plot)

        center: Optional[tuple[float, float]] = None
        if boundary is not None and boundary.outer_ring:
            center = centroid(boundary)
            result.coordinates.extend((c[0], c[1]) for c in boundary.outer_ring)
        elif plot.coordinate is not None:
            center = parse_coordinate(plot.coordinate)
            if center is not None:
                result.coordinates.append(center)

        if center is None:
            fallback = self.fallback_position(index)
            result.coordinates.append(fallback)
            result.fallback_plot_ids.append(plot.plot_id)
            self.surface.add_marker(Marker(
                marker_id=f"ungrouped-marker-{plot.plot_id}",
                lng_lat=fallback,
                text="!",
                style={
                    "shape": "square",
                    "background": color,
                    "color": "white",
                    "border": "2px dashed white",
                },
                popup_html=_ungrouped_popup(plot, with_suggestion=False),
            ))
            return

        if boundary is not None and boundary.type == "Polygon":
            self._draw_ungrouped_polygon(plot, boundary, color)

        self.surface.add_marker(Marker(
            marker_id=f"ungrouped-marker-{plot.plot_id}",
            lng_lat=center,
            text="!",
            style={
                "shape": "circle",
                "background": color,
                "color": "white",
                "border": "3px solid white",
            },
        ))
        result.rendered_plot_ids.append(plot.plot_id)

    def _draw_ungrouped_polygon(self, plot: UngroupedPlot, boundary: Geometry, color: str) -> None:
        source_id = f"ungrouped-boundary-{plot.plot_id}"
        if not self._add_boundary(source_id, boundary, {"plotId": plot.plot_id}):
            return

        fill_id = ungrouped_fill_id(plot.plot_id)
        popup_html = _ungrouped_popup(plot)
        self.surface.add_layer({
            "id": fill_id,
            "type": "fill",
            "source": source_id,
            "paint": {"fill-color": color, "fill-opacity": UNGROUPED_FILL_OPACITY},
            "metadata": {"popup": popup_html},
        })
        self.surface.add_layer({
            "id": ungrouped_line_id(plot.plot_id),
            "type": "line",
            "source": source_id,
            "paint": {
                "line-color": color,
                "line-width": UNGROUPED_LINE_WIDTH,
                "line-dasharray": list(UNGROUPED_DASH),
            },
        })

        def on_click(event: MapEvent) -> None:
            self.surface.open_popup(event.lng_lat or centroid(boundary), popup_html)

        def on_enter(event: MapEvent) -> None:
            self.surface.cursor = "pointer"
            self.surface.set_paint_property(fill_id, "fill-opacity", UNGROUPED_FILL_OPACITY_HOVER)

        def on_leave(event: MapEvent) -> None:
            self.surface.cursor = ""
            self.surface.set_paint_property(fill_id, "fill-opacity", UNGROUPED_FILL_OPACITY)

        self.surface.on("click", fill_id, on_click)
        self.surface.on("mouseenter", fill_id, on_enter)
        self.surface.on("mouseleave", fill_id, on_leave)

    def fallback_position(self, index: int) -> tuple[float, float]:
        """Deterministic stand-in location for the index-th unlocated plot."""
        anchor_lng, anchor_lat = self.default_center
        return (
            anchor_lng + FALLBACK_OFFSET_LNG + index * FALLBACK_STEP_LNG,
            anchor_lat + FALLBACK_OFFSET_LAT,
        )

    # ------------------------------------------------------------------
    # Viewport
    # ------------------------------------------------------------------

    def _fit_viewport(self, result: RenderResult) -> None:
        result.valid_coordinates = self.valid_window.filter(result.coordinates)
        logger.debug(
            f"Viewport: {len(result.coordinates)} coordinates, "
            f"{len(result.valid_coordinates)} inside the valid window"
        )

        if not result.valid_coordinates:
            self.surface.fly_to(
                center=self.default_center,
                zoom=self.default_zoom,
                duration=settings.map_animation_ms,
            )
            return

        lngs = [c[0] for c in result.valid_coordinates]
        lats = [c[1] for c in result.valid_coordinates]
        self.surface.fit_bounds(
            ((min(lngs), min(lats)), (max(lngs), max(lats))),
            padding=settings.map_fit_padding,
            min_zoom=settings.map_fit_min_zoom,
            max_zoom=settings.map_fit_max_zoom,
            duration=settings.map_animation_ms,
        )
