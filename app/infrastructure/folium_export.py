"""
Infrastructure layer: export a MapSurface as a standalone Leaflet page.

Layers are drawn with folium in surface order. Fill and line layers that
share a source are merged into one GeoJson overlay, since Leaflet styles
fill and stroke together.
"""
from html import escape
from typing import Any, Optional, Sequence
import logging

import folium

from app.infrastructure.map_surface import MapSurface

logger = logging.getLogger(__name__)

TILES = {
    "satellite": (
        "https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/{z}/{y}/{x}",
        "Esri World Imagery",
    ),
    "streets": ("OpenStreetMap", None),
}


def _style_for(fill: Optional[dict], line: Optional[dict]) -> dict[str, Any]:
    fill_paint = (fill or {}).get("paint", {})
    line_paint = (line or {}).get("paint", {})
    style = {
        "color": line_paint.get("line-color", fill_paint.get("fill-color", "#3388ff")),
        "weight": line_paint.get("line-width", 2),
        "opacity": line_paint.get("line-opacity", 1.0),
        "fillColor": fill_paint.get("fill-color", line_paint.get("line-color", "#3388ff")),
        "fillOpacity": fill_paint.get("fill-opacity", 0.0) if fill else 0.0,
    }
    dash = line_paint.get("line-dasharray")
    if dash:
        # Mapbox dashes are in line widths, Leaflet dashes in pixels
        style["dashArray"] = " ".join(str(d * style["weight"]) for d in dash)
    return style


def _marker_html(text: str, style: dict[str, str]) -> str:
    radius = "50%" if style.get("shape", "circle") == "circle" else "4px"
    return (
        f'<div style="width:24px;height:24px;border-radius:{radius};'
        f'background:{style.get("background", "white")};'
        f'color:{style.get("color", "black")};'
        f'border:{style.get("border", "1px solid black")};'
        'display:flex;align-items:center;justify-content:center;'
        f'font-size:11px;font-weight:bold;">{escape(text)}</div>'
    )


def _legend_html(legend: Sequence[Any]) -> str:
    rows = []
    for entry in legend:
        border = "2px dashed" if entry.dashed else "1px solid"
        rows.append(
            '<div style="display:flex;align-items:center;gap:6px;margin:2px 0;">'
            f'<span style="width:12px;height:12px;background:{entry.color};'
            f'border:{border} {entry.color};display:inline-block;"></span>'
            f"<span>{escape(entry.label)} ({entry.count})</span>"
            "</div>"
        )
    return (
        '<div style="position:fixed;bottom:24px;left:24px;z-index:9999;'
        'background:white;padding:8px 12px;border-radius:6px;font-size:12px;'
        'box-shadow:0 1px 4px rgba(0,0,0,0.3);">'
        '<div style="font-weight:bold;margin-bottom:4px;">Groups</div>'
        f"{''.join(rows)}"
        "</div>"
    )


def to_folium(surface: MapSurface, legend: Sequence[Any] = ()) -> folium.Map:
    """
    Build a folium map mirroring the surface.

    Args:
        surface: Rendered map surface
        legend: Legend entries (label, color, count, dashed)

    Returns:
        folium.Map; ``get_root().render()`` yields the HTML page
    """
    lng, lat = surface.center
    tiles, attribution = TILES.get(surface.map_type, TILES["streets"])
    m = folium.Map(
        location=[lat, lng],
        zoom_start=surface.zoom,
        tiles=tiles,
        attr=attribution,
        control_scale=True,
    )

    by_source: dict[str, dict[str, dict]] = {}
    for layer in surface.layers.values():
        by_source.setdefault(layer["source"], {})[layer["type"]] = layer

    for source_id, layers in by_source.items():
        source = surface.get_source(source_id)
        if source is None:
            continue
        fill = layers.get("fill")
        line = layers.get("line")
        style = _style_for(fill, line)
        popup_html = ((fill or {}).get("metadata") or {}).get("popup")
        folium.GeoJson(
            source["data"],
            name=source_id,
            style_function=lambda feature, style=style: style,
            popup=folium.Popup(popup_html, max_width=300) if popup_html else None,
        ).add_to(m)

    for marker in surface.markers:
        marker_lng, marker_lat = marker.lng_lat
        folium.Marker(
            location=[marker_lat, marker_lng],
            icon=folium.DivIcon(html=_marker_html(marker.text, marker.style)),
            popup=folium.Popup(marker.popup_html, max_width=300) if marker.popup_html else None,
        ).add_to(m)

    camera = surface.camera
    if camera is not None and camera.kind == "fit_bounds" and camera.bounds:
        (min_lng, min_lat), (max_lng, max_lat) = camera.bounds
        m.fit_bounds(
            [[min_lat, min_lng], [max_lat, max_lng]],
            padding=(camera.padding, camera.padding),
            max_zoom=camera.max_zoom,
        )

    if legend:
        m.get_root().html.add_child(folium.Element(_legend_html(legend)))

    logger.debug(
        f"Exported map with {len(by_source)} overlays and {len(surface.markers)} markers"
    )
    return m


def render_html(surface: MapSurface, legend: Sequence[Any] = ()) -> str:
    """Standalone HTML page for the surface."""
    return to_folium(surface, legend).get_root().render()
