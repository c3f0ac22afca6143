"""
Infrastructure layer: in-memory map surface.

A MapSurface mirrors the parts of a Mapbox GL map handle the preview needs:
GeoJSON sources, fill/line layers with paint properties, HTML markers,
popups, per-layer event handlers and the camera. It holds state only; the
MapRenderer owns it and is the only code that mutates it. Exporters (see
folium_export) turn a surface into a browsable map.
"""
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
import logging

logger = logging.getLogger(__name__)

LngLat = tuple[float, float]
LngLatBounds = tuple[LngLat, LngLat]

LAYER_EVENTS = ("click", "mouseenter", "mouseleave")


class MapSurfaceError(Exception):
    """Raised when a source or layer operation is invalid."""
    pass


@dataclass
class Marker:
    """An HTML marker placed at a coordinate."""
    marker_id: str
    lng_lat: LngLat
    text: str
    style: dict[str, str] = field(default_factory=dict)
    popup_html: Optional[str] = None


@dataclass
class Popup:
    """An opened popup."""
    lng_lat: LngLat
    html: str


@dataclass
class CameraMove:
    """The last camera animation requested."""
    kind: str
    center: Optional[LngLat] = None
    zoom: Optional[float] = None
    bounds: Optional[LngLatBounds] = None
    padding: int = 0
    min_zoom: Optional[float] = None
    max_zoom: Optional[float] = None
    duration: int = 0


@dataclass
class MapEvent:
    """Payload passed to layer event handlers."""
    type: str
    layer_id: str
    lng_lat: Optional[LngLat] = None


Handler = Callable[[MapEvent], None]


class MapSurface:
    """
    State of one interactive map.

    Sources and layers are addressed by id. Layers keep insertion order,
    which is also their draw order.
    """

    def __init__(
        self,
        center: LngLat = (106.6297, 10.8231),
        zoom: float = 11.0,
        map_type: str = "satellite",
    ):
        self.center = center
        self.zoom = zoom
        self.map_type = map_type
        self.cursor = ""
        self.sources: dict[str, dict[str, Any]] = {}
        self.layers: dict[str, dict[str, Any]] = {}
        self.markers: list[Marker] = []
        self.popups: list[Popup] = []
        self.camera: Optional[CameraMove] = None
        self._handlers: dict[tuple[str, str], list[Handler]] = {}

    # Sources

    def add_source(self, source_id: str, data: dict[str, Any]) -> None:
        if source_id in self.sources:
            raise MapSurfaceError(f"Source already exists: {source_id}")
        self.sources[source_id] = {"type": "geojson", "data": data}

    def get_source(self, source_id: str) -> Optional[dict[str, Any]]:
        return self.sources.get(source_id)

    def remove_source(self, source_id: str) -> None:
        if source_id not in self.sources:
            raise MapSurfaceError(f"Source does not exist: {source_id}")
        users = [lid for lid, layer in self.layers.items() if layer["source"] == source_id]
        if users:
            raise MapSurfaceError(f"Source {source_id} is used by layers: {', '.join(users)}")
        del self.sources[source_id]

    # Layers

    def add_layer(self, layer: dict[str, Any]) -> None:
        layer_id = layer["id"]
        if layer_id in self.layers:
            raise MapSurfaceError(f"Layer already exists: {layer_id}")
        if layer.get("source") not in self.sources:
            raise MapSurfaceError(f"Layer {layer_id} references unknown source {layer.get('source')}")
        stored = deepcopy(layer)
        stored.setdefault("paint", {})
        self.layers[layer_id] = stored

    def get_layer(self, layer_id: str) -> Optional[dict[str, Any]]:
        return self.layers.get(layer_id)

    def remove_layer(self, layer_id: str) -> None:
        if layer_id not in self.layers:
            raise MapSurfaceError(f"Layer does not exist: {layer_id}")
        del self.layers[layer_id]
        for key in [k for k in self._handlers if k[1] == layer_id]:
            del self._handlers[key]

    def set_paint_property(self, layer_id: str, name: str, value: Any) -> None:
        layer = self.layers.get(layer_id)
        if layer is None:
            raise MapSurfaceError(f"Layer does not exist: {layer_id}")
        layer["paint"][name] = value

    def get_paint_property(self, layer_id: str, name: str) -> Any:
        layer = self.layers.get(layer_id)
        if layer is None:
            raise MapSurfaceError(f"Layer does not exist: {layer_id}")
        return layer["paint"].get(name)

    def get_style(self) -> dict[str, Any]:
        """Copy of the current sources and layers, like ``map.getStyle()``."""
        return {
            "sources": deepcopy(self.sources),
            "layers": [deepcopy(layer) for layer in self.layers.values()],
        }

    # Events

    def on(self, event: str, layer_id: str, handler: Handler) -> None:
        if event not in LAYER_EVENTS:
            raise MapSurfaceError(f"Unsupported event: {event}")
        self._handlers.setdefault((event, layer_id), []).append(handler)

    def fire(self, event: str, layer_id: str, lng_lat: Optional[LngLat] = None) -> int:
        """
        Dispatch a layer event to its handlers.

        Returns:
            Number of handlers invoked
        """
        handlers = list(self._handlers.get((event, layer_id), []))
        for handler in handlers:
            handler(MapEvent(type=event, layer_id=layer_id, lng_lat=lng_lat))
        return len(handlers)

    def handler_count(self, event: str, layer_id: str) -> int:
        return len(self._handlers.get((event, layer_id), []))

    # Markers and popups

    def add_marker(self, marker: Marker) -> None:
        self.markers.append(marker)

    def clear_markers(self) -> None:
        self.markers.clear()

    def open_popup(self, lng_lat: LngLat, html: str) -> Popup:
        popup = Popup(lng_lat=lng_lat, html=html)
        self.popups.append(popup)
        return popup

    def clear_popups(self) -> None:
        self.popups.clear()

    # Camera

    def fit_bounds(
        self,
        bounds: LngLatBounds,
        padding: int = 0,
        min_zoom: Optional[float] = None,
        max_zoom: Optional[float] = None,
        duration: int = 0,
    ) -> None:
        (min_lng, min_lat), (max_lng, max_lat) = bounds
        self.center = ((min_lng + max_lng) / 2, (min_lat + max_lat) / 2)
        self.camera = CameraMove(
            kind="fit_bounds",
            center=self.center,
            bounds=bounds,
            padding=padding,
            min_zoom=min_zoom,
            max_zoom=max_zoom,
            duration=duration,
        )

    def fly_to(self, center: LngLat, zoom: float, duration: int = 0) -> None:
        self.center = center
        self.zoom = zoom
        self.camera = CameraMove(kind="fly_to", center=center, zoom=zoom, duration=duration)

    def reset(self) -> None:
        """Drop every source, layer, marker, popup and handler."""
        self.sources.clear()
        self.layers.clear()
        self.markers.clear()
        self.popups.clear()
        self._handlers.clear()
        self.camera = None
        self.cursor = ""
