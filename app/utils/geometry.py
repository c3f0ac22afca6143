"""
Boundary parsing utilities.

Decodes plot and group boundaries (WKT or GeoJSON) into a normalized
:class:`~app.domain.models.Geometry` and computes label centroids.
Parse failures never propagate: they are logged and reported as ``None``
so callers can fall back to a synthetic placement.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from shapely import wkt
from shapely.errors import GEOSException
from shapely.geometry import Point, Polygon, shape

from app.domain.models import Geometry, Plot
from app.utils.geo_projection import project_polygon_to_meters

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = ("Point", "Polygon")


@dataclass(frozen=True)
class BoundingBox:
    """Geographic sanity window for renderable coordinates."""
    min_lng: float
    min_lat: float
    max_lng: float
    max_lat: float

    def contains(self, lng: float, lat: float) -> bool:
        return self.min_lng <= lng <= self.max_lng and self.min_lat <= lat <= self.max_lat

    def filter(self, coordinates: Iterable[tuple[float, float]]) -> list[tuple[float, float]]:
        """Keep only the coordinates inside the window."""
        return [(lng, lat) for lng, lat in coordinates if self.contains(lng, lat)]


def _xy(coords) -> list[list[float]]:
    # Drop any Z value, keep [lng, lat]
    return [[float(c[0]), float(c[1])] for c in coords]


def _from_shapely(geom) -> Optional[Geometry]:
    if geom.is_empty:
        return None
    if isinstance(geom, Polygon):
        rings = [_xy(geom.exterior.coords)]
        rings.extend(_xy(interior.coords) for interior in geom.interiors)
        return Geometry(type="Polygon", coordinates=rings)
    if isinstance(geom, Point):
        return Geometry(type="Point", coordinates=[float(geom.x), float(geom.y)])
    logger.debug(f"Unsupported geometry type: {geom.geom_type}")
    return None


def _parse_wkt(text: str) -> Optional[Geometry]:
    try:
        return _from_shapely(wkt.loads(text))
    except (GEOSException, ValueError) as e:
        logger.warning(f"Failed to parse WKT boundary: {e}")
        return None


def _parse_geojson(obj: Any) -> Optional[Geometry]:
    if not isinstance(obj, dict):
        logger.debug(f"GeoJSON boundary is not an object: {type(obj).__name__}")
        return None

    # Accept a Feature wrapper as well as a bare geometry
    if obj.get("type") == "Feature":
        obj = obj.get("geometry") or {}

    if obj.get("type") not in SUPPORTED_TYPES or not obj.get("coordinates"):
        logger.debug(f"Unrecognized GeoJSON geometry type: {obj.get('type')!r}")
        return None

    try:
        return _from_shapely(shape(obj))
    except (GEOSException, ValueError, TypeError, IndexError) as e:
        logger.warning(f"Failed to parse GeoJSON boundary: {e}")
        return None


def parse_boundary(raw: Any) -> Optional[Geometry]:
    """
    Parse a boundary given as WKT or GeoJSON.

    Args:
        raw: WKT string (``POLYGON((...))`` or ``POINT(...)``), GeoJSON
            string, or an already-parsed GeoJSON mapping

    Returns:
        Normalized Geometry, or None if the input is missing or malformed
    """
    if raw is None:
        return None

    if isinstance(raw, Geometry):
        return raw

    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        upper = text[:8].upper()
        if upper.startswith("POLYGON") or upper.startswith("POINT"):
            return _parse_wkt(text)
        try:
            raw = json.loads(text)
        except (json.JSONDecodeError, RecursionError) as e:
            logger.warning(f"Boundary is neither WKT nor JSON: {e}")
            return None

    return _parse_geojson(raw)


def parse_plot_boundary(plot: Plot) -> Optional[Geometry]:
    """
    Parse a plot's boundary, preferring GeoJSON over WKT.

    A malformed GeoJSON boundary does not fall through to the WKT one.
    """
    if plot.boundary_geo_json:
        return parse_boundary(plot.boundary_geo_json)
    if plot.boundary_wkt:
        return parse_boundary(plot.boundary_wkt)
    return None


def parse_coordinate(raw: Any) -> Optional[tuple[float, float]]:
    """
    Parse a point coordinate into ``(lng, lat)``.

    Accepts WKT ``POINT``, GeoJSON points, and ``{"lat": .., "lng": ..}``.
    """
    if isinstance(raw, dict) and "lat" in raw and "lng" in raw:
        try:
            return (float(raw["lng"]), float(raw["lat"]))
        except (TypeError, ValueError):
            logger.debug(f"Invalid lat/lng coordinate: {raw!r}")
            return None

    geometry = parse_boundary(raw)
    if geometry is None or geometry.type != "Point":
        return None
    lng, lat = geometry.coordinates[:2]
    return (lng, lat)


def centroid(geometry: Geometry) -> tuple[float, float]:
    """
    Naive centroid: arithmetic mean of the outer ring vertices.

    The closing vertex is counted like any other, so this is only suitable
    for label placement, not for area computations.

    Returns:
        (longitude, latitude) tuple
    """
    ring = geometry.outer_ring
    if not ring:
        raise ValueError("Geometry has no vertices")
    lng = sum(c[0] for c in ring) / len(ring)
    lat = sum(c[1] for c in ring) / len(ring)
    return (lng, lat)


def plot_center(plot: Plot) -> Optional[tuple[float, float]]:
    """Label position for a plot: boundary centroid, else its point coordinate."""
    boundary = parse_plot_boundary(plot)
    if boundary is not None and boundary.outer_ring:
        return centroid(boundary)
    if plot.coordinate is not None:
        return parse_coordinate(plot.coordinate)
    return None


def boundary_area_hectares(geometry: Geometry) -> Optional[float]:
    """
    Planar area of a polygon boundary in hectares.

    Projects the outer ring to UTM before measuring. Returns None for
    points and degenerate rings.
    """
    if geometry.type != "Polygon":
        return None
    ring = geometry.outer_ring
    if len(ring) < 4:
        return None
    projected, _ = project_polygon_to_meters(ring)
    return Polygon(projected).area / 10_000
