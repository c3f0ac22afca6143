"""
Geospatial projection utilities for coordinate transformations.

Plot coordinates travel as ``[lng, lat]`` pairs (GeoJSON order); these
helpers project them to a local UTM zone so distances and areas can be
measured in meters.
"""
from functools import lru_cache
from typing import Optional, Sequence, Tuple, List
from pyproj import Transformer


def get_utm_zone(longitude: float) -> int:
    """
    Calculate the UTM zone number from longitude.

    Args:
        longitude: Longitude in degrees

    Returns:
        UTM zone number (1-60)
    """
    return min(int((longitude + 180) / 6) + 1, 60)


def get_utm_crs(longitude: float, latitude: float) -> str:
    """
    Get the appropriate UTM CRS (Coordinate Reference System) for a location.

    Args:
        longitude: Longitude in degrees
        latitude: Latitude in degrees

    Returns:
        EPSG code for the UTM zone
    """
    zone = get_utm_zone(longitude)
    # Northern hemisphere: EPSG:326XX, Southern hemisphere: EPSG:327XX
    hemisphere = "6" if latitude >= 0 else "7"
    return f"EPSG:32{hemisphere}{zone:02d}"


@lru_cache(maxsize=16)
def _transformer_to(utm_crs: str) -> Transformer:
    return Transformer.from_crs("EPSG:4326", utm_crs, always_xy=True)


def project_to_meters(
    coordinates: Sequence[Sequence[float]],
    reference: Optional[Sequence[float]] = None,
) -> Tuple[List[Tuple[float, float]], str]:
    """
    Project [lng, lat] coordinates to a planar UTM system in meters.

    All points share one zone so distances between them stay comparable.

    Args:
        coordinates: Sequence of (longitude, latitude) pairs in degrees
        reference: Point selecting the UTM zone (defaults to the first coordinate)

    Returns:
        Tuple of:
            - List of (x, y) coordinates in meters
            - EPSG code of the UTM zone used
    """
    if not coordinates:
        raise ValueError("Coordinates list cannot be empty")

    ref_lng, ref_lat = reference if reference is not None else coordinates[0][:2]
    utm_crs = get_utm_crs(ref_lng, ref_lat)
    transformer = _transformer_to(utm_crs)

    projected = []
    for coord in coordinates:
        x, y = transformer.transform(coord[0], coord[1])
        projected.append((x, y))

    return projected, utm_crs


def project_polygon_to_meters(
    ring: Sequence[Sequence[float]],
) -> Tuple[List[Tuple[float, float]], str]:
    """
    Project a polygon ring of [lng, lat] vertices to meters.

    The zone is chosen from the ring's first vertex.
    """
    return project_to_meters(ring)
