"""
Spatial analysis helper functions.

Provides utilities for:
- KD-Tree spatial indexing over projected group centers
- Ranking groups by distance to a plot
"""
from typing import Sequence
import numpy as np
from scipy.spatial import KDTree
import logging

from app.utils.geo_projection import project_to_meters

logger = logging.getLogger(__name__)


def build_kdtree(coordinates: Sequence[tuple[float, float]]) -> KDTree:
    """
    Build a KD-Tree for efficient spatial queries.

    Args:
        coordinates: List of (x, y) coordinate tuples

    Returns:
        KDTree instance
    """
    points = np.array(coordinates, dtype=float)
    return KDTree(points)


def rank_by_distance(
    origin: tuple[float, float],
    candidates: Sequence[tuple[int, tuple[float, float]]],
    limit: int = 3,
) -> list[tuple[int, float]]:
    """
    Rank candidate locations by planar distance from an origin.

    Both origin and candidates are (longitude, latitude) in degrees; they are
    projected into the origin's UTM zone before measuring.

    Args:
        origin: (lng, lat) of the point of interest
        candidates: (key, (lng, lat)) pairs, e.g. group number and group center
        limit: Maximum number of results

    Returns:
        List of (key, distance_in_meters) sorted nearest first
    """
    if not candidates or limit <= 0:
        return []

    keys = [key for key, _ in candidates]
    centers = [center for _, center in candidates]

    projected, utm_crs = project_to_meters(list(centers) + [origin], reference=origin)
    origin_xy = projected[-1]
    kdtree = build_kdtree(projected[:-1])

    k = min(limit, len(keys))
    distances, indices = kdtree.query(origin_xy, k=k)
    # query returns scalars when k == 1
    distances = np.atleast_1d(distances)
    indices = np.atleast_1d(indices)

    ranked = [(keys[int(i)], float(d)) for d, i in zip(distances, indices)]
    logger.debug(f"Ranked {len(ranked)}/{len(keys)} candidates in {utm_crs}")
    return ranked
