"""Geometry kernel: areas, centers, distances and point-in-polygon.

All functions are pure and operate on plain ``(lon, lat)`` tuples so the
same code runs in the orchestrator and inside worker processes.
"""

import math
from typing import Iterable, Sequence, Tuple

from .constants import EARTH_RADIUS_M, METERS_PER_DEGREE

LonLat = Tuple[float, float]


def polygon_area_sqm(coords: Sequence[LonLat]) -> float:
    """Approximate ring area in square metres (shoelace, equirectangular scale).

    The ring may be open or closed; it is closed implicitly.
    """
    n = len(coords)
    if n < 3:
        return 0.0
    area = 0.0
    for i in range(n):
        lon1, lat1 = coords[i]
        lon2, lat2 = coords[(i + 1) % n]
        area += lon1 * lat2 - lon2 * lat1
    scale = METERS_PER_DEGREE * METERS_PER_DEGREE * math.cos(math.radians(coords[0][1]))
    return abs(area / 2) * scale


def bbox_area_sqm(bbox) -> float:
    """Area of an axis-aligned ``(minLon, minLat, maxLon, maxLat)`` box in m²."""
    min_lon, min_lat, max_lon, max_lat = bbox
    mid_lat = (min_lat + max_lat) / 2
    width = (max_lon - min_lon) * METERS_PER_DEGREE * math.cos(math.radians(mid_lat))
    height = (max_lat - min_lat) * METERS_PER_DEGREE
    return abs(width * height)


def centroid(coords: Sequence[LonLat]) -> LonLat:
    """Vertex average, ignoring a duplicated closing point."""
    pts = list(coords)
    if len(pts) > 1 and pts[0] == pts[-1]:
        pts = pts[:-1]
    n = len(pts)
    return (sum(p[0] for p in pts) / n, sum(p[1] for p in pts) / n)


def bbox_of(coords: Iterable[LonLat]) -> Tuple[float, float, float, float]:
    min_lon = min_lat = math.inf
    max_lon = max_lat = -math.inf
    for lon, lat in coords:
        if lon < min_lon:
            min_lon = lon
        if lon > max_lon:
            max_lon = lon
        if lat < min_lat:
            min_lat = lat
        if lat > max_lat:
            max_lat = lat
    return (min_lon, min_lat, max_lon, max_lat)


def bbox_center(bbox) -> LonLat:
    min_lon, min_lat, max_lon, max_lat = bbox
    return ((min_lon + max_lon) / 2, (min_lat + max_lat) / 2)


def haversine_m(a: LonLat, b: LonLat) -> float:
    """Great-circle distance between two (lon, lat) points in metres."""
    lon1, lat1 = a
    lon2, lat2 = b
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    h = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2))
         * math.sin(d_lon / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def point_in_polygon(point: LonLat, ring: Sequence[LonLat]) -> bool:
    """Ray-casting test against a single ring."""
    x, y = point
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside
