"""Data classes shared by the fetch, assignment and demand stages."""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from shapely.geometry import Polygon, box

from .geometry import bbox_of

# (minLon, minLat, maxLon, maxLat)
BBox = Tuple[float, float, float, float]
LonLat = Tuple[float, float]


# ── Errors ─────────────────────────────────────────────────────────────

class CityDemandError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(CityDemandError):
    """Invalid configuration file or value."""


class CodecError(CityDemandError):
    """A JSON stream or binary payload could not be decoded."""


class OverpassError(CityDemandError):
    """The remote query failed after exhausting its retries."""


class OverpassHTTPError(OverpassError):
    def __init__(self, status_code: int, reason: str = ""):
        super().__init__(f"HTTP {status_code}: {reason}")
        self.status_code = status_code
        self.reason = reason


class RateLimitError(OverpassHTTPError):
    """HTTP 429 from the remote service."""


class StageError(CityDemandError):
    """A worker batch failed, which fails the whole processing stage."""


# ── Geography ──────────────────────────────────────────────────────────

@dataclass
class BoundingBox:
    north: float
    south: float
    east: float
    west: float

    @classmethod
    def from_list(cls, bbox) -> "BoundingBox":
        """Build from a ``[minLon, minLat, maxLon, maxLat]`` sequence."""
        west, south, east, north = (float(v) for v in bbox)
        return cls(north=north, south=south, east=east, west=west)

    def to_list(self) -> List[float]:
        return [self.west, self.south, self.east, self.north]

    def to_polygon(self) -> Polygon:
        """Convert bounding box to shapely polygon."""
        return box(self.west, self.south, self.east, self.north)

    def to_overpass(self) -> str:
        """Overpass bbox filter order: south,west,north,east."""
        return f"{self.south},{self.west},{self.north},{self.east}"

    @property
    def area(self) -> float:
        """Area in square degrees."""
        return (self.east - self.west) * (self.north - self.south)

    @property
    def center(self) -> LonLat:
        return ((self.west + self.east) / 2, (self.south + self.north) / 2)

    def quadrants(self) -> List["BoundingBox"]:
        """Split into 4 equal quadrants: SW, SE, NW, NE."""
        mid_lon, mid_lat = self.center
        return [
            BoundingBox(north=mid_lat, south=self.south, east=mid_lon, west=self.west),
            BoundingBox(north=mid_lat, south=self.south, east=self.east, west=mid_lon),
            BoundingBox(north=self.north, south=mid_lat, east=mid_lon, west=self.west),
            BoundingBox(north=self.north, south=mid_lat, east=self.east, west=mid_lon),
        ]

    def tiles(self, tile_size: float) -> List["BoundingBox"]:
        """Cover the box with a uniform grid of tiles at most *tile_size* degrees wide.

        Edge tiles are clipped to the box, so they may be narrower.
        """
        if tile_size <= 0:
            raise ValueError(f"tile_size must be positive, got {tile_size}")
        tiles = []
        lat = self.south
        while lat < self.north:
            next_lat = min(lat + tile_size, self.north)
            lon = self.west
            while lon < self.east:
                next_lon = min(lon + tile_size, self.east)
                tiles.append(BoundingBox(north=next_lat, south=lat,
                                         east=next_lon, west=lon))
                lon = next_lon
            lat = next_lat
        return tiles

    def describe(self) -> str:
        return (f"[{self.south:.3f}, {self.west:.3f}, "
                f"{self.north:.3f}, {self.east:.3f}]")


# ── Features ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RawFeature:
    """One feature as returned by the remote source.

    Accepts both full Overpass elements (with ``geometry``/``bounds`` or
    ``lat``/``lon``) and the compact ``{id, bbox, tags}`` records written
    by the binary raw store.
    """
    id: int
    kind: str
    tags: Dict[str, str]
    geometry: Tuple[LonLat, ...] = ()
    bounds: Optional[BBox] = None

    @classmethod
    def from_element(cls, element: dict) -> "RawFeature":
        tags = element.get('tags') or {}
        if 'bbox' in element:
            return cls(id=element['id'], kind=element.get('type', 'way'),
                       tags=tags, bounds=tuple(element['bbox']) or None)

        if 'geometry' in element and element['geometry']:
            geometry = tuple((pt['lon'], pt['lat']) for pt in element['geometry']
                             if pt is not None)
        elif 'lon' in element and 'lat' in element:
            geometry = ((element['lon'], element['lat']),)
        else:
            geometry = ()

        bounds = None
        raw_bounds = element.get('bounds')
        if raw_bounds:
            bounds = (raw_bounds['minlon'], raw_bounds['minlat'],
                      raw_bounds['maxlon'], raw_bounds['maxlat'])
        return cls(id=element['id'], kind=element.get('type', 'way'),
                   tags=tags, geometry=geometry, bounds=bounds)

    def bbox(self) -> Optional[BBox]:
        """Bounds when given, else computed from the geometry."""
        if self.bounds is not None:
            return self.bounds
        if not self.geometry:
            return None
        return bbox_of(self.geometry)

    def to_compact(self) -> dict:
        """The reduced ``{id, bbox, tags}`` record stored by the binary codec."""
        return {'id': self.id, 'type': self.kind, 'bbox': list(self.bbox() or ()),
                'tags': dict(self.tags)}


# ── Building classification ────────────────────────────────────────────

@dataclass(frozen=True)
class Residential:
    sqft_per_capita: float


@dataclass(frozen=True)
class Commercial:
    sqft_per_job: float


@dataclass(frozen=True)
class Unclassified:
    pass


UNCLASSIFIED = Unclassified()


@dataclass
class SimplifiedBuilding:
    id: int
    bbox: BBox
    levels_above_ground: int = 1
    levels_below_ground: int = 0
    tags: Dict[str, str] = field(default_factory=dict)
    residents: int = 0
    jobs: int = 0

    @property
    def center(self) -> LonLat:
        min_lon, min_lat, max_lon, max_lat = self.bbox
        return ((min_lon + max_lon) / 2, (min_lat + max_lat) / 2)

    @property
    def foundation_depth(self) -> int:
        return self.levels_below_ground if self.levels_below_ground > 0 else 1

    def to_index_record(self) -> dict:
        """Rectangle record written into the building index."""
        min_lon, min_lat, max_lon, max_lat = self.bbox
        ring = [
            [min_lon, min_lat],
            [max_lon, min_lat],
            [max_lon, max_lat],
            [min_lon, max_lat],
            [min_lon, min_lat],
        ]
        return {'b': list(self.bbox), 'f': self.foundation_depth, 'p': [ring]}


# ── Demand ─────────────────────────────────────────────────────────────

@dataclass
class Neighborhood:
    place_id: str
    name: str
    center: LonLat
    osm_id: Optional[int] = None
    is_terminal: bool = False
    total_population: int = 0
    total_jobs: int = 0
    percent_of_total_population: float = 0.0
    percent_of_total_jobs: float = 0.0

    def to_point(self, pop_ids: List[str]) -> dict:
        return {
            'id': self.place_id,
            'location': list(self.center),
            'jobs': self.total_jobs,
            'residents': self.total_population,
            'popIds': pop_ids,
        }


@dataclass
class Connection:
    residence_id: str
    job_id: str
    size: int
    driving_distance: int
    driving_seconds: int
    id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'residenceId': self.residence_id,
            'jobId': self.job_id,
            'size': self.size,
            'drivingDistance': self.driving_distance,
            'drivingSeconds': self.driving_seconds,
            'id': self.id,
        }


@dataclass
class BuildingIndex:
    """Uniform grid over the building extent plus per-cell building ids."""
    bbox: BBox
    cols: int
    rows: int
    cell_width: float
    cell_height: float
    cells: Dict[Tuple[int, int], List[int]]
    buildings: List[SimplifiedBuilding]
    max_depth: int = 1

    def cell_of(self, lon: float, lat: float) -> Tuple[int, int]:
        min_lon, min_lat, _, _ = self.bbox
        x = min(self.cols - 1, max(0, math.floor((lon - min_lon) / self.cell_width)))
        y = min(self.rows - 1, max(0, math.floor((lat - min_lat) / self.cell_height)))
        return x, y

    def to_dict(self) -> dict:
        """Packaged layout; the large arrays are generators so they stream."""
        return {
            'cs': self.cell_height,
            'bbox': list(self.bbox),
            'grid': [self.cols, self.rows],
            'cells': ([x, y, *ids] for (x, y), ids in self.cells.items()),
            'buildings': (b.to_index_record() for b in self.buildings),
            'stats': {
                'count': len(self.buildings),
                'maxDepth': self.max_depth,
            },
        }
