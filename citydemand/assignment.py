"""Neighborhood extraction and building-to-neighborhood assignment.

The default assigner lays a uniform grid (~200 m cells) over the city,
resolves the nearest neighborhood center once per cell through an
STRtree, and then maps each building to its cell's winner by integer
division.  Cells that contain a neighborhood center are resolved per
building instead, so a building sitting on a center always lands in
that neighborhood.  The Voronoi assigner is the older exact variant.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import shapely
from shapely.geometry import MultiPoint, Point, Polygon
from shapely.ops import voronoi_diagram
from shapely.strtree import STRtree

from .constants import METERS_PER_DEGREE, TERMINAL_ID_PREFIX, VALID_PLACES
from .geometry import bbox_center, point_in_polygon
from .models import BoundingBox, Neighborhood, RawFeature, SimplifiedBuilding

logger = logging.getLogger(__name__)

UNASSIGNED = -1
_EXACT = -2  # cell holds a neighborhood center; resolve per building


class TerminalIdSequence:
    """Sequential synthetic ids for airport terminals, one sequence per city run."""

    def __init__(self, prefix: str = TERMINAL_ID_PREFIX):
        self.prefix = prefix
        self._next = 0

    def __call__(self) -> str:
        value = f"{self.prefix}{self._next}"
        self._next += 1
        return value


def is_neighborhood(tags: dict) -> bool:
    return tags.get('place') in VALID_PLACES or tags.get('aeroway') == 'terminal'


def place_center(feature: RawFeature) -> Optional[Tuple[float, float]]:
    """Node position, or the center of a way/relation's bounds."""
    if feature.kind == 'node' and feature.geometry:
        return feature.geometry[0]
    bbox = feature.bbox()
    if bbox is None:
        return None
    return bbox_center(bbox)


def extract_neighborhoods(places: Sequence[dict],
                          terminal_ids: Optional[TerminalIdSequence] = None) -> List[Neighborhood]:
    """One Neighborhood per qualifying place feature, in input order."""
    terminal_ids = terminal_ids or TerminalIdSequence()
    neighborhoods: List[Neighborhood] = []
    seen = set()
    used_ids = set()
    skipped = 0
    for element in places:
        tags = element.get('tags') or {}
        if not is_neighborhood(tags):
            continue
        feature = RawFeature.from_element(element)
        key = (feature.kind, feature.id)
        if key in seen:
            continue
        seen.add(key)
        center = place_center(feature)
        if center is None:
            skipped += 1
            continue

        is_terminal = tags.get('aeroway') == 'terminal'
        if is_terminal:
            place_id = terminal_ids()
        else:
            place_id = str(feature.id)
            if place_id in used_ids:
                place_id = f"{feature.kind}/{feature.id}"
        used_ids.add(place_id)
        neighborhoods.append(Neighborhood(
            place_id=place_id,
            name=tags.get('name', ''),
            center=(float(center[0]), float(center[1])),
            osm_id=feature.id,
            is_terminal=is_terminal,
        ))
    if skipped:
        logger.warning(f"Skipped {skipped} places without coordinates")
    logger.info(f"Found {len(neighborhoods):,} neighborhoods")
    return neighborhoods


def _nearest_per_input(pairs: np.ndarray, n_inputs: int) -> np.ndarray:
    """Collapse (input, tree) match pairs to one tree index per input.

    Equidistant ties go to the lowest tree index.
    """
    result = np.full(n_inputs, UNASSIGNED, dtype=np.int64)
    if pairs.size == 0:
        return result
    inputs, targets = pairs[0], pairs[1]
    order = np.lexsort((targets, inputs))
    inputs, targets = inputs[order], targets[order]
    first = np.unique(inputs, return_index=True)[1]
    result[inputs[first]] = targets[first]
    return result


class NeighborhoodGrid:
    """Per-cell cache of the nearest neighborhood over a city bounding box."""

    def __init__(self, neighborhoods: Sequence[Neighborhood], bbox: BoundingBox,
                 cell_meters: float = 200.0, search_radius_meters: float = 5000.0,
                 progress_callback=None, checkpoint_interval: int = 5000):
        self.bbox = bbox
        self.cell_meters = float(cell_meters)
        self.search_radius = float(search_radius_meters)
        mid_lat = (bbox.south + bbox.north) / 2
        # Planar metres; fine at neighborhood scale
        self._kx = METERS_PER_DEGREE * math.cos(math.radians(mid_lat))
        self._ky = METERS_PER_DEGREE
        self._x0 = bbox.west * self._kx
        self._y0 = bbox.south * self._ky
        self.cols = max(1, math.ceil((bbox.east - bbox.west) * self._kx / self.cell_meters))
        self.rows = max(1, math.ceil((bbox.north - bbox.south) * self._ky / self.cell_meters))

        centers = np.array([n.center for n in neighborhoods], dtype=np.float64).reshape(-1, 2)
        self._centers_xy = np.column_stack((centers[:, 0] * self._kx, centers[:, 1] * self._ky))
        self._tree = STRtree(shapely.points(self._centers_xy)) if len(neighborhoods) else None
        self.winners = np.full((self.rows, self.cols), UNASSIGNED, dtype=np.int64)
        self._precompute(progress_callback, checkpoint_interval)

    def _project(self, lons, lats) -> Tuple[np.ndarray, np.ndarray]:
        return np.asarray(lons, dtype=np.float64) * self._kx, np.asarray(lats, dtype=np.float64) * self._ky

    def _nearest(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        if self._tree is None or len(xs) == 0:
            return np.full(len(xs), UNASSIGNED, dtype=np.int64)
        pairs = self._tree.query_nearest(shapely.points(xs, ys), max_distance=self.search_radius)
        return _nearest_per_input(np.asarray(pairs), len(xs))

    def _precompute(self, progress_callback, checkpoint_interval: int) -> None:
        col_centers = self._x0 + (np.arange(self.cols) + 0.5) * self.cell_meters
        rows_per_chunk = max(1, checkpoint_interval // self.cols)
        for start in range(0, self.rows, rows_per_chunk):
            stop = min(self.rows, start + rows_per_chunk)
            row_centers = self._y0 + (np.arange(start, stop) + 0.5) * self.cell_meters
            xs, ys = np.meshgrid(col_centers, row_centers)
            self.winners[start:stop] = self._nearest(xs.ravel(), ys.ravel()).reshape(stop - start, self.cols)
            if progress_callback:
                progress_callback(100.0 * stop / self.rows, f"Grid rows {stop}/{self.rows}")

        unassigned = int((self.winners == UNASSIGNED).sum())
        if unassigned:
            logger.info(f"{unassigned:,} of {self.winners.size:,} grid cells have no "
                        f"neighborhood within {self.search_radius:.0f} m")

        if len(self._centers_xy):
            cx, cy = self._cells(self._centers_xy[:, 0], self._centers_xy[:, 1], clip=False)
            inside = (cx >= 0) & (cx < self.cols) & (cy >= 0) & (cy < self.rows)
            self.winners[cy[inside], cx[inside]] = _EXACT

    def _cells(self, xs: np.ndarray, ys: np.ndarray, clip: bool = True):
        cx = np.floor((xs - self._x0) / self.cell_meters).astype(np.int64)
        cy = np.floor((ys - self._y0) / self.cell_meters).astype(np.int64)
        if clip:
            cx = np.clip(cx, 0, self.cols - 1)
            cy = np.clip(cy, 0, self.rows - 1)
        return cx, cy

    def assign(self, lons, lats) -> np.ndarray:
        """Neighborhood index per point, ``UNASSIGNED`` (-1) where none is in range."""
        xs, ys = self._project(lons, lats)
        cx, cy = self._cells(xs, ys)
        result = self.winners[cy, cx].copy()
        exact = np.flatnonzero(result == _EXACT)
        if exact.size:
            result[exact] = self._nearest(xs[exact], ys[exact])
        return result


class VoronoiAssigner:
    """Exact point-in-polygon assignment against Voronoi cells of the centers."""

    def __init__(self, neighborhoods: Sequence[Neighborhood], bbox: BoundingBox):
        envelope = bbox.to_polygon()
        centers = [Point(n.center) for n in neighborhoods]
        self._rings: List[List[Tuple[float, float]]] = []
        self._owners: List[int] = []

        if len(centers) == 1:
            regions = [envelope]
        elif centers:
            regions = list(voronoi_diagram(MultiPoint(centers), envelope=envelope).geoms)
        else:
            regions = []

        center_tree = STRtree(centers) if centers else None
        for region in regions:
            clipped = region.intersection(envelope)
            if clipped.is_empty or not isinstance(clipped, Polygon):
                continue
            owners = center_tree.query(region, predicate='intersects')
            if len(owners) == 0:
                continue
            self._rings.append(list(clipped.exterior.coords))
            self._owners.append(int(min(owners)))

        self._tree = STRtree([Polygon(r) for r in self._rings]) if self._rings else None
        logger.info(f"Voronoi: {len(self._rings)} cells for {len(neighborhoods)} neighborhoods")

    def assign(self, lons, lats) -> np.ndarray:
        lons = np.asarray(lons, dtype=np.float64)
        lats = np.asarray(lats, dtype=np.float64)
        result = np.full(len(lons), UNASSIGNED, dtype=np.int64)
        if self._tree is None:
            return result
        for i, (lon, lat) in enumerate(zip(lons.tolist(), lats.tolist())):
            for candidate in sorted(self._tree.query(Point(lon, lat)).tolist()):
                if point_in_polygon((lon, lat), self._rings[candidate]):
                    result[i] = self._owners[candidate]
                    break
        return result


def make_assigner(method: str, neighborhoods: Sequence[Neighborhood], bbox: BoundingBox,
                  config, progress_callback=None):
    if method == 'voronoi':
        return VoronoiAssigner(neighborhoods, bbox)
    return NeighborhoodGrid(neighborhoods, bbox,
                            cell_meters=config.assignment_cell_meters,
                            search_radius_meters=config.search_radius_meters,
                            progress_callback=progress_callback,
                            checkpoint_interval=config.checkpoint_interval)


@dataclass
class AssignmentResult:
    assignments: np.ndarray
    assigned: int
    unassigned: int
    total_population: int
    total_jobs: int


def assign_buildings(buildings: Sequence[SimplifiedBuilding],
                     neighborhoods: Sequence[Neighborhood],
                     assigner, checkpoint_interval: int = 5000,
                     progress_callback=None) -> AssignmentResult:
    """Assign every building and accumulate per-neighborhood totals and shares.

    Buildings in unassigned cells are dropped from the totals.
    """
    n = len(buildings)
    assignments = np.full(n, UNASSIGNED, dtype=np.int64)
    residents = np.fromiter((b.residents for b in buildings), dtype=np.int64, count=n)
    jobs = np.fromiter((b.jobs for b in buildings), dtype=np.int64, count=n)

    step = max(1, checkpoint_interval)
    for start in range(0, n, step):
        chunk = buildings[start:start + step]
        centers = np.array([b.center for b in chunk], dtype=np.float64).reshape(-1, 2)
        assignments[start:start + len(chunk)] = assigner.assign(centers[:, 0], centers[:, 1])
        if progress_callback:
            done = start + len(chunk)
            progress_callback(100.0 * done / n, f"Assign {done:,}/{n:,}")

    population = np.zeros(len(neighborhoods), dtype=np.int64)
    employment = np.zeros(len(neighborhoods), dtype=np.int64)
    hit = assignments >= 0
    np.add.at(population, assignments[hit], residents[hit])
    np.add.at(employment, assignments[hit], jobs[hit])

    for i, hood in enumerate(neighborhoods):
        hood.total_population = int(population[i])
        hood.total_jobs = int(employment[i])
    total_population, total_jobs = apply_percentages(neighborhoods)

    unassigned = int(n - hit.sum())
    if unassigned:
        logger.warning(f"{unassigned:,} buildings fell outside every neighborhood's "
                       f"search radius and were dropped from demand totals")
    return AssignmentResult(assignments=assignments, assigned=int(hit.sum()),
                            unassigned=unassigned, total_population=total_population,
                            total_jobs=total_jobs)


def apply_percentages(neighborhoods: Sequence[Neighborhood]) -> Tuple[int, int]:
    """Set each neighborhood's share of the city totals; returns the totals."""
    total_population = sum(n.total_population for n in neighborhoods)
    total_jobs = sum(n.total_jobs for n in neighborhoods)
    for hood in neighborhoods:
        hood.percent_of_total_population = (
            hood.total_population / total_population if total_population else 0.0)
        hood.percent_of_total_jobs = hood.total_jobs / total_jobs if total_jobs else 0.0
    return total_population, total_jobs
