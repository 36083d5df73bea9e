"""Building simplification, classification and the packaged building index."""

import logging
import math
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from .constants import (
    BUILDING_TAG_SUBSET, SQFT_PER_JOB, SQFT_PER_RESIDENT, SQFT_PER_SQM,
    TERMINAL_JOBS_MULTIPLIER,
)
from .geometry import bbox_area_sqm, haversine_m
from .models import (
    UNCLASSIFIED, BuildingIndex, Commercial, RawFeature, Residential,
    SimplifiedBuilding,
)

logger = logging.getLogger(__name__)


def classify(tags: dict):
    """Map a building's tags to Residential, Commercial or Unclassified."""
    kind = tags.get('building')
    if kind in SQFT_PER_RESIDENT:
        return Residential(SQFT_PER_RESIDENT[kind])
    if kind in SQFT_PER_JOB:
        return Commercial(SQFT_PER_JOB[kind])
    return UNCLASSIFIED


def _parse_levels(value, default: int) -> int:
    if value is None:
        return default
    try:
        levels = float(str(value).split(';')[0].strip())
    except ValueError:
        return default
    if not math.isfinite(levels):
        return default
    return int(levels)


def estimate_occupancy(bbox, tags: dict) -> Tuple[int, int]:
    """(residents, jobs) for a building from its bbox floor area and levels."""
    levels = max(_parse_levels(tags.get('building:levels'), 1), 1)
    floor_sqft = bbox_area_sqm(bbox) * levels * SQFT_PER_SQM
    category = classify(tags)
    if isinstance(category, Residential):
        return math.floor(floor_sqft / category.sqft_per_capita), 0
    if isinstance(category, Commercial):
        jobs = math.floor(floor_sqft / category.sqft_per_job)
        if tags.get('aeroway') == 'terminal':
            jobs *= TERMINAL_JOBS_MULTIPLIER
        return 0, jobs
    return 0, 0


def simplify_building(element: dict) -> Optional[SimplifiedBuilding]:
    """Reduce a raw building way to its bounding rectangle, or None if unusable."""
    feature = RawFeature.from_element(element)
    if not feature.tags.get('building') or feature.tags.get('building') == 'no':
        return None
    bbox = feature.bbox()
    if bbox is None or len(bbox) != 4:
        return None
    min_lon, min_lat, max_lon, max_lat = bbox
    if not (min_lon < max_lon and min_lat < max_lat):
        return None

    tags = {k: feature.tags[k] for k in BUILDING_TAG_SUBSET if k in feature.tags}
    residents, jobs = estimate_occupancy(bbox, tags)
    return SimplifiedBuilding(
        id=feature.id,
        bbox=(float(min_lon), float(min_lat), float(max_lon), float(max_lat)),
        levels_above_ground=max(_parse_levels(tags.get('building:levels'), 1), 1),
        levels_below_ground=max(_parse_levels(tags.get('building:levels:underground'), 0), 0),
        tags=tags,
        residents=residents,
        jobs=jobs,
    )


def simplify_batch(batch: List[dict], context=None) -> List[SimplifiedBuilding]:
    """Worker task: simplify one batch of raw building elements."""
    out = []
    for element in batch:
        building = simplify_building(element)
        if building is not None:
            out.append(building)
    return out


# ── Building index ─────────────────────────────────────────────────────

def _bbox_arrays(buildings: List[SimplifiedBuilding]) -> np.ndarray:
    return np.fromiter(
        (v for b in buildings for v in b.bbox), dtype=np.float64,
        count=4 * len(buildings)).reshape(-1, 4)


def build_index(buildings: List[SimplifiedBuilding], cell_meters: float = 100.0,
                fallback_bbox: Optional[Tuple[float, float, float, float]] = None) -> BuildingIndex:
    """Grid the building extent into ~``cell_meters`` cells and bucket buildings by center.

    Building ids in the cells are positions in ``buildings``.
    """
    if not buildings:
        bbox = tuple(fallback_bbox) if fallback_bbox else (0.0, 0.0, 0.0, 0.0)
        return BuildingIndex(bbox=bbox, cols=1, rows=1,
                             cell_width=max(bbox[2] - bbox[0], 1e-9),
                             cell_height=max(bbox[3] - bbox[1], 1e-9),
                             cells={}, buildings=[], max_depth=1)

    boxes = _bbox_arrays(buildings)
    min_lon, min_lat = float(boxes[:, 0].min()), float(boxes[:, 1].min())
    max_lon, max_lat = float(boxes[:, 2].max()), float(boxes[:, 3].max())

    horizontal = haversine_m((min_lon, min_lat), (max_lon, min_lat))
    vertical = haversine_m((min_lon, min_lat), (min_lon, max_lat))
    cols = max(1, math.ceil(horizontal / cell_meters))
    rows = max(1, math.ceil(vertical / cell_meters))
    cell_width = (max_lon - min_lon) / cols or 1.0
    cell_height = (max_lat - min_lat) / rows or 1.0

    centers_lon = (boxes[:, 0] + boxes[:, 2]) / 2
    centers_lat = (boxes[:, 1] + boxes[:, 3]) / 2
    xs = np.clip(np.floor((centers_lon - min_lon) / cell_width), 0, cols - 1).astype(np.int64)
    ys = np.clip(np.floor((centers_lat - min_lat) / cell_height), 0, rows - 1).astype(np.int64)

    cells: Dict[Tuple[int, int], List[int]] = {}
    for i, (x, y) in enumerate(zip(xs.tolist(), ys.tolist())):
        cells.setdefault((x, y), []).append(i)

    max_depth = max([1] + [b.levels_below_ground for b in buildings])
    logger.info(f"Building index: {len(buildings):,} buildings in {len(cells):,} "
                f"occupied cells of a {cols}x{rows} grid")
    return BuildingIndex(bbox=(min_lon, min_lat, max_lon, max_lat), cols=cols, rows=rows,
                         cell_width=cell_width, cell_height=cell_height,
                         cells=cells, buildings=buildings, max_depth=max_depth)


def total_occupancy(buildings: Iterable[SimplifiedBuilding]) -> Tuple[int, int]:
    residents = jobs = 0
    for b in buildings:
        residents += b.residents
        jobs += b.jobs
    return residents, jobs
