"""Adaptive tiled fetching of roads, buildings and places.

Small areas are tried in one request.  Otherwise the area is cut into a
uniform grid of tiles; a tile that comes back empty (or keeps failing)
is split into quadrants and re-fetched, since the Overpass API may
silently truncate large responses to nothing.
"""

import logging
import random
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .constants import ROAD_CLASSES
from .models import BoundingBox, OverpassError

logger = logging.getLogger(__name__)


def _feature_key(element: dict) -> Tuple[str, object]:
    return (element.get('type', ''), element.get('id'))


def merge_unique(target: List[dict], seen: set, elements: Iterable[dict]) -> int:
    """Append elements whose (type, id) is new; returns how many were added."""
    added = 0
    for element in elements:
        key = _feature_key(element)
        if key in seen:
            continue
        seen.add(key)
        target.append(element)
        added += 1
    return added


class TileFetcher:
    """Fetch one dataset for a bounding box with retries and recursive splitting.

    *client* needs a ``fetch_elements(dataset, bbox, max_attempts=None)``
    method that raises on failure (see :class:`~citydemand.overpass.OverpassClient`).
    """

    def __init__(self, client, config,
                 sleep: Callable[[float], None] = time.sleep,
                 rng: Callable[[], float] = random.random):
        self.client = client
        self.config = config
        self._sleep = sleep
        self._rng = rng
        self.stats: Dict[str, int] = {}
        self._reset_stats()

    def _reset_stats(self):
        self.stats = {'requests': 0, 'splits': 0, 'failed_tiles': 0, 'empty_tiles': 0}

    def _pause(self) -> None:
        delay = self.config.request_delay + self._rng() * self.config.request_jitter
        if delay > 0:
            self._sleep(delay)

    def _query(self, dataset: str, tile: BoundingBox,
               max_attempts: Optional[int] = None) -> List[dict]:
        self.stats['requests'] += 1
        return self.client.fetch_elements(dataset, tile, max_attempts=max_attempts)

    def _fetch_quadrants(self, dataset: str, tile: BoundingBox, depth: int) -> List[dict]:
        self.stats['splits'] += 1
        results: List[dict] = []
        quadrants = tile.quadrants()
        for i, subtile in enumerate(quadrants):
            results.extend(self.fetch_tile(dataset, subtile, depth + 1))
            if i < len(quadrants) - 1:
                self._pause()
        return results

    def fetch_tile(self, dataset: str, tile: BoundingBox, depth: int = 0) -> List[dict]:
        """Fetch one tile, splitting it into quadrants when it returns nothing or fails.

        A tile stops splitting at ``max_split_depth`` or once its area drops to
        ``min_tile_area``; at that point whatever came back (even nothing) is final.
        Failures never propagate: they are logged and contribute no features.
        """
        cfg = self.config
        area = tile.area
        can_split = depth < cfg.max_split_depth and area >= cfg.min_tile_area

        try:
            elements = self._query(dataset, tile)
        except OverpassError as e:
            if can_split and area > cfg.min_split_area:
                logger.info(f"  {dataset}: tile {tile.describe()} ({area:.3f} sq°) "
                            f"failed after {cfg.retry_attempts} attempts: {e}; "
                            f"splitting into 4 subtiles at depth {depth + 1}")
                results = self._fetch_quadrants(dataset, tile, depth)
                logger.info(f"     recovered {len(results):,} {dataset} from subtiles after error")
                return results
            self.stats['failed_tiles'] += 1
            logger.warning(f"  {dataset}: tile {tile.describe()} ({area:.3f} sq°, depth {depth}) "
                           f"failed after {cfg.retry_attempts} attempts and "
                           f"will not be split further: {e}")
            return []

        if not elements:
            if can_split and area > cfg.min_split_area:
                logger.info(f"  {dataset}: tile {tile.describe()} ({area:.3f} sq°) returned 0 "
                            f"results; splitting into 4 subtiles at depth {depth + 1}")
                results = self._fetch_quadrants(dataset, tile, depth)
                logger.info(f"     recovered {len(results):,} {dataset} from subtiles")
                return results
            self.stats['empty_tiles'] += 1
        return elements

    def fetch_tiled(self, dataset: str, bbox: BoundingBox,
                    progress_callback=None) -> List[dict]:
        """Cover *bbox* with tiles and fetch each one, de-duplicating across tiles."""
        def _progress(pct, msg):
            if progress_callback:
                progress_callback(pct, msg)

        tiles = bbox.tiles(self.config.tile_size[dataset])
        results: List[dict] = []
        seen: set = set()
        start = time.monotonic()
        logger.info(f"Fetching {dataset} in {len(tiles)} tiles")

        for i, tile in enumerate(tiles):
            elapsed = time.monotonic() - start
            eta = round(elapsed / i * (len(tiles) - i)) if i else 0
            _progress(100.0 * i / len(tiles),
                      f"{dataset.capitalize()} {i + 1}/{len(tiles)} "
                      f"({len(results):,} found) ETA:{eta}s")

            merge_unique(results, seen, self.fetch_tile(dataset, tile))

            if i < len(tiles) - 1:
                self._pause()

        _progress(100.0, f"{dataset.capitalize()} complete ({len(results):,} found)")
        return results

    def fetch(self, dataset: str, bbox: BoundingBox, progress_callback=None) -> List[dict]:
        """Return every *dataset* feature inside *bbox*.

        Boxes no larger than ``full_bbox_area_cutoff`` get one single-attempt
        request for the whole area first; an error or an empty answer falls
        back to tiling.
        """
        def _progress(pct, msg):
            if progress_callback:
                progress_callback(pct, msg)

        self._reset_stats()
        cfg = self.config
        area = bbox.area

        if cfg.try_full_bbox_first and area <= cfg.full_bbox_area_cutoff:
            _progress(0, "Trying full area...")
            try:
                elements = self._query(dataset, bbox, max_attempts=1)
            except OverpassError as e:
                logger.info(f"Full-area {dataset} request failed ({e}); tiling")
                _progress(0, "Full area failed, tiling...")
            else:
                if elements:
                    unique: List[dict] = []
                    merge_unique(unique, set(), elements)
                    _progress(100, f"{dataset.capitalize()} complete "
                                   f"(1 request, {len(unique):,} found)")
                    return unique
                logger.info(f"Full-area {dataset} request returned 0 results; tiling")
                _progress(0, "Got 0 results, tiling...")
        elif area > cfg.full_bbox_area_cutoff:
            logger.info(f"Area {area:.2f} sq° exceeds {cfg.full_bbox_area_cutoff} sq°; "
                        f"tiling {dataset} directly")
            _progress(0, "Large area, tiling...")

        return self.fetch_tiled(dataset, bbox, progress_callback=progress_callback)


# ── Roads ──────────────────────────────────────────────────────────────

def street_name(tags: dict, locale: str = 'en') -> str:
    if tags.get('noname') == 'yes':
        return ''
    for key in (f"name:{locale}", 'name', 'ref'):
        value = tags.get(key)
        if value and value.strip():
            return value.strip()
    return ''


def road_feature(element: dict, locale: str = 'en') -> Optional[dict]:
    """GeoJSON LineString feature for one highway way, or None without geometry."""
    tags = element.get('tags') or {}
    coords = [[pt['lon'], pt['lat']] for pt in element.get('geometry') or [] if pt]
    if len(coords) < 2:
        return None
    return {
        'type': 'Feature',
        'properties': {
            'roadClass': ROAD_CLASSES.get(tags.get('highway')),
            'structure': 'normal',
            'name': street_name(tags, locale),
        },
        'geometry': {
            'type': 'LineString',
            'coordinates': coords,
        },
    }


def iter_road_features(elements: Iterable[dict], locale: str = 'en'):
    for element in elements:
        feature = road_feature(element, locale)
        if feature is not None:
            yield feature
