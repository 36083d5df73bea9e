"""CityPipeline orchestrates download and processing for each city."""

import logging
import pathlib
import shutil
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .assignment import TerminalIdSequence, assign_buildings, extract_neighborhoods, make_assigner
from .buildings import build_index, simplify_batch, total_occupancy
from .codec import (
    read_datasets_parallel, write_feature_collection, write_json_object, write_raw_dataset,
)
from .config import CityConfig, PerformanceConfig
from .constants import BUILDING_INDEX_FILENAME, DATASETS, DEMAND_FILENAME, ROADS_FILENAME
from .demand import demand_output, synthesize_demand
from .fetcher import TileFetcher, iter_road_features
from .models import RawFeature
from .overpass import OverpassClient
from .workers import WorkerPool, split_batches

logger = logging.getLogger(__name__)


def _scaled(progress_callback, start: float, end: float):
    """Map a sub-step's 0-100 progress onto [start, end] of the caller's bar."""
    if progress_callback is None:
        return None

    def callback(pct, msg):
        progress_callback(start + (end - start) * pct / 100.0, msg)
    return callback


@dataclass
class CityResult:
    code: str
    name: str
    ok: bool = True
    stats: Dict[str, float] = field(default_factory=dict)
    error: Optional[str] = None
    elapsed: float = 0.0


class CityPipeline:
    """Download raw OSM datasets and turn them into a building index and demand model."""

    def __init__(self, config: Optional[PerformanceConfig] = None, client=None,
                 pool: Optional[WorkerPool] = None, progress_callback=None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or PerformanceConfig()
        self.client = client or OverpassClient.from_config(self.config, sleep=sleep)
        self.pool = pool
        self.progress_callback = progress_callback
        self._sleep = sleep

    def _progress(self, pct, msg):
        if self.progress_callback:
            self.progress_callback(pct, msg)

    def raw_dir(self, city: CityConfig) -> pathlib.Path:
        return pathlib.Path(self.config.raw_dir) / city.code

    def processed_dir(self, city: CityConfig) -> pathlib.Path:
        return pathlib.Path(self.config.processed_dir) / city.code

    def _get_pool(self) -> WorkerPool:
        if self.pool is None:
            self.pool = WorkerPool.from_config(self.config)
        return self.pool

    # ── Download ───────────────────────────────────────────────────────

    def _write_dataset(self, raw_dir: pathlib.Path, dataset: str, elements: List[dict]) -> None:
        cfg = self.config
        if dataset == 'roads':
            count = write_feature_collection(raw_dir / ROADS_FILENAME,
                                             iter_road_features(elements, cfg.locale),
                                             high_water_mark=cfg.write_chunk_size)
            logger.info(f"Wrote {count:,} road features")
            return
        records = elements
        if cfg.raw_format == 'binary':
            # Only id, bbox and tags survive into the binary store
            records = [RawFeature.from_element(e).to_compact() for e in elements]
        path = write_raw_dataset(raw_dir, dataset, records, raw_format=cfg.raw_format,
                                 high_water_mark=cfg.write_chunk_size)
        logger.info(f"Wrote {len(records):,} {dataset} to {path.name}")

    def download(self, city: CityConfig) -> Dict[str, int]:
        """Fetch roads, buildings and places for *city* into its raw store."""
        cfg = self.config
        raw_dir = self.raw_dir(city)
        raw_dir.mkdir(parents=True, exist_ok=True)
        fetcher = TileFetcher(self.client, cfg, sleep=self._sleep)

        logger.info(f"Downloading {city.name} ({city.code}) {city.bbox.describe()}, "
                    f"area {city.bbox.area:.3f} sq°")
        counts: Dict[str, int] = {}
        span = 100.0 / len(DATASETS)
        for i, dataset in enumerate(DATASETS):
            if i and cfg.dataset_delay > 0:
                self._sleep(cfg.dataset_delay)
            t0 = time.perf_counter()
            elements = fetcher.fetch(dataset, city.bbox,
                                     progress_callback=_scaled(self.progress_callback,
                                                               i * span, (i + 1) * span))
            counts[dataset] = len(elements)
            logger.info(f"{dataset}: {len(elements):,} features in "
                        f"{time.perf_counter() - t0:.1f}s ({fetcher.stats['requests']} requests, "
                        f"{fetcher.stats['splits']} splits, "
                        f"{fetcher.stats['failed_tiles']} failed tiles)")
            self._write_dataset(raw_dir, dataset, elements)
            del elements

        logger.info(f"Download summary for {city.code}: "
                    + ", ".join(f"{k}={v:,}" for k, v in counts.items()))
        return counts

    # ── Process ────────────────────────────────────────────────────────

    def process(self, city: CityConfig) -> Dict[str, float]:
        """Build the building index and demand model from *city*'s raw store."""
        cfg = self.config
        raw_dir = self.raw_dir(city)
        out_dir = self.processed_dir(city)
        out_dir.mkdir(parents=True, exist_ok=True)
        pool = self._get_pool()

        self._progress(0, "Reading raw data...")
        data = read_datasets_parallel(raw_dir, ('buildings', 'places'))
        raw_buildings = data.pop('buildings')
        places = data.pop('places')

        self._progress(10, f"Simplifying {len(raw_buildings):,} buildings...")
        batches = split_batches(raw_buildings, cfg.batch_sizes['buildings'])
        del raw_buildings
        results = pool.run_stage(simplify_batch, batches, label="Buildings",
                                 progress_callback=_scaled(self.progress_callback, 10, 35))
        del batches
        buildings = [b for batch in results for b in batch]
        del results
        residents, jobs = total_occupancy(buildings)
        logger.info(f"Simplified {len(buildings):,} buildings "
                    f"({residents:,} residents, {jobs:,} jobs)")

        self._progress(35, "Indexing buildings...")
        index = build_index(buildings, cfg.index_cell_meters,
                            fallback_bbox=tuple(city.bbox.to_list()))

        self._progress(40, "Assigning neighborhoods...")
        neighborhoods = extract_neighborhoods(places, TerminalIdSequence())
        del places
        assigner = make_assigner(cfg.assignment_method, neighborhoods, city.bbox, cfg,
                                 progress_callback=_scaled(self.progress_callback, 40, 50))
        assignment = assign_buildings(buildings, neighborhoods, assigner,
                                      checkpoint_interval=cfg.checkpoint_interval,
                                      progress_callback=_scaled(self.progress_callback, 50, 60))

        self._progress(60, "Computing demand...")
        demand = synthesize_demand(neighborhoods, pool, cfg,
                                   progress_callback=_scaled(self.progress_callback, 60, 80))

        self._progress(80, "Writing building index...")
        write_json_object(out_dir / BUILDING_INDEX_FILENAME, index.to_dict(),
                          high_water_mark=cfg.write_chunk_size,
                          checkpoint_interval=cfg.checkpoint_interval)
        self._progress(90, "Writing demand data...")
        write_json_object(out_dir / DEMAND_FILENAME, demand_output(neighborhoods, demand),
                          high_water_mark=cfg.write_chunk_size,
                          checkpoint_interval=cfg.checkpoint_interval)

        roads = raw_dir / ROADS_FILENAME
        if roads.exists():
            shutil.copy2(roads, out_dir / ROADS_FILENAME)
        else:
            logger.warning(f"No {ROADS_FILENAME} in {raw_dir}; skipping roads")

        self._progress(100, "Done")
        stats = dict(demand.stats)
        stats.update({
            'buildings': len(buildings),
            'assignedBuildings': assignment.assigned,
            'unassignedBuildings': assignment.unassigned,
        })
        return stats

    # ── Batch run ──────────────────────────────────────────────────────

    def run_city(self, city: CityConfig, download: bool = True, process: bool = True) -> CityResult:
        result = CityResult(code=city.code, name=city.name)
        t0 = time.perf_counter()
        try:
            if download:
                counts = self.download(city)
                result.stats.update({f"raw_{k}": v for k, v in counts.items()})
            if process:
                result.stats.update(self.process(city))
        except Exception as e:
            logger.exception(f"City {city.code} failed: {e}")
            result.ok = False
            result.error = str(e)
        result.elapsed = time.perf_counter() - t0
        return result

    def run(self, cities: Sequence[CityConfig], download: bool = True,
            process: bool = True) -> List[CityResult]:
        """Run every city in turn; a failing city is logged and skipped."""
        results = []
        try:
            for i, city in enumerate(cities):
                logger.info(f"[{i + 1}/{len(cities)}] {city.name} ({city.code})")
                results.append(self.run_city(city, download=download, process=process))
        finally:
            if self.pool is not None:
                self.pool.shutdown()
        log_summary(results)
        return results


def log_summary(results: Sequence[CityResult]) -> Dict[str, int]:
    """Log per-city stats and grand totals; returns the totals."""
    totals = {'totalPopulation': 0, 'totalJobs': 0, 'connections': 0, 'neighborhoods': 0}
    logger.info("=" * 50)
    for r in results:
        if not r.ok:
            logger.info(f"  {r.code}: FAILED ({r.error})")
            continue
        logger.info(f"  {r.code}: {r.stats.get('totalPopulation', 0):,} residents, "
                    f"{r.stats.get('totalJobs', 0):,} jobs, "
                    f"{r.stats.get('connections', 0):,} connections in {r.elapsed:.1f}s")
        for key in totals:
            totals[key] += int(r.stats.get(key, 0))
    failed = [r.code for r in results if not r.ok]
    logger.info(f"Total: {totals['totalPopulation']:,} residents, {totals['totalJobs']:,} jobs, "
                f"{totals['connections']:,} connections across "
                f"{len(results) - len(failed)} cities")
    if failed:
        logger.error(f"Failed cities: {', '.join(failed)}")
    return totals
