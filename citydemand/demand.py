"""Gravity-model demand synthesis between neighborhoods.

Every origin with residents sends flow to every destination in
proportion to the destination's share of city jobs.  Flows are rounded,
split into sub-connections of at most ``max_connection_size`` and then
corrected so each origin's outgoing sizes add up to its population.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from .constants import SECONDS_PER_METER
from .geometry import haversine_m
from .models import Connection, Neighborhood
from .workers import split_batches

logger = logging.getLogger(__name__)


@dataclass
class DemandContext:
    """Read-only state shared by every demand batch."""
    destinations: List[Neighborhood]
    min_connection_size: float = 1.0
    max_connection_size: int = 400
    seconds_per_meter: float = SECONDS_PER_METER
    conservation_tolerance: int = 5

    @classmethod
    def from_config(cls, destinations, config) -> "DemandContext":
        return cls(destinations=list(destinations),
                   min_connection_size=config.min_connection_size,
                   max_connection_size=config.max_connection_size,
                   seconds_per_meter=config.seconds_per_meter,
                   conservation_tolerance=config.conservation_tolerance)


def split_flow(total: int, cap: int) -> List[int]:
    """Sizes of the sub-connections carrying *total* units, each about ``total/splits``."""
    if total <= 0:
        return []
    splits = math.ceil(total / cap)
    size = round(total / splits)
    return [size] * splits


def redistribute(connections: List[Connection], target: int) -> int:
    """Adjust sizes in place so they sum to *target*; returns the prior difference.

    A shortfall is spread evenly with the remainder going to the first
    connections.  An overshoot is taken back the same way without
    pushing any size below 1.
    """
    lost = target - sum(c.size for c in connections)
    if lost == 0 or not connections:
        return lost
    if lost > 0:
        share, remainder = divmod(lost, len(connections))
        for i, conn in enumerate(connections):
            conn.size += share + (1 if i < remainder else 0)
        return lost

    excess = -lost
    while excess > 0:
        reducible = [c for c in connections if c.size > 1]
        if not reducible:
            break
        share, remainder = divmod(excess, len(reducible))
        for i, conn in enumerate(reducible):
            take = min(share + (1 if i < remainder else 0), conn.size - 1)
            conn.size -= take
            excess -= take
    if excess:
        logger.warning(f"Could not remove {excess} units without emptying a connection")
    return lost


def origin_connections(origin: Neighborhood, context: DemandContext) -> List[Connection]:
    """All outgoing connections of one origin, conservation-corrected."""
    if origin.total_population <= 0:
        return []
    out: List[Connection] = []
    for dest in context.destinations:
        flow = dest.percent_of_total_jobs * origin.total_population
        if flow <= context.min_connection_size:
            continue
        distance = round(haversine_m(origin.center, dest.center))
        seconds = round(distance * context.seconds_per_meter)
        for size in split_flow(round(flow), context.max_connection_size):
            out.append(Connection(residence_id=origin.place_id, job_id=dest.place_id,
                                  size=size, driving_distance=distance,
                                  driving_seconds=seconds))

    lost = redistribute(out, origin.total_population)
    if abs(lost) > context.conservation_tolerance:
        logger.debug(f"Corrected {lost:+d} units for origin {origin.place_id}")
    return out


def connections_batch(origins: Sequence[Neighborhood], context: DemandContext) -> List[Connection]:
    """Worker task: connections for a batch of origins."""
    out: List[Connection] = []
    for origin in origins:
        out.extend(origin_connections(origin, context))
    return out


@dataclass
class DemandResult:
    connections: List[Connection]
    pop_ids: Dict[str, List[str]] = field(default_factory=dict)
    stats: dict = field(default_factory=dict)


def finalize(neighborhoods: Sequence[Neighborhood], connections: Sequence[Connection]) -> DemandResult:
    """Drop empty connections, number the rest in merge order and collect popIds."""
    kept = [c for c in connections if c.size > 0]
    pop_ids: Dict[str, List[str]] = {n.place_id: [] for n in neighborhoods}
    for i, conn in enumerate(kept):
        conn.id = str(i)
        pop_ids.setdefault(conn.residence_id, []).append(conn.id)
        if conn.job_id != conn.residence_id:
            pop_ids.setdefault(conn.job_id, []).append(conn.id)

    total_movement = sum(c.size for c in kept)
    stats = {
        'totalPopulation': sum(n.total_population for n in neighborhoods),
        'totalJobs': sum(n.total_jobs for n in neighborhoods),
        'neighborhoods': len(neighborhoods),
        'connections': len(kept),
        'avgConnectionSize': math.floor(total_movement / len(kept) + 0.5) if kept else 0,
        'totalMovement': total_movement,
    }
    return DemandResult(connections=kept, pop_ids=pop_ids, stats=stats)


def synthesize_demand(neighborhoods: Sequence[Neighborhood], pool, config,
                      progress_callback=None) -> DemandResult:
    """Compute every connection on the worker pool and merge the batches in order."""
    origins = [n for n in neighborhoods if n.total_population > 0]
    context = DemandContext.from_config(
        [n for n in neighborhoods if n.percent_of_total_jobs > 0], config)
    batches = split_batches(origins, config.batch_sizes['connections'])
    logger.info(f"Computing connections for {len(origins):,} origins "
                f"x {len(context.destinations):,} destinations in {len(batches)} batches")

    results = pool.run_stage(connections_batch, batches, context,
                             label="Demand", progress_callback=progress_callback)
    merged = [conn for batch in results for conn in batch]
    result = finalize(neighborhoods, merged)
    logger.info(f"Created {result.stats['connections']:,} connections moving "
                f"{result.stats['totalMovement']:,} people")
    return result


def demand_output(neighborhoods: Sequence[Neighborhood], result: DemandResult) -> dict:
    """The ``demand_data.json`` record; points and pops stream as generators."""
    return {
        'points': (n.to_point(result.pop_ids.get(n.place_id, [])) for n in neighborhoods),
        'pops': (c.to_dict() for c in result.connections),
        'stats': result.stats,
    }
