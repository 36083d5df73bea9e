"""Performance settings and the city list.

Both are owned outside the pipeline; this module only reads them.
Values come from an optional JSON file, then environment variables
(``.env`` is honoured via python-dotenv).
"""

import json
import logging
import os
import pathlib
from dataclasses import asdict, dataclass, field, fields
from typing import Dict, List, Optional, Union

from dotenv import load_dotenv

from .constants import (
    DATASETS, DEFAULT_OVERPASS_URL, DEFAULT_USER_AGENT, PROCESSED_DIR, RAW_DIR,
    SECONDS_PER_METER,
)
from .models import BoundingBox, ConfigError

logger = logging.getLogger(__name__)


def _default_tile_sizes() -> Dict[str, float]:
    # Buildings is the densest dataset, so it gets the smallest tiles
    return {'roads': 0.5, 'buildings': 0.4, 'places': 0.5}


def _default_batch_sizes() -> Dict[str, int]:
    return {'buildings': 5000, 'connections': 1000}


@dataclass
class PerformanceConfig:
    # Fetching
    tile_size: Dict[str, float] = field(default_factory=_default_tile_sizes)
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    request_delay: float = 2.0
    request_jitter: float = 0.5
    dataset_delay: float = 5.0
    request_timeout: int = 180
    max_split_depth: int = 3
    min_split_area: float = 0.1
    min_tile_area: float = 0.01
    try_full_bbox_first: bool = True
    full_bbox_area_cutoff: float = 1.5
    overpass_url: str = DEFAULT_OVERPASS_URL
    user_agent: str = DEFAULT_USER_AGENT
    locale: str = 'en'

    # Parallelism: 0 = cpus - 1, -1 or "all" = cpus, N = exactly N
    worker_threads: Union[int, str] = 0
    worker_kind: str = 'process'
    batch_sizes: Dict[str, int] = field(default_factory=_default_batch_sizes)

    # Demand model
    min_connection_size: float = 1.0
    conservation_tolerance: int = 5
    max_connection_size: int = 400
    seconds_per_meter: float = SECONDS_PER_METER

    # Spatial grids
    index_cell_meters: float = 100.0
    assignment_cell_meters: float = 200.0
    search_radius_meters: float = 5000.0
    assignment_method: str = 'grid'

    # I/O
    write_chunk_size: int = 1024 * 1024
    checkpoint_interval: int = 5000
    raw_format: str = 'json'
    raw_dir: str = str(RAW_DIR)
    processed_dir: str = str(PROCESSED_DIR)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        for name in DATASETS:
            size = self.tile_size.get(name)
            if size is None or size <= 0:
                raise ConfigError(f"tile_size.{name} must be positive, got {size!r}")
        if self.retry_attempts < 1:
            raise ConfigError("retry_attempts must be at least 1")
        if self.max_split_depth < 0:
            raise ConfigError("max_split_depth must not be negative")
        if self.worker_kind not in ('process', 'thread'):
            raise ConfigError(f"worker_kind must be 'process' or 'thread', got {self.worker_kind!r}")
        if self.assignment_method not in ('grid', 'voronoi'):
            raise ConfigError(f"assignment_method must be 'grid' or 'voronoi', "
                              f"got {self.assignment_method!r}")
        if self.raw_format not in ('json', 'binary'):
            raise ConfigError(f"raw_format must be 'json' or 'binary', got {self.raw_format!r}")
        if isinstance(self.worker_threads, str) and self.worker_threads != 'all':
            raise ConfigError(f"worker_threads must be an int or 'all', got {self.worker_threads!r}")
        for key in ('buildings', 'connections'):
            if self.batch_sizes.get(key, 0) < 1:
                raise ConfigError(f"batch_sizes.{key} must be at least 1")
        if self.max_connection_size < 1:
            raise ConfigError("max_connection_size must be at least 1")
        for name in ('index_cell_meters', 'assignment_cell_meters', 'search_radius_meters'):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")

    @classmethod
    def from_dict(cls, data: dict) -> "PerformanceConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        values = {k: v for k, v in data.items() if k in known}
        # Partial dict overrides merge into the defaults
        if 'tile_size' in values:
            values['tile_size'] = {**_default_tile_sizes(), **values['tile_size']}
        if 'batch_sizes' in values:
            values['batch_sizes'] = {**_default_batch_sizes(), **values['batch_sizes']}
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def to_dict(self) -> dict:
        return asdict(self)


_ENV_OVERRIDES = {
    'CITYDEMAND_WORKERS': 'worker_threads',
    'CITYDEMAND_OVERPASS_URL': 'overpass_url',
    'CITYDEMAND_RAW_FORMAT': 'raw_format',
    'CITYDEMAND_RAW_DIR': 'raw_dir',
    'CITYDEMAND_PROCESSED_DIR': 'processed_dir',
}


def _env_value(name: str, raw: str):
    if name == 'worker_threads':
        raw = raw.strip()
        if raw == 'all':
            return raw
        try:
            return int(raw)
        except ValueError as e:
            raise ConfigError(f"CITYDEMAND_WORKERS must be an integer or 'all', got {raw!r}") from e
    return raw.strip()


def load_config(path: Optional[Union[str, pathlib.Path]] = None) -> PerformanceConfig:
    """Load performance settings from *path* (JSON) plus environment overrides."""
    load_dotenv()
    data: dict = {}
    if path is not None:
        path = pathlib.Path(path)
        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")

    for env_name, key in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw:
            data[key] = _env_value(key, raw)

    config = PerformanceConfig.from_dict(data)
    logger.debug(f"Loaded config: {config.to_dict()}")
    return config


# ── City list ──────────────────────────────────────────────────────────

@dataclass
class CityConfig:
    code: str
    name: str
    bbox: BoundingBox
    description: str = ""
    population: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "CityConfig":
        try:
            bbox = BoundingBox.from_list(data['bbox'])
            code = str(data['code'])
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid city entry {data!r}: {e}") from e
        if bbox.west >= bbox.east or bbox.south >= bbox.north:
            raise ConfigError(f"City {code} has an empty bounding box: {data['bbox']}")
        return cls(code=code, name=data.get('name', code), bbox=bbox,
                   description=data.get('description', ''),
                   population=data.get('population'))


def load_cities(path: Union[str, pathlib.Path]) -> List[CityConfig]:
    """Read the city list: either ``{"places": [...]}`` or a bare list."""
    path = pathlib.Path(path)
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except FileNotFoundError as e:
        raise ConfigError(f"City list not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"City list {path} is not valid JSON: {e}") from e
    entries = data.get('places', []) if isinstance(data, dict) else data
    return [CityConfig.from_dict(entry) for entry in entries]
