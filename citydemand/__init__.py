"""citydemand package: travel-demand datasets from OpenStreetMap data."""

from citydemand.config import CityConfig, PerformanceConfig, load_cities, load_config
from citydemand.models import BoundingBox, CityDemandError
from citydemand.pipeline import CityPipeline
