"""Lookup tables, query templates, physical constants and default paths."""

import pathlib

# ── Physical constants ─────────────────────────────────────────────────
EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE = 111320.0  # 1 degree latitude ≈ 111.32 km
SQFT_PER_SQM = 10.7639

# Synthetic travel time (seconds per metre of great-circle distance)
SECONDS_PER_METER = 0.12

# Terminal buildings employ far more people than their footprint suggests
TERMINAL_JOBS_MULTIPLIER = 20

# ── Building type mappings ─────────────────────────────────────────────
# Square feet of floor space per resident, keyed by the `building` tag.
SQFT_PER_RESIDENT = {
    'yes': 600, 'apartments': 240, 'barracks': 100, 'bungalow': 600,
    'cabin': 600, 'detached': 600, 'annexe': 240, 'dormitory': 125,
    'farm': 600, 'ger': 240, 'hotel': 240, 'house': 600,
    'houseboat': 600, 'residential': 600, 'semidetached_house': 400,
    'static_caravan': 500, 'stilt_house': 600, 'terrace': 500,
    'tree_house': 240, 'trullo': 240,
}

# Square feet of floor space per job, keyed by the `building` tag.
SQFT_PER_JOB = {
    'commercial': 150, 'industrial': 500, 'kiosk': 50, 'office': 150,
    'retail': 300, 'supermarket': 300, 'warehouse': 500,
    'religious': 100, 'cathedral': 100, 'chapel': 100, 'church': 100,
    'kingdom_hall': 100, 'monastery': 100, 'mosque': 100,
    'presbytery': 100, 'shrine': 100, 'synagogue': 100, 'temple': 100,
    'bakehouse': 300, 'college': 250, 'fire_station': 500,
    'government': 150, 'gatehouse': 150, 'hospital': 150,
    'kindergarten': 100, 'museum': 300, 'public': 300, 'school': 100,
    'train_station': 1000, 'transportation': 1000, 'university': 250,
    'grandstand': 150, 'pavilion': 150, 'riding_hall': 150,
    'sports_hall': 150, 'sports_centre': 150, 'stadium': 150,
}

# Tags kept on a simplified building (everything else is dropped)
BUILDING_TAG_SUBSET = (
    'building', 'building:levels', 'building:levels:underground',
    'aeroway', 'name',
)

# ── Places ─────────────────────────────────────────────────────────────
VALID_PLACES = ('quarter', 'neighbourhood', 'suburb', 'hamlet', 'village')
TERMINAL_ID_PREFIX = "AIR_Terminal_"

# ── Roads ──────────────────────────────────────────────────────────────
ROAD_CLASSES = {
    'motorway': 'highway',
    'trunk': 'major',
    'primary': 'major',
    'secondary': 'minor',
    'tertiary': 'minor',
    'residential': 'minor',
}

# ── Overpass query templates ───────────────────────────────────────────
# `{bbox}` is "south,west,north,east"; `{timeout}` is in seconds.
DATASETS = ('roads', 'buildings', 'places')

QUERY_TEMPLATES = {
    'roads': """
[out:json][timeout:{timeout}];
(
  way["highway"="motorway"]({bbox});
  way["highway"="trunk"]({bbox});
  way["highway"="primary"]({bbox});
  way["highway"="secondary"]({bbox});
  way["highway"="tertiary"]({bbox});
  way["highway"="residential"]({bbox});
);
out geom;""",
    'buildings': """
[out:json][timeout:{timeout}];
(
  way["building"]({bbox});
);
out geom;""",
    'places': """
[out:json][timeout:{timeout}];
(
  nwr["place"="neighbourhood"]({bbox});
  nwr["place"="quarter"]({bbox});
  nwr["place"="suburb"]({bbox});
  nwr["place"="hamlet"]({bbox});
  nwr["place"="village"]({bbox});
  nwr["aeroway"="terminal"]({bbox});
);
out geom;""",
}

DEFAULT_OVERPASS_URL = "https://overpass-api.de/api/interpreter"
DEFAULT_USER_AGENT = "citydemand/0.1 (OSM travel-demand builder)"

# ── Paths ──────────────────────────────────────────────────────────────
BASE_DIR = pathlib.Path.cwd()
RAW_DIR = BASE_DIR / "raw_data"
PROCESSED_DIR = BASE_DIR / "processed_data"

RAW_JSON_SUFFIX = ".json"
RAW_BINARY_SUFFIX = ".bin"
ROADS_FILENAME = "roads.geojson"
BUILDING_INDEX_FILENAME = "buildings_index.json"
DEMAND_FILENAME = "demand_data.json"
