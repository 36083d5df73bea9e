"""Tests for citydemand/fetcher.py"""

from citydemand.config import PerformanceConfig
from citydemand.fetcher import TileFetcher, iter_road_features, merge_unique, road_feature, street_name
from citydemand.models import BoundingBox, OverpassError

UNIT = BoundingBox(north=1.0, south=0.0, east=1.0, west=0.0)


def _grid_features(n=20):
    """n x n nodes spread evenly over the unit box."""
    features = []
    for i in range(n):
        for j in range(n):
            features.append({'type': 'node', 'id': i * n + j,
                             'lon': (i + 0.5) / n, 'lat': (j + 0.5) / n, 'tags': {}})
    return features


def _inside(feature, tile):
    return (tile.west <= feature['lon'] < tile.east
            and tile.south <= feature['lat'] < tile.north)


def _intersects(tile, region):
    return not (tile.east <= region.west or tile.west >= region.east
                or tile.north <= region.south or tile.south >= region.north)


class FakeSource:
    """In-memory remote source; *respond* decides what a request returns."""

    def __init__(self, respond):
        self.respond = respond
        self.calls = []

    def fetch_elements(self, dataset, bbox, max_attempts=None):
        self.calls.append((dataset, bbox, max_attempts))
        return self.respond(bbox, max_attempts)


def _config(**overrides):
    values = dict(request_delay=0.0, request_jitter=0.0,
                  tile_size={'roads': 0.5, 'buildings': 0.5, 'places': 0.5})
    values.update(overrides)
    return PerformanceConfig(**values)


def _fetcher(respond, **overrides):
    source = FakeSource(respond)
    sleeps = []
    fetcher = TileFetcher(source, _config(**overrides), sleep=sleeps.append, rng=lambda: 0.5)
    return fetcher, source, sleeps


class TestAdaptiveTiling:
    def test_truncated_region_is_recovered(self):
        features = _grid_features()
        hot = BoundingBox(north=0.2, south=0.1, east=0.2, west=0.1)

        def truncating(tile, max_attempts):
            # Large tiles over the dense region come back silently empty
            if _intersects(tile, hot) and tile.area > 0.02:
                return []
            return [f for f in features if _inside(f, tile)]

        fetcher, source, _ = _fetcher(truncating, min_split_area=0.01, min_tile_area=0.001)
        result = fetcher.fetch('buildings', UNIT)

        full = [f for f in features if _inside(f, UNIT)]
        assert len(result) == len(full) == 400
        assert sorted(f['id'] for f in result) == sorted(f['id'] for f in full)
        assert fetcher.stats['splits'] == 2

    def test_always_empty_stops_at_max_depth(self):
        fetcher, source, _ = _fetcher(lambda tile, _: [], min_split_area=0.0,
                                      min_tile_area=0.0, max_split_depth=3,
                                      try_full_bbox_first=False,
                                      tile_size={'roads': 5.0, 'buildings': 5.0, 'places': 5.0})
        assert fetcher.fetch('roads', UNIT) == []
        assert len(source.calls) == 1 + 4 + 16 + 64
        assert fetcher.stats['empty_tiles'] == 64

    def test_small_empty_tile_is_final(self):
        fetcher, source, _ = _fetcher(lambda tile, _: [], try_full_bbox_first=False)
        # 0.25 sq° tiles split once into 0.0625 quadrants, which sit below min_split_area
        assert fetcher.fetch('places', UNIT) == []
        assert len(source.calls) == 4 + 4 * 4

    def test_failed_tile_contributes_nothing(self):
        def flaky(tile, max_attempts):
            if tile.west == 0.5 and tile.south == 0.5:
                raise OverpassError('HTTP 504: Gateway Timeout')
            return [{'type': 'way', 'id': (tile.west, tile.south)}]

        fetcher, _, _ = _fetcher(flaky, try_full_bbox_first=False, min_split_area=10.0)
        result = fetcher.fetch('buildings', UNIT)
        assert len(result) == 3
        assert fetcher.stats['failed_tiles'] == 1

    def test_failed_tile_is_split(self):
        def flaky(tile, max_attempts):
            if tile.area > 0.1:
                raise OverpassError('HTTP 504: Gateway Timeout')
            return [{'type': 'way', 'id': (tile.west, tile.south)}]

        fetcher, _, _ = _fetcher(flaky, try_full_bbox_first=False)
        assert len(fetcher.fetch('buildings', UNIT)) == 16

    def test_sibling_requests_are_spaced(self):
        fetcher, _, sleeps = _fetcher(lambda tile, _: [{'type': 'way', 'id': tile.west}],
                                      try_full_bbox_first=False, request_delay=2.0,
                                      request_jitter=0.5)
        fetcher.fetch('roads', UNIT)
        assert sleeps == [2.25, 2.25, 2.25]

    def test_split_quadrants_are_spaced(self):
        def respond(tile, _):
            if tile == UNIT:
                return []
            return [{'type': 'way', 'id': (tile.west, tile.south)}]

        fetcher, source, sleeps = _fetcher(respond, try_full_bbox_first=False,
                                           tile_size={'roads': 1.0, 'buildings': 1.0, 'places': 1.0},
                                           request_delay=2.0, request_jitter=0.5)
        assert len(fetcher.fetch('roads', UNIT)) == 4
        assert len(source.calls) == 5
        assert fetcher.stats['splits'] == 1
        assert sleeps == [2.25, 2.25, 2.25]


class TestFullBboxFirst:
    def test_large_box_goes_straight_to_tiling(self):
        box = BoundingBox(north=2.0, south=0.0, east=2.0, west=0.0)
        fetcher, source, _ = _fetcher(lambda tile, _: [{'type': 'way', 'id': (tile.west, tile.south)}],
                                      try_full_bbox_first=True, full_bbox_area_cutoff=1.5)
        result = fetcher.fetch('roads', box)
        assert len(result) == 16
        assert len(source.calls) == 16
        assert all(bbox != box and attempts is None for _, bbox, attempts in source.calls)

    def test_small_box_single_request(self):
        box = BoundingBox(north=0.5, south=0.0, east=0.5, west=0.0)
        fetcher, source, _ = _fetcher(lambda tile, _: [{'type': 'node', 'id': 1},
                                                       {'type': 'node', 'id': 1}])
        assert fetcher.fetch('places', box) == [{'type': 'node', 'id': 1}]
        assert source.calls == [('places', box, 1)]

    def test_full_box_error_falls_back(self):
        def respond(tile, max_attempts):
            if max_attempts == 1:
                raise OverpassError('timeout')
            return [{'type': 'way', 'id': (tile.west, tile.south)}]

        fetcher, source, _ = _fetcher(respond)
        assert len(fetcher.fetch('buildings', UNIT)) == 4
        assert len(source.calls) == 5

    def test_full_box_empty_falls_back(self):
        fetcher, source, _ = _fetcher(
            lambda tile, attempts: [] if attempts == 1 else [{'type': 'way', 'id': tile.west}],
            min_split_area=10.0)
        assert len(fetcher.fetch('buildings', UNIT)) == 2
        assert source.calls[0][2] == 1


class TestDedupe:
    def test_merge_unique_by_kind_and_id(self):
        target, seen = [], set()
        added = merge_unique(target, seen, [{'type': 'way', 'id': 1}, {'type': 'node', 'id': 1}])
        added += merge_unique(target, seen, [{'type': 'way', 'id': 1}, {'type': 'way', 'id': 2}])
        assert added == 3
        assert target == [{'type': 'way', 'id': 1}, {'type': 'node', 'id': 1},
                          {'type': 'way', 'id': 2}]

    def test_boundary_ways_counted_once(self):
        fetcher, _, _ = _fetcher(lambda tile, _: [{'type': 'way', 'id': 42}],
                                 try_full_bbox_first=False)
        assert fetcher.fetch('buildings', UNIT) == [{'type': 'way', 'id': 42}]


class TestRoads:
    def test_road_feature(self):
        element = {'type': 'way', 'id': 1,
                   'tags': {'highway': 'trunk', 'name': '国道', 'name:en': 'Route 1'},
                   'geometry': [{'lat': 35.0, 'lon': 139.0}, {'lat': 35.1, 'lon': 139.1}]}
        feature = road_feature(element)
        assert feature['properties'] == {'roadClass': 'major', 'structure': 'normal',
                                         'name': 'Route 1'}
        assert feature['geometry']['coordinates'] == [[139.0, 35.0], [139.1, 35.1]]

    def test_street_name_fallbacks(self):
        assert street_name({'name': 'Main St'}) == 'Main St'
        assert street_name({'ref': 'A1'}) == 'A1'
        assert street_name({'name': 'X', 'noname': 'yes'}) == ''
        assert street_name({}) == ''

    def test_geometryless_ways_skipped(self):
        elements = [{'type': 'way', 'id': 1, 'tags': {'highway': 'residential'},
                     'geometry': [{'lat': 0, 'lon': 0}]}]
        assert list(iter_road_features(elements)) == []
