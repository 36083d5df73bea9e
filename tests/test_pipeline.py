"""Tests for citydemand/pipeline.py"""

from collections import defaultdict

from citydemand.codec import read_binary, read_json, write_raw_dataset
from citydemand.config import CityConfig, PerformanceConfig
from citydemand.models import BoundingBox
from citydemand.pipeline import CityPipeline, log_summary
from citydemand.workers import WorkerPool

BBOX = [139.70, 35.60, 139.72, 35.62]


def _way(id_, lon, lat, size=0.0002, **tags):
    return {'type': 'way', 'id': id_, 'tags': tags,
            'geometry': [{'lon': lon, 'lat': lat}, {'lon': lon + size, 'lat': lat},
                         {'lon': lon + size, 'lat': lat + size}, {'lon': lon, 'lat': lat + size},
                         {'lon': lon, 'lat': lat}]}


def _elements():
    buildings = []
    for i in range(8):
        buildings.append(_way(100 + i, 139.703 + 0.0004 * i, 35.604, building='apartments'))
        buildings.append(_way(200 + i, 139.713 + 0.0004 * i, 35.614, building='house'))
    buildings.append(_way(300, 139.716, 35.602, size=0.001, building='office',
                          aeroway='terminal'))
    buildings.append(_way(301, 139.706, 35.612, size=0.0006, building='commercial'))
    return {
        'roads': [
            {'type': 'way', 'id': 1, 'tags': {'highway': 'primary', 'name': 'Main'},
             'geometry': [{'lon': 139.70, 'lat': 35.61}, {'lon': 139.72, 'lat': 35.61}]},
            {'type': 'way', 'id': 2, 'tags': {'highway': 'service'},
             'geometry': [{'lon': 139.71, 'lat': 35.60}]},
        ],
        'buildings': buildings,
        'places': [
            {'type': 'node', 'id': 10, 'lon': 139.705, 'lat': 35.605,
             'tags': {'place': 'suburb', 'name': 'West'}},
            {'type': 'node', 'id': 11, 'lon': 139.715, 'lat': 35.615,
             'tags': {'place': 'neighbourhood', 'name': 'East'}},
            {'type': 'node', 'id': 12, 'lon': 139.7165, 'lat': 35.6025,
             'tags': {'aeroway': 'terminal', 'name': 'T1'}},
            {'type': 'node', 'id': 13, 'lon': 139.71, 'lat': 35.61,
             'tags': {'amenity': 'school'}},
        ],
    }


class FakeClient:
    def __init__(self, elements):
        self.elements = elements
        self.calls = []

    def fetch_elements(self, dataset, bbox, max_attempts=None):
        self.calls.append((dataset, max_attempts))
        return list(self.elements[dataset])


def _city(code='TYO'):
    return CityConfig.from_dict({'code': code, 'name': 'Tokyo', 'bbox': BBOX})


def _config(tmp_path, **overrides):
    values = dict(raw_dir=str(tmp_path / 'raw'), processed_dir=str(tmp_path / 'processed'),
                  worker_kind='thread', worker_threads=2, request_delay=0.0,
                  request_jitter=0.0, dataset_delay=5.0)
    values.update(overrides)
    return PerformanceConfig(**values)


def _pipeline(tmp_path, **overrides):
    sleeps = []
    client = FakeClient(_elements())
    config = _config(tmp_path, **overrides)
    pipeline = CityPipeline(config, client=client, pool=WorkerPool(2, kind='thread'),
                            sleep=sleeps.append)
    return pipeline, client, sleeps


class TestDownload:
    def test_raw_store_written(self, tmp_path):
        pipeline, client, sleeps = _pipeline(tmp_path)
        counts = pipeline.download(_city())
        assert counts == {'roads': 2, 'buildings': 18, 'places': 4}
        assert client.calls == [('roads', 1), ('buildings', 1), ('places', 1)]
        assert sleeps == [5.0, 5.0]

        raw = tmp_path / 'raw' / 'TYO'
        roads = read_json(raw / 'roads.geojson')
        assert roads['type'] == 'FeatureCollection'
        assert [f['properties']['name'] for f in roads['features']] == ['Main']
        assert len(read_json(raw / 'buildings.json')) == 18

    def test_binary_store_is_compact(self, tmp_path):
        pipeline, _, _ = _pipeline(tmp_path, raw_format='binary')
        pipeline.download(_city())
        raw = tmp_path / 'raw' / 'TYO'
        assert not (raw / 'buildings.json').exists()
        records = read_binary(raw / 'buildings.bin')
        assert set(records[0]) == {'id', 'type', 'bbox', 'tags'}


class TestProcess:
    def _run(self, tmp_path, **overrides):
        pipeline, _, _ = _pipeline(tmp_path, **overrides)
        results = pipeline.run([_city()])
        assert results[0].ok, results[0].error
        out = tmp_path / 'processed' / 'TYO'
        return results[0], read_json(out / 'demand_data.json'), read_json(out / 'buildings_index.json')

    def test_outputs(self, tmp_path):
        result, demand, index = self._run(tmp_path)
        out = tmp_path / 'processed' / 'TYO'
        assert (out / 'roads.geojson').exists()

        assert index['stats']['count'] == 18
        assert sum(len(cell) - 2 for cell in index['cells']) == 18
        assert index['grid'][0] >= 1 and index['grid'][1] >= 1

        ids = [p['id'] for p in demand['points']]
        assert ids == ['10', '11', 'AIR_Terminal_0']
        assert result.stats['buildings'] == 18
        assert result.stats['raw_buildings'] == 18

    def test_population_is_conserved(self, tmp_path):
        _, demand, _ = self._run(tmp_path)
        residents = {p['id']: p['residents'] for p in demand['points']}
        sums = defaultdict(int)
        for pop in demand['pops']:
            sums[pop['residenceId']] += pop['size']
            assert pop['size'] >= 1
        assert demand['stats']['totalPopulation'] == sum(residents.values()) > 0
        for place_id, total in residents.items():
            if total and sums.get(place_id):
                assert sums[place_id] == total
        assert demand['stats']['totalMovement'] == sum(sums.values())

    def test_terminal_attracts_jobs(self, tmp_path):
        _, demand, _ = self._run(tmp_path)
        terminal = next(p for p in demand['points'] if p['id'] == 'AIR_Terminal_0')
        assert terminal['jobs'] > 0
        assert terminal['popIds']

    def test_binary_and_json_agree(self, tmp_path):
        _, from_json, _ = self._run(tmp_path / 'json')
        _, from_binary, _ = self._run(tmp_path / 'binary', raw_format='binary')
        assert from_json['stats'] == from_binary['stats']
        assert from_json['points'] == from_binary['points']

    def test_voronoi_method(self, tmp_path):
        _, grid, _ = self._run(tmp_path / 'grid')
        _, voronoi, _ = self._run(tmp_path / 'voronoi', assignment_method='voronoi')
        assert voronoi['stats']['totalPopulation'] == grid['stats']['totalPopulation']


class TestRun:
    def test_failing_city_is_isolated(self, tmp_path):
        pipeline, _, _ = _pipeline(tmp_path)
        good, bad = _city('GOOD'), _city('BAD')
        pipeline.download(good)
        write_raw_dataset(tmp_path / 'raw' / 'BAD', 'places', [])
        (tmp_path / 'raw' / 'BAD' / 'buildings.json').write_text('[{"id": 1,', encoding='utf-8')

        results = pipeline.run([bad, good], download=False)
        assert [r.ok for r in results] == [False, True]
        assert 'Malformed JSON' in results[0].error
        assert (tmp_path / 'processed' / 'GOOD' / 'demand_data.json').exists()

    def test_missing_raw_store(self, tmp_path):
        pipeline, _, _ = _pipeline(tmp_path)
        results = pipeline.run([_city('NONE')], download=False)
        assert not results[0].ok

    def test_summary_totals(self, tmp_path):
        pipeline, _, _ = _pipeline(tmp_path)
        results = pipeline.run([_city('A'), _city('B')])
        totals = log_summary(results)
        assert totals['totalPopulation'] == 2 * results[0].stats['totalPopulation']
        assert totals['connections'] == 2 * results[0].stats['connections']


class TestCityConfig:
    def test_bbox_order(self):
        city = _city()
        assert city.bbox == BoundingBox(north=35.62, south=35.60, east=139.72, west=139.70)
