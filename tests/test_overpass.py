"""Tests for citydemand/overpass.py"""

import io
import json
import logging

import pytest
import requests
import urllib3

from citydemand.config import PerformanceConfig
from citydemand.fetcher import TileFetcher
from citydemand.models import BoundingBox, OverpassError, OverpassHTTPError, RateLimitError
from citydemand.overpass import OverpassClient, build_query

BBOX = BoundingBox(north=35.8, south=35.5, east=139.9, west=139.5)


class _Raw(io.BytesIO):
    decode_content = False


class FakeResponse:
    def __init__(self, status_code=200, body=b'', reason='OK'):
        self.status_code = status_code
        self.reason = reason
        self.raw = _Raw(body)
        self.closed = False

    def close(self):
        self.closed = True


class _BrokenRaw:
    """Yields part of the body, then the connection drops."""
    decode_content = False

    def __init__(self, partial):
        self.partial = partial

    def read(self, size=-1):
        if size == 0:
            return b''
        if self.partial:
            chunk, self.partial = self.partial, b''
            return chunk
        raise urllib3.exceptions.ProtocolError('Connection broken: IncompleteRead')


def _truncated(partial=b'{"elements": [{"type": "node", "id": 1'):
    response = FakeResponse(200)
    response.raw = _BrokenRaw(partial)
    return response


def _ok(elements, **extra):
    return FakeResponse(200, json.dumps({'elements': elements, **extra}).encode())


class FakeSession:
    """Replays queued responses (or raises queued exceptions) in order."""

    def __init__(self, responses):
        self.headers = {}
        self.responses = list(responses)
        self.posts = []

    def post(self, url, data=None, timeout=None, stream=False):
        self.posts.append(data['data'])
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(responses, max_attempts=3):
    sleeps = []
    session = FakeSession(responses)
    client = OverpassClient(url='http://overpass.test/api', max_attempts=max_attempts,
                            base_delay=1.0, session=session, sleep=sleeps.append)
    return client, session, sleeps


class TestBuildQuery:
    def test_bbox_order_and_timeout(self):
        query = build_query('buildings', BBOX, timeout=90)
        assert '[timeout:90]' in query
        assert '(35.5,139.5,35.8,139.9)' in query

    def test_unknown_dataset(self):
        with pytest.raises(ValueError):
            build_query('rivers', BBOX)


class TestRunQuery:
    def test_success(self):
        client, session, sleeps = _client([_ok([{'type': 'way', 'id': 1}])])
        assert client.fetch_elements('buildings', BBOX) == [{'type': 'way', 'id': 1}]
        assert sleeps == []
        assert session.headers['User-Agent']
        assert client.request_count == 1

    def test_generic_failures_back_off_by_two(self):
        client, _, sleeps = _client([
            FakeResponse(504, reason='Gateway Timeout'),
            requests.ConnectionError('reset'),
            _ok([]),
        ])
        assert client.fetch_elements('roads', BBOX) == []
        assert sleeps == [1.0, 2.0]

    def test_rate_limit_backs_off_by_four(self):
        client, _, sleeps = _client([
            FakeResponse(429, reason='Too Many Requests'),
            FakeResponse(429, reason='Too Many Requests'),
            _ok([{'type': 'node', 'id': 5}]),
        ])
        assert len(client.fetch_elements('places', BBOX)) == 1
        assert sleeps == [1.0, 4.0]

    def test_rate_limit_exhausted(self):
        client, _, _ = _client([FakeResponse(429)] * 3)
        with pytest.raises(RateLimitError):
            client.fetch_elements('places', BBOX)

    def test_http_error_exhausted(self):
        client, _, sleeps = _client([FakeResponse(500)] * 2, max_attempts=2)
        with pytest.raises(OverpassHTTPError) as info:
            client.fetch_elements('places', BBOX)
        assert info.value.status_code == 500
        assert sleeps == [1.0]

    def test_transport_error_wrapped(self):
        client, _, _ = _client([requests.Timeout('slow')], max_attempts=1)
        with pytest.raises(OverpassError):
            client.fetch_elements('roads', BBOX)

    def test_undecodable_body_is_retried(self):
        client, _, sleeps = _client([FakeResponse(200, b'{"elements": [tru'), _ok([])])
        assert client.fetch_elements('roads', BBOX) == []
        assert sleeps == [1.0]

    def test_dropped_body_is_retried(self):
        client, session, sleeps = _client([_truncated(), _truncated(), _ok([{'id': 2}])])
        assert client.fetch_elements('places', BBOX) == [{'id': 2}]
        assert len(session.posts) == 3
        assert sleeps == [1.0, 2.0]

    def test_dropped_body_exhausted(self):
        client, session, _ = _client([_truncated(), _truncated(), _truncated()])
        with pytest.raises(OverpassError, match='Transport error'):
            client.fetch_elements('places', BBOX)
        assert len(session.posts) == 3

    def test_single_attempt_override(self):
        client, session, sleeps = _client([FakeResponse(503), _ok([])])
        with pytest.raises(OverpassError):
            client.fetch_elements('roads', BBOX, max_attempts=1)
        assert len(session.posts) == 1
        assert sleeps == []

    def test_remark_logged(self, caplog):
        client, _, _ = _client([_ok([], remark='runtime error: Query timed out')])
        with caplog.at_level(logging.WARNING, logger='citydemand.overpass'):
            assert client.fetch_elements('buildings', BBOX) == []
        assert 'Query timed out' in caplog.text

    def test_missing_elements_key(self):
        client, _, _ = _client([FakeResponse(200, b'{"version": 0.6}')])
        assert client.fetch_elements('buildings', BBOX) == []


class TestDroppedBodyInFetcher:
    def test_unsplittable_tile_contributes_nothing(self):
        client, session, _ = _client([_truncated(), _truncated(), _truncated()])
        config = PerformanceConfig(try_full_bbox_first=False, max_split_depth=0,
                                   tile_size={'roads': 1.0, 'buildings': 1.0, 'places': 1.0},
                                   request_delay=0.0, request_jitter=0.0)
        fetcher = TileFetcher(client, config, sleep=lambda _: None, rng=lambda: 0.0)
        unit = BoundingBox(north=1.0, south=0.0, east=1.0, west=0.0)
        assert fetcher.fetch('places', unit) == []
        assert len(session.posts) == 3
        assert fetcher.stats['failed_tiles'] == 1
