"""Overpass API client with retry and exponential backoff."""

import logging
import time
from typing import Callable, Optional

import ijson
import requests
import urllib3

from .constants import DEFAULT_OVERPASS_URL, DEFAULT_USER_AGENT, QUERY_TEMPLATES
from .models import BoundingBox, OverpassError, OverpassHTTPError, RateLimitError

logger = logging.getLogger(__name__)


def build_query(dataset: str, bbox: BoundingBox, timeout: int = 180) -> str:
    """Render the Overpass QL query for *dataset* restricted to *bbox*."""
    try:
        template = QUERY_TEMPLATES[dataset]
    except KeyError:
        raise ValueError(f"Unknown dataset {dataset!r}") from None
    return template.format(bbox=bbox.to_overpass(), timeout=timeout)


class OverpassClient:
    """POSTs queries to an Overpass endpoint.

    Rate-limit responses (HTTP 429) back off by ``base_delay * 4**(n-1)``,
    every other failure by ``base_delay * 2**(n-1)``.
    """

    def __init__(self, url: str = DEFAULT_OVERPASS_URL,
                 user_agent: str = DEFAULT_USER_AGENT,
                 max_attempts: int = 3, base_delay: float = 1.0,
                 timeout: int = 180,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.url = url
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': user_agent,
            'Accept': '*/*',
        })
        self._sleep = sleep
        self.request_count = 0

    @classmethod
    def from_config(cls, config, session=None, sleep=time.sleep) -> "OverpassClient":
        return cls(url=config.overpass_url, user_agent=config.user_agent,
                   max_attempts=config.retry_attempts,
                   base_delay=config.retry_base_delay,
                   timeout=config.request_timeout,
                   session=session, sleep=sleep)

    def backoff_delay(self, attempt: int, rate_limited: bool = False) -> float:
        factor = 4 if rate_limited else 2
        return self.base_delay * factor ** (attempt - 1)

    def _post(self, query: str) -> dict:
        self.request_count += 1
        # A little slack over the server-side timeout so the server reports first
        response = self.session.post(self.url, data={'data': query},
                                     timeout=self.timeout + 30, stream=True)
        try:
            if response.status_code == 429:
                raise RateLimitError(429, response.reason or "Too Many Requests")
            if not 200 <= response.status_code < 300:
                raise OverpassHTTPError(response.status_code, response.reason or "")
            response.raw.decode_content = True
            try:
                payload = next(ijson.items(response.raw, '', use_float=True), None)
            except ijson.JSONError as e:
                raise OverpassError(f"Undecodable response body: {e}") from e
            except (urllib3.exceptions.HTTPError, requests.RequestException) as e:
                # raw stream errors are not wrapped by requests
                raise OverpassError(f"Transport error reading body: {e}") from e
        finally:
            response.close()

        if not isinstance(payload, dict):
            raise OverpassError("Overpass API did not return a JSON object")
        if payload.get('remark'):
            logger.warning(f"Overpass remark: {payload['remark']}")
        payload.setdefault('elements', [])
        return payload

    def run_query(self, query: str, max_attempts: Optional[int] = None) -> dict:
        """Run *query*, retrying transient failures; raises OverpassError when exhausted."""
        attempts = max_attempts or self.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self._post(query)
            except RateLimitError as e:
                if attempt >= attempts:
                    raise
                delay = self.backoff_delay(attempt, rate_limited=True)
                logger.info(f"  Attempt {attempt} rate limited ({e}). Retrying in {delay:.1f}s...")
                self._sleep(delay)
            except (OverpassError, requests.RequestException) as e:
                if attempt >= attempts:
                    if isinstance(e, OverpassError):
                        raise
                    raise OverpassError(f"Request failed after {attempts} attempts: {e}") from e
                delay = self.backoff_delay(attempt)
                logger.info(f"  Attempt {attempt} failed: {e}. Retrying in {delay:.1f}s...")
                self._sleep(delay)
        raise OverpassError("No attempts made")

    def fetch_elements(self, dataset: str, bbox: BoundingBox,
                       max_attempts: Optional[int] = None) -> list:
        """Fetch all elements of *dataset* inside *bbox*."""
        query = build_query(dataset, bbox, self.timeout)
        return self.run_query(query, max_attempts=max_attempts)['elements']
