# src/market_sync/connection/rest_client.py

import logging
from typing import Any, Dict, Optional

import requests

from market_sync import APP_VERSION
from .exceptions import (
    MalformedResponseError,
    MarketDataAPIError,
    RateLimitError,
    ServiceUnavailableError,
)
from .rate_limiter import RateLimiter

BINANCE_API_URL = "https://api.binance.com/api/v3"

logger = logging.getLogger(__name__)


def _parse_retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After") if response.headers else None
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class BinanceRESTClient:
    """Read-only client for the venue's public REST endpoints."""

    def __init__(
        self,
        base_url: str = BINANCE_API_URL,
        calls_per_second: float = 10.0,
        request_timeout: float = 10.0,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.rate_limiter = rate_limiter or RateLimiter(calls_per_second)

        self.session = requests.Session()
        self.session.headers.update({"User-Agent": f"market-sync/{APP_VERSION}"})

    def _get_url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _request(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Issues a rate-limited GET and maps transport failures onto the
        MarketDataAPIError hierarchy.
        """
        self.rate_limiter.wait()

        try:
            response = self.session.get(url, params=params or {}, timeout=self.request_timeout)

            if response.status_code == 429:
                raise RateLimitError(
                    f"Rate limit exceeded for {url}",
                    retry_after=_parse_retry_after(response),
                )

            if 500 <= response.status_code < 600:
                raise ServiceUnavailableError(f"Venue API Service Error: HTTP {response.status_code}")

            response.raise_for_status()

            try:
                return response.json()
            except ValueError as e:
                raise MalformedResponseError(f"Invalid JSON body from {url}: {e}") from e

        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            if status_code == 429:
                raise RateLimitError(f"Rate limit exceeded for {url}") from e
            if status_code and 500 <= status_code < 600:
                raise ServiceUnavailableError(f"Venue API Service Error: {e}") from e
            raise MarketDataAPIError(f"HTTP Error: {e}") from e
        except requests.exceptions.Timeout as e:
            raise ServiceUnavailableError(f"Request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ServiceUnavailableError(f"Network Error: {e}") from e

    def get_public(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Makes a GET request to a public endpoint relative to the base URL."""
        return self._request(self._get_url(endpoint), params=params)

    def get_url(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Makes a GET request to an absolute URL (e.g. the backend symbol list)."""
        return self._request(url, params=params)

    def close(self) -> None:
        self.session.close()
