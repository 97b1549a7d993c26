# src/market_sync/connection/exceptions.py

from typing import Optional


class MarketDataAPIError(Exception):
    """Base exception for all venue REST API errors."""
    pass

class RateLimitError(MarketDataAPIError):
    """Raised when the venue answers HTTP 429."""
    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)

class ServiceUnavailableError(MarketDataAPIError):
    """Raised on network failures, timeouts and 5xx responses."""
    pass

class MalformedResponseError(MarketDataAPIError):
    """Raised when a response body cannot be decoded into the expected shape."""
    pass
