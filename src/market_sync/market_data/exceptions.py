# src/market_sync/market_data/exceptions.py

class MarketDataError(Exception):
    """Base exception for the market_data module."""
    pass

class UnsupportedSymbolError(MarketDataError):
    """Raised when a symbol is not listed by the venue's symbol support list."""
    def __init__(self, symbol: str):
        self.symbol = symbol
        message = f"Symbol '{symbol}' is not available on the venue."
        super().__init__(message)

class StreamExhaustedError(MarketDataError):
    """Raised when a stream used up its reconnect attempts; a fresh subscription is required."""
    def __init__(self, symbol: str, channel: str, attempts: int):
        self.symbol = symbol
        self.channel = channel
        self.attempts = attempts
        message = f"Stream {channel} for '{symbol}' gave up after {attempts} failed connections."
        super().__init__(message)

