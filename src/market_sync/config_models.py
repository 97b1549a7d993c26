from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class EndpointsConfig:
    rest_base_url: str = "https://api.binance.com/api/v3"
    stream_base_url: str = "wss://stream.binance.com:9443/ws"
    symbols_url: str = "http://localhost:5000/api/crypto/binance-symbols"


@dataclass
class RestConfig:
    calls_per_second: float = 10.0
    request_timeout: float = 10.0
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 5.0
    snapshot_cache_ttl_seconds: float = 180.0


@dataclass
class StreamConfig:
    max_reconnect_attempts: int = 5
    reconnect_base_delay_seconds: float = 1.0
    poll_after_attempts: int = 3
    polling_interval_seconds: float = 5.0


@dataclass
class ReconcilerConfig:
    tick_interval_seconds: float = 0.1
    update_throttle_seconds: float = 0.25


@dataclass
class OrderBookConfig:
    max_levels: int = 11
    snapshot_limit: int = 100


@dataclass
class TradesConfig:
    max_trades: int = 13


@dataclass
class CandlesConfig:
    interval: str = "1m"
    page_limit: int = 50
    load_margin_seconds: int = 60
    ma_length: int = 20


@dataclass
class SymbolSupportConfig:
    ttl_seconds: float = 300.0


@dataclass
class AppConfig:
    endpoints: EndpointsConfig = field(default_factory=EndpointsConfig)
    rest: RestConfig = field(default_factory=RestConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    order_book: OrderBookConfig = field(default_factory=OrderBookConfig)
    trades: TradesConfig = field(default_factory=TradesConfig)
    candles: CandlesConfig = field(default_factory=CandlesConfig)
    symbol_support: SymbolSupportConfig = field(default_factory=SymbolSupportConfig)
    env: str = "local"
