from __future__ import annotations

# Re-export loader helpers
from .config_loader import get_config_dir, load_config

# Re-export config models
from .config_models import (
    AppConfig,
    CandlesConfig,
    EndpointsConfig,
    OrderBookConfig,
    ReconcilerConfig,
    RestConfig,
    StreamConfig,
    SymbolSupportConfig,
    TradesConfig,
)

__all__ = [
    # models
    "AppConfig",
    "CandlesConfig",
    "EndpointsConfig",
    "OrderBookConfig",
    "ReconcilerConfig",
    "RestConfig",
    "StreamConfig",
    "SymbolSupportConfig",
    "TradesConfig",
    # loader
    "get_config_dir",
    "load_config",
]
