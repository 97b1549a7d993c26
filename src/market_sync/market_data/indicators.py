from __future__ import annotations

from typing import Optional, Sequence, Tuple

import pandas as pd

from market_sync.market_data.models import CandlePoint


def moving_average(points: Sequence[CandlePoint], length: int) -> Tuple[Optional[float], ...]:
    """Simple moving average of closes; ``None`` until the window is full."""

    if length <= 0:
        raise ValueError("length must be positive")
    if not points:
        return ()

    closes = pd.Series([float(point.close) for point in points])
    averaged = closes.rolling(window=length, min_periods=length).mean()
    return tuple(None if pd.isna(value) else float(value) for value in averaged)
