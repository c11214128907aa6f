"""Oracle metrics — rolling windows and derived statistics, no I/O.

Each accepted sample is appended to the asset's 1m/5m/15m/1h windows and a
fresh ``OracleMetrics`` is computed from them.  The confidence z-score
compares the current ratio against the 1h window *including* the current
sample; this ordering is fixed and must match any independent recomputation.
"""

import math
import time
from collections import deque
from typing import Callable, Optional

import numpy as np

from cate.oracle.models import OracleMetrics, OracleSample, PricePoint

# Horizon name → max age in seconds
WINDOW_HORIZONS: dict[str, float] = {
    "1m": 60.0,
    "5m": 300.0,
    "15m": 900.0,
    "1h": 3600.0,
}
WINDOW_MAX_POINTS = 60

PERIODS_PER_YEAR = 365 * 24 * 3600 / 60
HOURS_PER_YEAR = 365 * 24
ZSCORE_STD_FLOOR = 0.01

# Data quality blend
_FRESHNESS_HORIZON_SECONDS = 60.0
_CONFIDENCE_PENALTY_PER_PCT = 20.0
EXPECTED_UPDATES_PER_MINUTE = 12


class RollingWindow:
    """Time- and count-bounded sequence of price points.

    Args:
        max_age_seconds: Points older than ``now - max_age_seconds`` are evicted.
        max_points: Hard cap on length; oldest points go first.
    """

    def __init__(self, max_age_seconds: float, max_points: int = WINDOW_MAX_POINTS) -> None:
        self.max_age_seconds = max_age_seconds
        self.max_points = max_points
        self._points: deque[PricePoint] = deque()

    def append(self, point: PricePoint, now: float) -> None:
        self._points.append(point)
        cutoff = now - self.max_age_seconds
        while self._points and self._points[0].timestamp < cutoff:
            self._points.popleft()
        while len(self._points) > self.max_points:
            self._points.popleft()

    @property
    def points(self) -> list[PricePoint]:
        return list(self._points)

    def prices(self) -> np.ndarray:
        return np.array([p.price for p in self._points], dtype=float)

    def confidence_ratios(self) -> np.ndarray:
        return np.array([p.confidence_ratio for p in self._points], dtype=float)

    def __len__(self) -> int:
        return len(self._points)


def sample_std(values: np.ndarray) -> float:
    """Sample standard deviation (N−1); 0.0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    return float(np.std(values, ddof=1))


def realized_volatility(prices: np.ndarray) -> float:
    """Annualized stddev of log returns, in percent.

    Annualization is ``stddev · sqrt(periodsPerYear · returnCount)``.
    """
    if len(prices) < 2:
        return 0.0
    returns = np.diff(np.log(prices))
    std = sample_std(returns)
    return std * math.sqrt(PERIODS_PER_YEAR * len(returns)) * 100.0


def confidence_zscore(current_ratio: float, ratios: np.ndarray) -> float:
    if len(ratios) == 0:
        return 0.0
    mean = float(np.mean(ratios))
    std = max(sample_std(ratios), ZSCORE_STD_FLOOR)
    return (current_ratio - mean) / std


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def data_quality_score(
    freshness_seconds: float,
    confidence_ratio: float,
    updates_last_minute: int,
    expected_per_minute: int = EXPECTED_UPDATES_PER_MINUTE,
) -> float:
    """Blend of freshness (40 %), confidence (40 %) and update frequency (20 %)."""
    freshness = _clamp(100.0 * (1.0 - freshness_seconds / _FRESHNESS_HORIZON_SECONDS))
    confidence = _clamp(100.0 - confidence_ratio * _CONFIDENCE_PENALTY_PER_PCT)
    frequency = _clamp(updates_last_minute / expected_per_minute * 100.0)
    return 0.4 * freshness + 0.4 * confidence + 0.2 * frequency


class MetricsCalculator:
    """Maintains per-asset rolling windows and derives ``OracleMetrics``.

    Args:
        clock: Returns the current unix time; injected for tests.
        expected_updates_per_minute: Feed cadence used by the quality score.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        expected_updates_per_minute: int = EXPECTED_UPDATES_PER_MINUTE,
    ) -> None:
        self._clock = clock
        self._expected_per_minute = expected_updates_per_minute
        self._windows: dict[str, dict[str, RollingWindow]] = {}

    def _windows_for(self, asset_id: str) -> dict[str, RollingWindow]:
        if asset_id not in self._windows:
            self._windows[asset_id] = {
                name: RollingWindow(age) for name, age in WINDOW_HORIZONS.items()
            }
        return self._windows[asset_id]

    # ── Mutation ─────────────────────────────────────────────────────────

    def append(self, sample: OracleSample, now: Optional[float] = None) -> OracleMetrics:
        """Validate *sample*, append it to every window and return metrics.

        Raises ``InvalidSample`` before touching any window.
        """
        sample.validate()
        if now is None:
            now = self._clock()

        windows = self._windows_for(sample.asset_id)
        point = PricePoint(sample.price, sample.confidence, now)
        for window in windows.values():
            window.append(point, now)

        hour = windows["1h"]
        ratio = sample.confidence_ratio
        ratios = hour.confidence_ratios()
        prices = hour.prices()

        freshness = max(0.0, now - sample.publish_time)
        updates_1m = len(windows["1m"])

        price_change = 0.0
        if len(prices) > 0 and prices[0] > 0:
            price_change = (sample.price - prices[0]) / prices[0] * 100.0

        return OracleMetrics(
            asset_id=sample.asset_id,
            price=sample.price,
            confidence=sample.confidence,
            confidence_ratio=ratio,
            confidence_zscore=confidence_zscore(ratio, ratios),
            volatility_realized=realized_volatility(prices),
            volatility_expected=ratio * math.sqrt(HOURS_PER_YEAR),
            data_freshness_seconds=freshness,
            data_quality_score=data_quality_score(
                freshness, ratio, updates_1m, self._expected_per_minute,
            ),
            avg_confidence_ratio_1h=float(np.mean(ratios)) if len(ratios) else ratio,
            price_change_1h=price_change,
            update_frequency_1m=updates_1m,
            sample_count_1h=len(hour),
            timestamp=now,
        )

    def reset(self, asset_id: Optional[str] = None) -> None:
        """Drop windows for one asset, or all assets when *asset_id* is None."""
        if asset_id is None:
            self._windows.clear()
        else:
            self._windows.pop(asset_id, None)

    # ── Queries ──────────────────────────────────────────────────────────

    def windows(self, asset_id: str) -> dict[str, list[PricePoint]]:
        """Read-only snapshot of an asset's windows."""
        return {
            name: window.points
            for name, window in self._windows.get(asset_id, {}).items()
        }

    @property
    def tracked_assets(self) -> list[str]:
        return list(self._windows.keys())
