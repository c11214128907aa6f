"""Tests for cate.oracle.metrics — rolling windows and derived statistics."""

import math

import numpy as np
import pytest

from cate.errors import InvalidSample
from cate.oracle.metrics import (
    PERIODS_PER_YEAR,
    MetricsCalculator,
    RollingWindow,
    confidence_zscore,
    data_quality_score,
    realized_volatility,
)
from cate.oracle.models import OracleSample, PricePoint, SourceTag


NOW = 1_700_000_000.0


def _sample(price=100.0, confidence=0.2, publish_time=NOW, asset_id="SOL/USD", **kw):
    return OracleSample(
        asset_id=asset_id,
        price=price,
        confidence=confidence,
        publish_time=publish_time,
        **kw,
    )


# ── Sample validation ────────────────────────────────────────────────────


class TestOracleSample:
    def test_confidence_ratio_is_percent(self):
        assert _sample(price=200.0, confidence=1.0).confidence_ratio == pytest.approx(0.5)

    @pytest.mark.parametrize("kwargs", [
        {"price": 0.0},
        {"price": -1.0},
        {"price": float("nan")},
        {"confidence": -0.1},
        {"confidence": float("inf")},
        {"asset_id": ""},
        {"asset_id": "A" * 17},
    ])
    def test_invalid_samples(self, kwargs):
        with pytest.raises(InvalidSample):
            _sample(**kwargs).validate()

    def test_source_defaults_to_live(self):
        assert _sample().source is SourceTag.LIVE


# ── Rolling window ───────────────────────────────────────────────────────


class TestRollingWindow:
    def test_age_eviction(self):
        w = RollingWindow(max_age_seconds=60)
        for t in (0.0, 30.0, 61.0):
            w.append(PricePoint(100.0, 0.1, t), now=t)
        assert [p.timestamp for p in w.points] == [30.0, 61.0]

    def test_count_eviction(self):
        w = RollingWindow(max_age_seconds=3600, max_points=60)
        for i in range(70):
            w.append(PricePoint(100.0 + i, 0.1, NOW), now=NOW)
        assert len(w) == 60
        assert w.prices()[0] == pytest.approx(110.0)

    def test_confidence_ratios(self):
        w = RollingWindow(max_age_seconds=60)
        w.append(PricePoint(100.0, 1.0, NOW), now=NOW)
        assert w.confidence_ratios().tolist() == [pytest.approx(1.0)]


# ── Pure statistics ──────────────────────────────────────────────────────


class TestStatistics:
    def test_volatility_needs_two_prices(self):
        assert realized_volatility(np.array([100.0])) == 0.0
        assert realized_volatility(np.array([])) == 0.0

    def test_volatility_formula(self):
        prices = np.array([100.0, 110.0, 100.0])
        returns = np.diff(np.log(prices))
        expected = np.std(returns, ddof=1) * math.sqrt(PERIODS_PER_YEAR * 2) * 100.0
        assert realized_volatility(prices) == pytest.approx(expected)

    def test_zscore_uses_std_floor(self):
        ratios = np.array([0.5, 0.5, 0.5])
        assert confidence_zscore(0.5, ratios) == 0.0
        assert confidence_zscore(0.51, ratios) == pytest.approx(1.0)

    def test_quality_perfect(self):
        assert data_quality_score(0.0, 0.0, 12) == pytest.approx(100.0)

    def test_quality_worst(self):
        assert data_quality_score(60.0, 5.0, 0) == pytest.approx(0.0)

    def test_quality_is_clamped(self):
        assert data_quality_score(0.0, 0.0, 100) == pytest.approx(100.0)
        assert data_quality_score(500.0, 50.0, 0) == pytest.approx(0.0)


# ── Calculator ───────────────────────────────────────────────────────────


class TestMetricsCalculator:
    def test_first_sample(self):
        calc = MetricsCalculator(clock=lambda: NOW)
        m = calc.append(_sample())
        assert m.asset_id == "SOL/USD"
        assert m.confidence_ratio == pytest.approx(0.2)
        assert m.confidence_zscore == 0.0
        assert m.volatility_realized == 0.0
        assert m.volatility_expected == pytest.approx(0.2 * math.sqrt(365 * 24))
        assert m.data_freshness_seconds == 0.0
        assert m.sample_count_1h == 1
        assert m.update_frequency_1m == 1
        assert m.timestamp == NOW

    def test_freshness_from_publish_time(self):
        calc = MetricsCalculator()
        m = calc.append(_sample(publish_time=NOW - 120), now=NOW)
        assert m.data_freshness_seconds == pytest.approx(120.0)

    def test_future_publish_time_is_fresh(self):
        calc = MetricsCalculator()
        m = calc.append(_sample(publish_time=NOW + 5), now=NOW)
        assert m.data_freshness_seconds == 0.0

    def test_zscore_includes_current_sample(self):
        calc = MetricsCalculator()
        for i in range(5):
            calc.append(_sample(confidence=0.1), now=NOW + i)
        m = calc.append(_sample(confidence=1.0), now=NOW + 5)

        ratios = np.array([0.1] * 5 + [1.0])
        expected = (1.0 - ratios.mean()) / np.std(ratios, ddof=1)
        assert m.confidence_zscore == pytest.approx(expected)
        assert m.avg_confidence_ratio_1h == pytest.approx(ratios.mean())

    def test_price_change_1h(self):
        calc = MetricsCalculator()
        calc.append(_sample(price=100.0), now=NOW)
        m = calc.append(_sample(price=110.0), now=NOW + 10)
        assert m.price_change_1h == pytest.approx(10.0)
        assert m.volatility_realized == 0.0  # single return

    def test_invalid_sample_leaves_windows_untouched(self):
        calc = MetricsCalculator()
        calc.append(_sample(), now=NOW)
        with pytest.raises(InvalidSample):
            calc.append(_sample(price=-5.0), now=NOW + 1)
        assert len(calc.windows("SOL/USD")["1h"]) == 1

    def test_assets_are_independent(self):
        calc = MetricsCalculator()
        calc.append(_sample(asset_id="SOL/USD"), now=NOW)
        m = calc.append(_sample(asset_id="BTC/USD", price=50_000.0, confidence=10.0), now=NOW)
        assert m.sample_count_1h == 1
        assert sorted(calc.tracked_assets) == ["BTC/USD", "SOL/USD"]

    def test_one_minute_window_expires(self):
        calc = MetricsCalculator()
        calc.append(_sample(), now=NOW)
        m = calc.append(_sample(publish_time=NOW + 90), now=NOW + 90)
        assert m.update_frequency_1m == 1
        assert m.sample_count_1h == 2

    def test_reset(self):
        calc = MetricsCalculator()
        calc.append(_sample(), now=NOW)
        calc.reset("SOL/USD")
        assert calc.windows("SOL/USD") == {}
