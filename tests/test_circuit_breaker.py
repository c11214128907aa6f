"""Tests for cate.failsafe.circuit_breaker — global state machine and per-asset blocks."""

import threading

import pytest

from cate.errors import AssetBlocked, CircuitOpen
from cate.failsafe.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    FailureSeverity,
    FailureType,
)
from cate.oracle.models import OracleMetrics, OracleSample


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _breaker(clock=None, **overrides) -> CircuitBreaker:
    cfg = CircuitBreakerConfig(**{
        "failure_threshold": 3,
        "reset_timeout_seconds": 10.0,
        "success_threshold": 2,
        "debounce_ms": 1000.0,
        "half_open_max_attempts": 2,
        **overrides,
    })
    return CircuitBreaker(cfg, clock=clock or FakeClock())


def _sample(asset_id="SOL/USD") -> OracleSample:
    return OracleSample(asset_id=asset_id, price=100.0, confidence=0.2, publish_time=0.0)


def _metrics(asset_id="SOL/USD", **overrides) -> OracleMetrics:
    base = dict(
        asset_id=asset_id, price=100.0, confidence=0.2, confidence_ratio=0.2,
        confidence_zscore=0.0, volatility_realized=10.0, volatility_expected=18.7,
        data_freshness_seconds=1.0, data_quality_score=90.0,
        avg_confidence_ratio_1h=0.2, price_change_1h=0.0, update_frequency_1m=12,
        sample_count_1h=60, timestamp=0.0,
    )
    base.update(overrides)
    return OracleMetrics(**base)


def _trip(breaker: CircuitBreaker, count: int = 3) -> None:
    for _ in range(count):
        breaker.record_failure(FailureType.ORACLE_DISCONNECT, "feed down")


# ── Global state machine ─────────────────────────────────────────────────


class TestStateMachine:
    def test_starts_closed(self):
        b = _breaker()
        assert b.state is CircuitState.CLOSED
        assert b.is_allowed("SOL/USD").allowed is True

    def test_opens_at_threshold_without_debounce(self):
        b = _breaker()
        _trip(b, 2)
        assert b.state is CircuitState.CLOSED
        _trip(b, 1)
        assert b.state is CircuitState.OPEN

    def test_warnings_do_not_open(self):
        b = _breaker()
        for _ in range(10):
            b.record_failure(FailureType.DATA_QUALITY, "marginal", FailureSeverity.WARNING)
        assert b.state is CircuitState.CLOSED

    def test_open_denies_every_asset(self):
        b = _breaker()
        _trip(b)
        gate = b.is_allowed("BTC/USD")
        assert gate.allowed is False
        assert gate.error_code == "CIRCUIT_OPEN"
        with pytest.raises(CircuitOpen):
            gate.raise_if_denied()

    def test_half_open_after_timeout(self):
        clock = FakeClock()
        b = _breaker(clock)
        _trip(b)
        clock.advance(9.9)
        assert b.state is CircuitState.OPEN
        clock.advance(0.2)
        assert b.state is CircuitState.HALF_OPEN

    def test_recovers_after_successes(self):
        clock = FakeClock()
        b = _breaker(clock)
        _trip(b)
        clock.advance(11)
        assert b.state is CircuitState.HALF_OPEN
        b.record_success()
        clock.advance(2)
        b.record_success()
        assert b.state is CircuitState.CLOSED
        assert b.status().failure_count == 0

    def test_close_is_debounced(self):
        clock = FakeClock()
        b = _breaker(clock)
        _trip(b)
        clock.advance(11)
        assert b.state is CircuitState.HALF_OPEN
        b.record_success()
        b.record_success()  # same instant as HALF_OPEN entry
        assert b.state is CircuitState.HALF_OPEN

    def test_any_failure_in_half_open_reopens(self):
        clock = FakeClock()
        b = _breaker(clock)
        _trip(b)
        clock.advance(11)
        assert b.state is CircuitState.HALF_OPEN
        b.record_failure(FailureType.DATA_QUALITY, "marginal", FailureSeverity.WARNING)
        assert b.state is CircuitState.OPEN

    def test_probe_budget_exhaustion_reopens(self):
        clock = FakeClock()
        b = _breaker(clock)
        _trip(b)
        clock.advance(11)
        assert b.is_allowed("SOL/USD").allowed is True
        assert b.is_allowed("SOL/USD").allowed is True
        gate = b.is_allowed("SOL/USD")
        assert gate.allowed is False
        assert b.state is CircuitState.OPEN

    def test_inspecting_gate_spends_no_probe(self):
        clock = FakeClock()
        b = _breaker(clock)
        _trip(b)
        clock.advance(11)
        for _ in range(5):
            assert b.is_allowed("SOL/USD", probe=False).allowed is True
        assert b.status().half_open_attempts == 0

    def test_success_decays_failure_count(self):
        b = _breaker()
        b.record_failure(FailureType.STALE_DATA, "old")
        b.record_success()
        assert b.status().failure_count == pytest.approx(0.9)


# ── Manual control ───────────────────────────────────────────────────────


class TestManualControl:
    def test_emergency_stop_holds_open(self):
        clock = FakeClock()
        b = _breaker(clock)
        b.emergency_stop("operator")
        clock.advance(1000)
        assert b.state is CircuitState.OPEN
        assert b.status().held is True
        assert "Emergency stop" in b.status().reason

    def test_manual_reset_debounced_then_closes(self):
        clock = FakeClock()
        b = _breaker(clock)
        b.emergency_stop("operator")
        assert b.manual_reset() is False
        clock.advance(2)
        assert b.manual_reset() is True
        assert b.state is CircuitState.CLOSED
        assert b.status().held is False

    def test_emergency_stop_is_logged(self):
        b = _breaker()
        b.emergency_stop("operator")
        assert b.recent_failures()[-1].kind is FailureType.EMERGENCY_STOP


# ── Per-asset tracking ───────────────────────────────────────────────────


class TestAssetTracking:
    def test_asset_blocked_after_three_bad_samples(self):
        b = _breaker(failure_threshold=50)
        stale = _metrics(data_freshness_seconds=120.0)
        for _ in range(3):
            events = b.record_sample(_sample(), stale)
            assert [e.kind for e in events] == [FailureType.STALE_DATA]
        gate = b.is_allowed("SOL/USD")
        assert gate.allowed is False
        assert gate.error_code == "ASSET_BLOCKED"
        with pytest.raises(AssetBlocked):
            gate.raise_if_denied()
        assert b.is_allowed("BTC/USD").allowed is True
        assert b.state is CircuitState.CLOSED

    def test_clean_sample_unblocks(self):
        b = _breaker(failure_threshold=50)
        stale = _metrics(data_freshness_seconds=120.0)
        for _ in range(3):
            b.record_sample(_sample(), stale)
        assert b.record_sample(_sample(), _metrics()) == []
        status = b.asset_status("SOL/USD")
        assert status.blocked is False
        assert status.consecutive_failures == 0
        assert status.health_score == pytest.approx(75.0)

    def test_confidence_spike_detected(self):
        b = _breaker()
        events = b.record_sample(_sample(), _metrics(confidence_ratio=6.0))
        assert events[0].kind is FailureType.CONFIDENCE_SPIKE
        assert events[0].severity is FailureSeverity.CRITICAL

    def test_low_quality_is_warning(self):
        b = _breaker()
        events = b.record_sample(_sample(), _metrics(data_quality_score=10.0))
        assert events[0].kind is FailureType.DATA_QUALITY
        assert b.status().failure_count == 0

    def test_reset_clears_asset_blocks(self):
        clock = FakeClock()
        b = _breaker(clock, failure_threshold=50)
        for _ in range(3):
            b.record_sample(_sample(), _metrics(data_freshness_seconds=120.0))
        b.emergency_stop("operator")
        clock.advance(2)
        b.manual_reset()
        assert b.is_allowed("SOL/USD").allowed is True


# ── Connection state ─────────────────────────────────────────────────────


class TestConnectionState:
    def test_disconnect_counts_as_failure(self):
        b = _breaker()
        b.record_connection_state("DISCONNECTED")
        assert b.recent_failures()[-1].kind is FailureType.ORACLE_DISCONNECT
        assert b.status().failure_count == 1

    def test_connected_counts_as_success(self):
        b = _breaker()
        b.record_connection_state("ERROR")
        b.record_connection_state("CONNECTED")
        assert b.status().failure_count == pytest.approx(0.9)

    def test_reconnecting_is_neutral(self):
        b = _breaker()
        b.record_connection_state("RECONNECTING")
        assert b.recent_failures() == []


# ── Concurrency and reporting ────────────────────────────────────────────


class TestConcurrency:
    def test_concurrent_failures_are_counted(self):
        b = _breaker(failure_threshold=10_000)

        def worker():
            for _ in range(100):
                b.record_failure(FailureType.INVALID_DATA, "bad", asset_id="SOL/USD")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert b.status().failure_count == 800
        assert b.asset_status("SOL/USD").consecutive_failures == 800

    def test_status_serializes(self):
        b = _breaker()
        b.record_sample(_sample(), _metrics())
        data = b.status().to_dict()
        assert data["state"] == "CLOSED"
        assert "SOL/USD" in data["assets"]
