"""Circuit breaker — fail-closed gate over oracle health.

Global state machine::

    CLOSED ──(failures ≥ threshold)──▶ OPEN ──(reset timeout)──▶ HALF_OPEN
       ▲                                 ▲                          │
       └──────(successes ≥ threshold)────┼──────────────────────────┤
                                         └──(any failure / probes)──┘

Transitions are debounced except transitions into OPEN.  Each asset also
tracks its own consecutive failures and is blocked locally after
``asset_failure_limit`` bad samples, independent of the global state.

All public methods are thread-safe.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from threading import RLock
from typing import Callable, Optional

from cate.errors import AssetBlocked, CircuitOpen
from cate.oracle.models import OracleMetrics, OracleSample

logger = logging.getLogger("cate.failsafe")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class FailureType(str, Enum):
    STALE_DATA = "STALE_DATA"
    CONFIDENCE_SPIKE = "CONFIDENCE_SPIKE"
    DATA_QUALITY = "DATA_QUALITY"
    ORACLE_DISCONNECT = "ORACLE_DISCONNECT"
    INVALID_DATA = "INVALID_DATA"
    SIGNING_ERROR = "SIGNING_ERROR"
    EMERGENCY_STOP = "EMERGENCY_STOP"


class FailureSeverity(str, Enum):
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout_seconds: float = 30.0
    success_threshold: int = 3
    debounce_ms: float = 1000.0
    half_open_max_attempts: int = 5
    asset_failure_limit: int = 3
    max_stale_age_seconds: float = 30.0
    max_confidence_spike_pct: float = 5.0
    min_data_quality: float = 30.0
    failure_decay: float = 0.1
    failure_log_size: int = 1000


@dataclass(frozen=True)
class FailureEvent:
    kind: FailureType
    severity: FailureSeverity
    details: str
    timestamp: float
    asset_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "details": self.details,
            "timestamp": self.timestamp,
            "asset_id": self.asset_id,
        }


@dataclass(frozen=True)
class Gate:
    """Result of ``CircuitBreaker.is_allowed``."""

    allowed: bool
    reason: Optional[str] = None
    error_code: Optional[str] = None

    def raise_if_denied(self) -> None:
        """Raise ``CircuitOpen`` or ``AssetBlocked`` for a denied gate."""
        if self.allowed:
            return
        if self.error_code == AssetBlocked.code:
            raise AssetBlocked(self.reason or "")
        raise CircuitOpen(self.reason or "")


@dataclass
class AssetCircuitStatus:
    asset_id: str
    blocked: bool = False
    block_reason: Optional[str] = None
    consecutive_failures: int = 0
    health_score: float = 100.0
    last_valid_data: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "blocked": self.blocked,
            "block_reason": self.block_reason,
            "consecutive_failures": self.consecutive_failures,
            "health_score": self.health_score,
            "last_valid_data": self.last_valid_data,
        }


@dataclass(frozen=True)
class CircuitStatus:
    state: CircuitState
    failure_count: float
    success_count: int
    last_state_change: float
    reason: Optional[str]
    half_open_attempts: int
    held: bool
    assets: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "failure_count": round(self.failure_count, 4),
            "success_count": self.success_count,
            "last_state_change": self.last_state_change,
            "reason": self.reason,
            "half_open_attempts": self.half_open_attempts,
            "held": self.held,
            "assets": {k: v.to_dict() for k, v in self.assets.items()},
        }


_HEALTH_PENALTY = 10.0
_HEALTH_RECOVERY = 5.0
_FAILURE_CONNECTION_STATES = {"DISCONNECTED", "ERROR"}


class CircuitBreaker:
    """Global and per-asset failure tracking.

    Args:
        config: Thresholds and timeouts.
        clock: Returns the current time in seconds; injected for tests.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = RLock()

        self._state = CircuitState.CLOSED
        self._failure_count: float = 0.0
        self._success_count = 0
        self._half_open_attempts = 0
        self._last_state_change = clock()
        self._opened_at: Optional[float] = None
        self._reason: Optional[str] = None
        # Set by emergency_stop; suppresses automatic half-open recovery.
        self._held = False

        self._assets: dict[str, AssetCircuitStatus] = {}
        self._failures: deque[FailureEvent] = deque(maxlen=self._config.failure_log_size)

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    # ── State machine ────────────────────────────────────────────────────

    def _transition(self, new_state: CircuitState, reason: str) -> bool:
        now = self._clock()
        if new_state is self._state:
            return False
        elapsed_ms = (now - self._last_state_change) * 1000.0
        if new_state is not CircuitState.OPEN and elapsed_ms < self._config.debounce_ms:
            logger.debug(
                "Circuit transition %s → %s debounced (%.0fms)",
                self._state.value, new_state.value, elapsed_ms,
            )
            return False

        previous = self._state
        self._state = new_state
        self._last_state_change = now
        self._reason = reason
        self._success_count = 0
        self._half_open_attempts = 0

        if new_state is CircuitState.OPEN:
            self._opened_at = now
            logger.error("Circuit OPEN (was %s): %s", previous.value, reason)
        elif new_state is CircuitState.CLOSED:
            self._failure_count = 0.0
            self._held = False
            for asset in self._assets.values():
                asset.blocked = False
                asset.block_reason = None
                asset.consecutive_failures = 0
            logger.info("Circuit CLOSED (was %s): %s", previous.value, reason)
        else:
            logger.info("Circuit HALF_OPEN (was %s): %s", previous.value, reason)
        return True

    def _maybe_half_open(self) -> None:
        if self._state is not CircuitState.OPEN or self._held:
            return
        if self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self._config.reset_timeout_seconds:
            self._transition(CircuitState.HALF_OPEN, "Reset timeout elapsed, probing")

    def _asset(self, asset_id: str) -> AssetCircuitStatus:
        if asset_id not in self._assets:
            self._assets[asset_id] = AssetCircuitStatus(asset_id=asset_id)
        return self._assets[asset_id]

    def _asset_failure(self, asset_id: str, reason: str, penalties: int = 1) -> None:
        asset = self._asset(asset_id)
        asset.consecutive_failures += 1
        asset.health_score = max(0.0, asset.health_score - _HEALTH_PENALTY * penalties)
        if (
            not asset.blocked
            and asset.consecutive_failures >= self._config.asset_failure_limit
        ):
            asset.blocked = True
            asset.block_reason = reason
            logger.warning(
                "Asset %s blocked after %d consecutive failures: %s",
                asset_id, asset.consecutive_failures, reason,
            )

    def _asset_success(self, asset_id: str, now: float) -> None:
        asset = self._asset(asset_id)
        if asset.blocked:
            logger.info("Asset %s unblocked by clean sample", asset_id)
        asset.blocked = False
        asset.block_reason = None
        asset.consecutive_failures = 0
        asset.health_score = min(100.0, asset.health_score + _HEALTH_RECOVERY)
        asset.last_valid_data = now

    def _log_failure(
        self,
        kind: FailureType,
        details: str,
        severity: FailureSeverity,
        asset_id: Optional[str],
    ) -> FailureEvent:
        event = FailureEvent(kind, severity, details, self._clock(), asset_id)
        self._failures.append(event)
        self._maybe_half_open()

        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, f"Failure during recovery probe: {details}")
        elif severity is FailureSeverity.CRITICAL:
            self._failure_count += 1
            if (
                self._state is CircuitState.CLOSED
                and self._failure_count >= self._config.failure_threshold
            ):
                self._transition(
                    CircuitState.OPEN,
                    f"{int(self._failure_count)} critical failures (last: {kind.value}: {details})",
                )
        return event

    # ── Recording ────────────────────────────────────────────────────────

    def record_failure(
        self,
        kind: FailureType,
        details: str,
        severity: FailureSeverity = FailureSeverity.CRITICAL,
        asset_id: Optional[str] = None,
    ) -> FailureEvent:
        """Record one failure.  Only CRITICAL failures count toward opening."""
        with self._lock:
            event = self._log_failure(kind, details, severity, asset_id)
            if asset_id is not None:
                self._asset_failure(asset_id, f"{kind.value}: {details}")
            return event

    def record_success(self) -> None:
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self._config.success_threshold:
                    self._transition(
                        CircuitState.CLOSED,
                        f"{self._success_count} successful probes",
                    )
            elif self._state is CircuitState.CLOSED:
                self._failure_count = max(
                    0.0, self._failure_count - self._config.failure_decay,
                )

    def record_sample(
        self,
        sample: OracleSample,
        metrics: OracleMetrics,
        now: Optional[float] = None,
    ) -> list[FailureEvent]:
        """Run the data-health detectors on one sample.

        Returns the failures detected; an empty list means the sample was
        clean and counted as a success for both the asset and the breaker.
        """
        cfg = self._config
        checks: list[tuple[FailureType, FailureSeverity, str]] = []
        if metrics.data_freshness_seconds > cfg.max_stale_age_seconds:
            checks.append((
                FailureType.STALE_DATA, FailureSeverity.CRITICAL,
                f"data is {metrics.data_freshness_seconds:.1f}s old "
                f"(max {cfg.max_stale_age_seconds:.0f}s)",
            ))
        if metrics.confidence_ratio > cfg.max_confidence_spike_pct:
            checks.append((
                FailureType.CONFIDENCE_SPIKE, FailureSeverity.CRITICAL,
                f"confidence ratio {metrics.confidence_ratio:.2f}% "
                f"exceeds {cfg.max_confidence_spike_pct:.1f}%",
            ))
        if metrics.data_quality_score < cfg.min_data_quality:
            checks.append((
                FailureType.DATA_QUALITY, FailureSeverity.WARNING,
                f"data quality {metrics.data_quality_score:.1f} "
                f"below {cfg.min_data_quality:.0f}",
            ))

        with self._lock:
            if not checks:
                self._asset_success(sample.asset_id, self._clock() if now is None else now)
                self.record_success()
                return []

            events = [
                self._log_failure(kind, details, severity, sample.asset_id)
                for kind, severity, details in checks
            ]
            self._asset_failure(
                sample.asset_id,
                "; ".join(e.details for e in events),
                penalties=len(events),
            )
            return events

    def record_connection_state(self, state) -> None:
        """Map an oracle feed connection state onto failures and successes."""
        value = str(getattr(state, "value", state))
        if value in _FAILURE_CONNECTION_STATES:
            self.record_failure(
                FailureType.ORACLE_DISCONNECT, f"oracle feed {value.lower()}",
            )
        elif value == "CONNECTED":
            self.record_success()

    # ── Gate ─────────────────────────────────────────────────────────────

    def is_allowed(self, asset_id: str, probe: bool = True) -> Gate:
        """Single gate consulted before every evaluation.

        Global OPEN denies everything; a blocked asset is denied regardless
        of global state; HALF_OPEN admits a bounded number of probes.
        With ``probe=False`` the gate is inspected without spending one.
        """
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.OPEN:
                return Gate(False, f"Circuit breaker OPEN: {self._reason}", CircuitOpen.code)

            asset = self._assets.get(asset_id)
            if asset is not None and asset.blocked:
                return Gate(
                    False, f"Asset {asset_id} blocked: {asset.block_reason}", AssetBlocked.code,
                )

            if self._state is CircuitState.HALF_OPEN:
                if not probe:
                    return Gate(True, "half-open")
                if self._half_open_attempts >= self._config.half_open_max_attempts:
                    self._transition(
                        CircuitState.OPEN,
                        f"{self._half_open_attempts} probes without recovery",
                    )
                    return Gate(
                        False, f"Circuit breaker OPEN: {self._reason}", CircuitOpen.code,
                    )
                self._half_open_attempts += 1
                return Gate(
                    True,
                    f"half-open probe {self._half_open_attempts}/"
                    f"{self._config.half_open_max_attempts}",
                )
            return Gate(True)

    # ── Manual control ───────────────────────────────────────────────────

    def emergency_stop(self, reason: str) -> None:
        """Force OPEN and hold it there until ``manual_reset``."""
        with self._lock:
            logger.warning("EMERGENCY STOP: %s", reason)
            self._failures.append(FailureEvent(
                FailureType.EMERGENCY_STOP, FailureSeverity.CRITICAL, reason, self._clock(),
            ))
            self._held = True
            if self._state is CircuitState.OPEN:
                self._opened_at = self._clock()
                self._reason = f"Emergency stop: {reason}"
            else:
                self._transition(CircuitState.OPEN, f"Emergency stop: {reason}")

    def manual_reset(self) -> bool:
        """Close the breaker.  Returns ``False`` when debounced."""
        with self._lock:
            return self._transition(CircuitState.CLOSED, "Manual reset")

    # ── Queries ──────────────────────────────────────────────────────────

    def asset_status(self, asset_id: str) -> AssetCircuitStatus:
        with self._lock:
            a = self._asset(asset_id)
            return AssetCircuitStatus(**a.to_dict())

    def status(self) -> CircuitStatus:
        with self._lock:
            self._maybe_half_open()
            return CircuitStatus(
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                last_state_change=self._last_state_change,
                reason=self._reason,
                half_open_attempts=self._half_open_attempts,
                held=self._held,
                assets={
                    k: AssetCircuitStatus(**v.to_dict()) for k, v in self._assets.items()
                },
            )

    def recent_failures(self, count: int = 50) -> list[FailureEvent]:
        """Newest-last slice of the bounded failure log."""
        with self._lock:
            if count <= 0:
                return []
            return list(self._failures)[-count:]
