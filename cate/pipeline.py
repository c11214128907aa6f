"""CATE — decision pipeline (orchestration).

Connects metrics, circuit breaker, evaluator and attestation into one flow:
sample → metrics → breaker detectors → gate → evaluate → sign → history.

Samples for one asset are processed strictly one at a time; different
assets proceed concurrently and share only the thread-safe breaker.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from cate.crypto.attestation import AttestationEngine, SignedDecision
from cate.errors import InvalidSample
from cate.failsafe.circuit_breaker import CircuitBreaker, FailureSeverity, FailureType, Gate
from cate.observability.history import DecisionLog, DecisionLogEntry
from cate.oracle.metrics import MetricsCalculator
from cate.oracle.models import OracleSample
from cate.repos.decision_repo import DecisionRepo
from cate.risk.evaluator import RiskEvaluator
from cate.risk.models import RiskAction

logger = logging.getLogger("cate.pipeline")


class DecisionPipeline:
    """Per-process owner of the engine components.

    Args:
        attestation: Explicitly constructed signer; never a module global.
        metrics: Rolling-window calculator.
        evaluator: Risk evaluator holding the active parameters.
        breaker: Circuit breaker shared by all assets.
        history: In-memory decision ring buffer.
        repo: Optional SQLite audit checkpoint.
        clock: Returns the current unix time; injected for tests.
    """

    def __init__(
        self,
        attestation: AttestationEngine,
        metrics: Optional[MetricsCalculator] = None,
        evaluator: Optional[RiskEvaluator] = None,
        breaker: Optional[CircuitBreaker] = None,
        history: Optional[DecisionLog] = None,
        repo: Optional[DecisionRepo] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._attestation = attestation
        self._clock = clock
        self._metrics = metrics or MetricsCalculator(clock=clock)
        self._evaluator = evaluator or RiskEvaluator()
        self._breaker = breaker or CircuitBreaker(clock=clock)
        self._history = history or DecisionLog(clock=clock)
        self._repo = repo
        self._locks: dict[str, asyncio.Lock] = {}
        self._processed = 0
        self._dropped = 0

    # ── Components ───────────────────────────────────────────────────────

    @property
    def attestation(self) -> AttestationEngine:
        return self._attestation

    @property
    def evaluator(self) -> RiskEvaluator:
        return self._evaluator

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def history(self) -> DecisionLog:
        return self._history

    @property
    def stats(self) -> dict:
        return {"processed": self._processed, "dropped": self._dropped}

    def _lock_for(self, asset_id: str) -> asyncio.Lock:
        if asset_id not in self._locks:
            self._locks[asset_id] = asyncio.Lock()
        return self._locks[asset_id]

    # ── Processing ───────────────────────────────────────────────────────

    async def process(self, sample: OracleSample) -> Optional[SignedDecision]:
        """Run one sample to completion and return its signed decision.

        A malformed sample is logged, recorded as an ``INVALID_DATA``
        failure and dropped; ``None`` is returned and the asset's previous
        decision stays current.  A signing failure is recorded as a
        ``SIGNING_ERROR`` and re-raised; nothing is recorded to history.
        """
        async with self._lock_for(sample.asset_id):
            now = self._clock()
            try:
                metrics = self._metrics.append(sample, now=now)
            except InvalidSample as exc:
                self._dropped += 1
                logger.warning("Dropped sample for %r: %s", sample.asset_id, exc)
                self._breaker.record_failure(
                    FailureType.INVALID_DATA,
                    str(exc),
                    FailureSeverity.CRITICAL,
                    asset_id=sample.asset_id or None,
                )
                return None

            self._breaker.record_sample(sample, metrics, now=now)
            gate: Gate = self._breaker.is_allowed(sample.asset_id)
            decision = self._evaluator.evaluate(
                metrics,
                sample.source,
                gate_reason=None if gate.allowed else gate.reason,
                now=now,
            )
            try:
                signed = self._attestation.sign_decision(decision)
            except Exception as exc:
                logger.error("Signing failed for %r: %s", sample.asset_id, exc)
                self._breaker.record_failure(
                    FailureType.SIGNING_ERROR,
                    str(exc),
                    FailureSeverity.CRITICAL,
                    asset_id=sample.asset_id,
                )
                raise
            self._history.record(decision, signed)
            if self._repo is not None:
                self._repo.insert_decision(signed, decision)

            self._processed += 1
            if decision.action is RiskAction.BLOCK:
                logger.warning(
                    "%s BLOCKED (risk %d): %s",
                    sample.asset_id, decision.risk_score,
                    ", ".join(f.name for f in decision.triggered_factors),
                )
            return signed

    def on_connection_state(self, state) -> None:
        """Forward oracle feed state changes to the circuit breaker."""
        self._breaker.record_connection_state(state)

    # ── Queries ──────────────────────────────────────────────────────────

    def latest(self, asset_id: str) -> Optional[DecisionLogEntry]:
        return self._history.latest(asset_id)
