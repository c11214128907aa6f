"""Risk evaluator — maps oracle metrics to ALLOW / SCALE / BLOCK.

Pure math, no I/O.  ``evaluate()`` is a deterministic function of its
arguments; ``RiskEvaluator`` only adds a mutable, validated parameter set.
"""

import logging
from dataclasses import replace
from typing import Optional

from cate.oracle.models import OracleMetrics, SourceTag
from cate.risk.factors import circuit_factor, evaluate_factors
from cate.risk.models import (
    DecisionInputs,
    RiskAction,
    RiskDecision,
    RiskFactor,
    RiskParameters,
    Severity,
)

logger = logging.getLogger("cate.risk")

BASE_RISK_SCORE = 50
SCALE_CUTOFF = 0.95

# Floors for the chained scale-downs
_CONFIDENCE_FLOOR = 0.1
_VOLATILITY_FLOOR = 0.2
_ZSCORE_FLOOR = 0.3
_ZSCORE_SOFT_FRACTION = 0.5


def scale_down(value: float, soft: float, hard: float, floor: float) -> float:
    """Linear reduction from 1 at *soft* to *floor* at *hard* and beyond."""
    if value <= soft:
        return 1.0
    if hard <= soft:
        return floor
    return max(floor, 1.0 - (value - soft) / (hard - soft))


def size_multiplier(metrics: OracleMetrics, params: RiskParameters) -> float:
    """Product of the confidence, volatility and z-score scale-downs, in [0, 1]."""
    multiplier = 1.0
    multiplier *= scale_down(
        metrics.confidence_ratio,
        params.max_confidence_ratio_scale,
        params.max_confidence_ratio_block,
        _CONFIDENCE_FLOOR,
    )
    multiplier *= scale_down(
        metrics.volatility_realized,
        params.max_volatility_scale,
        params.max_volatility_block,
        _VOLATILITY_FLOOR,
    )
    multiplier *= scale_down(
        abs(metrics.confidence_zscore),
        params.max_confidence_zscore * _ZSCORE_SOFT_FRACTION,
        params.max_confidence_zscore,
        _ZSCORE_FLOOR,
    )
    return max(0.0, min(1.0, multiplier))


def risk_score(factors: list[RiskFactor]) -> int:
    total_impact = sum(f.impact for f in factors)
    return int(max(0, min(100, round(BASE_RISK_SCORE - total_impact))))


def _threshold_hint(factor: RiskFactor) -> str:
    if factor.name == "Data Quality":
        return f"must improve to above {factor.threshold:g}"
    if factor.name == "Oracle Source":
        return "must return to a LIVE feed"
    if factor.name == "Circuit Breaker":
        return "must recover before trading resumes"
    return f"must improve to below {factor.threshold:g}"


def explain(
    action: RiskAction,
    score: int,
    multiplier: float,
    factors: list[RiskFactor],
) -> str:
    """Human-readable audit text listing every triggered or warning factor."""
    lines: list[str] = []
    if action is RiskAction.BLOCK:
        lines.append(f"TRADE BLOCKED (Risk: {score}/100)")
        lines.append("")
        lines.append("Critical Issues:")
        triggered = [f for f in factors if f.triggered]
        for f in triggered:
            lines.append(
                f"  • {f.name}: {f.description} (value {f.value:.4g}, threshold {f.threshold:g})"
            )
        lines.append("")
        lines.append("To enable execution:")
        for f in triggered:
            lines.append(f"  • {f.name} {_threshold_hint(f)}")
    elif action is RiskAction.SCALE:
        lines.append(f"POSITION SCALED TO {multiplier * 100:.0f}% (Risk: {score}/100)")
        lines.append("")
        lines.append("Warnings:")
        for f in factors:
            if f.severity is Severity.WARNING:
                lines.append(
                    f"  • {f.name}: {f.description} (value {f.value:.4g}, threshold {f.threshold:g})"
                )
    else:
        lines.append(f"TRADE ALLOWED (Risk: {score}/100)")
        lines.append("")
        lines.append("All factors within bounds.")
        warnings = [f for f in factors if f.severity is Severity.WARNING]
        for f in warnings:
            lines.append(
                f"  • {f.name}: {f.description} (value {f.value:.4g}, threshold {f.threshold:g})"
            )
    return "\n".join(lines)


def evaluate(
    metrics: OracleMetrics,
    source: SourceTag,
    params: RiskParameters,
    gate_reason: Optional[str] = None,
    now: Optional[float] = None,
) -> RiskDecision:
    """Evaluate *metrics* against *params*.

    Any triggered factor, or a non-empty *gate_reason* from the circuit
    breaker, forces BLOCK with a zero multiplier regardless of score.
    """
    factors = evaluate_factors(metrics, source, params)
    if gate_reason:
        factors.append(circuit_factor(gate_reason))

    score = risk_score(factors)
    if any(f.triggered for f in factors):
        action = RiskAction.BLOCK
        multiplier = 0.0
    else:
        multiplier = size_multiplier(metrics, params)
        action = RiskAction.SCALE if multiplier < SCALE_CUTOFF else RiskAction.ALLOW

    return RiskDecision(
        asset_id=metrics.asset_id,
        action=action,
        size_multiplier=multiplier,
        risk_score=score,
        explanation=explain(action, score, multiplier, factors),
        factors=tuple(factors),
        timestamp=metrics.timestamp if now is None else now,
        inputs=DecisionInputs(metrics=metrics, source=source, gate_reason=gate_reason),
        parameters=params,
    )


class RiskEvaluator:
    """Evaluator holding the active ``RiskParameters``.

    Args:
        params: Initial parameters; validated on construction.
    """

    def __init__(self, params: Optional[RiskParameters] = None) -> None:
        self._params = params or RiskParameters()
        self._params.validate()

    @property
    def parameters(self) -> RiskParameters:
        return self._params

    def update_parameters(self, **changes) -> RiskParameters:
        """Apply *changes* atomically.  Invalid combinations raise ``ValueError``."""
        unknown = sorted(set(changes) - set(self._params.to_dict()))
        if unknown:
            raise ValueError(f"Unknown risk parameter(s): {', '.join(unknown)}")
        updated = replace(self._params, **changes)
        updated.validate()
        self._params = updated
        logger.info("Risk parameters updated: %s", changes)
        return updated

    def evaluate(
        self,
        metrics: OracleMetrics,
        source: SourceTag,
        params: Optional[RiskParameters] = None,
        gate_reason: Optional[str] = None,
        now: Optional[float] = None,
    ) -> RiskDecision:
        return evaluate(
            metrics,
            source,
            params or self._params,
            gate_reason=gate_reason,
            now=now,
        )
