"""Risk factor evaluators — pure functions, no I/O.

Each evaluator returns one ``RiskFactor``.  A factor is *triggered* when its
hard constraint is violated and *warning* (severity WARNING) when only its
soft bound is crossed.  Impacts: negative raises risk, positive lowers it.
"""

from cate.oracle.models import OracleMetrics, SourceTag
from cate.risk.models import RiskFactor, RiskParameters, Severity

CONFIDENCE_RATIO = "Confidence Ratio"
CONFIDENCE_ZSCORE = "Confidence Z-Score"
DATA_FRESHNESS = "Data Freshness"
REALIZED_VOLATILITY = "Realized Volatility"
DATA_QUALITY = "Data Quality"
VOLATILITY_SPIKE = "Volatility Spike"
ORACLE_SOURCE = "Oracle Source"
CIRCUIT_BREAKER = "Circuit Breaker"

# Warning bands as fractions of the hard limit
_ZSCORE_WARNING_FRACTION = 0.7
_STALENESS_WARNING_FRACTION = 0.7
_QUALITY_WARNING_FACTOR = 1.2


def _grade(triggered: bool, warning: bool, impacts: tuple[int, int, int]) -> tuple[int, Severity]:
    if triggered:
        return impacts[0], Severity.CRITICAL
    if warning:
        return impacts[1], Severity.WARNING
    return impacts[2], Severity.INFO


def confidence_ratio_factor(metrics: OracleMetrics, params: RiskParameters) -> RiskFactor:
    ratio = metrics.confidence_ratio
    triggered = ratio > params.max_confidence_ratio_block
    warning = ratio > params.max_confidence_ratio_scale
    impact, severity = _grade(triggered, warning, (-40, -20, 10))
    if triggered:
        desc = f"Oracle uncertainty {ratio:.3f}% exceeds block limit {params.max_confidence_ratio_block}%"
    elif warning:
        desc = f"Oracle uncertainty {ratio:.3f}% is elevated (scale limit {params.max_confidence_ratio_scale}%)"
    else:
        desc = f"Oracle uncertainty {ratio:.3f}% is tight"
    return RiskFactor(
        name=CONFIDENCE_RATIO,
        value=ratio,
        threshold=(
            params.max_confidence_ratio_block if triggered
            else params.max_confidence_ratio_scale
        ),
        impact=impact,
        triggered=triggered,
        severity=severity,
        description=desc,
    )


def confidence_zscore_factor(metrics: OracleMetrics, params: RiskParameters) -> RiskFactor:
    z = abs(metrics.confidence_zscore)
    limit = params.max_confidence_zscore
    triggered = z > limit
    warning = z > limit * _ZSCORE_WARNING_FRACTION
    impact, severity = _grade(triggered, warning, (-35, -10, 5))
    if triggered:
        desc = f"Confidence is {z:.2f} standard deviations from its 1h mean"
    elif warning:
        desc = f"Confidence deviation {z:.2f}σ is approaching the limit"
    else:
        desc = f"Confidence deviation {z:.2f}σ is normal"
    return RiskFactor(CONFIDENCE_ZSCORE, z, limit, impact, triggered, severity, desc)


def freshness_factor(metrics: OracleMetrics, params: RiskParameters) -> RiskFactor:
    age = metrics.data_freshness_seconds
    limit = params.max_staleness_seconds
    triggered = age > limit
    warning = age > limit * _STALENESS_WARNING_FRACTION
    impact, severity = _grade(triggered, warning, (-50, -15, 10))
    if triggered:
        desc = f"Price is {age:.1f}s old, beyond the {limit:.0f}s staleness limit"
    elif warning:
        desc = f"Price is {age:.1f}s old and ageing"
    else:
        desc = f"Price is fresh ({age:.1f}s)"
    return RiskFactor(DATA_FRESHNESS, age, limit, impact, triggered, severity, desc)


def volatility_factor(metrics: OracleMetrics, params: RiskParameters) -> RiskFactor:
    vol = metrics.volatility_realized
    triggered = vol > params.max_volatility_block
    warning = vol > params.max_volatility_scale
    impact, severity = _grade(triggered, warning, (-35, -15, 5))
    if triggered:
        desc = f"Realized volatility {vol:.1f}% exceeds block limit {params.max_volatility_block:.0f}%"
    elif warning:
        desc = f"Realized volatility {vol:.1f}% is elevated"
    else:
        desc = f"Realized volatility {vol:.1f}% is normal"
    return RiskFactor(
        name=REALIZED_VOLATILITY,
        value=vol,
        threshold=params.max_volatility_block if triggered else params.max_volatility_scale,
        impact=impact,
        triggered=triggered,
        severity=severity,
        description=desc,
    )


def quality_factor(metrics: OracleMetrics, params: RiskParameters) -> RiskFactor:
    score = metrics.data_quality_score
    floor = params.min_data_quality_score
    triggered = score < floor
    warning = score < floor * _QUALITY_WARNING_FACTOR
    impact, severity = _grade(triggered, warning, (-45, -10, 10))
    if triggered:
        desc = f"Data quality {score:.1f} is below the minimum {floor:.0f}"
    elif warning:
        desc = f"Data quality {score:.1f} is marginal"
    else:
        desc = f"Data quality {score:.1f} is good"
    return RiskFactor(DATA_QUALITY, score, floor, impact, triggered, severity, desc)


def volatility_spike_factor(metrics: OracleMetrics, params: RiskParameters) -> RiskFactor:
    """Realized/expected volatility ratio.

    A spike alone only warns; it blocks only when the confidence ratio is
    already above its scale threshold.
    """
    expected = metrics.volatility_expected or 1.0
    spike = metrics.volatility_realized / expected
    spiking = spike > params.volatility_spike_threshold
    triggered = spiking and metrics.confidence_ratio > params.max_confidence_ratio_scale
    impact, severity = _grade(triggered, spiking, (-30, -10, 5))
    if triggered:
        desc = f"Volatility {spike:.2f}x expected while oracle confidence is degraded"
    elif spiking:
        desc = f"Volatility {spike:.2f}x expected"
    else:
        desc = f"Volatility {spike:.2f}x expected is within range"
    return RiskFactor(
        VOLATILITY_SPIKE, spike, params.volatility_spike_threshold,
        impact, triggered, severity, desc,
    )


def source_factor(source: SourceTag, params: RiskParameters) -> RiskFactor:
    live = source is SourceTag.LIVE
    triggered = params.require_live_oracle and not live
    impact, severity = _grade(triggered, not live, (-50, -20, 10))
    if live:
        desc = "Live oracle feed"
    else:
        desc = f"Oracle source is {source.value}, not LIVE"
    return RiskFactor(
        ORACLE_SOURCE, 1.0 if live else 0.0, 1.0, impact, triggered, severity, desc,
    )


def circuit_factor(reason: str) -> RiskFactor:
    """Hard block injected when the circuit breaker denies the asset."""
    return RiskFactor(
        name=CIRCUIT_BREAKER,
        value=0.0,
        threshold=1.0,
        impact=0,
        triggered=True,
        severity=Severity.CRITICAL,
        description=reason,
    )


def evaluate_factors(
    metrics: OracleMetrics,
    source: SourceTag,
    params: RiskParameters,
) -> list[RiskFactor]:
    """All standard factors in their fixed reporting order."""
    return [
        confidence_ratio_factor(metrics, params),
        confidence_zscore_factor(metrics, params),
        freshness_factor(metrics, params),
        volatility_factor(metrics, params),
        quality_factor(metrics, params),
        volatility_spike_factor(metrics, params),
        source_factor(source, params),
    ]
