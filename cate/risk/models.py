"""Risk data models — factors, parameters and the immutable decision record."""

import math
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Optional

from cate.oracle.models import OracleMetrics, SourceTag


class RiskAction(str, Enum):
    ALLOW = "ALLOW"
    SCALE = "SCALE"
    BLOCK = "BLOCK"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class RiskParameters:
    """Thresholds applied by the evaluator.

    Ratios are percentages of price, volatilities are annualized percent,
    staleness is seconds and quality is 0–100.
    """

    max_confidence_ratio_scale: float = 1.0
    max_confidence_ratio_block: float = 3.0
    max_confidence_zscore: float = 3.0
    max_staleness_seconds: float = 30.0
    max_volatility_scale: float = 100.0
    max_volatility_block: float = 200.0
    min_data_quality_score: float = 50.0
    volatility_spike_threshold: float = 2.0
    require_live_oracle: bool = True

    def validate(self) -> None:
        """Raise ``ValueError`` listing every out-of-range threshold.

        Non-numeric or non-finite thresholds are rejected outright; a NaN
        compares false against every bound and would disable its factor.
        """
        errors: list[str] = []
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "require_live_oracle":
                if not isinstance(value, bool):
                    errors.append("require_live_oracle must be a boolean")
            elif isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f"{f.name} must be a number")
            elif not math.isfinite(value):
                errors.append(f"{f.name} must be finite")
        if errors:
            raise ValueError("; ".join(errors))

        if self.max_confidence_ratio_scale <= 0:
            errors.append("max_confidence_ratio_scale must be positive")
        if self.max_confidence_ratio_block <= self.max_confidence_ratio_scale:
            errors.append("max_confidence_ratio_block must exceed max_confidence_ratio_scale")
        if self.max_confidence_zscore <= 0:
            errors.append("max_confidence_zscore must be positive")
        if self.max_staleness_seconds <= 0:
            errors.append("max_staleness_seconds must be positive")
        if self.max_volatility_scale <= 0:
            errors.append("max_volatility_scale must be positive")
        if self.max_volatility_block <= self.max_volatility_scale:
            errors.append("max_volatility_block must exceed max_volatility_scale")
        if not 0 <= self.min_data_quality_score <= 100:
            errors.append("min_data_quality_score must be within [0, 100]")
        if self.volatility_spike_threshold <= 0:
            errors.append("volatility_spike_threshold must be positive")
        if errors:
            raise ValueError("; ".join(errors))

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class RiskFactor:
    """One named contribution to the risk score.

    ``triggered`` is a hard constraint: any triggered factor forces BLOCK.
    """

    name: str
    value: float
    threshold: float
    impact: float  # positive lowers risk, negative raises it
    triggered: bool
    severity: Severity
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "value": self.value,
            "threshold": self.threshold,
            "impact": self.impact,
            "triggered": self.triggered,
            "severity": self.severity.value,
            "description": self.description,
        }


@dataclass(frozen=True)
class DecisionInputs:
    """Audit snapshot of everything an evaluation depended on."""

    metrics: OracleMetrics
    source: SourceTag
    gate_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "metrics": self.metrics.to_dict(),
            "source": self.source.value,
            "gate_reason": self.gate_reason,
        }


@dataclass(frozen=True)
class RiskDecision:
    """Outcome of one evaluation.  Created once; never mutated."""

    asset_id: str
    action: RiskAction
    size_multiplier: float
    risk_score: int
    explanation: str
    factors: tuple[RiskFactor, ...]
    timestamp: float
    inputs: DecisionInputs
    parameters: RiskParameters = field(default_factory=RiskParameters)

    @property
    def is_blocked(self) -> bool:
        return self.action is RiskAction.BLOCK

    @property
    def triggered_factors(self) -> list[RiskFactor]:
        return [f for f in self.factors if f.triggered]

    def to_dict(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "action": self.action.value,
            "size_multiplier": self.size_multiplier,
            "risk_score": self.risk_score,
            "explanation": self.explanation,
            "factors": [f.to_dict() for f in self.factors],
            "timestamp": self.timestamp,
            "inputs": self.inputs.to_dict(),
            "parameters": self.parameters.to_dict(),
        }
