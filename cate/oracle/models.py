"""Oracle data models — typed representations of price samples and metrics."""

import math
from dataclasses import dataclass
from enum import Enum

from cate.errors import InvalidSample


class SourceTag(str, Enum):
    """Where a sample came from.  Only ``LIVE`` is fully trusted."""

    LIVE = "LIVE"
    FALLBACK = "FALLBACK"
    CACHED = "CACHED"


@dataclass(frozen=True)
class OracleSample:
    """A single price observation.  Immutable once received."""

    asset_id: str
    price: float
    confidence: float
    publish_time: float  # unix seconds
    source: SourceTag = SourceTag.LIVE
    publisher_count: int = 0
    feed_id: str = ""

    def validate(self) -> None:
        """Raise ``InvalidSample`` when the sample cannot be evaluated."""
        raw_id = self.asset_id.encode("utf-8")
        if not raw_id:
            raise InvalidSample("asset_id must not be empty")
        if len(raw_id) > 16:
            raise InvalidSample(f"asset_id {self.asset_id!r} exceeds 16 bytes")
        if not math.isfinite(self.price) or self.price <= 0:
            raise InvalidSample(f"price must be positive and finite, got {self.price}")
        if not math.isfinite(self.confidence) or self.confidence < 0:
            raise InvalidSample(
                f"confidence must be non-negative and finite, got {self.confidence}"
            )
        if not math.isfinite(self.publish_time):
            raise InvalidSample("publish_time must be finite")

    @property
    def confidence_ratio(self) -> float:
        """Confidence band as a percentage of price."""
        return self.confidence / self.price * 100.0


@dataclass(frozen=True)
class PricePoint:
    """One entry in a rolling window."""

    price: float
    confidence: float
    timestamp: float  # receipt time, unix seconds

    @property
    def confidence_ratio(self) -> float:
        return self.confidence / self.price * 100.0


@dataclass(frozen=True)
class OracleMetrics:
    """Derived statistics, recomputed for every accepted sample."""

    asset_id: str
    price: float
    confidence: float
    confidence_ratio: float  # percent
    confidence_zscore: float
    volatility_realized: float  # annualized, percent
    volatility_expected: float  # percent
    data_freshness_seconds: float
    data_quality_score: float  # 0..100
    avg_confidence_ratio_1h: float
    price_change_1h: float  # percent vs. oldest 1h point
    update_frequency_1m: int
    sample_count_1h: int
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "price": self.price,
            "confidence": self.confidence,
            "confidence_ratio": self.confidence_ratio,
            "confidence_zscore": self.confidence_zscore,
            "volatility_realized": self.volatility_realized,
            "volatility_expected": self.volatility_expected,
            "data_freshness_seconds": self.data_freshness_seconds,
            "data_quality_score": self.data_quality_score,
            "avg_confidence_ratio_1h": self.avg_confidence_ratio_1h,
            "price_change_1h": self.price_change_1h,
            "update_frequency_1m": self.update_frequency_1m,
            "sample_count_1h": self.sample_count_1h,
            "timestamp": self.timestamp,
        }
